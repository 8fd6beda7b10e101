"""
Outbound reply playback.

A `PlaybackPacer` owns one reply for one call:

- a producer task pulls transcoded mu-law bytes into a buffer
- the pacing loop cuts the buffer into fixed frames and sends one frame per
  frame duration, plus up to `catch_up_frames` when the loop fell behind
- on completion it sends a `reply-<id>` mark and releases the turn
- on cancellation (barge-in or call teardown) it kills the transcoder, stops
  sending, asks Twilio to `clear` its buffer and releases the turn

Completion and cancellation settle the playback exactly once.
"""

from __future__ import annotations

import asyncio
import uuid
from enum import Enum
from typing import AsyncIterator, Callable, List, Optional, Set

import structlog

from src.voiceorder.audio import FRAME_DURATION_MS, TWILIO_FRAME_SIZE, pad_frame
from src.voiceorder.session import CallSession
from src.voiceorder.twilio_protocol import create_clear_message, create_mark_message, create_media_message

logger = structlog.get_logger(__name__)

MARK_PREFIX = "reply-"


class CancellationHandle:
    """
    Idempotent cancel token. Callbacks run once, on the first `cancel()` that
    happens before `complete()`. Later calls are no-ops.
    """

    def __init__(self) -> None:
        self._callbacks: List[Callable[[], None]] = []
        self.cancelled = False
        self.completed = False

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.completed)

    def add_callback(self, fn: Callable[[], None]) -> None:
        self._callbacks.append(fn)

    def complete(self) -> None:
        self.completed = True

    def cancel(self) -> bool:
        if not self.active:
            return False
        self.cancelled = True
        for fn in self._callbacks:
            try:
                fn()
            except Exception as e:
                logger.warning("Cancellation callback failed", error=str(e))
        return True

    __call__ = cancel


class PlaybackOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PlaybackPacer:
    """Paces one reply's audio out to a call's media stream."""

    def __init__(
        self,
        session: CallSession,
        *,
        frame_size: int = TWILIO_FRAME_SIZE,
        frame_duration_ms: int = FRAME_DURATION_MS,
        catch_up_frames: int = 2,
        on_cancel: Optional[Callable[[], None]] = None,
    ):
        self.session = session
        self.frame_size = frame_size
        self.frame_duration_ms = frame_duration_ms
        self.catch_up_frames = max(1, catch_up_frames)

        self.handle = CancellationHandle()
        if on_cancel is not None:
            self.handle.add_callback(on_cancel)
        self.handle.add_callback(self._on_cancel)

        self.frames_sent = 0
        self.mark_name: Optional[str] = None
        self.error: Optional[BaseException] = None

        self._buffer = bytearray()
        self._source_done = False
        self._producer: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    @property
    def cancelled(self) -> bool:
        return self.handle.cancelled

    def _owns_turn(self) -> bool:
        return self.session.cancel_playback is self.handle

    def _release(self) -> None:
        if self._owns_turn():
            self.session.release_turn()

    def _on_cancel(self) -> None:
        if self._producer is not None and not self._producer.done():
            self._producer.cancel()
        self._release()
        if not self.session.closed:
            task = asyncio.get_running_loop().create_task(self._send_clear())
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _send_clear(self) -> None:
        try:
            await self.session.send(create_clear_message(self.session.stream_sid))
        except Exception as e:
            logger.debug("Clear send failed", stream_sid=self.session.stream_sid, error=str(e))

    async def _fill(self, audio: AsyncIterator[bytes]) -> None:
        try:
            async for chunk in audio:
                if self.cancelled:
                    break
                self._buffer.extend(chunk)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            self.error = e
            logger.warning(
                "Reply audio stream failed",
                stream_sid=self.session.stream_sid,
                error=str(e),
                error_type=type(e).__name__,
            )
        finally:
            self._source_done = True
            aclose = getattr(audio, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    logger.debug("Audio stream close failed", error=str(e))

    def _next_frame(self) -> Optional[bytes]:
        if len(self._buffer) >= self.frame_size:
            frame = bytes(self._buffer[:self.frame_size])
            del self._buffer[:self.frame_size]
            return frame
        if self._source_done and self._buffer:
            frame = pad_frame(bytes(self._buffer), self.frame_size)
            self._buffer.clear()
            return frame
        return None

    @property
    def drained(self) -> bool:
        return self._source_done and not self._buffer

    def start(self) -> None:
        """Install the cancellation handle and enter the speaking state."""
        self.session.cancel_playback = self.handle
        self.session.start_speaking()

    async def play(self, audio: AsyncIterator[bytes]) -> PlaybackOutcome:
        if not self._owns_turn():
            self.start()
        if self.cancelled:
            return PlaybackOutcome.CANCELLED

        self._producer = asyncio.create_task(self._fill(audio))
        try:
            outcome = await self._pace()
        except asyncio.CancelledError:
            self.handle.cancel()
            raise
        finally:
            if self._producer is not None and not self._producer.done():
                self._producer.cancel()
                try:
                    await self._producer
                except asyncio.CancelledError:
                    pass

        logger.info(
            "Playback finished",
            stream_sid=self.session.stream_sid,
            outcome=outcome.value,
            frames_sent=self.frames_sent,
            mark=self.mark_name,
        )
        return outcome

    async def _pace(self) -> PlaybackOutcome:
        loop = asyncio.get_running_loop()
        frame_s = self.frame_duration_ms / 1000.0
        next_send_time = loop.time()

        while True:
            if self.cancelled or self.session.closed:
                return PlaybackOutcome.CANCELLED

            behind = int((loop.time() - next_send_time) / frame_s) + 1
            allowance = min(self.catch_up_frames, max(1, behind))

            for _ in range(allowance):
                frame = self._next_frame()
                if frame is None:
                    break
                try:
                    await self.session.send(create_media_message(self.session.stream_sid, frame))
                except Exception as e:
                    logger.warning("Media send failed", stream_sid=self.session.stream_sid, error=str(e))
                    self.error = e
                    self.handle.complete()
                    self._release()
                    return PlaybackOutcome.FAILED
                self.frames_sent += 1
                if self.cancelled or self.session.closed:
                    return PlaybackOutcome.CANCELLED

            if self.drained:
                return await self._complete()

            next_send_time += frame_s
            # More than the catch-up allowance behind: resync instead of bursting.
            if loop.time() > next_send_time + frame_s * self.catch_up_frames:
                next_send_time = loop.time()
            wait_time = next_send_time - loop.time()
            await asyncio.sleep(max(0.0, wait_time))

    async def _complete(self) -> PlaybackOutcome:
        if not self.handle.active:
            return PlaybackOutcome.CANCELLED
        self.handle.complete()

        if self.error is not None and self.frames_sent == 0:
            self._release()
            return PlaybackOutcome.FAILED

        name = f"{MARK_PREFIX}{uuid.uuid4().hex}"
        try:
            await self.session.send(create_mark_message(self.session.stream_sid, name))
            self.mark_name = name
            self.session.awaiting_mark = name
        except Exception as e:
            logger.debug("Mark send failed", stream_sid=self.session.stream_sid, error=str(e))
        self._release()
        return PlaybackOutcome.COMPLETED if self.error is None else PlaybackOutcome.FAILED
