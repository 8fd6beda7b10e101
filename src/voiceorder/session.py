"""
Per-call session state and the process-wide call registry.

A `CallSession` is created on the media stream `start` event and destroyed on
`stop` (or socket close). All of its mutable fields are touched only from the
event loop, inside callbacks for that call's stream SID.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional, Set

import structlog

from src.voiceorder.menu import OrderState
from src.voiceorder.vad import VADState

logger = structlog.get_logger(__name__)

SendFn = Callable[[str], Awaitable[None]]


class PlaybackState(str, Enum):
    IDLE = "idle"
    SPEAKING = "speaking"


@dataclass
class CallMetrics:
    """Counters for one call, logged on cleanup."""
    started_at: float = field(default_factory=time.time)
    frames_in: int = 0
    utterances: int = 0
    dropped_utterances: int = 0
    transcripts: int = 0
    replies: int = 0
    barge_ins: int = 0
    failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration_seconds": round(time.time() - self.started_at, 2),
            "frames_in": self.frames_in,
            "utterances": self.utterances,
            "dropped_utterances": self.dropped_utterances,
            "transcripts": self.transcripts,
            "replies": self.replies,
            "barge_ins": self.barge_ins,
            "failures": self.failures,
        }


@dataclass
class CallSession:
    """State for one active phone call."""

    stream_sid: str
    send: SendFn
    call_sid: str = ""
    playback: PlaybackState = PlaybackState.IDLE
    pending_reply: bool = False
    reply_id: int = 0
    last_transcript: str = ""
    last_spoken_text: str = ""
    awaiting_mark: Optional[str] = None
    vad: VADState = field(default_factory=VADState)
    cancel_playback: Optional[Callable[[], None]] = None
    barge_in_cooldown_until: float = 0.0
    order: OrderState = field(default_factory=OrderState)
    metrics: CallMetrics = field(default_factory=CallMetrics)
    tasks: Set[asyncio.Task] = field(default_factory=set)
    closed: bool = False

    @property
    def speaking(self) -> bool:
        return self.playback == PlaybackState.SPEAKING

    def start_speaking(self) -> None:
        self.playback = PlaybackState.SPEAKING

    def release_turn(self) -> None:
        """Back to listening: not speaking, no reply in flight."""
        self.playback = PlaybackState.IDLE
        self.pending_reply = False
        self.cancel_playback = None

    def begin_reply(self) -> int:
        """Claim the reply slot. The returned id identifies the owning pipeline."""
        self.pending_reply = True
        self.reply_id += 1
        return self.reply_id

    def end_reply(self, reply_id: int) -> None:
        """Release the reply slot, unless a newer pipeline has claimed it."""
        if reply_id == self.reply_id and not self.speaking:
            self.pending_reply = False

    def track(self, task: asyncio.Task) -> asyncio.Task:
        """Keep a reference to a per-call task until it finishes."""
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task


class CallRegistry:
    """
    Maps stream SID -> CallSession.

    Inserted into on `start`, removed from on `stop`; everything else is a
    lookup. Removal invokes the session's outstanding cancellation handle so
    nothing keeps playing into a dead call.
    """

    def __init__(self) -> None:
        self._calls: Dict[str, CallSession] = {}

    def create(self, stream_sid: str, send: SendFn, *, call_sid: str = "") -> CallSession:
        existing = self._calls.get(stream_sid)
        if existing is not None:
            logger.warning("Replacing existing call session", stream_sid=stream_sid)
            self.remove(stream_sid)

        session = CallSession(stream_sid=stream_sid, send=send, call_sid=call_sid)
        self._calls[stream_sid] = session
        logger.info("Call session created", stream_sid=stream_sid, call_sid=call_sid, active_calls=len(self._calls))
        return session

    def get(self, stream_sid: Optional[str]) -> Optional[CallSession]:
        if not stream_sid:
            return None
        return self._calls.get(stream_sid)

    def contains(self, session: CallSession) -> bool:
        """True while `session` is the live session for its stream SID."""
        return self._calls.get(session.stream_sid) is session

    def remove(self, stream_sid: str) -> Optional[CallSession]:
        session = self._calls.pop(stream_sid, None)
        if session is None:
            return None

        session.closed = True
        cancel = session.cancel_playback
        session.release_turn()
        if cancel is not None:
            try:
                cancel()
            except Exception as e:
                logger.warning("Playback cancel failed during cleanup", stream_sid=stream_sid, error=str(e))
        session.vad.reset()
        for task in list(session.tasks):
            if not task.done():
                task.cancel()

        logger.info(
            "Call session removed",
            stream_sid=stream_sid,
            call_sid=session.call_sid,
            active_calls=len(self._calls),
            metrics=session.metrics.to_dict(),
        )
        return session

    def __len__(self) -> int:
        return len(self._calls)

    def __iter__(self) -> Iterator[CallSession]:
        return iter(list(self._calls.values()))
