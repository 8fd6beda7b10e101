"""
Per-call turn taking.

`TurnController` sits between the media stream and the reply pipeline:

- every inbound frame is classified; while a reply is playing the frame is only
  a barge-in candidate, otherwise it feeds the utterance segmenter
- a finished utterance starts at most one pipeline per call
  (transcribe -> dialogue/resolver -> synthesize -> pace out)
- barge-in cancels the playing reply and asks Twilio to drop buffered audio

The controller itself is shared by all calls; per-call state lives on the
`CallSession`. Every await in the pipeline is followed by a registry check so
a late result never touches a call that has already been torn down.
"""

import asyncio
import re
import time
from typing import Any, Callable, Optional

import structlog
from twilio.rest import Client as TwilioClient

from src.voiceorder.config import get_config
from src.voiceorder.dialogue import APOLOGY_TEXT, DialogueReply, OrderDialogue
from src.voiceorder.playback import PlaybackOutcome, PlaybackPacer
from src.voiceorder.session import CallRegistry, CallSession
from src.voiceorder.stt import TranscriptionAdapter, TranscriptionError, WhisperTranscriber
from src.voiceorder.tts import OpenAISynthesizer, Synthesizer, Transcoder, make_transcoder
from src.voiceorder.twilio_protocol import create_clear_message
from src.voiceorder.vad import UtteranceSegmenter, Utterance, activity_ratio, is_likely_silence

logger = structlog.get_logger(__name__)

_EMAIL_RE = re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE)
_LOG_PHONE_RE = re.compile(r"(?:\+?1[\s\-.]?)?(?:\(?\d{3}\)?[\s\-.]?)\d{3}[\s\-.]?\d{4}")


def redact_transcript_for_logs(text: str) -> str:
    """
    Best-effort redaction for logs:
    - emails -> [EMAIL]
    - phone numbers -> [PHONE-***1234]
    """
    if not text:
        return ""

    redacted = _EMAIL_RE.sub("[EMAIL]", text)

    def _mask_phone(match: re.Match) -> str:
        digits = re.sub(r"\D+", "", match.group(0) or "")
        return f"[PHONE-***{digits[-4:]}]"

    return _LOG_PHONE_RE.sub(_mask_phone, redacted)


class CallTerminator:
    """Ends a call through the Twilio REST API."""

    def __init__(self, config: Optional[Any] = None, client: Optional[Any] = None):
        self.config = config or get_config()
        self._client = client
        if self._client is None and self.config.twilio_account_sid and self.config.twilio_auth_token:
            self._client = TwilioClient(self.config.twilio_account_sid, self.config.twilio_auth_token)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def hang_up(self, call_sid: str) -> bool:
        if not self._client or not call_sid:
            logger.warning("Cannot hang up - missing Twilio client or call_sid", call_sid=call_sid)
            return False
        try:
            await asyncio.to_thread(lambda: self._client.calls(call_sid).update(status="completed"))
        except Exception as e:
            logger.error("Failed to hang up call", call_sid=call_sid, error=str(e))
            return False
        logger.info("Call hung up", call_sid=call_sid)
        return True


class TurnController:
    """Turn-taking state machine shared by every call on this process."""

    def __init__(
        self,
        registry: CallRegistry,
        *,
        config: Optional[Any] = None,
        transcriber: Optional[TranscriptionAdapter] = None,
        dialogue: Optional[OrderDialogue] = None,
        synthesizer: Optional[Synthesizer] = None,
        transcoder_factory: Optional[Callable[[], Transcoder]] = None,
        terminator: Optional[CallTerminator] = None,
        on_event: Optional[Callable[[str], None]] = None,
    ):
        self.registry = registry
        self.config = config or get_config()
        self.segmenter = UtteranceSegmenter(self.config.vad_config())
        self.transcriber = transcriber or WhisperTranscriber(self.config)
        self.dialogue = dialogue or OrderDialogue(config=self.config)
        self.synthesizer = synthesizer or OpenAISynthesizer(self.config)
        self._transcoder_factory = transcoder_factory or (
            lambda: make_transcoder(self.config, self.synthesizer.sample_rate)
        )
        self.terminator = terminator or CallTerminator(self.config)
        self._on_event = on_event

        self.min_utterance_bytes = int(self.config.vad_min_utterance_ms / 1000 * self.config.sample_rate)

    def _emit(self, event: str) -> None:
        if self._on_event is not None:
            try:
                self._on_event(event)
            except Exception as e:
                logger.debug("Event hook failed", event_name=event, error=str(e))

    def _alive(self, session: CallSession) -> bool:
        return not session.closed and self.registry.contains(session)

    # Inbound audio

    async def handle_frame(self, session: CallSession, frame: bytes, *, now: Optional[float] = None) -> None:
        """Process one inbound frame, strictly in arrival order."""
        if not self._alive(session):
            return
        if now is None:
            now = time.monotonic()

        session.metrics.frames_in += 1
        ratio = activity_ratio(frame)
        active = ratio >= self.config.vad_activity_threshold

        if session.speaking and active:
            if not self.config.barge_in_enabled or now < session.barge_in_cooldown_until:
                return
            await self.barge_in(session, now=now, activity=ratio)
        if session.speaking:
            return

        utterance = self.segmenter.push(session.vad, frame, is_active=active, now=now)
        if utterance is not None:
            self.on_utterance(session, utterance)

    async def barge_in(self, session: CallSession, *, now: Optional[float] = None, activity: float = 0.0) -> None:
        """Caller spoke over a reply: stop it and flush Twilio's buffer."""
        if now is None:
            now = time.monotonic()

        logger.info("Barge-in", stream_sid=session.stream_sid, activity=round(activity, 3))
        session.metrics.barge_ins += 1
        self._emit("barge_in")

        handle = session.cancel_playback
        # The playback handle sends `clear` itself.
        if handle is None or not handle():
            try:
                await session.send(create_clear_message(session.stream_sid))
            except Exception as e:
                logger.debug("Clear send failed", stream_sid=session.stream_sid, error=str(e))

        session.release_turn()
        session.awaiting_mark = None
        session.barge_in_cooldown_until = now + self.config.barge_in_cooldown_ms / 1000.0

    def preflight_ok(self, audio: bytes) -> bool:
        """Cheap checks before paying for transcription."""
        if len(audio) < self.min_utterance_bytes:
            return False
        if activity_ratio(audio) < self.config.min_utterance_activity:
            return False
        if is_likely_silence(audio, self.config.silence_guard_ratio):
            return False
        return True

    def on_utterance(self, session: CallSession, utterance: Utterance) -> Optional[asyncio.Task]:
        session.metrics.utterances += 1
        self._emit("utterance")

        if session.pending_reply:
            session.metrics.dropped_utterances += 1
            logger.debug("Utterance dropped, reply pending", stream_sid=session.stream_sid)
            return None

        audio = utterance.audio
        if not self.preflight_ok(audio):
            session.metrics.dropped_utterances += 1
            logger.debug(
                "Utterance dropped by pre-flight guard",
                stream_sid=session.stream_sid,
                duration_ms=utterance.duration_ms,
            )
            return None

        reply_id = session.begin_reply()
        logger.debug(
            "Utterance accepted",
            stream_sid=session.stream_sid,
            duration_ms=utterance.duration_ms,
            ended_by_cap=utterance.ended_by_cap,
        )
        task = asyncio.create_task(self._run_pipeline(session, audio, reply_id))
        return session.track(task)

    # Reply pipeline

    async def _run_pipeline(self, session: CallSession, audio: bytes, reply_id: Optional[int] = None) -> None:
        if reply_id is None:
            reply_id = session.begin_reply()
        try:
            try:
                text = await self.transcriber.transcribe(audio)
            except TranscriptionError as e:
                session.metrics.failures += 1
                logger.warning("Transcription failed, skipping utterance", stream_sid=session.stream_sid, error=str(e))
                return
            if not self._alive(session):
                return

            text = (text or "").strip()
            if len(text) < self.config.min_transcript_chars:
                logger.debug("Transcript too short", stream_sid=session.stream_sid, chars=len(text))
                return
            if self.config.dedupe_transcripts and text == session.last_transcript:
                logger.info("Duplicate transcript dropped", stream_sid=session.stream_sid)
                return

            session.last_transcript = text
            session.metrics.transcripts += 1
            logger.info("Transcript", stream_sid=session.stream_sid, text=redact_transcript_for_logs(text)[:100])

            try:
                reply = await self.dialogue.respond(session.order, text)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                session.metrics.failures += 1
                logger.warning(
                    "Dialogue failed, apologizing",
                    stream_sid=session.stream_sid,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                reply = DialogueReply(APOLOGY_TEXT, "apology")
            if not self._alive(session):
                return

            await self.speak(session, reply.text, end_call=reply.end_call)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            session.metrics.failures += 1
            logger.error("Reply pipeline failed", stream_sid=session.stream_sid, error=str(e), exc_info=True)
        finally:
            session.end_reply(reply_id)

    async def speak(self, session: CallSession, text: str, *, end_call: bool = False) -> Optional[PlaybackOutcome]:
        """Synthesize `text` and pace it out. Returns None if nothing was played."""
        text = (text or "").strip()
        if not text or not self._alive(session):
            return None
        if session.speaking:
            logger.warning("Reply dropped, already speaking", stream_sid=session.stream_sid)
            return None
        if self.config.dedupe_replies and text == session.last_spoken_text:
            logger.info("Duplicate reply dropped", stream_sid=session.stream_sid)
            return None

        session.last_spoken_text = text
        session.vad.reset()
        session.pending_reply = True

        transcoder = self._transcoder_factory()
        pacer = PlaybackPacer(
            session,
            frame_size=self.config.frame_size_bytes,
            frame_duration_ms=self.config.frame_duration_ms,
            catch_up_frames=self.config.pacer_catch_up_frames,
            on_cancel=transcoder.kill,
        )
        pacer.start()
        session.metrics.replies += 1
        self._emit("reply")
        logger.info("Speaking", stream_sid=session.stream_sid, chars=len(text), end_call=end_call)

        outcome = await pacer.play(transcoder.transcode(self.synthesizer.stream_pcm(text)))

        if outcome == PlaybackOutcome.FAILED:
            session.metrics.failures += 1
        elif outcome == PlaybackOutcome.COMPLETED:
            self._schedule_spoken_reset(session, text)

        if end_call and outcome == PlaybackOutcome.COMPLETED and self._alive(session):
            await self._wait_for_mark(session)
            await self.terminator.hang_up(session.call_sid)
        return outcome

    def _schedule_spoken_reset(self, session: CallSession, text: str) -> None:
        def _forget() -> None:
            if self._alive(session) and session.last_spoken_text == text:
                session.last_spoken_text = ""

        asyncio.get_running_loop().call_later(self.config.reply_dedupe_reset_ms / 1000.0, _forget)

    async def _wait_for_mark(self, session: CallSession, timeout: float = 2.0) -> None:
        """Give Twilio a moment to finish playing before hanging up."""
        deadline = time.monotonic() + timeout
        while session.awaiting_mark and self._alive(session) and time.monotonic() < deadline:
            await asyncio.sleep(0.05)

    def on_mark(self, session: CallSession, name: str) -> None:
        if name and session.awaiting_mark == name:
            session.awaiting_mark = None
