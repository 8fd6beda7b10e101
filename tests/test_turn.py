"""
Tests for the turn controller: segmentation, barge-in and the reply pipeline.
"""

import asyncio
import dataclasses
import time
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.voiceorder.config import get_config
from src.voiceorder.dialogue import APOLOGY_TEXT, DialogueReply
from src.voiceorder.playback import PlaybackOutcome
from src.voiceorder.session import CallRegistry
from src.voiceorder.stt import TranscriptionAdapter, TranscriptionError
from src.voiceorder.tts import AudioopTranscoder, Synthesizer
from src.voiceorder.turn import CallTerminator, TurnController, redact_transcript_for_logs
from src.voiceorder.twilio_protocol import decode_outbound
from src.voiceorder.vad import Utterance

LOUD = b"\x10" * 160
QUIET = b"\xff" * 160


class FakeTranscriber(TranscriptionAdapter):
    def __init__(self, text: str = "one coke please", error: Optional[Exception] = None):
        self.text = text
        self.error = error
        self.calls: List[bytes] = []

    async def transcribe(self, ulaw_audio: bytes) -> str:
        self.calls.append(ulaw_audio)
        if self.error is not None:
            raise self.error
        return self.text


class FakeSynthesizer(Synthesizer):
    """8kHz PCM, so the audioop transcoder only re-encodes."""

    def __init__(self, pcm: bytes = b"\x00\x10" * 480, endless: bool = False, error: Optional[Exception] = None):
        self.pcm = pcm
        self.endless = endless
        self.error = error
        self.texts: List[str] = []

    @property
    def sample_rate(self) -> int:
        return 8000

    async def stream_pcm(self, text):
        self.texts.append(text)
        if self.error is not None:
            raise self.error
        if self.endless:
            while True:
                await asyncio.sleep(0.005)
                yield b"\x00\x10" * 160
        yield self.pcm


def _events(send):
    return [decode_outbound(c.args[0])["event"] for c in send.await_args_list]


async def _wait_for(predicate, timeout=1.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "condition not reached"
        await asyncio.sleep(0.001)


@pytest.fixture
def config():
    return dataclasses.replace(get_config(), reply_dedupe_reset_ms=20)


@pytest.fixture
def registry():
    return CallRegistry()


@pytest.fixture
def session(registry):
    return registry.create("MZ1", AsyncMock(), call_sid="CA1")


@pytest.fixture
def dialogue():
    dialogue = MagicMock()
    dialogue.respond = AsyncMock(return_value=DialogueReply("Two cokes, got it.", "collecting"))
    return dialogue


@pytest.fixture
def terminator():
    terminator = MagicMock()
    terminator.hang_up = AsyncMock(return_value=True)
    return terminator


def _controller(registry, config, dialogue, terminator, **kw):
    kw.setdefault("transcriber", FakeTranscriber())
    kw.setdefault("synthesizer", FakeSynthesizer())
    return TurnController(
        registry,
        config=config,
        dialogue=dialogue,
        transcoder_factory=lambda: AudioopTranscoder(8000),
        terminator=terminator,
        **kw,
    )


async def _speak_utterance(controller, session, start=0.0):
    """Feed one 26-frame utterance and wait for its pipeline."""
    frames = [LOUD] * 20 + [QUIET] * 6
    for i, frame in enumerate(frames):
        await controller.handle_frame(session, frame, now=start + i * 0.02)
    tasks = list(session.tasks)
    if tasks:
        await asyncio.gather(*tasks)
    return tasks


class TestPipeline:

    @pytest.mark.asyncio
    async def test_utterance_to_reply(self, registry, session, config, dialogue, terminator):
        on_event = MagicMock()
        transcriber = FakeTranscriber()
        synth = FakeSynthesizer()
        controller = _controller(
            registry, config, dialogue, terminator,
            transcriber=transcriber, synthesizer=synth, on_event=on_event,
        )

        tasks = await _speak_utterance(controller, session)

        assert len(tasks) == 1
        assert transcriber.calls[0] == LOUD * 20 + QUIET * 6
        dialogue.respond.assert_awaited_once_with(session.order, "one coke please")
        assert synth.texts == ["Two cokes, got it."]
        assert _events(session.send) == ["media", "media", "media", "mark"]
        assert session.last_transcript == "one coke please"
        assert not session.pending_reply
        assert not session.speaking
        assert session.metrics.transcripts == 1
        assert session.metrics.replies == 1
        on_event.assert_any_call("utterance")
        on_event.assert_any_call("reply")
        terminator.hang_up.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transcription_failure_is_silent(self, registry, session, config, dialogue, terminator):
        controller = _controller(
            registry, config, dialogue, terminator,
            transcriber=FakeTranscriber(error=TranscriptionError("timeout")),
        )

        await _speak_utterance(controller, session)

        dialogue.respond.assert_not_awaited()
        assert session.send.await_count == 0
        assert not session.pending_reply
        assert session.metrics.failures == 1

    @pytest.mark.asyncio
    async def test_duplicate_transcript_dropped(self, registry, session, config, dialogue, terminator):
        controller = _controller(registry, config, dialogue, terminator)
        session.last_transcript = "one coke please"

        await _speak_utterance(controller, session)

        dialogue.respond.assert_not_awaited()
        assert not session.pending_reply

    @pytest.mark.asyncio
    async def test_short_transcript_dropped(self, registry, session, config, dialogue, terminator):
        controller = _controller(registry, config, dialogue, terminator, transcriber=FakeTranscriber("uh"))

        await _speak_utterance(controller, session)

        dialogue.respond.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dialogue_failure_apologizes(self, registry, session, config, dialogue, terminator):
        synth = FakeSynthesizer()
        dialogue.respond.side_effect = RuntimeError("bug")
        controller = _controller(registry, config, dialogue, terminator, synthesizer=synth)

        await _speak_utterance(controller, session)

        assert synth.texts == [APOLOGY_TEXT]

    @pytest.mark.asyncio
    async def test_one_pipeline_per_call(self, registry, session, config, dialogue, terminator):
        controller = _controller(registry, config, dialogue, terminator)
        session.pending_reply = True
        utterance = Utterance(frames=[LOUD] * 20, started_at=0.0, duration_ms=400)

        assert controller.on_utterance(session, utterance) is None
        assert session.metrics.dropped_utterances == 1
        assert session.tasks == set()

    @pytest.mark.asyncio
    async def test_finished_pipeline_does_not_release_newer_reply(
        self, registry, session, config, dialogue, terminator
    ):
        hang_up_started = asyncio.Event()
        release_hang_up = asyncio.Event()
        release_second = asyncio.Event()
        transcriber = FakeTranscriber()
        transcripts = iter(["I'm done, that's all", "actually wait"])

        async def transcribe(audio):
            transcriber.calls.append(audio)
            text = next(transcripts, "one more thing")
            if len(transcriber.calls) > 1:
                await release_second.wait()
            return text

        async def slow_hang_up(call_sid):
            hang_up_started.set()
            await release_hang_up.wait()
            return True

        async def send(message):
            msg = decode_outbound(message)
            if msg["event"] == "mark":
                asyncio.get_running_loop().call_soon(controller.on_mark, session, msg["mark"]["name"])

        transcriber.transcribe = transcribe
        terminator.hang_up.side_effect = slow_hang_up
        dialogue.respond.return_value = DialogueReply("Thanks, goodbye!", "finalize", end_call=True)
        session.send.side_effect = send
        controller = _controller(registry, config, dialogue, terminator, transcriber=transcriber)
        utterance = Utterance(frames=[LOUD] * 20, started_at=0.0, duration_ms=400)

        first = controller.on_utterance(session, utterance)
        await asyncio.wait_for(hang_up_started.wait(), 1.0)
        assert not session.pending_reply

        second = controller.on_utterance(session, utterance)
        assert second is not None
        await _wait_for(lambda: len(transcriber.calls) == 2)

        release_hang_up.set()
        await first
        assert session.pending_reply

        assert controller.on_utterance(session, utterance) is None
        assert len(transcriber.calls) == 2

        release_second.set()
        await second

    @pytest.mark.asyncio
    async def test_preflight_guards(self, registry, session, config, dialogue, terminator):
        controller = _controller(registry, config, dialogue, terminator)

        assert controller.preflight_ok(LOUD * 20)
        assert not controller.preflight_ok(LOUD * 5)  # 100ms < 300ms
        assert not controller.preflight_ok(QUIET * 20)
        assert not controller.preflight_ok(b"\x10" * 100 + b"\xff" * 3100)

        silent = Utterance(frames=[QUIET] * 20, started_at=0.0, duration_ms=400)
        assert controller.on_utterance(session, silent) is None
        assert not session.pending_reply

    @pytest.mark.asyncio
    async def test_late_result_for_removed_call_is_discarded(self, registry, session, config, dialogue, terminator):
        transcriber = FakeTranscriber()
        controller = _controller(registry, config, dialogue, terminator, transcriber=transcriber)

        async def transcribe_then_hang_up(audio):
            registry.remove(session.stream_sid)
            return "one coke please"

        transcriber.transcribe = transcribe_then_hang_up
        session.pending_reply = True

        await controller._run_pipeline(session, LOUD * 20)

        dialogue.respond.assert_not_awaited()
        assert session.send.await_count == 0

    @pytest.mark.asyncio
    async def test_removal_cancels_inflight_pipeline(self, registry, session, config, dialogue, terminator):
        gate = asyncio.Event()
        transcriber = FakeTranscriber()

        async def blocked(audio):
            await gate.wait()
            return "one coke please"

        transcriber.transcribe = blocked
        controller = _controller(registry, config, dialogue, terminator, transcriber=transcriber)

        utterance = Utterance(frames=[LOUD] * 20, started_at=0.0, duration_ms=400)
        task = controller.on_utterance(session, utterance)
        await asyncio.sleep(0)
        registry.remove("MZ1")

        with pytest.raises(asyncio.CancelledError):
            await task
        dialogue.respond.assert_not_awaited()


class TestSpeak:

    @pytest.mark.asyncio
    async def test_duplicate_reply_suppressed_then_released(self, registry, session, config, dialogue, terminator):
        synth = FakeSynthesizer()
        controller = _controller(registry, config, dialogue, terminator, synthesizer=synth)

        assert await controller.speak(session, "Anything else?") == PlaybackOutcome.COMPLETED
        assert await controller.speak(session, "Anything else?") is None
        assert synth.texts == ["Anything else?"]

        await asyncio.sleep(0.05)
        assert await controller.speak(session, "Anything else?") == PlaybackOutcome.COMPLETED

    @pytest.mark.asyncio
    async def test_end_call_hangs_up_after_mark(self, registry, session, config, dialogue, terminator):
        controller = _controller(registry, config, dialogue, terminator)

        async def send(message):
            msg = decode_outbound(message)
            if msg["event"] == "mark":
                loop = asyncio.get_running_loop()
                loop.call_later(0.01, controller.on_mark, session, msg["mark"]["name"])

        session.send.side_effect = send

        outcome = await controller.speak(session, "Thanks, bye!", end_call=True)

        assert outcome == PlaybackOutcome.COMPLETED
        assert session.awaiting_mark is None
        terminator.hang_up.assert_awaited_once_with("CA1")

    @pytest.mark.asyncio
    async def test_failed_playback_does_not_hang_up(self, registry, session, config, dialogue, terminator):
        controller = _controller(
            registry, config, dialogue, terminator,
            synthesizer=FakeSynthesizer(error=RuntimeError("tts down")),
        )

        outcome = await controller.speak(session, "Bye!", end_call=True)

        assert outcome == PlaybackOutcome.FAILED
        terminator.hang_up.assert_not_awaited()
        assert not session.speaking
        assert session.metrics.failures == 1

    @pytest.mark.asyncio
    async def test_interrupted_goodbye_does_not_hang_up(self, registry, session, config, dialogue, terminator):
        controller = _controller(
            registry, config, dialogue, terminator,
            synthesizer=FakeSynthesizer(endless=True),
        )
        speak_task = asyncio.create_task(controller.speak(session, "Your order is placed. Goodbye!", end_call=True))
        await _wait_for(lambda: session.send.await_count >= 1)

        await controller.handle_frame(session, LOUD, now=100.0)
        outcome = await speak_task

        assert outcome == PlaybackOutcome.CANCELLED
        terminator.hang_up.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_on_mark_ignores_other_names(self, registry, session, config, dialogue, terminator):
        controller = _controller(registry, config, dialogue, terminator)
        session.awaiting_mark = "reply-abc"

        controller.on_mark(session, "reply-other")
        assert session.awaiting_mark == "reply-abc"

        controller.on_mark(session, "reply-abc")
        assert session.awaiting_mark is None


class TestBargeIn:

    @pytest.mark.asyncio
    async def test_barge_in_cancels_reply_and_clears_once(self, registry, session, config, dialogue, terminator):
        on_event = MagicMock()
        controller = _controller(
            registry, config, dialogue, terminator,
            synthesizer=FakeSynthesizer(endless=True), on_event=on_event,
        )
        speak_task = asyncio.create_task(controller.speak(session, "Here are our burgers..."))
        await _wait_for(lambda: session.send.await_count >= 1)
        assert session.speaking

        await controller.handle_frame(session, LOUD, now=100.0)
        outcome = await speak_task
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert outcome == PlaybackOutcome.CANCELLED
        events = _events(session.send)
        assert events.count("clear") == 1
        assert events[-1] == "clear"
        assert "mark" not in events
        assert not session.speaking
        assert not session.pending_reply
        assert session.barge_in_cooldown_until == pytest.approx(100.25)
        assert session.metrics.barge_ins == 1
        on_event.assert_any_call("barge_in")
        # The interrupting frame starts the next utterance.
        assert session.vad.active_streak == 1
        assert session.vad.pending_frames == [LOUD]

    @pytest.mark.asyncio
    async def test_barge_in_without_playback_sends_clear(self, registry, session, config, dialogue, terminator):
        controller = _controller(registry, config, dialogue, terminator)
        session.start_speaking()

        await controller.handle_frame(session, LOUD, now=5.0)

        assert _events(session.send) == ["clear"]
        assert not session.speaking

    @pytest.mark.asyncio
    async def test_quiet_frames_while_speaking_are_dropped(self, registry, session, config, dialogue, terminator):
        controller = _controller(registry, config, dialogue, terminator)
        session.start_speaking()

        for _ in range(10):
            await controller.handle_frame(session, QUIET, now=1.0)

        assert session.speaking
        assert session.vad.quiet_streak == 0
        assert session.send.await_count == 0
        assert session.metrics.frames_in == 10

    @pytest.mark.asyncio
    async def test_cooldown_suppresses_repeat_barge_in(self, registry, session, config, dialogue, terminator):
        controller = _controller(registry, config, dialogue, terminator)
        session.start_speaking()
        await controller.handle_frame(session, LOUD, now=10.0)

        session.start_speaking()
        await controller.handle_frame(session, LOUD, now=10.1)

        assert session.metrics.barge_ins == 1
        assert session.speaking
        # Dropped: segmenter state unchanged from the first (barge-in) frame.
        assert session.vad.active_streak == 1

        await controller.handle_frame(session, LOUD, now=10.3)
        assert session.metrics.barge_ins == 2

    @pytest.mark.asyncio
    async def test_barge_in_disabled(self, registry, session, config, dialogue, terminator):
        config = dataclasses.replace(config, barge_in_enabled=False)
        controller = _controller(registry, config, dialogue, terminator)
        session.start_speaking()

        await controller.handle_frame(session, LOUD, now=1.0)

        assert session.speaking
        assert session.metrics.barge_ins == 0
        assert session.send.await_count == 0

    @pytest.mark.asyncio
    async def test_frames_for_removed_call_ignored(self, registry, session, config, dialogue, terminator):
        controller = _controller(registry, config, dialogue, terminator)
        registry.remove("MZ1")

        await controller.handle_frame(session, LOUD, now=1.0)

        assert session.metrics.frames_in == 0


class TestCallTerminator:

    @pytest.mark.asyncio
    async def test_hang_up(self):
        client = MagicMock()
        terminator = CallTerminator(get_config(), client=client)

        assert await terminator.hang_up("CA1")
        client.calls.assert_called_once_with("CA1")
        client.calls.return_value.update.assert_called_once_with(status="completed")

    @pytest.mark.asyncio
    async def test_hang_up_failure_is_logged(self):
        client = MagicMock()
        client.calls.return_value.update.side_effect = RuntimeError("404")
        terminator = CallTerminator(get_config(), client=client)

        assert not await terminator.hang_up("CA1")

    @pytest.mark.asyncio
    async def test_disabled_without_credentials(self):
        config = dataclasses.replace(get_config(), twilio_account_sid="", twilio_auth_token="")
        terminator = CallTerminator(config)

        assert not terminator.enabled
        assert not await terminator.hang_up("CA1")


def test_redact_transcript_for_logs():
    text = "mail me at jane@example.com or call 415-555-1234"
    assert redact_transcript_for_logs(text) == "mail me at [EMAIL] or call [PHONE-***1234]"
    assert redact_transcript_for_logs("") == ""
