"""
Voice activity detection over raw Twilio mu-law frames.

Two layers:

- Frame classification: a pure amplitude heuristic. A mu-law frame's activity
  ratio is the fraction of samples that are not one of the two silence
  codepoints (0xFF / 0x7F).
- Utterance segmentation: a per-call hysteresis state machine
  (IDLE <-> IN_UTTERANCE) that turns classified frames into complete
  utterances.

    IDLE --(start_frames consecutive active)--> IN_UTTERANCE
    IN_UTTERANCE --(end_frames consecutive quiet OR max duration)--> IDLE

Everything here is synchronous and allocation-light; it runs inline on the
event loop for every 20ms frame.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from src.voiceorder.audio import FRAME_DURATION_MS, ULAW_QUIET_BYTES

DEFAULT_ACTIVITY_THRESHOLD = 0.10
DEFAULT_SILENCE_GUARD_RATIO = 0.90

# bytes.translate table: quiet codepoints -> deleted, everything else kept.
_QUIET_DELETE = bytes(ULAW_QUIET_BYTES)


def is_mulaw_quiet_byte(value: int) -> bool:
    return value in ULAW_QUIET_BYTES


def activity_ratio(frame: bytes) -> float:
    """
    Fraction of samples in `frame` that are not a mu-law silence codepoint.

    Always in [0, 1]; an empty frame has ratio 0.
    """
    if not frame:
        return 0.0
    active = len(frame.translate(None, _QUIET_DELETE))
    return active / len(frame)


def is_active_frame(frame: bytes, threshold: float = DEFAULT_ACTIVITY_THRESHOLD) -> bool:
    return activity_ratio(frame) >= threshold


def is_likely_silence(buf: bytes, quiet_ratio: float = DEFAULT_SILENCE_GUARD_RATIO) -> bool:
    """
    Whole-buffer guard: True when at least `quiet_ratio` of samples are silence
    codepoints. Used before paying for transcription.
    """
    if not buf:
        return True
    return (1.0 - activity_ratio(buf)) >= quiet_ratio


class SegmenterPhase(str, Enum):
    IDLE = "idle"
    IN_UTTERANCE = "in_utterance"


@dataclass(frozen=True)
class VADConfig:
    """Segmentation thresholds (defaults tuned for 20ms telephony frames)."""

    activity_threshold: float = DEFAULT_ACTIVITY_THRESHOLD
    start_frames: int = 3  # ~60ms of activity opens an utterance
    end_frames: int = 6  # ~120ms of quiet closes it
    min_utterance_ms: int = 300  # shorter segments are dropped as noise
    max_utterance_ms: int = 6000  # hard cap
    frame_duration_ms: int = FRAME_DURATION_MS


@dataclass
class Utterance:
    """A finished span of speech, in arrival order."""

    frames: List[bytes]
    started_at: float
    duration_ms: int
    ended_by_cap: bool = False

    @property
    def audio(self) -> bytes:
        return b"".join(self.frames)

    @property
    def frame_count(self) -> int:
        return len(self.frames)


@dataclass
class VADState:
    """Per-call segmentation state. Owned by one call's `CallSession`."""

    in_utterance: bool = False
    active_streak: int = 0
    quiet_streak: int = 0
    utterance_started_at: float = 0.0
    pending_frames: List[bytes] = field(default_factory=list)

    @property
    def phase(self) -> SegmenterPhase:
        return SegmenterPhase.IN_UTTERANCE if self.in_utterance else SegmenterPhase.IDLE

    def reset(self) -> None:
        self.in_utterance = False
        self.active_streak = 0
        self.quiet_streak = 0
        self.utterance_started_at = 0.0
        self.pending_frames.clear()


class UtteranceSegmenter:
    """
    Feeds classified frames through a `VADState` and emits `Utterance`s.

    The segmenter itself is stateless apart from its config; the mutable state
    lives on the call session so that each call segments independently.
    """

    def __init__(self, config: Optional[VADConfig] = None):
        self.config = config or VADConfig()

    def duration_ms(self, frame_count: int) -> int:
        return frame_count * self.config.frame_duration_ms

    def push(
        self,
        state: VADState,
        frame: bytes,
        *,
        is_active: bool,
        now: Optional[float] = None,
    ) -> Optional[Utterance]:
        """
        Process one frame. Returns a finished utterance when a boundary is
        reached and the utterance is long enough, otherwise None.
        """
        cfg = self.config

        if is_active:
            state.active_streak += 1
            state.quiet_streak = 0
        else:
            state.quiet_streak += 1
            state.active_streak = 0

        if not state.in_utterance:
            if not is_active:
                # Broken streak: forget the candidate frames.
                state.pending_frames.clear()
                return None

            # Keep the current active streak so the utterance starts at its
            # first active frame, not the confirming one.
            state.pending_frames.append(frame)
            if state.active_streak < cfg.start_frames:
                return None

            if now is None:
                now = time.time()
            state.in_utterance = True
            state.utterance_started_at = now - (cfg.start_frames - 1) * cfg.frame_duration_ms / 1000.0
            # A cap shorter than the start streak still has to be honored.
            if self.duration_ms(len(state.pending_frames)) < cfg.max_utterance_ms:
                return None
            return self._finish(state, ended_by_cap=True)

        state.pending_frames.append(frame)

        end_by_quiet = state.quiet_streak >= cfg.end_frames
        end_by_cap = self.duration_ms(len(state.pending_frames)) >= cfg.max_utterance_ms
        if not (end_by_quiet or end_by_cap):
            return None

        return self._finish(state, ended_by_cap=end_by_cap and not end_by_quiet)

    def _finish(self, state: VADState, *, ended_by_cap: bool) -> Optional[Utterance]:
        frames = state.pending_frames
        started_at = state.utterance_started_at
        state.pending_frames = []
        state.in_utterance = False
        state.active_streak = 0
        state.quiet_streak = 0
        state.utterance_started_at = 0.0

        duration = self.duration_ms(len(frames))
        if not frames or duration < self.config.min_utterance_ms:
            return None

        return Utterance(
            frames=frames,
            started_at=started_at,
            duration_ms=duration,
            ended_by_cap=ended_by_cap,
        )
