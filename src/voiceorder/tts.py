"""
Reply synthesis and transcoding to the Twilio wire format.

Synthesis streams raw PCM16 (mono, little-endian) at `TTS_SAMPLE_RATE`.
A transcoder turns that stream into 8kHz mu-law:

- `audioop`: in-process, resampler state carried across chunks (default)
- `ffmpeg`: external subprocess, killed on cancellation
"""

from __future__ import annotations

import asyncio
import audioop
import contextlib
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

import structlog
from openai import AsyncOpenAI

from src.voiceorder.audio import TWILIO_SAMPLE_RATE
from src.voiceorder.config import get_config

logger = structlog.get_logger(__name__)

_READ_SIZE = 4096


class SynthesisError(Exception):
    """Raised when the synthesis service or transcoder fails."""
    pass


class Synthesizer(ABC):
    @abstractmethod
    def stream_pcm(self, text: str) -> AsyncIterator[bytes]:
        """Stream PCM16 mono audio for `text` at `sample_rate`."""
        raise NotImplementedError

    @property
    @abstractmethod
    def sample_rate(self) -> int:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class OpenAISynthesizer(Synthesizer):
    """
    OpenAI Audio Speech API with a streamed `pcm` response (24kHz PCM16).
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or get_config()
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.config.openai_api_key)
        return self._client

    @property
    def sample_rate(self) -> int:
        return int(self.config.tts_sample_rate)

    async def stream_pcm(self, text: str) -> AsyncIterator[bytes]:
        if not text or not text.strip():
            return
        try:
            async with self.client.audio.speech.with_streaming_response.create(
                model=self.config.openai_tts_model,
                voice=self.config.tts_voice,
                input=text,
                response_format="pcm",
                timeout=self.config.tts_timeout_seconds,
            ) as response:
                async for chunk in response.iter_bytes(_READ_SIZE):
                    if chunk:
                        yield chunk
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise SynthesisError(f"{type(e).__name__}: {e}") from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


class Transcoder(ABC):
    """PCM16 at `source_rate` -> 8kHz mu-law, streamed."""

    def __init__(self, source_rate: int):
        self.source_rate = int(source_rate)
        self.killed = False

    @abstractmethod
    def transcode(self, pcm_chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        raise NotImplementedError

    def kill(self) -> None:
        """Stop producing output. Idempotent."""
        self.killed = True


class AudioopTranscoder(Transcoder):
    """In-process transcoder built on `audioop.ratecv` + `audioop.lin2ulaw`."""

    def __init__(self, source_rate: int):
        super().__init__(source_rate)
        self._state = None
        self._carry = b""

    def convert(self, pcm: bytes) -> bytes:
        """Convert one chunk, keeping resampler state and any odd trailing byte."""
        data = self._carry + pcm
        usable = len(data) - (len(data) % 2)
        self._carry = data[usable:]
        data = data[:usable]
        if not data:
            return b""
        if self.source_rate != TWILIO_SAMPLE_RATE:
            data, self._state = audioop.ratecv(data, 2, 1, self.source_rate, TWILIO_SAMPLE_RATE, self._state)
        return audioop.lin2ulaw(data, 2)

    async def transcode(self, pcm_chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        async for pcm in pcm_chunks:
            if self.killed:
                return
            ulaw = self.convert(pcm)
            if ulaw:
                yield ulaw


class FfmpegTranscoder(Transcoder):
    """Streams PCM through an `ffmpeg` subprocess."""

    def __init__(self, source_rate: int, ffmpeg_path: str = "ffmpeg"):
        super().__init__(source_rate)
        self.ffmpeg_path = ffmpeg_path
        self._proc: Optional[asyncio.subprocess.Process] = None

    def command(self) -> list[str]:
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "error",
            "-f", "s16le",
            "-ar", str(self.source_rate),
            "-ac", "1",
            "-i", "pipe:0",
            "-f", "mulaw",
            "-ar", str(TWILIO_SAMPLE_RATE),
            "-ac", "1",
            "pipe:1",
        ]

    async def _feed(self, proc: asyncio.subprocess.Process, pcm_chunks: AsyncIterator[bytes]) -> None:
        assert proc.stdin is not None
        try:
            async for pcm in pcm_chunks:
                if self.killed:
                    break
                proc.stdin.write(pcm)
                await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug("ffmpeg stdin closed early", error=str(e))
        finally:
            with contextlib.suppress(Exception):
                proc.stdin.close()

    async def transcode(self, pcm_chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise SynthesisError(f"Could not start ffmpeg: {e}") from e

        self._proc = proc
        feeder = asyncio.create_task(self._feed(proc, pcm_chunks))
        try:
            assert proc.stdout is not None
            while not self.killed:
                chunk = await proc.stdout.read(_READ_SIZE)
                if not chunk:
                    break
                yield chunk
            if not self.killed:
                # Surfaces a synthesis failure from the input side.
                await feeder
        finally:
            if not feeder.done():
                feeder.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await feeder
            self.kill()
            with contextlib.suppress(Exception):
                await proc.wait()

    def kill(self) -> None:
        super().kill()
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        except Exception as e:
            logger.warning("Failed to kill ffmpeg", error=str(e))


def make_transcoder(config: Optional[Any] = None, source_rate: Optional[int] = None) -> Transcoder:
    config = config or get_config()
    rate = int(source_rate or config.tts_sample_rate)
    kind = (config.tts_transcoder or "audioop").strip().lower()
    if kind == "ffmpeg":
        return FfmpegTranscoder(rate, ffmpeg_path=config.ffmpeg_path)
    if kind == "audioop":
        return AudioopTranscoder(rate)
    raise ValueError(f"Unsupported TTS_TRANSCODER: {config.tts_transcoder}")
