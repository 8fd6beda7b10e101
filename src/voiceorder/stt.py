"""
Utterance transcription.

Twilio delivers 8kHz mu-law; the transcription service wants 16kHz PCM16 WAV.
Each utterance is converted, written to a private temp directory, uploaded,
and the directory is removed on every exit path.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

import structlog
from openai import AsyncOpenAI

from src.voiceorder.audio import ulaw_8k_to_wav_16k
from src.voiceorder.config import get_config

logger = structlog.get_logger(__name__)


class TranscriptionError(Exception):
    """Conversion or service failure for one utterance. Never fatal to the call."""
    pass


class TranscriptionAdapter(ABC):
    @abstractmethod
    async def transcribe(self, ulaw_audio: bytes) -> str:
        """
        Transcribe one utterance of 8kHz mu-law audio.

        Returns trimmed text (possibly empty).

        Raises:
            TranscriptionError: On conversion, timeout or service failure
        """
        raise NotImplementedError

    async def close(self) -> None:
        return None


def _write_wav(directory: str, ulaw_audio: bytes) -> str:
    path = os.path.join(directory, "utterance.wav")
    with open(path, "wb") as f:
        f.write(ulaw_8k_to_wav_16k(ulaw_audio))
    return path


def _remove_dir(directory: Optional[str]) -> None:
    if not directory:
        return
    try:
        shutil.rmtree(directory)
    except OSError as e:
        logger.warning("Failed to remove transcription temp dir", path=directory, error=str(e))


class WhisperTranscriber(TranscriptionAdapter):
    """OpenAI audio transcription (whisper-1 by default)."""

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or get_config()
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.config.openai_api_key)
        return self._client

    async def _upload(self, path: str) -> str:
        with open(path, "rb") as f:
            response = await self.client.audio.transcriptions.create(
                model=self.config.openai_stt_model,
                file=f,
                language="en",
            )
        return getattr(response, "text", "") or ""

    async def transcribe(self, ulaw_audio: bytes) -> str:
        if not ulaw_audio:
            raise TranscriptionError("Empty utterance")

        start = time.perf_counter()
        temp_dir: Optional[str] = None
        try:
            temp_dir = tempfile.mkdtemp(prefix="voiceorder-stt-")
            path = await asyncio.to_thread(_write_wav, temp_dir, ulaw_audio)
            text = await asyncio.wait_for(self._upload(path), timeout=self.config.stt_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise TranscriptionError(f"Transcription timed out after {self.config.stt_timeout_seconds}s") from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise TranscriptionError(f"{type(e).__name__}: {e}") from e
        finally:
            _remove_dir(temp_dir)

        text = text.strip()
        logger.debug(
            "Transcription complete",
            chars=len(text),
            audio_bytes=len(ulaw_audio),
            latency_ms=round((time.perf_counter() - start) * 1000, 1),
        )
        return text

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
