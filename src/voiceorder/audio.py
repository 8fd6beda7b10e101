"""
Audio conversion utilities for the Twilio media stream.

Twilio speaks a single narrow-band format: mu-law, 8kHz, mono, 20ms frames
(160 bytes). Everything else is converted at the edges:

- inbound utterance: mu-law 8kHz -> PCM16 16kHz WAV for transcription
- outbound reply: PCM16 at the synthesis rate -> mu-law 8kHz frames
"""

import audioop
import io
import wave

TWILIO_SAMPLE_RATE = 8000
STT_SAMPLE_RATE = 16000  # Whisper-style services prefer 16kHz PCM16
FRAME_DURATION_MS = 20
ULAW_BYTES_PER_SAMPLE = 1

# 0xFF and 0x7F are the two mu-law codepoints for zero amplitude.
ULAW_SILENCE_BYTE = 0xFF
ULAW_QUIET_BYTES = frozenset((0xFF, 0x7F))


def frame_size_bytes(
    sample_rate: int = TWILIO_SAMPLE_RATE,
    frame_duration_ms: int = FRAME_DURATION_MS,
    bytes_per_sample: int = ULAW_BYTES_PER_SAMPLE,
) -> int:
    """
    Bytes in one frame: sample_rate * frame_duration_seconds * bytes_per_sample.

    160 bytes for 8kHz, 20ms, 1 byte/sample.
    """
    return int(sample_rate * frame_duration_ms / 1000) * bytes_per_sample


TWILIO_FRAME_SIZE = frame_size_bytes()


def ulaw_to_linear16(ulaw_bytes: bytes) -> bytes:
    """
    Convert mu-law audio to linear PCM 16-bit.

    Args:
        ulaw_bytes: Raw mu-law encoded bytes

    Returns:
        Linear PCM 16-bit bytes at the same sample rate
    """
    if not ulaw_bytes:
        return b""

    return audioop.ulaw2lin(ulaw_bytes, 2)


def resample_pcm16(pcm_bytes: bytes, source_rate: int, target_rate: int) -> bytes:
    """
    Resample mono 16-bit PCM from `source_rate` to `target_rate` using `audioop.ratecv`.
    """
    if not pcm_bytes or source_rate == target_rate:
        return pcm_bytes
    converted, _ = audioop.ratecv(pcm_bytes, 2, 1, int(source_rate), int(target_rate), None)
    return converted


def resample_8k_to_16k(pcm_8k: bytes) -> bytes:
    """
    Resample linear PCM from 8kHz to 16kHz.

    Args:
        pcm_8k: Linear PCM 16-bit bytes at 8kHz

    Returns:
        Linear PCM 16-bit bytes at 16kHz
    """
    return resample_pcm16(pcm_8k, TWILIO_SAMPLE_RATE, STT_SAMPLE_RATE)


def write_wav_mono_pcm16(pcm_bytes: bytes, sample_rate: int) -> bytes:
    """Create a mono 16-bit PCM WAV byte string from PCM bytes."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm_bytes or b"")
    return buf.getvalue()


def ulaw_8k_to_wav_16k(ulaw_bytes: bytes) -> bytes:
    """
    Convert Twilio 8kHz mu-law bytes to a 16kHz mono PCM16 WAV byte string.

    This is the encoding the transcription service is given.
    """
    pcm_8k = ulaw_to_linear16(ulaw_bytes)
    pcm_16k = resample_8k_to_16k(pcm_8k)
    return write_wav_mono_pcm16(pcm_16k, STT_SAMPLE_RATE)


def pad_frame(chunk: bytes, frame_size: int = TWILIO_FRAME_SIZE) -> bytes:
    """Pad a short tail chunk to a full frame with mu-law silence."""
    if len(chunk) >= frame_size:
        return chunk
    return chunk + bytes([ULAW_SILENCE_BYTE]) * (frame_size - len(chunk))
