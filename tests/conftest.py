"""
Pytest configuration and fixtures.
"""

import base64
import json
import os
from unittest.mock import patch

import numpy as np
import pytest


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "OPENAI_API_KEY": "test_openai_key",
        "COMPANY_NAME": "Demo Bites",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.voiceorder.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def sample_pcm_audio():
    """Generate sample PCM audio (silence)."""
    return b"\x00\x00" * 160  # 20ms of silence at 8kHz


@pytest.fixture
def silence_frame():
    return b"\xff" * 160


@pytest.fixture
def speech_frame():
    """20ms of a loud 440Hz tone, mu-law encoded."""
    import audioop

    t = np.arange(160) / 8000.0
    samples = (np.sin(2 * np.pi * 440 * t) * 12000).astype(np.int16)
    return audioop.lin2ulaw(samples.tobytes(), 2)


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
        }
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
    })
