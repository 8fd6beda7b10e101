"""
Voice ordering agent package.

Imports stay lazy so pure modules such as `src.voiceorder.vad` and
`src.voiceorder.menu` load without the service clients.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.voiceorder.config import Config

__all__ = ["Config", "get_config"]


def __getattr__(name: str) -> Any:
    if name in __all__:
        from src.voiceorder.config import Config, get_config

        return {"Config": Config, "get_config": get_config}[name]
    raise AttributeError(name)
