"""
Alert Delivery

Returns the mock or sounddevice audio backend based on ENV_MODE, and
exports the alert state machine and engine.
"""

import logging
from functools import lru_cache

from order_tracking.core.config import get_settings
from order_tracking.services.alerts.audio import (
    BaseAudioBackend,
    MockAudioBackend,
    SoundDeviceAudioBackend,
    generate_bell_tone,
    load_clip,
)
from order_tracking.services.alerts.engine import AlertEngine, PlaybackMode
from order_tracking.services.alerts.state import AlertEvent, AlertPhase, AlertState, transition

logger = logging.getLogger(__name__)


@lru_cache()
def get_audio_backend() -> BaseAudioBackend:
    """Get the configured audio backend."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Audio: Using MockAudioBackend (development mode)")
        return MockAudioBackend()
    else:
        logger.info(f"Audio: Using SoundDeviceAudioBackend ({settings.env_mode.value} mode)")
        return SoundDeviceAudioBackend(volume=settings.alert_volume)


def reset_audio_backend() -> None:
    """Clear the cached backend instance."""
    get_audio_backend.cache_clear()


__all__ = [
    "get_audio_backend",
    "reset_audio_backend",
    "AlertEngine",
    "AlertEvent",
    "AlertPhase",
    "AlertState",
    "BaseAudioBackend",
    "MockAudioBackend",
    "PlaybackMode",
    "SoundDeviceAudioBackend",
    "generate_bell_tone",
    "load_clip",
    "transition",
]
