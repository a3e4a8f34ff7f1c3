"""
Background Delivery Agent

Builds the process-wide background agent from settings.
"""

import logging
from typing import Optional

import httpx

from order_tracking.core.config import Settings, get_settings
from order_tracking.core.scheduling import BaseScheduler
from order_tracking.services.alerts.audio import BaseAudioBackend, load_clip
from order_tracking.services.background.agent import (
    AgentLifecycle,
    AlertCenter,
    BackgroundAgent,
    ClientPort,
    ResourceCache,
)
from order_tracking.services.background.protocol import (
    PlatformAlertPayload,
    PushMessage,
    encode_message,
    parse_worker_message,
)

logger = logging.getLogger(__name__)


def build_background_agent(
    audio: BaseAudioBackend,
    scheduler: BaseScheduler,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BackgroundAgent:
    """Create an (unregistered) background agent configured from settings."""
    settings = settings or get_settings()
    return BackgroundAgent(
        audio=audio,
        scheduler=scheduler,
        cache=ResourceCache(
            settings.app_base_url,
            transport=transport,
            timeout=settings.request_timeout_seconds,
        ),
        alerts=AlertCenter(),
        clip=load_clip(settings.alert_clip_path, settings.sample_rate),
        cache_name=settings.agent_cache_name,
        shell_urls=settings.agent_shell_urls_list,
        sync_interval=settings.agent_sync_interval_seconds,
        icon=settings.alert_icon,
    )


__all__ = [
    "build_background_agent",
    "AgentLifecycle",
    "AlertCenter",
    "BackgroundAgent",
    "ClientPort",
    "PlatformAlertPayload",
    "PushMessage",
    "ResourceCache",
    "encode_message",
    "parse_worker_message",
]
