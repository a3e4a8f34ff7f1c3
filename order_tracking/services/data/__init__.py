"""
Data Service Factory

Returns the Mock or Supabase data service based on ENV_MODE.
"""

import logging
from functools import lru_cache

from order_tracking.core.config import get_settings
from order_tracking.services.data.base import (
    BaseDataService,
    ChannelStatus,
    Subscription,
)
from order_tracking.services.data.mock import MockDataService
from order_tracking.services.data.supabase import SupabaseDataService

logger = logging.getLogger(__name__)


@lru_cache()
def get_data_service() -> BaseDataService:
    """Get the configured data service."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Data Service: Using MockDataService (development mode)")
        return MockDataService(
            failure_rate=settings.mock_failure_rate,
            max_latency=settings.mock_latency_seconds,
        )
    else:
        logger.info(f"Data Service: Using SupabaseDataService ({settings.env_mode.value} mode)")
        return SupabaseDataService(settings)


def reset_data_service() -> None:
    """Clear the cached service instance."""
    get_data_service.cache_clear()


__all__ = [
    "get_data_service",
    "reset_data_service",
    "BaseDataService",
    "ChannelStatus",
    "Subscription",
    "MockDataService",
    "SupabaseDataService",
]
