"""
Data Service Abstract Base Class

Defines the query, mutation and change feed surface of the hosted data
service. Supports both Mock (development) and Supabase (staging/production)
implementations.

Failures are raised as ``PipelineException`` subclasses
(``ConnectivityError`` / ``PermissionDeniedError``), never as raw
transport exceptions.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from order_tracking.core.errors import PipelineException
from order_tracking.schemas import Notification, Order
from order_tracking.services.reconciliation import OwnerFilter


class ChannelStatus(str, Enum):
    """Status reported by the change feed channel."""
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


# Raw change event: {"table": ..., "eventType": "INSERT"|"UPDATE", "new": {...row...}}
EventCallback = Callable[[dict[str, Any]], None]
StatusCallback = Callable[[ChannelStatus, Optional[PipelineException]], None]


class Subscription(ABC):
    """An open change feed channel."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. No callbacks fire afterwards."""
        pass


class BaseDataService(ABC):
    """Abstract base class for the hosted data service."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @abstractmethod
    async def fetch_unread_notifications(self, limit: int = 10) -> list[Notification]:
        """Unread notifications, newest first, at most ``limit``."""
        pass

    @abstractmethod
    async def fetch_orders(self, owner: OwnerFilter) -> list[Order]:
        """Orders owned by ``owner`` joined with their line items, newest first."""
        pass

    @abstractmethod
    async def fetch_recent_orders(self, since: datetime) -> list[Order]:
        """All orders created at or after ``since``, newest first (no items)."""
        pass

    @abstractmethod
    async def fetch_notifications_for_order(self, order_id: str) -> list[Notification]:
        """Every notification row of one order."""
        pass

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    @abstractmethod
    async def mark_all_notifications_read(self) -> int:
        """Set ``is_read=true`` on every unread row. Returns the rows updated."""
        pass

    @abstractmethod
    async def insert_notification(
        self,
        title: str,
        message: str,
        order_id: Optional[str] = None,
        notification_type: str = "new_order",
        metadata: Optional[dict[str, Any]] = None,
    ) -> Notification:
        """Insert an unread notification row and return it."""
        pass

    # -------------------------------------------------------------------------
    # Change feed
    # -------------------------------------------------------------------------

    @abstractmethod
    async def subscribe(self, on_event: EventCallback, on_status: StatusCallback) -> Subscription:
        """
        Open a channel for INSERT/UPDATE events on orders and notifications.

        ``on_status`` may fire before this coroutine returns. Raises a
        ``PipelineException`` if the channel cannot be opened at all.
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the data service is reachable."""
        pass

    async def close(self) -> None:
        """Release client resources."""
        return None
