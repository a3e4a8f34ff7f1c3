"""
Mock Data Service

In-memory stand-in for the hosted data service, used in development mode
and by the test suite. Rows are stored with the storefront's column names,
so they pass through the same schema mapping as real query results.

Besides the query/mutation surface it offers the "outside world" side of
the system: the checkout flow creating orders (with the server-side trigger
that inserts a notification row) and staff changing order status. Every
such write is pushed to open channels, like the real change feed.
"""

import asyncio
import logging
import random
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from order_tracking.core.errors import ConnectivityError, PermissionDeniedError
from order_tracking.schemas import Notification, Order
from order_tracking.services.data.base import (
    BaseDataService,
    ChannelStatus,
    EventCallback,
    StatusCallback,
    Subscription,
)
from order_tracking.services.reconciliation import OwnerFilter

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _MockChannel(Subscription):

    def __init__(self, service: "MockDataService", on_event: EventCallback, on_status: StatusCallback):
        self._service = service
        self.on_event = on_event
        self.on_status = on_status
        self.closed = False

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._service._channels.discard(self)


class MockDataService(BaseDataService):
    """Mock data service for development."""

    def __init__(self, failure_rate: float = 0.0, max_latency: float = 0.0):
        self.failure_rate = failure_rate
        self.max_latency = max_latency

        self.orders: dict[str, dict[str, Any]] = {}
        self.order_items: dict[str, list[dict[str, Any]]] = {}
        self.notifications: dict[str, dict[str, Any]] = {}
        self._channels: set[_MockChannel] = set()
        self._order_seq = 1000

        # Failure switches
        self.offline = False
        self.deny_reads = False
        self.deny_writes = False
        self.refuse_subscribe = False

        logger.info(
            f"MockDataService initialized (failure_rate={failure_rate:.0%}, "
            f"max_latency={max_latency:.2f}s)"
        )

    @property
    def provider_name(self) -> str:
        return "mock"

    @property
    def open_channels(self) -> int:
        return len(self._channels)

    async def _simulate_latency(self) -> None:
        """Simulate network latency."""
        await asyncio.sleep(random.uniform(0, self.max_latency) if self.max_latency else 0)

    def _check_read(self) -> None:
        if self.offline or random.random() < self.failure_rate:
            raise ConnectivityError("Data service unreachable (simulated)")
        if self.deny_reads:
            raise PermissionDeniedError("new row violates row-level security policy (simulated)")

    def _check_write(self) -> None:
        if self.offline or random.random() < self.failure_rate:
            raise ConnectivityError("Data service unreachable (simulated)")
        if self.deny_writes:
            raise PermissionDeniedError("permission denied for table order_notifications (simulated)")

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def fetch_unread_notifications(self, limit: int = 10) -> list[Notification]:
        await self._simulate_latency()
        self._check_read()
        rows = [r for r in self.notifications.values() if not r["is_read"]]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [Notification.model_validate(r) for r in rows[:limit]]

    async def fetch_orders(self, owner: OwnerFilter) -> list[Order]:
        await self._simulate_latency()
        self._check_read()
        rows = []
        for row in self.orders.values():
            if owner.user_id is not None:
                if row.get("user_id") != owner.user_id:
                    continue
            elif (row.get("metadata") or {}).get("clientId") != owner.client_id:
                continue
            rows.append({**row, "order_items": list(self.order_items.get(row["id"], []))})
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [Order.model_validate(r) for r in rows]

    async def fetch_recent_orders(self, since: datetime) -> list[Order]:
        await self._simulate_latency()
        self._check_read()
        rows = [r for r in self.orders.values() if r["created_at"] >= since]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [Order.model_validate(r) for r in rows]

    async def fetch_notifications_for_order(self, order_id: str) -> list[Notification]:
        await self._simulate_latency()
        self._check_read()
        return [
            Notification.model_validate(r)
            for r in self.notifications.values()
            if r.get("order_id") == order_id
        ]

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def mark_all_notifications_read(self) -> int:
        await self._simulate_latency()
        self._check_write()
        updated = 0
        for row in self.notifications.values():
            if not row["is_read"]:
                row["is_read"] = True
                updated += 1
                self._emit("order_notifications", "UPDATE", row)
        logger.info(f"Mock: marked {updated} notification(s) read")
        return updated

    async def insert_notification(
        self,
        title: str,
        message: str,
        order_id: Optional[str] = None,
        notification_type: str = "new_order",
        metadata: Optional[dict[str, Any]] = None,
    ) -> Notification:
        await self._simulate_latency()
        self._check_write()
        return Notification.model_validate(
            self._insert_notification_row(title, message, order_id, notification_type, metadata)
        )

    def _insert_notification_row(
        self,
        title: str,
        message: str,
        order_id: Optional[str],
        notification_type: str,
        metadata: Optional[dict[str, Any]],
    ) -> dict[str, Any]:
        row = {
            "id": str(uuid.uuid4()),
            "order_id": order_id,
            "notification_type": notification_type,
            "title": title,
            "message": message,
            "is_read": False,
            "is_acknowledged": False,
            "created_at": _now(),
            "metadata": metadata or {},
        }
        self.notifications[row["id"]] = row
        self._emit("order_notifications", "INSERT", row)
        return row

    # =========================================================================
    # OUTSIDE WORLD (checkout flow, staff console)
    # =========================================================================

    async def create_order(
        self,
        customer_name: str = "Walk-in Customer",
        total_amount: float = 25.0,
        user_id: Optional[str] = None,
        client_id: Optional[str] = None,
        items: Optional[list[dict[str, Any]]] = None,
        with_notification: bool = True,
    ) -> dict[str, Any]:
        """
        Simulate the checkout flow inserting an order.

        Like the server-side trigger, also inserts a ``new_order``
        notification unless ``with_notification`` is False.
        """
        await self._simulate_latency()
        self._order_seq += 1
        now = _now()
        row = {
            "id": str(uuid.uuid4()),
            "order_number": f"ORD-{self._order_seq}",
            "customer_name": customer_name,
            "customer_email": None,
            "customer_phone": None,
            "customer_address": None,
            "total_amount": total_amount,
            "status": "pending",
            "payment_status": "pending",
            "user_id": user_id,
            "metadata": {"clientId": client_id} if client_id else {},
            "admin_read_at": None,
            "admin_done_at": None,
            "created_at": now,
            "updated_at": now,
        }
        self.orders[row["id"]] = row
        self.order_items[row["id"]] = [
            {
                "id": str(uuid.uuid4()),
                "product_name": item.get("product_name", "Item"),
                "quantity": item.get("quantity", 1),
                "product_price": item.get("product_price", 0.0),
                "subtotal": item.get("product_price", 0.0) * item.get("quantity", 1),
            }
            for item in (items or [])
        ]
        self._emit("orders", "INSERT", row)

        if with_notification:
            self._insert_notification_row(
                title="New Order Received!",
                message=f"New order {row['order_number']} from {customer_name}",
                order_id=row["id"],
                notification_type="new_order",
                metadata={
                    "customer_name": customer_name,
                    "order_number": row["order_number"],
                    "amount": total_amount,
                },
            )
        return row

    async def update_order(self, order_id: str, **changes: Any) -> dict[str, Any]:
        """Simulate a staff-side status transition; pushes a full row UPDATE."""
        await self._simulate_latency()
        row = self.orders[order_id]
        row.update(changes)
        row["updated_at"] = _now()
        self._emit("orders", "UPDATE", row)
        return row

    # =========================================================================
    # CHANGE FEED
    # =========================================================================

    async def subscribe(self, on_event: EventCallback, on_status: StatusCallback) -> Subscription:
        await self._simulate_latency()
        if self.offline or self.refuse_subscribe:
            raise ConnectivityError("Realtime channel could not be opened (simulated)")
        if self.deny_reads:
            raise PermissionDeniedError("permission denied for realtime channel (simulated)")

        channel = _MockChannel(self, on_event, on_status)
        self._channels.add(channel)
        on_status(ChannelStatus.SUBSCRIBED, None)
        logger.debug(f"Mock: channel subscribed ({len(self._channels)} open)")
        return channel

    def _emit(self, table: str, event_type: str, row: dict[str, Any]) -> None:
        raw = {"table": table, "eventType": event_type, "new": dict(row)}
        for channel in list(self._channels):
            if not channel.closed:
                channel.on_event(raw)

    def emit_raw(self, raw: dict[str, Any]) -> None:
        """Push an arbitrary payload to every open channel."""
        for channel in list(self._channels):
            channel.on_event(raw)

    def drop_channels(self, status: ChannelStatus = ChannelStatus.CHANNEL_ERROR) -> None:
        """Simulate the realtime server dropping every open channel."""
        channels, self._channels = list(self._channels), set()
        for channel in channels:
            channel.closed = True
            channel.on_status(status, ConnectivityError(f"Realtime channel {status.value} (simulated)"))

    async def health_check(self) -> bool:
        return not self.offline
