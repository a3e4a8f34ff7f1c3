"""
Supabase Data Service

Production implementation using:
- PostgREST over httpx for queries and mutations
- Supabase Realtime (websockets) for the change feed

HTTP failures are mapped to pipeline exceptions with
``data_service_error``: access-rule rejections become
``PermissionDeniedError``, everything else ``ConnectivityError``.
"""

import json
import logging
from datetime import datetime
from typing import Any, Optional

import httpx

from order_tracking.core.config import Settings, get_settings
from order_tracking.core.errors import ConnectivityError, PipelineException, data_service_error
from order_tracking.schemas import Notification, Order
from order_tracking.services.data.base import (
    BaseDataService,
    EventCallback,
    StatusCallback,
    Subscription,
)
from order_tracking.services.data.realtime import RealtimeChannel
from order_tracking.services.reconciliation import OwnerFilter

logger = logging.getLogger(__name__)

_ORDER_COLUMNS = "*,order_items(*)"


class SupabaseDataService(BaseDataService):
    """Production data service backed by a Supabase project."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        if not self.settings.supabase_url or not self.settings.supabase_anon_key:
            logger.warning("Supabase credentials not configured")

        self._client = httpx.AsyncClient(
            base_url=f"{self.settings.supabase_url or ''}/rest/v1",
            headers={
                "apikey": self.settings.supabase_anon_key or "",
                "Authorization": f"Bearer {self.settings.supabase_anon_key or ''}",
                "Accept": "application/json",
            },
            timeout=self.settings.request_timeout_seconds,
            transport=transport,
        )
        self.orders_table = self.settings.orders_table
        self.notifications_table = self.settings.notifications_table
        logger.info(f"SupabaseDataService initialized ({self.settings.supabase_url})")

    @property
    def provider_name(self) -> str:
        return "supabase"

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[dict[str, str]] = None,
        payload: Optional[Any] = None,
        prefer: Optional[str] = None,
    ) -> Any:
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = await self._client.request(
                method, f"/{table}", params=params, json=payload, headers=headers
            )
        except httpx.HTTPError as e:
            raise ConnectivityError(f"{method} {table} failed: {e.__class__.__name__}: {e}") from e

        if response.status_code >= 400:
            code, message = "", response.text
            try:
                body = response.json()
                code = str(body.get("code") or "")
                message = body.get("message") or message
            except (ValueError, AttributeError):
                pass
            logger.debug(f"{method} {table} -> {response.status_code} {code} {message}")
            raise data_service_error(response.status_code, message, code)

        if not response.content:
            return None
        return response.json()

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def fetch_unread_notifications(self, limit: int = 10) -> list[Notification]:
        rows = await self._request(
            "GET",
            self.notifications_table,
            params={
                "select": "*",
                "is_read": "eq.false",
                "order": "created_at.desc",
                "limit": str(limit),
            },
        )
        return [Notification.model_validate(r) for r in rows or []]

    async def fetch_orders(self, owner: OwnerFilter) -> list[Order]:
        params = {"select": _ORDER_COLUMNS, "order": "created_at.desc"}
        if owner.user_id is not None:
            params["user_id"] = f"eq.{owner.user_id}"
        else:
            params["metadata"] = "cs." + json.dumps({"clientId": owner.client_id}, separators=(",", ":"))
        rows = await self._request("GET", self.orders_table, params=params)
        return [Order.model_validate(r) for r in rows or []]

    async def fetch_recent_orders(self, since: datetime) -> list[Order]:
        rows = await self._request(
            "GET",
            self.orders_table,
            params={
                "select": "id,order_number,customer_name,total_amount,status,created_at",
                "created_at": f"gte.{since.isoformat()}",
                "order": "created_at.desc",
            },
        )
        return [Order.model_validate(r) for r in rows or []]

    async def fetch_notifications_for_order(self, order_id: str) -> list[Notification]:
        rows = await self._request(
            "GET",
            self.notifications_table,
            params={"select": "*", "order_id": f"eq.{order_id}"},
        )
        return [Notification.model_validate(r) for r in rows or []]

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def mark_all_notifications_read(self) -> int:
        rows = await self._request(
            "PATCH",
            self.notifications_table,
            params={"is_read": "eq.false", "select": "id"},
            payload={"is_read": True},
            prefer="return=representation",
        )
        updated = len(rows or [])
        logger.info(f"Marked {updated} notification(s) read")
        return updated

    async def insert_notification(
        self,
        title: str,
        message: str,
        order_id: Optional[str] = None,
        notification_type: str = "new_order",
        metadata: Optional[dict[str, Any]] = None,
    ) -> Notification:
        rows = await self._request(
            "POST",
            self.notifications_table,
            payload={
                "order_id": order_id,
                "notification_type": notification_type,
                "title": title,
                "message": message,
                "is_read": False,
                "metadata": metadata or {},
            },
            prefer="return=representation",
        )
        if not rows:
            raise ConnectivityError("Insert returned no row")
        return Notification.model_validate(rows[0])

    # =========================================================================
    # CHANGE FEED
    # =========================================================================

    async def subscribe(self, on_event: EventCallback, on_status: StatusCallback) -> Subscription:
        if not self.settings.realtime_url:
            raise ConnectivityError("Realtime endpoint not configured (SUPABASE_URL missing)")
        channel = RealtimeChannel(
            url=self.settings.realtime_url,
            access_token=self.settings.supabase_anon_key,
            tables={
                self.orders_table: "orders",
                self.notifications_table: "order_notifications",
            },
            on_event=on_event,
            on_status=on_status,
            join_timeout=self.settings.realtime_join_timeout_seconds,
            heartbeat_interval=self.settings.realtime_heartbeat_seconds,
        )
        channel.start()
        return channel

    async def health_check(self) -> bool:
        try:
            await self._request("GET", self.orders_table, params={"select": "id", "limit": "1"})
            return True
        except PipelineException as e:
            logger.warning(f"Supabase health check failed: {e}")
            return False

    async def close(self) -> None:
        await self._client.aclose()
