"""
Change Feed Subscriber

Keeps the local mirror in sync with the data service through two paths
that run side by side:

    - PUSH: a live channel of INSERT/UPDATE events on orders and
      notifications, re-opened after a fixed delay whenever it errors,
      times out or closes
    - POLL: a fixed-interval safety net that re-fetches the unread
      notifications and the viewer's orders, active for the whole lifetime
      of the subscriber whatever the channel status

Push and poll race each other. Everything they deliver goes through the
idempotent merges of the mirror, so arrival order does not matter.

State machine:
    connecting -> subscribed -> (error/timeout/close) degraded -> connecting ...
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from order_tracking.core.errors import (
    ConnectivityError,
    ErrorKind,
    PermissionDeniedError,
    PipelineErrors,
    PipelineException,
)
from order_tracking.core.scheduling import BaseScheduler, RetryPolicy, TaskTracker, TimerHandle
from order_tracking.schemas import (
    ChangeType,
    Notification,
    Order,
    OrderChange,
    parse_change_event,
)
from order_tracking.services.data.base import BaseDataService, ChannelStatus, Subscription
from order_tracking.services.mirror import NotificationMirror
from order_tracking.services.reconciliation import OrderReconciler, Viewer

logger = logging.getLogger(__name__)


class FeedStatus(str, Enum):
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    DEGRADED = "degraded"
    CLOSED = "closed"


@dataclass
class SubscriptionState:
    status: FeedStatus = FeedStatus.CONNECTING
    last_event_at: Optional[datetime] = None
    poll_handle: Optional[TimerHandle] = None

    @property
    def polling_active(self) -> bool:
        return self.poll_handle is not None and not self.poll_handle.cancelled


class ChangeFeedSubscriber:
    """
    Push subscription plus polling safety net for one session.

    Args:
        data_service: Query/mutation/change feed surface
        reconciler: Decides which order events belong to the viewer
        notifications: Local unread notification mirror
        errors: Session error board
        scheduler: Clock used for the poll interval and reconnect delay
        on_unread: Called with the current unread list whenever it changes
        on_order_updated: Called with (order, message) when a tracked order changes
    """

    def __init__(
        self,
        data_service: BaseDataService,
        reconciler: OrderReconciler,
        notifications: NotificationMirror,
        errors: PipelineErrors,
        scheduler: BaseScheduler,
        poll_interval: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        unread_limit: int = 10,
        audit_window_hours: Optional[int] = 24,
        on_unread: Optional[Callable[[list[Notification]], None]] = None,
        on_order_updated: Optional[Callable[[Order, str], None]] = None,
    ):
        self.data = data_service
        self.reconciler = reconciler
        self.notifications = notifications
        self.errors = errors
        self.scheduler = scheduler
        self.poll_interval = poll_interval
        self.retry_policy = retry_policy or RetryPolicy()
        self.unread_limit = unread_limit
        self.audit_window_hours = audit_window_hours
        self.on_unread = on_unread
        self.on_order_updated = on_order_updated

        self.state = SubscriptionState()
        self.tasks = TaskTracker("feed")

        self._subscription: Optional[Subscription] = None
        self._generation = 0
        self._attempt = 0
        self._reconnect_handle: Optional[TimerHandle] = None
        self._polling = False
        self._started = False
        self._closed = False

    @property
    def status(self) -> FeedStatus:
        return self.state.status

    @property
    def polling_active(self) -> bool:
        return self.state.polling_active

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None and not self._reconnect_handle.cancelled

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """Start polling, run the initial poll and open the channel."""
        if self._started:
            return
        self._started = True
        self.state.poll_handle = self.scheduler.call_every(self.poll_interval, self._on_poll_tick)
        logger.info(f"Polling safety net active (every {self.poll_interval:.0f}s)")

        await self.poll_now()
        await self._connect()

    async def close(self) -> None:
        """Cancel every timer, close the channel and wait for spawned work."""
        if self._closed:
            return
        self._closed = True
        self._generation += 1
        self.state.status = FeedStatus.CLOSED

        if self.state.poll_handle is not None:
            self.state.poll_handle.cancel()
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()
        await self.tasks.close()
        logger.info("Change feed closed")

    # =========================================================================
    # CHANNEL
    # =========================================================================

    async def _connect(self) -> None:
        if self._closed:
            return

        previous, self._subscription = self._subscription, None
        self._generation += 1
        generation = self._generation
        if previous is not None:
            await previous.close()

        self.state.status = FeedStatus.CONNECTING
        logger.info(f"Opening change feed channel (attempt {self._attempt + 1})")

        def on_status(status: ChannelStatus, error: Optional[PipelineException] = None) -> None:
            self._on_channel_status(generation, status, error)

        try:
            subscription = await self.data.subscribe(self._on_raw_event, on_status)
        except PipelineException as e:
            on_status(ChannelStatus.CHANNEL_ERROR, e)
            return

        if self._closed or generation != self._generation:
            await subscription.close()
            return
        self._subscription = subscription

    def _on_channel_status(
        self,
        generation: int,
        status: ChannelStatus,
        error: Optional[PipelineException],
    ) -> None:
        if self._closed or generation != self._generation:
            return

        if status == ChannelStatus.SUBSCRIBED:
            self.state.status = FeedStatus.SUBSCRIBED
            self._attempt = 0
            self.errors.clear(ErrorKind.CONNECTIVITY)
            logger.info("🟢 Change feed subscribed")
            return

        self.state.status = FeedStatus.DEGRADED
        if isinstance(error, PermissionDeniedError):
            self.errors.report_exception(error)
            logger.error("🔴 Change feed rejected by access rules, not retrying (polling continues)")
            return

        message = error.message if error is not None else f"Realtime channel {status.value}"
        self.errors.report_exception(ConnectivityError(f"Live updates interrupted: {message}"))
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self.reconnect_pending:
            return
        self._attempt += 1
        delay = self.retry_policy.next_delay(self._attempt)
        if delay is None:
            logger.error(f"Giving up on the change feed after {self._attempt - 1} attempts (polling continues)")
            return

        logger.warning(f"🟡 Change feed degraded, reconnecting in {delay:.0f}s")
        self._reconnect_handle = self.scheduler.call_later(
            delay, lambda: self.tasks.spawn(self._reconnect())
        )

    async def _reconnect(self) -> None:
        self._reconnect_handle = None
        await self._connect()

    # =========================================================================
    # EVENTS
    # =========================================================================

    def _on_raw_event(self, raw: dict[str, Any]) -> None:
        if self._closed:
            return
        event = parse_change_event(raw)
        if event is None:
            return
        self.state.last_event_at = datetime.now(timezone.utc)

        if isinstance(event, OrderChange):
            self._handle_order_change(event)
        elif self.notifications.apply(event.record):
            self._emit_unread()

    def _handle_order_change(self, event: OrderChange) -> None:
        decision = self.reconciler.reconcile(event)
        if not decision.included:
            return

        if decision.needs_reload:
            logger.info(f"New order {event.record.order_number or event.record.id} for this viewer, reloading orders")
            self.tasks.spawn(self._reload_after_insert())
        elif decision.changed and event.event_type == ChangeType.UPDATE and self.on_order_updated:
            order = self.reconciler.mirror.get(event.record.id)
            self.on_order_updated(order, f"Order #{order.order_number or order.id} status changed")

    async def _reload_after_insert(self) -> None:
        try:
            await self.reload_orders()
        except PipelineException as e:
            self.errors.report_exception(e)

    def _emit_unread(self) -> None:
        if self.on_unread is not None:
            self.on_unread(self.notifications.unread())

    # =========================================================================
    # POLLING
    # =========================================================================

    def _on_poll_tick(self) -> None:
        if not self._closed:
            self.tasks.spawn(self.poll_now())

    async def poll_now(self) -> bool:
        """
        Run one poll. Returns False if skipped because one is in flight.

        Errors are reported on the board, never raised.
        """
        if self._closed:
            return False
        if self._polling:
            logger.debug("Poll already in flight, skipping tick")
            return False

        self._polling = True
        try:
            token = self.notifications.snapshot_token()
            unread = await self.data.fetch_unread_notifications(self.unread_limit)
            if self._closed:
                return False
            if self.notifications.replace_unread(unread, since=token):
                self._emit_unread()

            await self.reload_orders()
            if self.audit_window_hours and not self._closed:
                await self.audit_missing_notifications()
        except PipelineException as e:
            self.errors.report_exception(e)
        finally:
            self._polling = False
        return True

    async def reload_orders(self) -> list[Order]:
        """Fetch the viewer's authoritative order list and merge it."""
        orders = await self.data.fetch_orders(self.reconciler.owner_filter())
        if self._closed:
            return []
        changed = self.reconciler.mirror.merge_all(orders)
        if changed:
            logger.debug(f"Order reload merged {len(changed)} change(s)")
        return changed

    async def audit_missing_notifications(self) -> list[Order]:
        """Log recent orders that have no notification row at all."""
        since = datetime.now(timezone.utc) - timedelta(hours=self.audit_window_hours)
        missing = []
        for order in await self.data.fetch_recent_orders(since):
            if not await self.data.fetch_notifications_for_order(order.id):
                missing.append(order)
            if self._closed:
                return missing

        if missing:
            numbers = ", ".join(o.order_number or o.id for o in missing[:5])
            logger.warning(
                f"⚠️  {len(missing)} order(s) in the last {self.audit_window_hours}h "
                f"have no notification: {numbers}"
            )
        return missing

    # =========================================================================
    # VIEWER
    # =========================================================================

    async def refresh_viewer(self, viewer: Viewer) -> None:
        """Swap credentials (login/logout) and reload the viewer's orders."""
        self.reconciler.set_viewer(viewer)
        try:
            await self.reload_orders()
        except PipelineException as e:
            self.errors.report_exception(e)
