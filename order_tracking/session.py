"""
Notification Session

One foreground view of the pipeline: it owns an instance of every
component and tears them all down together.

    ClientIdentityResolver ─▶ OrderReconciler ─▶ ChangeFeedSubscriber
                                                     │ unread deltas
                                                     ▼
    AcknowledgementStore ◀──────────────────────  AlertEngine ──▶ BackgroundAgent

No timer, subscription or task outlives ``close()``.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from order_tracking.core.config import AlertPermission, Settings, get_settings
from order_tracking.core.errors import PipelineErrors, WorkerRegistrationError
from order_tracking.core.scheduling import AsyncioScheduler, BaseScheduler, RetryPolicy, TaskTracker
from order_tracking.schemas import Notification, Order
from order_tracking.services.acknowledgement import AcknowledgementResult, AcknowledgementStore
from order_tracking.services.alerts import AlertEngine, BaseAudioBackend, load_clip
from order_tracking.services.background.agent import AgentLifecycle, BackgroundAgent, ClientPort
from order_tracking.services.background.protocol import (
    CheckNotifications,
    EnableBackgroundSync,
    NewNotification,
    NewNotificationData,
    PlaySound,
    StopSound,
    encode_message,
    parse_worker_message,
)
from order_tracking.services.data.base import BaseDataService
from order_tracking.services.feed import ChangeFeedSubscriber
from order_tracking.services.identity import ClientIdentityResolver
from order_tracking.services.mirror import NotificationMirror, OrderMirror
from order_tracking.services.reconciliation import OrderReconciler, Viewer

logger = logging.getLogger(__name__)


@dataclass
class OrderUpdate:
    order_id: str
    message: str
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationSession:
    """Wires identity, feed, alerts, acknowledgements and the agent link for one view."""

    def __init__(
        self,
        data_service: BaseDataService,
        audio: BaseAudioBackend,
        settings: Optional[Settings] = None,
        scheduler: Optional[BaseScheduler] = None,
        identity_resolver: Optional[ClientIdentityResolver] = None,
        agent: Optional[BackgroundAgent] = None,
        authenticated_user_id: Optional[str] = None,
    ):
        self.settings = settings or get_settings()
        self.data = data_service
        self.scheduler = scheduler or AsyncioScheduler()
        self.errors = PipelineErrors()
        self.tasks = TaskTracker("session")

        resolver = identity_resolver or ClientIdentityResolver(
            self.settings.identity_path, lock_timeout=self.settings.identity_lock_timeout
        )
        self.identity = resolver.resolve()

        self.orders = OrderMirror()
        self.notifications = NotificationMirror()
        self.reconciler = OrderReconciler(
            Viewer(self.identity.client_id, authenticated_user_id), self.orders
        )

        self.engine = AlertEngine(
            audio=audio,
            scheduler=self.scheduler,
            errors=self.errors,
            clip=load_clip(self.settings.alert_clip_path, self.settings.sample_rate),
            bell_interval=self.settings.bell_interval_seconds,
            sample_rate=self.settings.sample_rate,
            sound_enabled=self.settings.sound_enabled,
            on_alert=self._on_alert,
        )
        self.feed = ChangeFeedSubscriber(
            data_service=data_service,
            reconciler=self.reconciler,
            notifications=self.notifications,
            errors=self.errors,
            scheduler=self.scheduler,
            poll_interval=self.settings.poll_interval_seconds,
            retry_policy=RetryPolicy(
                delay=self.settings.reconnect_delay_seconds,
                max_attempts=self.settings.reconnect_max_attempts,
            ),
            unread_limit=self.settings.unread_fetch_limit,
            audit_window_hours=(
                self.settings.audit_window_hours if self.settings.audit_missing_notifications else None
            ),
            on_unread=self.engine.notify_unread,
            on_order_updated=self._on_order_updated,
        )
        self.acknowledgements = AcknowledgementStore(
            data_service=data_service,
            notifications=self.notifications,
            engine=self.engine,
            errors=self.errors,
            is_alive=lambda: not self._closed,
            on_stop=self._on_alert_stopped,
        )

        self.agent = agent
        self.background_notifications_enabled = False
        self.order_updates: deque[OrderUpdate] = deque(maxlen=50)

        self._port: Optional[ClientPort] = None
        self._started = False
        self._closed = False

    @property
    def viewer(self) -> Viewer:
        return self.reconciler.viewer

    @property
    def is_alive(self) -> bool:
        return self._started and not self._closed

    @property
    def agent_status(self) -> str:
        if self.agent is None:
            return "disabled"
        if self._port is None:
            return "unavailable"
        return self.agent.lifecycle.value

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        logger.info(
            f"Session starting (client …{self.identity.client_id[-12:]}, "
            f"authenticated={self.viewer.is_authenticated})"
        )
        if self.agent is not None:
            await self._attach_agent()
        await self.feed.start()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.agent is not None and self._port is not None:
            self.agent.disconnect_client(self._port)
            self._port = None
        await self.tasks.close()
        await self.feed.close()
        await self.engine.close()
        logger.info("Session closed")

    # =========================================================================
    # VIEWER
    # =========================================================================

    async def login(self, user_id: str) -> Viewer:
        await self.feed.refresh_viewer(Viewer(self.identity.client_id, user_id))
        return self.viewer

    async def logout(self) -> Viewer:
        await self.feed.refresh_viewer(Viewer(self.identity.client_id))
        return self.viewer

    def active_orders(self) -> list[Order]:
        return self.orders.active()

    # =========================================================================
    # ACKNOWLEDGEMENTS
    # =========================================================================

    async def mark_all_read(self) -> AcknowledgementResult:
        return await self.acknowledgements.mark_all_read()

    async def toggle_sound(self) -> AcknowledgementResult:
        return await self.acknowledgements.toggle_sound()

    async def set_sound_enabled(self, enabled: bool) -> None:
        await self.engine.set_sound_enabled(enabled)
        if not enabled:
            self._post_to_agent(StopSound())

    # =========================================================================
    # BACKGROUND AGENT
    # =========================================================================

    async def _attach_agent(self) -> None:
        if self.agent.lifecycle == AgentLifecycle.NOT_REGISTERED:
            try:
                await self.agent.register()
            except WorkerRegistrationError as e:
                self.errors.report_exception(e)
                logger.warning("Background agent unavailable, alerting in the foreground only")
                return
        if not self.agent.is_running:
            self.errors.report_exception(WorkerRegistrationError(
                f"Background agent is {self.agent.lifecycle.value}, not running"
            ))
            logger.warning("Background agent unavailable, alerting in the foreground only")
            return

        self._port = self.agent.connect_client("/orders")
        self.tasks.spawn(self._read_agent_messages(self._port))

    async def enable_background_notifications(
        self, answer: Optional[AlertPermission] = None
    ) -> AlertPermission:
        """Request alert permission and, if granted, turn on background sync."""
        if self.agent is None or self._port is None:
            raise WorkerRegistrationError("Background agent is not available")

        permission = self.agent.alerts.request_permission(answer or self.settings.alert_permission)
        if permission == AlertPermission.GRANTED:
            self._post_to_agent(EnableBackgroundSync())
            self.background_notifications_enabled = True
            logger.info("Background notifications enabled")
        else:
            logger.info(f"Background notifications not enabled (permission {permission.value})")
        return permission

    def _post_to_agent(self, message) -> None:
        if self.agent is not None and self._port is not None and not self._closed:
            self.agent.post_message(encode_message(message))

    async def _read_agent_messages(self, port: ClientPort) -> None:
        while True:
            raw = await port.inbox.get()
            message = parse_worker_message(raw)
            if isinstance(message, CheckNotifications):
                await self.feed.poll_now()
            elif isinstance(message, PlaySound):
                # A delegated sound request never lifts a manual silence
                await self.engine.ensure_playing()
            if self._closed:
                return

    # =========================================================================
    # CALLBACKS
    # =========================================================================

    def _on_alert(self, notification: Notification) -> None:
        customer = notification.customer_name or "a customer"
        self._post_to_agent(NewNotification(data=NewNotificationData(message=f"New order from {customer}")))

    def _on_alert_stopped(self) -> None:
        self._post_to_agent(StopSound())

    def _on_order_updated(self, order: Order, message: str) -> None:
        logger.info(f"📦 {message} -> {order.status.value if order.status else 'unknown'}")
        self.order_updates.append(OrderUpdate(order_id=order.id, message=message))
