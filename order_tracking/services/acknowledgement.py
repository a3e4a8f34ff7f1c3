"""
Acknowledgement/State Store

The two operations that close the loop between an alert and the staff
member hearing it:

    - mark_all_read(): stop the alert, flag every unread row read
    - toggle_sound(): stop-and-acknowledge while alerting, resume otherwise

Each await is followed by a liveness check, so an operation still in
flight when its session is torn down stops touching session state.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from order_tracking.core.errors import PipelineErrors, PipelineException
from order_tracking.services.alerts.engine import AlertEngine
from order_tracking.services.alerts.state import AlertEvent
from order_tracking.services.data.base import BaseDataService
from order_tracking.services.mirror import NotificationMirror

logger = logging.getLogger(__name__)


@dataclass
class AcknowledgementResult:
    success: bool
    message: str
    updated: int = 0


class AcknowledgementStore:
    """
    Mark-read and sound-toggle operations for one session.

    Args:
        data_service: Where the read flags are persisted
        notifications: Local unread mirror
        engine: Alert engine to stop/resume
        errors: Session error board
        is_alive: Returns False once the owning session is closed
        on_stop: Called whenever these operations silence the alert
    """

    def __init__(
        self,
        data_service: BaseDataService,
        notifications: NotificationMirror,
        engine: AlertEngine,
        errors: PipelineErrors,
        is_alive: Callable[[], bool],
        on_stop: Optional[Callable[[], None]] = None,
    ):
        self.data = data_service
        self.notifications = notifications
        self.engine = engine
        self.errors = errors
        self.is_alive = is_alive
        self.on_stop = on_stop

    async def mark_all_read(self) -> AcknowledgementResult:
        """
        Stop the alert and flag all unread notifications read.

        The sound stops locally even if the backend write fails; the unread
        set is only cleared once the write succeeded.
        """
        if not self.is_alive():
            return AcknowledgementResult(False, "Session closed")

        pending = self.notifications.unread_ids()
        await self.engine.stop(AlertEvent.MARK_ALL_READ)
        self._notify_stop()
        if not self.is_alive():
            return AcknowledgementResult(False, "Session closed")

        try:
            updated = await self.data.mark_all_notifications_read()
        except PipelineException as e:
            if self.is_alive():
                self.errors.report_exception(e)
            return AcknowledgementResult(False, f"Could not mark notifications read: {e.message}")

        if not self.is_alive():
            return AcknowledgementResult(False, "Session closed")

        # Rows that arrived during the write stay unread until the feed says otherwise
        self.notifications.mark_read(pending)
        logger.info(f"✅ Marked {updated} notification(s) read")
        return AcknowledgementResult(True, f"Marked {updated} notification(s) as read", updated)

    async def toggle_sound(self) -> AcknowledgementResult:
        """Stop and acknowledge while alerting; resume when silent with unread left."""
        if not self.is_alive():
            return AcknowledgementResult(False, "Session closed")

        if self.engine.is_playing:
            await self.engine.stop(AlertEvent.USER_STOP)
            self._notify_stop()
            if not self.is_alive():
                return AcknowledgementResult(False, "Session closed")
            return await self.mark_all_read()

        started = await self.engine.resume(has_unread=self.notifications.unread_count > 0)
        if not self.is_alive():
            return AcknowledgementResult(False, "Session closed")
        if started:
            return AcknowledgementResult(True, "Alert resumed")
        return AcknowledgementResult(True, "Nothing to alert about")

    def _notify_stop(self) -> None:
        if self.on_stop is not None:
            self.on_stop()
