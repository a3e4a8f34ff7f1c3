"""
Local Order & Notification Mirror

The client's eventually-consistent copy of the records it cares about.
Push events and poll results race each other and may arrive in any order,
so every merge here is idempotent and last-writer-wins:

    - an order update older than the held record (``updated_at``) is ignored
    - a notification that was read locally is never un-read by a stale image
    - applying the same payload twice leaves the mirror unchanged
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional

from order_tracking.schemas import Notification, Order, OwnerRef

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class MergeResult(str, Enum):
    ADDED = "added"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    STALE = "stale"

    @property
    def changed(self) -> bool:
        return self in (MergeResult.ADDED, MergeResult.UPDATED)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _merge_owner(held: Optional[OwnerRef], incoming: Optional[OwnerRef]) -> Optional[OwnerRef]:
    """Field-wise owner merge: a partial owner ref never erases a known id."""
    if incoming is None:
        return held
    if held is None:
        return incoming
    return OwnerRef(
        user_id=incoming.user_id or held.user_id,
        client_id=incoming.client_id or held.client_id,
    )


class OrderMirror:
    """Orders tracked for the current viewer, keyed by id."""

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}

    def __contains__(self, order_id: object) -> bool:
        return order_id in self._orders

    def __len__(self) -> int:
        return len(self._orders)

    def get(self, order_id: str) -> Optional[Order]:
        return self._orders.get(order_id)

    def merge(self, incoming: Order) -> MergeResult:
        """
        Merge one order image into the mirror in place.

        Only the fields present on ``incoming`` are applied, so an update
        payload without line items keeps the items already held.
        """
        held = self._orders.get(incoming.id)
        if held is None:
            self._orders[incoming.id] = incoming
            return MergeResult.ADDED

        held_ts, incoming_ts = _utc(held.updated_at), _utc(incoming.updated_at)
        if held_ts is not None and incoming_ts is not None and incoming_ts < held_ts:
            logger.debug(
                f"Ignoring stale image of order {incoming.id} "
                f"({incoming_ts.isoformat()} < {held_ts.isoformat()})"
            )
            return MergeResult.STALE

        updates = {
            name: getattr(incoming, name)
            for name in incoming.model_fields_set
            if name != "id"
        }
        if "owner_ref" in updates:
            updates["owner_ref"] = _merge_owner(held.owner_ref, incoming.owner_ref)
        if "items" in updates and not incoming.items and held.items:
            del updates["items"]

        merged = held.model_copy(update=updates)
        if merged == held:
            return MergeResult.UNCHANGED

        self._orders[incoming.id] = merged
        return MergeResult.UPDATED

    def merge_all(self, orders: Iterable[Order]) -> list[Order]:
        """Merge a batch; returns the orders that changed."""
        changed = []
        for order in orders:
            if self.merge(order).changed:
                changed.append(self._orders[order.id])
        return changed

    def clear(self) -> None:
        self._orders.clear()

    def orders(self) -> list[Order]:
        """Tracked orders, newest first."""
        return sorted(
            self._orders.values(),
            key=lambda o: _utc(o.created_at) or _EPOCH,
            reverse=True,
        )

    def active(self) -> list[Order]:
        """Orders still in progress (not delivered/cancelled, not closed by staff)."""
        return [o for o in self.orders() if o.is_active]


class NotificationMirror:
    """
    Unread notifications, keyed by id.

    Ids read locally are remembered (up to ``max_read_ids``, oldest
    forgotten first) so an unread image delivered late by the feed or an
    in-flight poll cannot resurrect them.

    Every unread image applied bumps a sequence number. A poll takes
    ``snapshot_token()`` before fetching and hands it back to
    ``replace_unread``, which keeps rows pushed after that point even when
    the older snapshot does not list them.
    """

    def __init__(self, max_read_ids: int = 1000) -> None:
        self.max_read_ids = max_read_ids
        self._unread: dict[str, Notification] = {}
        self._applied_seq: dict[str, int] = {}
        self._read_ids: dict[str, None] = {}
        self._seq = 0

    def __len__(self) -> int:
        return len(self._unread)

    @property
    def unread_count(self) -> int:
        return len(self._unread)

    def unread(self) -> list[Notification]:
        """Unread notifications, newest first."""
        return sorted(
            self._unread.values(),
            key=lambda n: _utc(n.created_at) or _EPOCH,
            reverse=True,
        )

    def unread_ids(self) -> set[str]:
        return set(self._unread)

    def is_read(self, notification_id: str) -> bool:
        return notification_id in self._read_ids

    def snapshot_token(self) -> int:
        """Sequence number to pass to ``replace_unread`` for a fetch started now."""
        return self._seq

    def apply(self, notification: Notification) -> bool:
        """Apply one notification image; returns True if the unread set changed."""
        if notification.is_read:
            self._remember_read(notification.id)
            return self._discard(notification.id)

        if notification.id in self._read_ids:
            return False

        if self._unread.get(notification.id) == notification:
            return False
        self._store(notification)
        return True

    def replace_unread(self, snapshot: Iterable[Notification], since: Optional[int] = None) -> bool:
        """
        Replace the unread set with a poll result.

        Rows already read locally are skipped. With ``since`` (a token taken
        before the fetch), rows applied after the token survive even if the
        snapshot misses them. Returns True if the set changed.
        """
        fresh: dict[str, Notification] = {}
        for notification in snapshot:
            if notification.is_read:
                self._remember_read(notification.id)
                continue
            if notification.id in self._read_ids:
                continue
            fresh[notification.id] = notification

        if since is not None:
            for notification_id, notification in self._unread.items():
                if notification_id not in fresh and self._applied_seq.get(notification_id, 0) > since:
                    fresh[notification_id] = notification

        if fresh == self._unread:
            return False

        for notification_id in list(self._unread):
            if notification_id not in fresh:
                self._discard(notification_id)
        for notification in fresh.values():
            if self._unread.get(notification.id) != notification:
                self._store(notification)
        return True

    def mark_read(self, notification_ids: Iterable[str]) -> None:
        for notification_id in notification_ids:
            self._remember_read(notification_id)
            self._discard(notification_id)

    def _store(self, notification: Notification) -> None:
        self._seq += 1
        self._unread[notification.id] = notification
        self._applied_seq[notification.id] = self._seq

    def _discard(self, notification_id: str) -> bool:
        self._applied_seq.pop(notification_id, None)
        return self._unread.pop(notification_id, None) is not None

    def _remember_read(self, notification_id: str) -> None:
        self._read_ids.pop(notification_id, None)
        self._read_ids[notification_id] = None
        while len(self._read_ids) > self.max_read_ids:
            del self._read_ids[next(iter(self._read_ids))]
