"""
Order Reconciliation Engine

Decides which order events belong to the current viewer when orders can be
owned either by an authenticated user or by an anonymous client id, and
there is no stable server-side session tying the two together.

Inclusion is a three-tier predicate, evaluated in order:

    1. AUTHENTICATED: viewer is logged in and ownerRef.userId matches
    2. ANONYMOUS:     ownerRef.clientId matches the viewer's client id
    3. KNOWN_ORDER:   the order id is already tracked locally

Tier 3 catches update payloads that arrive without ``ownerRef`` and orders
created anonymously before the same session logged in. It can over-include
in rare cross-session cases; a missed order update is worse than a spurious
match for a notification system.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from order_tracking.schemas import ChangeType, Order, OrderChange
from order_tracking.services.mirror import MergeResult, OrderMirror

logger = logging.getLogger(__name__)


class MatchTier(str, Enum):
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"
    KNOWN_ORDER = "known_order"


@dataclass(frozen=True)
class Viewer:
    """The credentials of whoever is looking at the orders."""
    client_id: str
    authenticated_user_id: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.authenticated_user_id)


@dataclass(frozen=True)
class ReconciliationDecision:
    included: bool
    tier: Optional[MatchTier] = None
    merge: Optional[MergeResult] = None
    needs_reload: bool = False

    @property
    def changed(self) -> bool:
        return self.merge is not None and self.merge.changed


@dataclass(frozen=True)
class OwnerFilter:
    """Server-side query scope for the viewer's orders."""
    user_id: Optional[str] = None
    client_id: Optional[str] = None


class OrderReconciler:
    """Applies the inclusion predicate and merges included events."""

    def __init__(self, viewer: Viewer, mirror: OrderMirror):
        self._viewer = viewer
        self.mirror = mirror

    @property
    def viewer(self) -> Viewer:
        return self._viewer

    def set_viewer(self, viewer: Viewer) -> None:
        """Swap credentials (login/logout). Tracked orders are kept."""
        if viewer != self._viewer:
            logger.info(
                f"Viewer changed: client=…{viewer.client_id[-12:]} "
                f"authenticated={viewer.is_authenticated}"
            )
        self._viewer = viewer

    def match(self, order: Order) -> Optional[MatchTier]:
        owner = order.owner_ref
        viewer = self._viewer

        if viewer.is_authenticated and owner is not None and owner.user_id == viewer.authenticated_user_id:
            return MatchTier.AUTHENTICATED
        if owner is not None and owner.client_id is not None and owner.client_id == viewer.client_id:
            return MatchTier.ANONYMOUS
        if order.id in self.mirror:
            return MatchTier.KNOWN_ORDER
        return None

    def includes(self, order: Order) -> bool:
        return self.match(order) is not None

    def reconcile(self, event: Union[OrderChange, Order]) -> ReconciliationDecision:
        """
        Decide inclusion for one order event and merge it if included.

        Inserts are only accepted on the owner tiers. A newly added order
        from an INSERT is flagged ``needs_reload`` so the caller can fetch
        it again joined with its line items.
        """
        if isinstance(event, OrderChange):
            order, change_type = event.record, event.event_type
        else:
            order, change_type = event, ChangeType.UPDATE

        tier = self.match(order)
        if change_type == ChangeType.INSERT and tier == MatchTier.KNOWN_ORDER:
            # A brand-new order cannot already be known; this is a replay
            tier = None
        if tier is None:
            logger.debug(f"Order {order.id} not relevant to this viewer, skipping")
            return ReconciliationDecision(included=False)

        result = self.mirror.merge(order)
        needs_reload = change_type == ChangeType.INSERT and result == MergeResult.ADDED
        logger.debug(f"Order {order.id} included ({tier.value}): {result.value}")
        return ReconciliationDecision(
            included=True,
            tier=tier,
            merge=result,
            needs_reload=needs_reload,
        )

    def owner_filter(self) -> OwnerFilter:
        """Query scope: by user id when logged in, else by client id."""
        if self._viewer.is_authenticated:
            return OwnerFilter(user_id=self._viewer.authenticated_user_id)
        return OwnerFilter(client_id=self._viewer.client_id)
