"""Tests for the order inclusion predicate."""

from datetime import datetime, timezone

import pytest

from order_tracking.schemas import Order, OrderChange
from order_tracking.services.mirror import MergeResult, OrderMirror
from order_tracking.services.reconciliation import MatchTier, OrderReconciler, OwnerFilter, Viewer

CLIENT = "client_1718000000000_aaaaaaaaaaaa"
OTHER_CLIENT = "client_1718000000000_bbbbbbbbbbbb"


def order_row(order_id="o-1", user_id=None, client_id=None, **extra):
    row = {
        "id": order_id,
        "order_number": "ORD-1001",
        "status": "pending",
        "user_id": user_id,
        "metadata": {"clientId": client_id} if client_id else {},
        "created_at": datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc),
        "updated_at": datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc),
    }
    row.update(extra)
    return row


def change(event_type, row):
    return OrderChange.model_validate({"table": "orders", "eventType": event_type, "new": row})


@pytest.fixture
def mirror():
    return OrderMirror()


class TestMatch:

    def test_authenticated_owner_matches(self, mirror):
        reconciler = OrderReconciler(Viewer(CLIENT, "user-1"), mirror)
        order = Order.model_validate(order_row(user_id="user-1"))

        assert reconciler.match(order) == MatchTier.AUTHENTICATED

    def test_anonymous_owner_matches_client_id(self, mirror):
        reconciler = OrderReconciler(Viewer(CLIENT), mirror)
        order = Order.model_validate(order_row(client_id=CLIENT))

        assert reconciler.match(order) == MatchTier.ANONYMOUS

    def test_user_id_ignored_for_anonymous_viewer(self, mirror):
        reconciler = OrderReconciler(Viewer(CLIENT), mirror)
        order = Order.model_validate(order_row(user_id="user-1"))

        assert reconciler.match(order) is None

    def test_known_order_matches_without_owner(self, mirror):
        reconciler = OrderReconciler(Viewer(CLIENT), mirror)
        mirror.merge(Order.model_validate(order_row(client_id=CLIENT)))

        bare = Order.model_validate({"id": "o-1", "status": "ready"})
        assert reconciler.match(bare) == MatchTier.KNOWN_ORDER

    def test_other_clients_order_excluded(self, mirror):
        reconciler = OrderReconciler(Viewer(CLIENT, "user-1"), mirror)
        order = Order.model_validate(order_row(user_id="user-2", client_id=OTHER_CLIENT))

        assert reconciler.match(order) is None
        assert reconciler.includes(order) is False


class TestReconcile:

    def test_insert_for_viewer_added_and_flagged_for_reload(self, mirror):
        reconciler = OrderReconciler(Viewer(CLIENT), mirror)

        decision = reconciler.reconcile(change("INSERT", order_row(client_id=CLIENT)))

        assert decision.included is True
        assert decision.tier == MatchTier.ANONYMOUS
        assert decision.merge == MergeResult.ADDED
        assert decision.needs_reload is True
        assert "o-1" in mirror

    def test_unrelated_insert_rejected(self, mirror):
        reconciler = OrderReconciler(Viewer(CLIENT), mirror)

        decision = reconciler.reconcile(change("INSERT", order_row(client_id=OTHER_CLIENT)))

        assert decision.included is False
        assert len(mirror) == 0

    def test_replayed_insert_of_known_order_rejected(self, mirror):
        """An INSERT only ever qualifies through ownership."""
        reconciler = OrderReconciler(Viewer(CLIENT), mirror)
        mirror.merge(Order.model_validate(order_row(client_id=CLIENT)))

        decision = reconciler.reconcile(change("INSERT", order_row(client_id=OTHER_CLIENT)))

        assert decision.included is False

    def test_update_without_owner_merges_into_known_order(self, mirror):
        reconciler = OrderReconciler(Viewer(CLIENT), mirror)
        reconciler.reconcile(change("INSERT", order_row(client_id=CLIENT)))

        decision = reconciler.reconcile(change("UPDATE", {
            "id": "o-1",
            "status": "preparing",
            "updated_at": datetime(2024, 6, 1, 12, 5, tzinfo=timezone.utc),
        }))

        assert decision.tier == MatchTier.KNOWN_ORDER
        assert decision.merge == MergeResult.UPDATED
        assert decision.needs_reload is False
        assert mirror.get("o-1").status.value == "preparing"
        assert mirror.get("o-1").owner_ref.client_id == CLIENT

    def test_anonymous_order_kept_after_login(self, mirror):
        """Orders placed before logging in stay visible afterwards."""
        reconciler = OrderReconciler(Viewer(CLIENT), mirror)
        reconciler.reconcile(change("INSERT", order_row(client_id=CLIENT)))

        reconciler.set_viewer(Viewer(CLIENT, "user-1"))
        decision = reconciler.reconcile(change("UPDATE", order_row(
            client_id=CLIENT,
            status="ready",
            updated_at=datetime(2024, 6, 1, 12, 10, tzinfo=timezone.utc),
        )))

        assert "o-1" in mirror
        assert decision.tier == MatchTier.ANONYMOUS
        assert mirror.get("o-1").status.value == "ready"

    def test_plain_order_reconciled_as_update(self, mirror):
        reconciler = OrderReconciler(Viewer(CLIENT), mirror)

        decision = reconciler.reconcile(Order.model_validate(order_row(client_id=CLIENT)))

        assert decision.merge == MergeResult.ADDED
        assert decision.needs_reload is False


class TestOwnerFilter:

    def test_filter_by_user_when_authenticated(self, mirror):
        reconciler = OrderReconciler(Viewer(CLIENT, "user-1"), mirror)
        assert reconciler.owner_filter() == OwnerFilter(user_id="user-1")

    def test_filter_by_client_when_anonymous(self, mirror):
        reconciler = OrderReconciler(Viewer(CLIENT), mirror)
        assert reconciler.owner_filter() == OwnerFilter(client_id=CLIENT)
