"""Tests for the change feed subscriber (push + polling safety net)."""

import asyncio

import pytest
import pytest_asyncio

from order_tracking.core.errors import ErrorKind
from order_tracking.services.data.base import ChannelStatus
from order_tracking.services.feed import ChangeFeedSubscriber, FeedStatus
from order_tracking.services.mirror import NotificationMirror, OrderMirror
from order_tracking.services.reconciliation import OrderReconciler, Viewer

CLIENT = "client_1718000000000_aaaaaaaaaaaa"


class Recorder:
    """Collects the feed's callbacks."""

    def __init__(self):
        self.unread_calls = []
        self.order_updates = []

    def on_unread(self, unread):
        self.unread_calls.append([n.id for n in unread])

    def on_order_updated(self, order, message):
        self.order_updates.append((order.id, message))


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def make_feed(data_service, errors, scheduler, recorder):
    def factory(viewer=None, audit_window_hours=None):
        return ChangeFeedSubscriber(
            data_service=data_service,
            reconciler=OrderReconciler(viewer or Viewer(CLIENT), OrderMirror()),
            notifications=NotificationMirror(),
            errors=errors,
            scheduler=scheduler,
            poll_interval=30,
            audit_window_hours=audit_window_hours,
            on_unread=recorder.on_unread,
            on_order_updated=recorder.on_order_updated,
        )
    return factory


@pytest_asyncio.fixture
async def feed(make_feed):
    f = make_feed()
    yield f
    await f.close()


class TestStartup:

    @pytest.mark.asyncio
    async def test_initial_poll_then_subscribe(self, feed, data_service, recorder):
        await data_service.create_order(customer_name="Ada", client_id=CLIENT)

        await feed.start()

        assert feed.status == FeedStatus.SUBSCRIBED
        assert feed.polling_active is True
        assert feed.notifications.unread_count == 1
        assert len(feed.reconciler.mirror) == 1
        assert recorder.unread_calls == [[next(iter(data_service.notifications))]]
        assert data_service.open_channels == 1

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, feed, data_service):
        await feed.start()
        await feed.start()

        assert data_service.open_channels == 1


class TestPush:

    @pytest.mark.asyncio
    async def test_pushed_order_and_notification_reach_mirror(self, feed, data_service, settle):
        await feed.start()

        row = await data_service.create_order(
            customer_name="Ada",
            client_id=CLIENT,
            items=[{"product_name": "Margherita", "quantity": 2, "product_price": 12.0}],
        )
        await settle()

        order = feed.reconciler.mirror.get(row["id"])
        assert order is not None
        # The reload after the insert brings the line items along
        assert order.items[0].product_name == "Margherita"
        assert feed.notifications.unread_count == 1

    @pytest.mark.asyncio
    async def test_orders_of_other_visitors_ignored(self, feed, data_service, settle):
        await feed.start()

        await data_service.create_order(customer_name="Bob", client_id="client_someone_else")
        await settle()

        assert len(feed.reconciler.mirror) == 0
        # Notifications are for the whole console, not per visitor
        assert feed.notifications.unread_count == 1

    @pytest.mark.asyncio
    async def test_status_update_reported(self, feed, data_service, recorder, settle):
        await feed.start()
        row = await data_service.create_order(client_id=CLIENT)
        await settle()

        await data_service.update_order(row["id"], status="preparing")
        await settle()

        assert feed.reconciler.mirror.get(row["id"]).status.value == "preparing"
        assert recorder.order_updates == [(row["id"], f"Order #{row['order_number']} status changed")]

    @pytest.mark.asyncio
    async def test_malformed_events_dropped(self, feed, data_service, recorder):
        await feed.start()
        calls_before = len(recorder.unread_calls)

        data_service.emit_raw({"table": "orders", "eventType": "INSERT", "new": {"no_id": True}})
        data_service.emit_raw({"table": "payments", "eventType": "INSERT", "new": {"id": "p-1"}})
        data_service.emit_raw({"table": "order_notifications", "eventType": "DELETE", "new": {"id": "n-1"}})

        assert feed.status == FeedStatus.SUBSCRIBED
        assert feed.notifications.unread_count == 0
        assert len(recorder.unread_calls) == calls_before

    @pytest.mark.asyncio
    async def test_push_during_poll_survives_older_snapshot(self, feed, data_service, monkeypatch, settle):
        await feed.start()
        release = asyncio.Event()
        fetch_unread = data_service.fetch_unread_notifications

        async def held_fetch(limit=10):
            snapshot = await fetch_unread(limit)
            await release.wait()
            return snapshot

        monkeypatch.setattr(data_service, "fetch_unread_notifications", held_fetch)
        poll = asyncio.create_task(feed.poll_now())
        await settle()

        await data_service.create_order(customer_name="Ada", client_id=CLIENT)
        assert feed.notifications.unread_count == 1

        release.set()
        assert await poll is True
        await settle()

        assert feed.notifications.unread_count == 1


class TestDegradedMode:

    @pytest.mark.asyncio
    async def test_channel_error_reconnects_after_delay(self, feed, data_service, errors, scheduler, settle):
        await feed.start()

        data_service.drop_channels(ChannelStatus.CHANNEL_ERROR)

        assert feed.status == FeedStatus.DEGRADED
        assert feed.reconnect_pending is True
        assert feed.polling_active is True
        assert ErrorKind.CONNECTIVITY in errors

        scheduler.advance(4)
        await settle()
        assert feed.status == FeedStatus.DEGRADED

        scheduler.advance(1)
        await settle()
        assert feed.status == FeedStatus.SUBSCRIBED
        assert ErrorKind.CONNECTIVITY not in errors
        assert data_service.open_channels == 1

    @pytest.mark.asyncio
    async def test_timeout_and_close_also_reconnect(self, feed, data_service, scheduler, settle):
        await feed.start()

        for status in (ChannelStatus.TIMED_OUT, ChannelStatus.CLOSED):
            data_service.drop_channels(status)
            assert feed.status == FeedStatus.DEGRADED
            scheduler.advance(5)
            await settle()
            assert feed.status == FeedStatus.SUBSCRIBED

    @pytest.mark.asyncio
    async def test_keeps_retrying_while_unreachable(self, feed, data_service, scheduler, settle):
        await feed.start()
        data_service.refuse_subscribe = True
        data_service.drop_channels()

        for _ in range(3):
            scheduler.advance(5)
            await settle()
            assert feed.status == FeedStatus.DEGRADED
            assert feed.reconnect_pending is True

        data_service.refuse_subscribe = False
        scheduler.advance(5)
        await settle()
        assert feed.status == FeedStatus.SUBSCRIBED

    @pytest.mark.asyncio
    async def test_polling_recovers_events_missed_while_degraded(self, feed, data_service, scheduler, settle):
        await feed.start()
        data_service.refuse_subscribe = True
        data_service.drop_channels()

        row = await data_service.create_order(customer_name="Ada", client_id=CLIENT)
        assert feed.notifications.unread_count == 0

        scheduler.advance(30)
        await settle()

        assert feed.notifications.unread_count == 1
        assert row["id"] in feed.reconciler.mirror
        assert feed.status == FeedStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_permission_rejection_is_not_retried(self, feed, data_service, errors):
        data_service.deny_reads = True

        await feed.start()

        assert feed.status == FeedStatus.DEGRADED
        assert feed.reconnect_pending is False
        assert feed.polling_active is True
        assert errors.get(ErrorKind.PERMISSION) is not None

    @pytest.mark.asyncio
    async def test_poll_failure_reported_not_raised(self, feed, data_service, errors):
        await feed.start()
        data_service.offline = True

        assert await feed.poll_now() is True
        assert ErrorKind.CONNECTIVITY in errors


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_close_cancels_timers_and_channel(self, make_feed, data_service, scheduler, settle):
        feed = make_feed()
        await feed.start()
        data_service.drop_channels()
        assert feed.reconnect_pending

        await feed.close()

        assert feed.status == FeedStatus.CLOSED
        assert feed.polling_active is False
        assert scheduler.pending() == []

        await data_service.create_order(client_id=CLIENT)
        scheduler.advance(60)
        await settle()
        assert feed.notifications.unread_count == 0
        assert data_service.open_channels == 0

    @pytest.mark.asyncio
    async def test_late_status_from_replaced_channel_ignored(self, feed, data_service, scheduler, settle):
        await feed.start()
        stale_channel = next(iter(data_service._channels))
        data_service.drop_channels()
        scheduler.advance(5)
        await settle()
        assert feed.status == FeedStatus.SUBSCRIBED

        stale_channel.on_status(ChannelStatus.CHANNEL_ERROR, None)

        assert feed.status == FeedStatus.SUBSCRIBED
        assert feed.reconnect_pending is False


class TestViewerAndAudit:

    @pytest.mark.asyncio
    async def test_login_reloads_user_orders_and_keeps_anonymous_ones(self, feed, data_service, settle):
        anon = await data_service.create_order(client_id=CLIENT)
        mine = await data_service.create_order(user_id="user-1")
        await feed.start()
        assert [o.id for o in feed.reconciler.mirror.orders()] == [anon["id"]]

        await feed.refresh_viewer(Viewer(CLIENT, "user-1"))

        assert anon["id"] in feed.reconciler.mirror
        assert mine["id"] in feed.reconciler.mirror

    @pytest.mark.asyncio
    async def test_audit_finds_orders_without_notifications(self, make_feed, data_service):
        feed = make_feed(audit_window_hours=24)
        await data_service.create_order(customer_name="Ada")
        silent = await data_service.create_order(customer_name="Bob", with_notification=False)

        missing = await feed.audit_missing_notifications()

        assert [o.id for o in missing] == [silent["id"]]
        await feed.close()
