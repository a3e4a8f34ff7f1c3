"""Tests for the background delivery agent."""

import json

import pytest
import pytest_asyncio

from order_tracking.core.config import AlertPermission
from order_tracking.core.errors import WorkerRegistrationError
from order_tracking.services.alerts.audio import MockAudioBackend
from order_tracking.services.background.agent import AgentLifecycle, AlertCenter
from order_tracking.services.background.protocol import (
    CheckNotifications,
    DisableBackgroundSync,
    NewNotification,
    NewNotificationData,
    PlaySound,
    PlatformAlertPayload,
    StopSound,
    encode_message,
    parse_worker_message,
)


@pytest.fixture
def agent_audio():
    return MockAudioBackend()


@pytest_asyncio.fixture
async def agent(make_agent, agent_audio):
    a = make_agent(audio=agent_audio)
    await a.register()
    yield a
    await a.close()


def drain_inbox(port):
    messages = []
    while not port.inbox.empty():
        messages.append(parse_worker_message(port.inbox.get_nowait()))
    return messages


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_register_caches_shell_and_starts_sync(self, agent):
        assert agent.lifecycle == AgentLifecycle.RUNNING
        assert agent.cache.entries("order-dashboard-v1") == ["/", "/health"]
        assert agent.background_sync_active is True

    @pytest.mark.asyncio
    async def test_activate_deletes_old_caches(self, make_agent):
        agent = make_agent()
        agent.cache.open("order-dashboard-v0")

        await agent.register()

        assert agent.cache.keys() == ["order-dashboard-v1"]
        await agent.close()

    @pytest.mark.asyncio
    async def test_closed_agent_cannot_register(self, make_agent):
        agent = make_agent()
        await agent.close()

        with pytest.raises(WorkerRegistrationError):
            await agent.register()
        assert agent.lifecycle == AgentLifecycle.CLOSED

    @pytest.mark.asyncio
    async def test_close_stops_sync(self, make_agent, scheduler):
        agent = make_agent()
        await agent.register()

        await agent.close()

        assert agent.lifecycle == AgentLifecycle.CLOSED
        assert scheduler.pending() == []


class TestResourceCache:

    @pytest.mark.asyncio
    async def test_cached_resources_served_offline(self, agent, shell_server):
        shell_server.offline = True

        response = await agent.cache.fetch("/")

        assert response.from_cache is True
        assert response.status_code == 200
        assert json.loads(response.content) == {"path": "/"}

    @pytest.mark.asyncio
    async def test_uncached_resource_offline_is_503(self, agent, shell_server):
        shell_server.offline = True

        response = await agent.cache.fetch("/orders")

        assert response.status_code == 503
        assert response.content == b"Offline"

    @pytest.mark.asyncio
    async def test_favicon_offline_is_empty_404(self, agent, shell_server):
        shell_server.offline = True

        response = await agent.cache.fetch("/favicon.ico")

        assert response.status_code == 404
        assert response.content == b""

    @pytest.mark.asyncio
    async def test_cache_miss_goes_to_network(self, agent, shell_server):
        response = await agent.cache.fetch("/orders")

        assert response.from_cache is False
        assert response.status_code == 200
        assert shell_server.requests[-1] == "/orders"


class TestMessages:

    @pytest.mark.asyncio
    async def test_new_notification_plays_and_shows_alert(self, agent, agent_audio):
        agent.post_message(encode_message(NewNotification(data=NewNotificationData(message="New order from Ada"))))
        await agent.join()

        assert agent.is_sound_playing is True
        assert agent_audio.clips_played == 1
        [shown] = agent.alerts.visible()
        assert shown.payload.title == "🔔 New Order!"
        assert shown.payload.body == "New order from Ada"

    @pytest.mark.asyncio
    async def test_stop_sound(self, agent, agent_audio):
        agent.post_message(encode_message(PlaySound()))
        agent.post_message(encode_message(StopSound()))
        await agent.join()

        assert agent.is_sound_playing is False
        assert agent_audio.stops == 1

    @pytest.mark.asyncio
    async def test_blocked_audio_delegated_to_foregrounds(self, agent, agent_audio):
        agent_audio.reject_clip = True
        port = agent.connect_client("/orders")

        agent.post_message({"type": "PLAY_SOUND"})
        await agent.join()

        assert agent.is_sound_playing is False
        [message] = drain_inbox(port)
        assert isinstance(message, PlaySound)
        assert message.data.background is True

    @pytest.mark.asyncio
    async def test_unknown_and_malformed_messages_ignored(self, agent, agent_audio):
        agent.post_message('{"type": "SELF_DESTRUCT"}')
        agent.post_message("not json at all")
        agent.post_message({"type": "NEW_NOTIFICATION", "data": {"message": 42}})
        await agent.join()

        assert agent_audio.clips_played == 0
        assert agent.alerts.visible() == []
        assert agent.lifecycle == AgentLifecycle.RUNNING


class TestBackgroundSync:

    @pytest.mark.asyncio
    async def test_periodic_check_broadcast_to_clients(self, agent, scheduler):
        first = agent.connect_client("/orders")
        second = agent.connect_client("/")

        scheduler.advance(30)

        for port in (first, second):
            [message] = drain_inbox(port)
            assert isinstance(message, CheckNotifications)
            assert message.data.background is True

    @pytest.mark.asyncio
    async def test_no_clients_skips_check(self, agent):
        assert agent.check_for_new_notifications() == 0

    @pytest.mark.asyncio
    async def test_disable_and_enable_background_sync(self, agent, scheduler):
        port = agent.connect_client("/orders")

        agent.post_message(encode_message(DisableBackgroundSync()))
        await agent.join()
        scheduler.advance(60)
        assert agent.background_sync_active is False
        assert drain_inbox(port) == []

        agent.post_message({"type": "ENABLE_BACKGROUND_SYNC"})
        await agent.join()
        scheduler.advance(30)
        assert len(drain_inbox(port)) == 1

    @pytest.mark.asyncio
    async def test_disconnected_client_receives_nothing(self, agent, scheduler):
        port = agent.connect_client("/orders")
        agent.disconnect_client(port)

        scheduler.advance(30)

        assert port.inbox.empty()


class TestPush:

    @pytest.mark.asyncio
    async def test_empty_push_uses_defaults(self, agent):
        shown = await agent.handle_push(None)
        wire = shown.to_dict()

        assert wire["title"] == "New Order Received!"
        assert wire["body"] == "You have a new order"
        assert wire["icon"] == "/favicon.ico"
        assert wire["tag"] == "new-order"
        assert wire["requireInteraction"] is True
        assert [a["action"] for a in wire["actions"]] == ["view", "dismiss"]
        assert wire["data"]["url"] == "/orders"

    @pytest.mark.asyncio
    async def test_unreadable_push_falls_back_to_defaults(self, agent):
        shown = await agent.handle_push(b"{definitely not json")

        assert shown.payload.title == "New Order Received!"

    @pytest.mark.asyncio
    async def test_push_details_rendered(self, agent):
        shown = await agent.handle_push(json.dumps({
            "orderId": "o-1",
            "orderNumber": 1042,
            "customerName": "Ada",
            "amount": 31.5,
        }))

        assert shown.payload.title == "New Order #1042"
        assert shown.payload.body == "Order from Ada - 31.5"
        assert shown.to_dict()["data"] == {"url": "/orders", "orderId": "o-1", "orderNumber": "1042"}

    @pytest.mark.asyncio
    async def test_same_tag_replaces_open_alert(self, agent):
        await agent.handle_push(None)
        await agent.handle_push(None)

        assert len(agent.alerts.visible()) == 1

    @pytest.mark.asyncio
    async def test_push_suppressed_without_permission(self, make_agent):
        agent = make_agent(permission=AlertPermission.DEFAULT)
        await agent.register()

        assert await agent.handle_push(None) is None
        await agent.close()


class TestAlertClicks:

    @pytest.mark.asyncio
    async def test_dismiss_only_closes(self, agent):
        shown = await agent.handle_push(None)

        assert agent.handle_alert_click(shown.id, "dismiss") is None
        assert agent.alerts.visible() == []
        assert agent.opened_windows == []

    @pytest.mark.asyncio
    async def test_view_opens_orders(self, agent):
        shown = await agent.handle_push(None)

        assert agent.handle_alert_click(shown.id, "view") == "/orders"
        assert agent.opened_windows == ["/orders"]

    @pytest.mark.asyncio
    async def test_default_click_focuses_open_orders_view(self, agent):
        agent.connect_client("/")
        orders_view = agent.connect_client("/orders?tab=active")
        shown = await agent.handle_push(None)

        assert agent.handle_alert_click(shown.id) == "/orders?tab=active"
        assert orders_view.focused is True
        assert agent.opened_windows == []

    @pytest.mark.asyncio
    async def test_default_click_without_orders_view_opens_one(self, agent):
        shown = await agent.handle_push(None)

        assert agent.handle_alert_click(shown.id) == "/orders"
        assert agent.opened_windows == ["/orders"]


class TestAlertCenter:

    def test_denial_is_final(self):
        center = AlertCenter()

        assert center.request_permission(AlertPermission.DENIED) == AlertPermission.DENIED
        assert center.request_permission(AlertPermission.GRANTED) == AlertPermission.DENIED
        assert center.show(PlatformAlertPayload()) is None

    def test_grant(self):
        center = AlertCenter()
        center.request_permission(AlertPermission.GRANTED)

        assert center.show(PlatformAlertPayload()) is not None
