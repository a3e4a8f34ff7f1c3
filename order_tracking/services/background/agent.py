"""
Background Delivery Agent

A worker context that outlives any single foreground session: it keeps a
cache of shell resources for offline rendering, turns push payloads into
platform alerts, and periodically asks connected foreground sessions to
re-check their notifications. It never queries the data service itself.

Lifecycle:
    installing -> installed -> activating -> running -> closed

Coordination with foreground sessions is JSON message passing only:
foregrounds call ``post_message`` (queued, handled in order), and the agent
writes to each connected ``ClientPort``'s queue.

Usage:
    agent = BackgroundAgent(audio, scheduler, cache, AlertCenter(permission), clip)
    await agent.register()
    port = agent.connect_client("/orders")
    agent.post_message('{"type": "NEW_NOTIFICATION", "data": {"message": "..."}}')
"""

import asyncio
import itertools
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

import httpx

from order_tracking.core.config import AlertPermission
from order_tracking.core.errors import PlaybackRejected, WorkerRegistrationError
from order_tracking.core.scheduling import BaseScheduler, TaskTracker, TimerHandle
from order_tracking.services.alerts.audio import BaseAudioBackend
from order_tracking.services.background.protocol import (
    AlertData,
    CheckNotifications,
    DisableBackgroundSync,
    EnableBackgroundSync,
    MessageData,
    NewNotification,
    PlatformAlertPayload,
    PlaySound,
    PushMessage,
    StopSound,
    build_push_alert,
    encode_message,
    parse_worker_message,
)

logger = logging.getLogger(__name__)


class AgentLifecycle(str, Enum):
    NOT_REGISTERED = "not_registered"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    RUNNING = "running"
    CLOSED = "closed"


# =============================================================================
# RESOURCE CACHE
# =============================================================================

@dataclass
class CachedResponse:
    url: str
    status_code: int
    content: bytes
    media_type: Optional[str] = None
    from_cache: bool = False


class ResourceCache:
    """
    Named caches of shell resources, served cache-first.

    When both cache and network fail, favicon requests get an empty 404
    and everything else a 503 "Offline".
    """

    def __init__(
        self,
        base_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self._client = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self._caches: dict[str, dict[str, CachedResponse]] = {}

    def keys(self) -> list[str]:
        return list(self._caches)

    def entries(self, cache_name: str) -> list[str]:
        return list(self._caches.get(cache_name, {}))

    def delete(self, cache_name: str) -> bool:
        return self._caches.pop(cache_name, None) is not None

    def open(self, cache_name: str) -> dict[str, CachedResponse]:
        return self._caches.setdefault(cache_name, {})

    async def add_all(self, cache_name: str, urls: list[str]) -> int:
        """Fetch and store every URL. Returns how many were cached."""
        cache = self.open(cache_name)
        for url in urls:
            try:
                response = await self._client.get(url)
            except httpx.HTTPError as e:
                logger.warning(f"Could not cache {url}: {e.__class__.__name__}")
                continue
            if response.status_code >= 400:
                logger.warning(f"Could not cache {url}: HTTP {response.status_code}")
                continue
            cache[url] = CachedResponse(
                url=url,
                status_code=response.status_code,
                content=response.content,
                media_type=response.headers.get("content-type"),
            )
        return len(cache)

    def match(self, url: str) -> Optional[CachedResponse]:
        for cache in self._caches.values():
            if url in cache:
                hit = cache[url]
                return CachedResponse(hit.url, hit.status_code, hit.content, hit.media_type, from_cache=True)
        return None

    async def fetch(self, url: str) -> CachedResponse:
        cached = self.match(url)
        if cached is not None:
            return cached

        try:
            response = await self._client.get(url)
        except httpx.HTTPError as e:
            logger.info(f"Network fetch failed for {url}: {e.__class__.__name__}")
            if "favicon.ico" in url:
                return CachedResponse(url=url, status_code=404, content=b"")
            return CachedResponse(url=url, status_code=503, content=b"Offline", media_type="text/plain")

        return CachedResponse(
            url=url,
            status_code=response.status_code,
            content=response.content,
            media_type=response.headers.get("content-type"),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


# =============================================================================
# PLATFORM ALERTS
# =============================================================================

@dataclass
class ShownAlert:
    id: str
    payload: PlatformAlertPayload
    shown_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    closed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "shown_at": self.shown_at.isoformat(),
            "closed": self.closed,
            **self.payload.to_wire(),
        }


class AlertCenter:
    """Platform alerts shown by the agent. A new alert replaces an open one with the same tag."""

    def __init__(self, permission: AlertPermission = AlertPermission.DEFAULT):
        self.permission = permission
        self._alerts: dict[str, ShownAlert] = {}

    @property
    def granted(self) -> bool:
        return self.permission == AlertPermission.GRANTED

    def request_permission(self, answer: AlertPermission) -> AlertPermission:
        """Record the operator's answer; a denial is final."""
        if self.permission != AlertPermission.DENIED:
            self.permission = answer
        return self.permission

    def show(self, payload: PlatformAlertPayload) -> Optional[ShownAlert]:
        if not self.granted:
            logger.info(f"Platform alert suppressed (permission {self.permission.value}): {payload.title}")
            return None

        for alert in self._alerts.values():
            if alert.payload.tag == payload.tag and not alert.closed:
                alert.closed = True

        alert = ShownAlert(id=uuid.uuid4().hex[:12], payload=payload)
        self._alerts[alert.id] = alert
        logger.info(f"📱 Platform alert: {payload.title} | {payload.body}")
        return alert

    def get(self, alert_id: str) -> Optional[ShownAlert]:
        return self._alerts.get(alert_id)

    def close(self, alert_id: str) -> bool:
        alert = self._alerts.get(alert_id)
        if alert is None or alert.closed:
            return False
        alert.closed = True
        return True

    def visible(self) -> list[ShownAlert]:
        return [a for a in self._alerts.values() if not a.closed]


# =============================================================================
# CLIENT PORTS
# =============================================================================

class ClientPort:
    """The agent's handle on one connected foreground context."""

    _ids = itertools.count(1)

    def __init__(self, url: str):
        self.id = next(self._ids)
        self.url = url
        self.focused = False
        self.inbox: asyncio.Queue[str] = asyncio.Queue()

    def post(self, raw: str) -> None:
        self.inbox.put_nowait(raw)

    def focus(self) -> None:
        self.focused = True


# =============================================================================
# AGENT
# =============================================================================

class BackgroundAgent:
    """
    Background delivery agent.

    Args:
        audio: Audio backend the agent plays its own alert sound with
        scheduler: Clock for the background sync interval
        cache: Shell resource cache
        alerts: Platform alert surface
        clip: WAV bytes looped while the agent alerts
        cache_name: Current versioned cache name; other caches are deleted on activate
        shell_urls: Resources cached on install
        sync_interval: Seconds between CHECK_NOTIFICATIONS broadcasts
        icon: Icon of platform alerts
    """

    def __init__(
        self,
        audio: BaseAudioBackend,
        scheduler: BaseScheduler,
        cache: ResourceCache,
        alerts: AlertCenter,
        clip: bytes,
        cache_name: str = "order-dashboard-v1",
        shell_urls: Optional[list[str]] = None,
        sync_interval: float = 30.0,
        icon: str = "/favicon.ico",
        orders_url: str = "/orders",
    ):
        self.audio = audio
        self.scheduler = scheduler
        self.cache = cache
        self.alerts = alerts
        self.clip = clip
        self.cache_name = cache_name
        self.shell_urls = shell_urls if shell_urls is not None else ["/"]
        self.sync_interval = sync_interval
        self.icon = icon
        self.orders_url = orders_url

        self.lifecycle = AgentLifecycle.NOT_REGISTERED
        self.clients: list[ClientPort] = []
        self.opened_windows: list[str] = []
        self.is_sound_playing = False
        self.tasks = TaskTracker("agent")

        self._inbox: asyncio.Queue[str] = asyncio.Queue()
        self._sync_handle: Optional[TimerHandle] = None

    @property
    def is_running(self) -> bool:
        return self.lifecycle == AgentLifecycle.RUNNING

    @property
    def background_sync_active(self) -> bool:
        return self._sync_handle is not None and not self._sync_handle.cancelled

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def register(self) -> None:
        """Install then activate. Raises WorkerRegistrationError on failure."""
        try:
            await self.install()
            await self.activate()
        except WorkerRegistrationError:
            if self.lifecycle != AgentLifecycle.CLOSED:
                self.lifecycle = AgentLifecycle.NOT_REGISTERED
            raise
        except (httpx.HTTPError, OSError) as e:
            self.lifecycle = AgentLifecycle.NOT_REGISTERED
            raise WorkerRegistrationError(f"Background agent registration failed: {e}") from e

    async def install(self) -> None:
        if self.lifecycle == AgentLifecycle.CLOSED:
            raise WorkerRegistrationError("Background agent already closed")
        self.lifecycle = AgentLifecycle.INSTALLING
        logger.info("📦 Background agent installing...")
        cached = await self.cache.add_all(self.cache_name, self.shell_urls)
        logger.info(f"📦 Cached {cached}/{len(self.shell_urls)} shell resource(s) in {self.cache_name}")
        self.lifecycle = AgentLifecycle.INSTALLED

    async def activate(self) -> None:
        self.lifecycle = AgentLifecycle.ACTIVATING
        for name in self.cache.keys():
            if name != self.cache_name:
                logger.info(f"🗑️  Deleting old cache: {name}")
                self.cache.delete(name)

        self.tasks.spawn(self._consume_inbox())
        self.start_background_sync()
        self.lifecycle = AgentLifecycle.RUNNING
        logger.info("🔄 Background agent activated")

    async def close(self) -> None:
        if self.lifecycle == AgentLifecycle.CLOSED:
            return
        self.lifecycle = AgentLifecycle.CLOSED
        self.stop_background_sync()
        await self.tasks.close()
        await self.stop_sound()
        await self.cache.aclose()
        self.clients.clear()
        logger.info("Background agent closed")

    # =========================================================================
    # CLIENTS
    # =========================================================================

    def connect_client(self, url: str = "/orders") -> ClientPort:
        port = ClientPort(url)
        self.clients.append(port)
        logger.debug(f"Foreground client {port.id} connected ({url})")
        return port

    def disconnect_client(self, port: ClientPort) -> None:
        if port in self.clients:
            self.clients.remove(port)
            logger.debug(f"Foreground client {port.id} disconnected")

    def broadcast(self, message) -> int:
        raw = encode_message(message)
        for port in self.clients:
            port.post(raw)
        return len(self.clients)

    def open_window(self, url: str) -> str:
        self.opened_windows.append(url)
        logger.info(f"Opening window at {url}")
        return url

    # =========================================================================
    # MESSAGES
    # =========================================================================

    def post_message(self, raw: Union[str, dict[str, Any]]) -> None:
        """Queue a message from a foreground context."""
        if self.lifecycle == AgentLifecycle.CLOSED:
            return
        self._inbox.put_nowait(raw if isinstance(raw, str) else json.dumps(raw))

    async def join(self) -> None:
        """Wait until every queued message has been handled."""
        await self._inbox.join()

    async def _consume_inbox(self) -> None:
        while True:
            raw = await self._inbox.get()
            try:
                await self.handle_message(raw)
            except Exception:
                logger.exception("Background agent failed to handle a message")
            finally:
                self._inbox.task_done()

    async def handle_message(self, raw: Union[str, dict[str, Any]]) -> None:
        message = parse_worker_message(raw)
        if message is None:
            return
        logger.debug(f"Agent received {message.type}")

        if isinstance(message, PlaySound):
            await self.play_sound()
        elif isinstance(message, StopSound):
            await self.stop_sound()
        elif isinstance(message, CheckNotifications):
            self.check_for_new_notifications()
        elif isinstance(message, NewNotification):
            await self.play_sound()
            self.alerts.show(PlatformAlertPayload(
                title="🔔 New Order!",
                body=message.data.message,
                icon=self.icon,
                data=AlertData(url=self.orders_url),
            ))
        elif isinstance(message, EnableBackgroundSync):
            self.start_background_sync()
        elif isinstance(message, DisableBackgroundSync):
            self.stop_background_sync()

    # =========================================================================
    # SOUND
    # =========================================================================

    async def play_sound(self) -> None:
        """Loop the alert clip; if that is blocked, ask the foregrounds to play."""
        if self.is_sound_playing:
            return
        try:
            await self.audio.play_clip(self.clip, loop=True)
        except PlaybackRejected as e:
            delegated = self.broadcast(PlaySound(data=MessageData(background=True)))
            logger.info(f"🔊 Agent audio blocked ({e.message}), delegated to {delegated} client(s)")
            return
        self.is_sound_playing = True
        logger.info("🔊 Background sound started")

    async def stop_sound(self) -> None:
        if not self.is_sound_playing:
            return
        await self.audio.stop()
        self.is_sound_playing = False
        logger.info("🔊 Background sound stopped")

    # =========================================================================
    # BACKGROUND SYNC
    # =========================================================================

    def start_background_sync(self) -> None:
        if self.background_sync_active:
            return
        self._sync_handle = self.scheduler.call_every(self.sync_interval, self.check_for_new_notifications)
        logger.info(f"🔄 Background notification check every {self.sync_interval:.0f}s")

    def stop_background_sync(self) -> None:
        if self._sync_handle is not None:
            self._sync_handle.cancel()
            self._sync_handle = None
            logger.info("🔄 Background notification check stopped")

    def check_for_new_notifications(self) -> int:
        """Ask every connected foreground to re-check. Returns how many were asked."""
        if not self.clients:
            logger.debug("No active clients, skipping notification check")
            return 0
        return self.broadcast(CheckNotifications(data=MessageData(background=True)))

    # =========================================================================
    # PUSH & ALERT CLICKS
    # =========================================================================

    async def handle_push(self, raw: Union[None, str, bytes, dict[str, Any]]) -> Optional[ShownAlert]:
        """Render a push payload as a platform alert, falling back to the defaults."""
        try:
            push = PushMessage.parse(raw)
        except ValueError as e:
            logger.error(f"Error parsing push data: {e}")
            push = None
        return self.alerts.show(build_push_alert(push, icon=self.icon, orders_url=self.orders_url))

    def handle_alert_click(self, alert_id: str, action: Optional[str] = None) -> Optional[str]:
        """
        React to a click on a platform alert.

        Returns the URL that was focused or opened, None for a dismissal.
        """
        self.alerts.close(alert_id)

        if action == "dismiss":
            return None
        if action == "view":
            return self.open_window(self.orders_url)

        for port in self.clients:
            if self.orders_url in port.url:
                port.focus()
                logger.info(f"Focusing foreground client {port.id}")
                return port.url
        return self.open_window(self.orders_url)
