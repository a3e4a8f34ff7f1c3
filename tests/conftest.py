"""Pytest configuration and fixtures."""

import asyncio
import os
from typing import Callable, Optional

import httpx
import pytest
import pytest_asyncio

# The API module reads settings at import time
os.environ["ENV_MODE"] = "development"
os.environ["MOCK_LATENCY_SECONDS"] = "0"
os.environ["MOCK_FAILURE_RATE"] = "0"

from order_tracking.core.config import AlertPermission, Settings
from order_tracking.core.errors import PipelineErrors
from order_tracking.core.scheduling import BaseScheduler, TimerHandle
from order_tracking.services.alerts.audio import MockAudioBackend
from order_tracking.services.background.agent import AlertCenter, BackgroundAgent, ResourceCache
from order_tracking.services.data.mock import MockDataService
from order_tracking.session import NotificationSession


# =============================================================================
# MANUAL CLOCK
# =============================================================================

class FakeTimer(TimerHandle):

    def __init__(self, due: float, callback: Callable[[], None], interval: Optional[float] = None):
        self.due = due
        self.callback = callback
        self.interval = interval
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class FakeScheduler(BaseScheduler):
    """Scheduler whose clock only moves when a test calls ``advance``."""

    def __init__(self) -> None:
        self._now = 0.0
        self._timers: list[FakeTimer] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = FakeTimer(self._now + delay, callback)
        self._timers.append(timer)
        return timer

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        timer = FakeTimer(self._now + interval, callback, interval)
        self._timers.append(timer)
        return timer

    def pending(self) -> list[FakeTimer]:
        return [t for t in self._timers if not t.cancelled]

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing due timers in order. Returns how many fired."""
        target = self._now + seconds
        fired = 0
        while True:
            due = [t for t in self.pending() if t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self._now = timer.due
            if timer.interval is None:
                timer.cancel()
            else:
                timer.due += timer.interval
            timer.callback()
            fired += 1
        self._now = target
        self._timers = self.pending()
        return fired


async def drain_loop(rounds: int = 50) -> None:
    """Let spawned tasks run until the loop has nothing left to do."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def settle() -> Callable:
    return drain_loop


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Development settings writing to a per-test data directory."""
    return Settings(
        env_mode="development",
        data_directory=str(tmp_path / "data"),
        mock_latency_seconds=0,
        poll_interval_seconds=30,
        reconnect_delay_seconds=5,
        bell_interval_seconds=2,
        sample_rate=8000,
        agent_sync_interval_seconds=30,
        alert_permission=AlertPermission.GRANTED,
    )


@pytest.fixture
def data_service() -> MockDataService:
    return MockDataService()


@pytest.fixture
def audio() -> MockAudioBackend:
    return MockAudioBackend()


@pytest.fixture
def errors() -> PipelineErrors:
    return PipelineErrors()


class ShellServer:
    """Serves the console shell to the agent's cache; can be taken offline."""

    def __init__(self) -> None:
        self.offline = False
        self.requests: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request.url.path)
        if self.offline:
            raise httpx.ConnectError("network down", request=request)
        if request.url.path in ("/", "/health", "/orders"):
            return httpx.Response(200, json={"path": request.url.path})
        if request.url.path == "/favicon.ico":
            return httpx.Response(200, content=b"\x00\x00\x01\x00")
        return httpx.Response(404)


@pytest.fixture
def shell_server() -> ShellServer:
    return ShellServer()


@pytest.fixture
def make_agent(scheduler, shell_server) -> Callable[..., BackgroundAgent]:
    """Factory for unregistered background agents."""

    def factory(
        audio: Optional[MockAudioBackend] = None,
        permission: AlertPermission = AlertPermission.GRANTED,
    ) -> BackgroundAgent:
        return BackgroundAgent(
            audio=audio or MockAudioBackend(),
            scheduler=scheduler,
            cache=ResourceCache("http://console.test", transport=httpx.MockTransport(shell_server)),
            alerts=AlertCenter(permission),
            clip=b"RIFF-test-clip",
            cache_name="order-dashboard-v1",
            shell_urls=["/", "/health"],
            sync_interval=30,
        )

    return factory


@pytest_asyncio.fixture
async def session(data_service, audio, settings, scheduler, settle):
    """A started foreground session without a background agent."""
    s = NotificationSession(data_service, audio, settings, scheduler)
    await s.start()
    await settle()
    yield s
    await s.close()
