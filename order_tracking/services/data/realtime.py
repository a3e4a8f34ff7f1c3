"""
Supabase Realtime Channel

Minimal Phoenix-channel client for ``postgres_changes`` events over
websockets. One ``RealtimeChannel`` is one socket with one joined topic; it
does not reconnect by itself. Any failure is reported once through the
status callback and the channel ends, leaving the retry decision to the
change feed subscriber.

Protocol:
    -> {"topic": "realtime:<name>", "event": "phx_join", "payload": {...}, "ref": "1"}
    <- {"event": "phx_reply", "payload": {"status": "ok"}, "ref": "1"}
    <- {"event": "postgres_changes", "payload": {"data": {"table", "type", "record"}}}
    -> {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": "n"}
"""

import asyncio
import itertools
import json
import logging
from typing import Any, Optional

import websockets
from websockets.asyncio.client import ClientConnection, connect

from order_tracking.core.errors import ConnectivityError, PipelineException, data_service_error
from order_tracking.services.data.base import (
    ChannelStatus,
    EventCallback,
    StatusCallback,
    Subscription,
)

logger = logging.getLogger(__name__)


class RealtimeChannel(Subscription):
    """A joined ``postgres_changes`` channel on the Supabase Realtime socket."""

    def __init__(
        self,
        url: str,
        access_token: Optional[str],
        tables: dict[str, str],
        on_event: EventCallback,
        on_status: StatusCallback,
        join_timeout: float = 10.0,
        heartbeat_interval: float = 30.0,
        topic: str = "realtime:order-notifications",
    ):
        self.url = url
        self.access_token = access_token
        self.tables = tables
        self.on_event = on_event
        self.on_status = on_status
        self.join_timeout = join_timeout
        self.heartbeat_interval = heartbeat_interval
        self.topic = topic

        self._refs = itertools.count(1)
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def close(self) -> None:
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    def _report(self, status: ChannelStatus, error: Optional[PipelineException] = None) -> None:
        if self._closed:
            return
        self._closed = status != ChannelStatus.SUBSCRIBED
        self.on_status(status, error)

    # =========================================================================
    # CONNECTION
    # =========================================================================

    async def _run(self) -> None:
        try:
            async with connect(self.url, open_timeout=self.join_timeout, close_timeout=5) as ws:
                await self._join(ws)
                logger.info(f"Realtime channel {self.topic} subscribed")
                self._report(ChannelStatus.SUBSCRIBED)
                await self._pump(ws)
        except asyncio.TimeoutError:
            self._report(
                ChannelStatus.TIMED_OUT,
                ConnectivityError(f"Realtime join not acknowledged within {self.join_timeout:.0f}s"),
            )
        except PipelineException as e:
            self._report(ChannelStatus.CHANNEL_ERROR, e)
        except websockets.exceptions.InvalidStatus as e:
            status_code = e.response.status_code
            self._report(
                ChannelStatus.CHANNEL_ERROR,
                data_service_error(status_code, f"Realtime handshake rejected (HTTP {status_code})"),
            )
        except websockets.exceptions.ConnectionClosed as e:
            self._report(ChannelStatus.CLOSED, ConnectivityError(f"Realtime socket closed: {e}"))
        except (OSError, websockets.exceptions.WebSocketException) as e:
            self._report(
                ChannelStatus.CHANNEL_ERROR,
                ConnectivityError(f"Realtime connection failed: {e.__class__.__name__}: {e}"),
            )

    async def _send(self, ws: ClientConnection, topic: str, event: str, payload: dict[str, Any]) -> str:
        ref = str(next(self._refs))
        await ws.send(json.dumps({"topic": topic, "event": event, "payload": payload, "ref": ref}))
        return ref

    async def _join(self, ws: ClientConnection) -> None:
        changes = [
            {"event": event, "schema": "public", "table": table}
            for table in self.tables
            for event in ("INSERT", "UPDATE")
        ]
        join_ref = await self._send(ws, self.topic, "phx_join", {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": changes,
            },
            "access_token": self.access_token,
        })

        async def wait_for_reply() -> dict[str, Any]:
            while True:
                message = self._decode(await ws.recv())
                if message and message.get("event") == "phx_reply" and message.get("ref") == join_ref:
                    return message.get("payload") or {}

        reply = await asyncio.wait_for(wait_for_reply(), timeout=self.join_timeout)
        if reply.get("status") != "ok":
            response = reply.get("response") or {}
            reason = response.get("reason") or response.get("message") or "join rejected"
            raise data_service_error(0, f"Realtime join failed: {reason}")

    async def _pump(self, ws: ClientConnection) -> None:
        loop = asyncio.get_running_loop()
        next_heartbeat = loop.time() + self.heartbeat_interval

        while True:
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=max(0.0, next_heartbeat - loop.time()))
            except asyncio.TimeoutError:
                await self._send(ws, "phoenix", "heartbeat", {})
                next_heartbeat = loop.time() + self.heartbeat_interval
                continue

            message = self._decode(raw)
            if message is None or message.get("topic") not in (self.topic, "phoenix"):
                continue

            event = message.get("event")
            payload = message.get("payload") or {}
            if event == "postgres_changes":
                self._dispatch(payload.get("data") or {})
            elif event == "phx_error":
                raise ConnectivityError("Realtime channel error")
            elif event == "phx_close":
                self._report(ChannelStatus.CLOSED, ConnectivityError("Realtime channel closed by server"))
                return
            elif event == "system" and payload.get("status") == "error":
                raise data_service_error(0, payload.get("message") or "Realtime system error")

    # =========================================================================
    # EVENTS
    # =========================================================================

    @staticmethod
    def _decode(raw: Any) -> Optional[dict[str, Any]]:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring undecodable realtime frame")
            return None
        return message if isinstance(message, dict) else None

    def _dispatch(self, data: dict[str, Any]) -> None:
        table = self.tables.get(data.get("table"))
        if table is None:
            logger.debug(f"Ignoring change on unexpected table {data.get('table')!r}")
            return
        self.on_event({
            "table": table,
            "eventType": data.get("type") or data.get("eventType"),
            "new": data.get("record") or data.get("new"),
        })
