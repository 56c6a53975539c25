"""Realtime relay client.

Keeps one outbound websocket to the Supabase Realtime endpoint, joins the
user's relay channel, tracks this machine's presence and records which other
devices (e.g. the mobile app) are online.

Connection events are reported through a single ``on_event`` callback as
RelayEvent values (connecting / subscribed / error / closed).

Wire format is the Phoenix channel protocol (vsn 1.0.0):
    {"topic": str, "event": str, "payload": dict, "ref": str}
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

import aiohttp

from styrby.relay.events import (
    RelayClosed,
    RelayConnecting,
    RelayEvent,
    RelayFailed,
    RelaySubscribed,
)

logger = logging.getLogger(__name__)

RelayEventHandler = Callable[[RelayEvent], None]


class Relay(Protocol):
    """The narrow interface the daemon needs from its outbound connection."""

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    def get_connected_devices(self) -> List[Dict[str, Any]]: ...


def get_channel_name(user_id: str) -> str:
    return f"relay:{user_id}"


def build_websocket_url(base_url: str, anon_key: str) -> str:
    """Turn a project URL (https://xyz.supabase.co) into the Realtime websocket URL."""
    url = base_url.rstrip("/")
    if url.startswith("https://"):
        url = "wss://" + url[len("https://"):]
    elif url.startswith("http://"):
        url = "ws://" + url[len("http://"):]
    return f"{url}/realtime/v1/websocket?apikey={anon_key}&vsn=1.0.0"


class RelayJoinError(Exception):
    """The channel join was refused by the server."""


class RealtimeRelay:
    """
    Relay connection over the Realtime websocket.

    Reconnects with exponential backoff (1s, 2s, 4s ... capped at 30s) up to
    max_reconnect_attempts after a failure or an unexpected close.
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        access_token: str,
        user_id: str,
        device_id: str,
        on_event: RelayEventHandler,
        device_type: str = "cli",
        device_name: str = "CLI",
        platform: str = "unknown",
        heartbeat_interval: float = 15.0,
        connection_timeout: float = 45.0,
        max_reconnect_attempts: int = 10,
    ):
        self.url = url
        self.anon_key = anon_key
        self.access_token = access_token
        self.user_id = user_id
        self.device_id = device_id
        self.device_type = device_type
        self.device_name = device_name
        self.platform = platform
        self.heartbeat_interval = heartbeat_interval
        self.connection_timeout = connection_timeout
        self.max_reconnect_attempts = max_reconnect_attempts

        self._on_event = on_event
        self._topic = f"realtime:{get_channel_name(user_id)}"
        self._state = "disconnected"
        self._closing = False
        self._ref = 0
        self._reconnect_attempts = 0
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._devices: Dict[str, Dict[str, Any]] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> str:
        return self._state

    async def connect(self) -> None:
        """Open the websocket and join the relay channel."""
        if self._state in ("connected", "connecting"):
            logger.debug("Relay already connected or connecting")
            return

        self._closing = False
        self._state = "connecting"
        self._emit(RelayConnecting())

        try:
            await asyncio.wait_for(self._open(), timeout=self.connection_timeout)
        except (asyncio.TimeoutError, aiohttp.ClientError, OSError, RelayJoinError) as e:
            await self._close_transport()
            self._state = "error"
            message = str(e) or "Connection timeout"
            logger.warning(f"Relay connection failed: {message}")
            self._emit(RelayFailed(message))
            self._schedule_reconnect()
            return

        self._state = "connected"
        self._reconnect_attempts = 0
        self._reader_task = asyncio.create_task(self._read_loop())
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info("Connected to relay channel")
        self._emit(RelaySubscribed())

    async def disconnect(self) -> None:
        """Leave the channel and close the websocket."""
        self._closing = True
        for task in (self._reconnect_task, self._heartbeat_task):
            if task is not None and not task.done():
                task.cancel()
        self._reconnect_task = None
        self._heartbeat_task = None

        if self._ws is not None and not self._ws.closed:
            try:
                await self._send(self._topic, "phx_leave", {})
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                logger.debug(f"phx_leave failed: {e}")

        await self._close_transport()

        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
        self._reader_task = None

        self._devices.clear()
        self._state = "disconnected"
        self._emit(RelayClosed("manual disconnect"))
        logger.info("Disconnected from relay channel")

    def get_connected_devices(self) -> List[Dict[str, Any]]:
        """Other devices currently present on the channel."""
        return list(self._devices.values())

    # ------------------------------------------------------------------
    # Connection internals
    # ------------------------------------------------------------------

    async def _open(self) -> None:
        self._session = aiohttp.ClientSession()
        self._ws = await self._session.ws_connect(build_websocket_url(self.url, self.anon_key))

        join_ref = await self._send(
            self._topic,
            "phx_join",
            {
                "config": {
                    "broadcast": {"self": False},
                    "presence": {"key": self.device_id},
                },
                "access_token": self.access_token,
            },
        )

        while True:
            msg = await self._ws.receive()
            if msg.type != aiohttp.WSMsgType.TEXT:
                raise RelayJoinError(f"Channel error: websocket {msg.type.name.lower()}")
            frame = json.loads(msg.data)
            if frame.get("event") == "phx_reply" and frame.get("ref") == join_ref:
                payload = frame.get("payload") or {}
                if payload.get("status") != "ok":
                    raise RelayJoinError(f"Channel error: {payload.get('response')}")
                break
            self._handle_frame(frame)

        await self._send(
            self._topic,
            "presence",
            {
                "type": "presence",
                "event": "track",
                "payload": {
                    "device_id": self.device_id,
                    "device_type": self.device_type,
                    "user_id": self.user_id,
                    "device_name": self.device_name,
                    "platform": self.platform,
                    "online_at": datetime.now(timezone.utc).isoformat(),
                },
            },
        )

    async def _close_transport(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _send(self, topic: str, event: str, payload: Dict[str, Any]) -> str:
        if self._ws is None:
            raise RuntimeError("Relay websocket is not open")
        self._ref += 1
        ref = str(self._ref)
        await self._ws.send_str(
            json.dumps({"topic": topic, "event": event, "payload": payload, "ref": ref})
        )
        return ref

    async def _read_loop(self) -> None:
        ws = self._ws
        reason = "connection closed"
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        self._handle_frame(json.loads(msg.data))
                    except json.JSONDecodeError:
                        logger.debug("Ignoring non-JSON relay frame")
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    reason = str(ws.exception() or "websocket error")
                    break
        except asyncio.CancelledError:
            raise
        except aiohttp.ClientError as e:
            reason = str(e)

        if self._closing:
            return

        logger.warning(f"Relay closed, will reconnect: {reason}")
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        await self._close_transport()
        self._devices.clear()
        self._state = "reconnecting"
        self._emit(RelayClosed(reason))
        self._schedule_reconnect()

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self._send("phoenix", "heartbeat", {})
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                logger.debug(f"Heartbeat failed: {e}")
                if self._ws is not None:
                    await self._ws.close()
                return

    def _schedule_reconnect(self) -> None:
        if self._closing:
            return
        if self._reconnect_attempts >= self.max_reconnect_attempts:
            logger.error("Max reconnect attempts reached")
            self._emit(RelayFailed("Max reconnect attempts reached"))
            return

        self._state = "reconnecting"
        self._reconnect_attempts += 1
        delay = min(2 ** (self._reconnect_attempts - 1), 30)
        logger.info(f"Reconnecting in {delay}s (attempt {self._reconnect_attempts})")
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if not self._closing:
            await self.connect()

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    def _handle_frame(self, frame: Dict[str, Any]) -> None:
        event = frame.get("event")
        payload = frame.get("payload") or {}

        if event == "presence_state":
            self._devices.clear()
            self._add_presences(payload)
        elif event == "presence_diff":
            self._add_presences(payload.get("joins") or {})
            for entry in (payload.get("leaves") or {}).values():
                for meta in entry.get("metas", []):
                    self._devices.pop(meta.get("device_id"), None)
        elif event == "phx_error":
            logger.warning(f"Relay channel error: {payload}")

    def _add_presences(self, presences: Dict[str, Any]) -> None:
        for entry in presences.values():
            for meta in entry.get("metas", []):
                device_id = meta.get("device_id")
                if device_id and device_id != self.device_id:
                    self._devices[device_id] = {
                        k: v for k, v in meta.items() if k != "phx_ref"
                    }

    def _emit(self, event: RelayEvent) -> None:
        try:
            self._on_event(event)
        except Exception as e:
            logger.warning(f"Relay event handler failed: {e}")
