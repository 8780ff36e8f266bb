from __future__ import annotations

import json
import time
import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PayloadError

from .engine import MessagingEngine, Notifier
from .errors import ValidationError
from .events import (
    PRE_AUTH_EVENTS,
    ClientEvent,
    MarkReadIn,
    SendMessageIn,
    ServerEvent,
    TypingIn,
    WsInbound,
    WsOutbound,
)
from .identity import IdentityStore
from .models import make_id, now_ts
from .presence import PresenceTracker
from .presentation import user_summary

LOGGER = logging.getLogger("pairchat.gateway")

CLOSE_SESSION_REPLACED = 4409
CLOSE_HEARTBEAT_TIMEOUT = 1011

_CLOSE = object()


async def ws_send_safe(ws: WebSocket, payload: dict) -> None:
    try:
        await ws.send_text(json.dumps(payload))
    except Exception as e:
        # will be cleaned on next disconnect
        LOGGER.debug("send failed: %s", e)


class Connection:
    """
    One live socket. Events go through an outbox drained by a single writer,
    so a connection sees events in exactly the order they were signaled.
    """

    def __init__(self, ws: Optional[WebSocket] = None, connection_id: Optional[str] = None):
        self.id = connection_id or make_id("conn_")
        self.ws = ws
        self.outbox: asyncio.Queue = asyncio.Queue()
        self.username: Optional[str] = None
        self.last_pong_at = time.monotonic()
        self.closing = False
        self.close_code: Optional[int] = None

    def signal(self, event: ServerEvent, data: Any = None) -> None:
        if self.closing:
            return
        self.outbox.put_nowait(WsOutbound(type=event, data=data).to_wire())

    def request_close(self, code: int) -> None:
        """Close after everything already queued has been sent."""
        if self.closing:
            return
        self.closing = True
        self.close_code = code
        self.outbox.put_nowait(_CLOSE)

    async def pump(self) -> None:
        while True:
            item = await self.outbox.get()
            if item is _CLOSE:
                try:
                    await self.ws.close(code=self.close_code)
                except Exception as e:
                    LOGGER.debug("close failed for %s: %s", self.id, e)
                return
            await ws_send_safe(self.ws, item)


class ConnectionRegistry(Notifier):
    def __init__(self):
        self._connections: Dict[str, Connection] = {}

    def add(self, conn: Connection) -> None:
        self._connections[conn.id] = conn

    def remove(self, connection_id: str) -> Optional[Connection]:
        return self._connections.pop(connection_id, None)

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def __len__(self) -> int:
        return len(self._connections)

    def notify(self, connection_id: str, event: ServerEvent, data: Any = None) -> None:
        conn = self._connections.get(connection_id)
        if conn is not None:
            conn.signal(event, data)

    def broadcast(self, event: ServerEvent, data: Any = None) -> None:
        for conn in list(self._connections.values()):
            conn.signal(event, data)


class RealtimeGateway:
    """
    Binds sockets to the presence tracker and the messaging engine.

    Inbound frames: {"type": <ClientEvent>, "data": ...}
    Outbound frames: {"type": <ServerEvent>, "data": ...}
    """

    def __init__(
        self,
        identity: IdentityStore,
        presence: PresenceTracker,
        engine: MessagingEngine,
        registry: ConnectionRegistry,
        heartbeat_interval: float = 20,
        heartbeat_timeout: float = 45,
        clock=now_ts,
    ):
        self.identity = identity
        self.presence = presence
        self.engine = engine
        self.registry = registry
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.clock = clock

        self._handlers: Dict[ClientEvent, Callable[[Connection, Any], None]] = {
            ClientEvent.AUTHENTICATE: self._on_authenticate,
            ClientEvent.REQUEST_USER_LIST: self._on_request_user_list,
            ClientEvent.LOAD_CONVERSATION: self._on_load_conversation,
            ClientEvent.SEND_MESSAGE: self._on_send_message,
            ClientEvent.TYPING: self._on_typing,
            ClientEvent.MARK_AS_READ: self._on_mark_as_read,
            ClientEvent.PONG: self._on_pong,
        }
        missing = set(ClientEvent) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for client events: {sorted(e.value for e in missing)}")

    # =========================
    # Connection lifecycle
    # =========================
    def open(self, ws: Optional[WebSocket] = None) -> Connection:
        conn = Connection(ws)
        self.registry.add(conn)
        LOGGER.info("Socket connected: %s", conn.id)
        return conn

    def close(self, conn: Connection) -> None:
        self.registry.remove(conn.id)
        self._drop_session(conn)
        LOGGER.info("Socket disconnected: %s", conn.id)

    def _drop_session(self, conn: Connection) -> None:
        if conn.username is None:
            return
        conn.username = None
        username = self.presence.detach(conn.id)
        if username is None:
            return
        self.registry.broadcast(ServerEvent.USER_STATUS_CHANGED, {
            "username": username,
            "online": False,
            "lastSeen": self.presence.last_seen(username),
        })
        LOGGER.info("User disconnected: %s", username)

    async def serve(self, ws: WebSocket) -> None:
        await ws.accept()
        conn = self.open(ws)
        pump_task = asyncio.create_task(conn.pump())
        heartbeat_task = asyncio.create_task(self.heartbeat(conn))
        try:
            while True:
                message = await ws.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    LOGGER.debug("Dropping binary frame from %s", conn.id)
                    continue
                self.handle_text(conn, raw)
        except WebSocketDisconnect:
            pass
        finally:
            heartbeat_task.cancel()
            self.close(conn)
            pump_task.cancel()

    async def heartbeat(self, conn: Connection) -> None:
        while not conn.closing:
            await asyncio.sleep(self.heartbeat_interval)
            if conn.closing:
                break
            if (time.monotonic() - conn.last_pong_at) > self.heartbeat_timeout:
                LOGGER.info("Heartbeat timeout for %s", conn.id)
                conn.request_close(CLOSE_HEARTBEAT_TIMEOUT)
                break
            conn.signal(ServerEvent.PING, {"ts": self.clock()})

    # =========================
    # Dispatch
    # =========================
    def handle_text(self, conn: Connection, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            LOGGER.debug("Dropping non-JSON frame from %s", conn.id)
            return
        if not isinstance(frame, dict):
            LOGGER.debug("Dropping non-object frame from %s", conn.id)
            return
        self.handle(conn, frame)

    def handle(self, conn: Connection, frame: Dict[str, Any]) -> None:
        try:
            inbound = WsInbound.model_validate(frame)
            event = ClientEvent(inbound.type)
        except (PayloadError, ValueError):
            LOGGER.debug("Dropping unknown frame type %r from %s", frame.get("type"), conn.id)
            return

        if event not in PRE_AUTH_EVENTS and conn.username is None:
            LOGGER.debug("Ignoring %s from unauthenticated %s", event.value, conn.id)
            return

        try:
            self._handlers[event](conn, inbound.data)
        except ValidationError as e:
            conn.signal(ServerEvent.ERROR, {"error": e.message})
        except PayloadError:
            conn.signal(ServerEvent.ERROR, {"error": f"Malformed {event.value} payload"})

    @staticmethod
    def _field(data: Any, *names: str) -> Optional[str]:
        if isinstance(data, str):
            return data
        if isinstance(data, dict):
            for name in names:
                value = data.get(name)
                if isinstance(value, str):
                    return value
        return None

    def _on_authenticate(self, conn: Connection, data: Any) -> None:
        username = self._field(data, "username")
        if conn.username is not None and (username or "").lower() != conn.username.lower():
            self._drop_session(conn)

        attachment = self.presence.attach(conn.id, username) if username else None
        if attachment is None:
            conn.signal(ServerEvent.AUTH_FAILED)
            return

        conn.username = attachment.user.username
        for evicted_id in attachment.evicted:
            old = self.registry.get(evicted_id)
            if old is None:
                continue
            old.username = None
            old.signal(ServerEvent.SESSION_REPLACED)
            old.request_close(CLOSE_SESSION_REPLACED)

        self.registry.broadcast(ServerEvent.USER_STATUS_CHANGED, {
            "username": conn.username,
            "online": True,
        })
        LOGGER.info("User authenticated: %s", conn.username)

    def _on_request_user_list(self, conn: Connection, data: Any) -> None:
        now = self.clock()
        users = [
            user_summary(user, self.presence, now)
            for user in self.identity.all()
            if user.username != conn.username
        ]
        conn.signal(ServerEvent.USER_LIST, users)

    def _on_load_conversation(self, conn: Connection, data: Any) -> None:
        other = self._field(data, "otherUsername", "username")
        history = self.engine.load_history(conn.username, other)
        conn.signal(ServerEvent.CONVERSATION_LOADED, history.to_wire())

    def _on_send_message(self, conn: Connection, data: Any) -> None:
        payload = SendMessageIn.model_validate(data or {})
        self.engine.send(conn.username, payload.recipient, payload.text, payload.media, payload.type)

    def _on_typing(self, conn: Connection, data: Any) -> None:
        payload = TypingIn.model_validate(data or {})
        self.engine.set_typing(conn.username, payload.recipient, payload.is_typing)

    def _on_mark_as_read(self, conn: Connection, data: Any) -> None:
        payload = MarkReadIn.model_validate(data or {})
        self.engine.mark_read(payload.conversation_id, conn.username)

    def _on_pong(self, conn: Connection, data: Any) -> None:
        conn.last_pong_at = time.monotonic()
