from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any, TypeVar

import socketio

from .events import ChannelError, ConnectionDown, ConnectionUp, decode_event
from .exceptions import ProtocolError
from .models import MessageKind
from .socket_config import SocketConfig
from .util.asyncio import cancel_suppress, ensure_task
from .util.events import AsyncEventHub, Listener, Subscription

logger = logging.getLogger(__name__)

E = TypeVar("E")

ClientFactory = Callable[[SocketConfig], socketio.AsyncClient]

# Disconnect reasons after which the client library does not reconnect.
_FINAL_REASONS = ("client disconnect", "server disconnect")


def create_client(config: SocketConfig) -> socketio.AsyncClient:
    """Socket.IO client with the reconnection policy taken from `config`."""

    return socketio.AsyncClient(
        # reconnection_attempts=0 means "forever" to the library.
        reconnection=config.reconnect and config.reconnect_attempts > 0,
        reconnection_attempts=config.reconnect_attempts,
        reconnection_delay=config.reconnect_delay_s,
        reconnection_delay_max=config.reconnect_delay_max_s,
        randomization_factor=config.reconnect_randomization,
        handle_sigint=False,
        request_timeout=config.connect_timeout_s,
    )


def _rejection_message(data: dict[str, Any]) -> str:
    msg = data.get("message")
    if isinstance(msg, str) and msg:
        return msg
    return "connection rejected"


class SyncChannel:
    """
    Persistent push connection (Socket.IO via python-socketio).

    - `connect(token)` opens at most one connection; calling it while connected or
      while retrying is a no-op. It never raises: failures are reported as events
      and, when enabled, retried with the client library's exponential backoff.
    - Outbound actions are fire-and-forget. While disconnected they are logged and
      dropped.
    - Inbound events are decoded once into the variants in `pyonionchat.events` and
      published on `events`, keyed by variant class. A payload that fails to decode
      is logged and dropped; it never takes the connection down.

    Handlers registered on the client run as library tasks and must not take
    `_connect_lock`, which `connect()` holds while the client is connecting.
    """

    def __init__(
        self,
        config: SocketConfig | None = None,
        *,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.config = config or SocketConfig()
        self.events = AsyncEventHub()
        self._client_factory: ClientFactory = client_factory or create_client

        self._sio: socketio.AsyncClient | None = None
        self._task: asyncio.Task[None] | None = None
        self._shutdown_task: asyncio.Task[None] | None = None
        self._closed = True
        self._rejected = False
        self._retrying = False

        self._connect_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        sio = self._sio
        return sio is not None and sio.connected

    @property
    def sid(self) -> str | None:
        sio = self._sio
        if sio is None or not sio.connected:
            return None
        return sio.get_sid()

    def subscribe(self, kind: type[E], listener: Listener[E]) -> Subscription[E]:
        return self.events.subscribe(kind, listener)

    # Lifecycle

    async def connect(self, token: str) -> None:
        async with self._connect_lock:
            if self._sio is not None:
                return
            self._closed = False
            self._rejected = False
            self._retrying = False
            sio = self._client_factory(self.config)
            self._bind(sio)
            self._sio = sio
            try:
                await self._open(sio, token, retry=False)
            except socketio.exceptions.ConnectionError as e:
                if self._rejected:
                    return
                will_retry = self._can_reconnect()
                logger.warning("push channel connect failed: %s", e)
                self._retrying = will_retry
                if not will_retry:
                    self._sio = None
                await self.events.emit(ConnectionDown(reason=str(e), will_reconnect=will_retry))
                if will_retry:
                    self._task = ensure_task(
                        self._run(sio, token, retry=True), name="pyonionchat.push_channel"
                    )
                return
            self._task = ensure_task(
                self._run(sio, token, retry=False), name="pyonionchat.push_channel"
            )
        logger.info("push channel connected")

    async def close(self) -> None:
        self._closed = True
        async with self._connect_lock:
            sio, self._sio = self._sio, None
            task, self._task = self._task, None
            was_connected = sio is not None and sio.connected
            if sio is not None:
                with contextlib.suppress(Exception):
                    await sio.shutdown()
        await cancel_suppress(task)
        if sio is None:
            return

        logger.info("push channel closed")
        if was_connected:
            await self.events.emit(
                ConnectionDown(reason="closed by client", will_reconnect=False)
            )

    def _can_reconnect(self) -> bool:
        return (
            not self._closed and self.config.reconnect and self.config.reconnect_attempts > 0
        )

    async def _open(self, sio: socketio.AsyncClient, token: str, *, retry: bool) -> None:
        await sio.connect(
            self.config.url,
            headers=dict(self.config.headers),
            auth={"token": token},
            transports=["websocket", "polling"],
            wait_timeout=self.config.connect_timeout_s,
            retry=retry,
        )

    async def _run(self, sio: socketio.AsyncClient, token: str, *, retry: bool) -> None:
        try:
            if retry:
                await self._open(sio, token, retry=True)
            # Returns once the client is down for good (closed, final disconnect, or
            # reconnection exhausted).
            await sio.wait()
        except socketio.exceptions.ConnectionError as e:
            logger.warning("push channel retry failed: %s", e)

        if self._sio is not sio:
            # Closed, rejected or finally disconnected; already reported.
            return
        self._sio = None
        self._retrying = False
        if self._closed:
            return
        logger.warning(
            "giving up on push channel after %d attempts", self.config.reconnect_attempts
        )
        await self.events.emit(
            ChannelError(message="max reconnect attempts reached", code="MAX_RECONNECT_ATTEMPTS")
        )

    # Client handlers

    def _bind(self, sio: socketio.AsyncClient) -> None:
        async def on_connect() -> None:
            if self._sio is not sio or self._closed:
                return
            reconnected = self._retrying
            self._retrying = False
            if reconnected:
                logger.info("push channel reconnected")
            await self.events.emit(ConnectionUp(reconnected=reconnected))

        async def on_disconnect(reason: str | None = None) -> None:
            if self._sio is not sio or self._closed:
                return
            will_retry = reason not in _FINAL_REASONS and self._can_reconnect()
            self._retrying = will_retry
            if not will_retry:
                self._sio = None
            logger.warning("push channel down: %s", reason)
            await self.events.emit(
                ConnectionDown(reason=reason or "connection lost", will_reconnect=will_retry)
            )

        async def on_connect_error(data: Any = None) -> None:
            if self._sio is not sio or self._closed:
                return
            if not isinstance(data, dict):
                # Transport-level failure; the connect or retry path reports it.
                logger.debug("push channel connect error: %s", data)
                return
            message = _rejection_message(data)
            self._rejected = True
            self._retrying = False
            self._sio = None
            logger.warning("push channel rejected: %s", message)
            await self.events.emit(ChannelError(message=message, code="CONNECT_REJECTED"))
            # Stop any retries; a rejected token will not start working by itself.
            self._shutdown_task = ensure_task(sio.shutdown(), name="pyonionchat.push_shutdown")
            task, self._task = self._task, None
            if task is not None:
                task.cancel()

        async def on_event(name: str, *args: Any) -> None:
            if self._sio is not sio:
                return
            await self._dispatch(name, args[0] if args else None)

        sio.on("connect", on_connect)
        sio.on("disconnect", on_disconnect)
        sio.on("connect_error", on_connect_error)
        sio.on("*", on_event)

    async def _dispatch(self, name: str, payload: Any) -> None:
        try:
            event = decode_event(name, payload)
        except ProtocolError as e:
            logger.warning("dropping malformed push event %s: %s", name, e)
            return
        except Exception:
            logger.exception("failed to decode push event %s", name)
            return
        if event is None:
            return
        logger.debug("push event %s", type(event).__name__)
        await self.events.emit(event)

    # Outbound

    async def _send(self, name: str, payload: dict[str, Any]) -> bool:
        sio = self._sio
        if sio is None or not sio.connected:
            logger.warning("push channel not connected; dropping %s", name)
            return False
        try:
            await sio.emit(name, payload)
        except socketio.exceptions.SocketIOError as e:
            logger.warning("failed to send %s: %s", name, e)
            return False
        logger.debug("sent %s", name)
        return True

    async def join_room(self, room_id: str) -> bool:
        return await self._send("join_room", {"roomId": room_id})

    async def leave_room(self, room_id: str) -> bool:
        return await self._send("leave_room", {"roomId": room_id})

    async def send_message(
        self,
        room_id: str,
        encrypted_content: str,
        kind: MessageKind = "text",
        attachments: list[str] | None = None,
    ) -> bool:
        payload: dict[str, Any] = {
            "roomId": room_id,
            "encryptedContent": encrypted_content,
            "messageType": kind,
        }
        if attachments:
            payload["attachments"] = list(attachments)
        return await self._send("send_message", payload)

    async def send_typing(self, room_id: str, is_typing: bool) -> bool:
        return await self._send("typing", {"roomId": room_id, "isTyping": is_typing})

    async def add_reaction(self, message_id: str, emoji: str) -> bool:
        return await self._send("add_reaction", {"messageId": message_id, "emoji": emoji})

    async def remove_reaction(self, message_id: str, emoji: str) -> bool:
        return await self._send("remove_reaction", {"messageId": message_id, "emoji": emoji})

    async def edit_message(self, message_id: str, encrypted_content: str) -> bool:
        return await self._send(
            "edit_message", {"messageId": message_id, "encryptedContent": encrypted_content}
        )

    async def delete_message(self, message_id: str) -> bool:
        return await self._send("delete_message", {"messageId": message_id})

    async def mark_read(self, room_id: str, message_id: str) -> bool:
        return await self._send("mark_read", {"roomId": room_id, "messageId": message_id})
