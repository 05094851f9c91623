# roomsync/services/channel_connection.py

from __future__ import annotations

import asyncio
import inspect
import json
from typing import Any, Awaitable, Callable, Optional, Union
from urllib.parse import urlencode

from pydantic import ValidationError
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from roomsync.core.config import Settings, settings as default_settings
from roomsync.core.errors import ChannelDisconnected, ConnectionFailed, RoomSyncError
from roomsync.core.logging import get_logger, get_room_logger
from roomsync.models.models import (
    ConnectionState,
    InboundEvent,
    LocalUser,
    SendMessageEvent,
)

logger = get_logger(__name__)

EventHandler = Callable[[InboundEvent], Union[None, Awaitable[None]]]
StateListener = Callable[[ConnectionState], None]
ErrorListener = Callable[[RoomSyncError], None]
Connector = Callable[..., Awaitable[Any]]

# Everything a handshake can fail with
TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)

# ============================================================================
# REALTIME CHANNEL CONNECTION
# ============================================================================

class ChannelConnection:
    """
    One live websocket connection to a room's realtime endpoint.

    Protocol:
    =========

    Connect:
        {CHANNEL_URL}?userId=<id>&roomId=<room>&username=<name>

    Client -> Server:
        {"type": "send_message", "roomId": "...", "userId": "...", "text": "...", "clientId": "..."}

    Server -> Client:
        {"type": "new_message", "id": "...", "userId": "...", "name": "...", "text": "...", "sentAt": "..."}
        {"type": "user_count_update", "count": 5}
        {"type": "user_joined", "userId": "...", "name": "..."}
        {"type": "user_left", "userId": "...", "name": "..."}
        Unknown types are passed through to the handler, which ignores them.

    Lifecycle:
    ==========
    idle -> connecting -> connected
    connected --(remote close / error)--> disconnected -> reconnecting --(backoff)--> connecting
    after RECONNECT_MAX_ATTEMPTS failed attempts -> failed (terminal)
    close() from any state -> idle

    A single reader task consumes frames in the order the server sent them
    and hands each one to the single registered handler.

    Args:
        settings: Channel URL, timeouts and reconnect policy
        connector: Coroutine factory returning a websocket connection
                   (websockets.asyncio.client.connect by default)
    """

    def __init__(self, settings: Settings = default_settings, connector: Connector = connect) -> None:
        self.settings = settings
        self.connector = connector
        self.room_id: Optional[str] = None
        self.local_user: Optional[LocalUser] = None
        self.state = ConnectionState.IDLE
        self.log = logger

        self._ws: Any = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closing = False
        self._handler: Optional[EventHandler] = None
        self._state_listener: Optional[StateListener] = None
        self._error_listener: Optional[ErrorListener] = None

    async def __aenter__(self) -> "ChannelConnection":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Listener registration (one of each; re-registering replaces)
    # ------------------------------------------------------------------

    def on_event(self, handler: Optional[EventHandler]) -> None:
        self._handler = handler

    def on_state_change(self, listener: Optional[StateListener]) -> None:
        self._state_listener = listener

    def on_error(self, listener: Optional[ErrorListener]) -> None:
        self._error_listener = listener

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self._ws is not None

    # ------------------------------------------------------------------
    # Open / send / close
    # ------------------------------------------------------------------

    async def open(self, room_id: str, local_user: LocalUser) -> "ChannelConnection":
        """
        Connect to the room channel.

        Calling open() again while the connection is live returns the same
        handle without opening a second socket.

        Raises:
            ConnectionFailed: every attempt failed
        """
        if self._reader_task is not None and not self._reader_task.done():
            return self

        self.room_id = room_id
        self.local_user = local_user
        self._closing = False
        self.log = get_room_logger(__name__, room_id)

        await self._establish(reconnecting=False)
        return self

    async def send(self, event: Union[SendMessageEvent, dict]) -> bool:
        """
        Transmit a client event.

        Never raises transport errors. Returns False when the event could
        not be handed to the transport; the caller decides how to surface
        that (the room session marks the message uncertain).
        """
        payload = event.to_wire() if isinstance(event, SendMessageEvent) else event
        ws = self._ws
        if ws is None or self.state != ConnectionState.CONNECTED:
            self.log.warning("Cannot send %s: channel is %s", payload.get("type"), self.state.value)
            return False

        try:
            await ws.send(json.dumps(payload))
        except (ConnectionClosed, OSError) as e:
            self.log.warning("Send failed, connection closed: %s", e)
            return False
        return True

    async def close(self) -> None:
        """
        Release the connection and stop event delivery.

        Safe to call from any state, any number of times, and from inside
        an event handler.
        """
        if self._closing and self.state == ConnectionState.IDLE:
            return
        self._closing = True

        task, self._reader_task = self._reader_task, None
        ws, self._ws = self._ws, None

        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if ws is not None:
            try:
                await ws.close()
            except (WebSocketException, OSError) as e:
                self.log.debug("Error while closing websocket: %s", e)

        self._set_state(ConnectionState.IDLE)
        if self.room_id is not None:
            self.log.info("✗ Channel closed")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _url(self) -> str:
        query = urlencode(
            {
                "userId": self.local_user.id if self.local_user else "",
                "roomId": self.room_id or "",
                "username": self.local_user.name if self.local_user else "",
            }
        )
        separator = "&" if "?" in self.settings.CHANNEL_URL else "?"
        return f"{self.settings.CHANNEL_URL}{separator}{query}"

    async def _establish(self, reconnecting: bool) -> bool:
        """
        Connect with bounded exponential backoff.

        Returns False if close() was called meanwhile.

        Raises:
            ConnectionFailed: RECONNECT_MAX_ATTEMPTS attempts all failed
        """
        max_attempts = max(1, self.settings.RECONNECT_MAX_ATTEMPTS)
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            # close() may have run while the previous handshake was pending
            if self._closing:
                return False
            if reconnecting or attempt > 1:
                self._set_state(ConnectionState.RECONNECTING)
                delay = self.settings.backoff_delay(attempt)
                self.log.info("Reconnect attempt %d/%d in %.2fs", attempt, max_attempts, delay)
                await asyncio.sleep(delay)
            if self._closing:
                return False

            self._set_state(ConnectionState.CONNECTING)
            try:
                ws = await self.connector(self._url(), open_timeout=self.settings.CONNECT_TIMEOUT)
            except TRANSPORT_ERRORS as e:
                last_error = e
                self.log.warning("Connect attempt %d/%d failed: %s", attempt, max_attempts, e)
                continue

            if self._closing:
                await ws.close()
                return False

            self._ws = ws
            self._set_state(ConnectionState.CONNECTED)
            self._reader_task = asyncio.create_task(self._read_loop(ws))
            self.log.info("✓ Channel connected as %s", self.local_user.id if self.local_user else "?")
            return True

        if self._closing:
            return False
        self._set_state(ConnectionState.FAILED)
        raise ConnectionFailed(
            f"Could not connect to channel after {max_attempts} attempts",
            self.room_id,
            attempts=max_attempts,
        ) from last_error

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                await self._dispatch(raw)
        except ConnectionClosed as e:
            self.log.warning("Channel closed by peer: %s", e)
        except OSError as e:
            self.log.warning("Channel transport error: %s", e)

        if self._closing:
            return

        # Remote side went away: drive the reconnect state machine
        self._ws = None
        self._set_state(ConnectionState.DISCONNECTED)
        self._emit_error(ChannelDisconnected("Channel connection lost", self.room_id))
        try:
            await self._establish(reconnecting=True)
        except ConnectionFailed as e:
            self.log.error("Giving up on channel: %s", e.message)
            self._emit_error(e)

    async def _dispatch(self, raw: Union[str, bytes]) -> None:
        try:
            event = InboundEvent.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            self.log.warning("Dropping malformed frame: %s", e)
            return

        handler = self._handler
        if handler is None:
            return
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            self.log.exception("Event handler failed for %s", event.type)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        self.log.debug("Channel %s -> %s", self.state.value, state.value)
        self.state = state
        if self._state_listener is not None:
            try:
                self._state_listener(state)
            except Exception:
                self.log.exception("State listener failed")

    def _emit_error(self, error: RoomSyncError) -> None:
        if self._error_listener is not None:
            try:
                self._error_listener(error)
            except Exception:
                self.log.exception("Error listener failed")
