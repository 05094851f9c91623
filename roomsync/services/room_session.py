# roomsync/services/room_session.py

from __future__ import annotations

import asyncio
from typing import Callable, Dict, Optional, Tuple

from roomsync.core.config import Settings, settings as default_settings
from roomsync.core.errors import (
    ConnectionFailed,
    HistoryUnavailable,
    NotAuthenticated,
    RoomSessionClosed,
    RoomSyncError,
    SendUncertain,
)
from roomsync.core.logging import get_room_logger
from roomsync.models.models import (
    NEW_MESSAGE,
    USER_COUNT_UPDATE,
    USER_JOINED,
    USER_LEFT,
    ConnectionState,
    DeliveryStatus,
    InboundEvent,
    LocalUser,
    Message,
    RoomSnapshot,
    SendMessageEvent,
)
from roomsync.services.channel_connection import ChannelConnection
from roomsync.services.history_loader import HistoryLoader
from roomsync.services.message_reconciler import MessageReconciler
from roomsync.services.presence_tracker import PresenceTracker

UpdateListener = Callable[[RoomSnapshot], None]
ErrorListener = Callable[[RoomSyncError], None]

PRESENCE_EVENTS = (USER_COUNT_UPDATE, USER_JOINED, USER_LEFT)

# ============================================================================
# ROOM SESSION
# ============================================================================

class RoomSession:
    """
    Live state of one chat room for one local user.

    Owns a HistoryLoader, a ChannelConnection, a PresenceTracker and a
    MessageReconciler and wires them together. The rendering layer only
    talks to this class: it passes the identity in, calls send(), and
    re-renders whenever on_update fires.

    Lifecycle:
        session = RoomSession(room_id, LocalUser(id="u1", name="Ann"), on_update=render)
        await session.start()      # history + channel, concurrently
        await session.send("hi")   # optimistic entry first, then the network
        await session.close()      # channel closed, timers cleared

    Or as a scope:
        async with RoomSession(room_id, user) as session:
            ...

    Args:
        room_id: Room to enter
        local_user: Identity supplied by the host (never read from ambient state)
        settings: Configuration; components built here use it too
        history_loader / channel / presence: Injectable collaborators
        on_update: Called with a RoomSnapshot after every state change
        on_error: Called with HistoryUnavailable, ChannelDisconnected,
                  ConnectionFailed or SendUncertain

    Raises:
        NotAuthenticated: room_id or local_user.id missing
    """

    def __init__(
        self,
        room_id: Optional[str],
        local_user: Optional[LocalUser],
        settings: Settings = default_settings,
        history_loader: Optional[HistoryLoader] = None,
        channel: Optional[ChannelConnection] = None,
        presence: Optional[PresenceTracker] = None,
        on_update: Optional[UpdateListener] = None,
        on_error: Optional[ErrorListener] = None,
    ) -> None:
        if not room_id or local_user is None or not local_user.id:
            raise NotAuthenticated("A room id and a signed-in user are required", room_id or None)

        self.room_id = room_id
        self.local_user = local_user
        self.settings = settings
        self.history_loader = history_loader or HistoryLoader(settings)
        self.channel = channel or ChannelConnection(settings)
        self.presence = presence or PresenceTracker(settings.PRESENCE_ACTIVITY_LIMIT)
        self.reconciler = MessageReconciler(local_user, id_prefix=settings.OPTIMISTIC_ID_PREFIX)
        self.on_update = on_update
        self.on_error = on_error
        self.log = get_room_logger(__name__, room_id)

        self.history_loading = False
        self.history_error: Optional[HistoryUnavailable] = None
        self.closed = False

        self._history_task: Optional[asyncio.Task] = None
        self._ack_timers: Dict[str, asyncio.TimerHandle] = {}

        self.channel.on_event(self._handle_event)
        self.channel.on_state_change(self._handle_state_change)
        self.channel.on_error(self._emit_error)

    async def __aenter__(self) -> "RoomSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # State exposed to the rendering layer
    # ------------------------------------------------------------------

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self.reconciler.messages

    @property
    def presence_count(self) -> int:
        return self.presence.count

    @property
    def connection_state(self) -> ConnectionState:
        return self.channel.state

    def snapshot(self) -> RoomSnapshot:
        return RoomSnapshot(
            room_id=self.room_id,
            local_user=self.local_user,
            connection_state=self.channel.state,
            messages=self.reconciler.messages,
            presence_count=self.presence.count,
            history_loading=self.history_loading,
            history_error=self.history_error.message if self.history_error else None,
            pending_sends=len(self.reconciler.pending()),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Load history and open the channel concurrently.

        A history failure is recorded and reported through on_error; it never
        prevents the channel from connecting.

        Raises:
            ConnectionFailed: the channel could not be opened
            RoomSessionClosed: the session was already closed
        """
        self._ensure_open()
        self.log.info("🚀 Entering room as %s", self.local_user.id)

        self._history_task = asyncio.create_task(self._load_history())
        try:
            await self.channel.open(self.room_id, self.local_user)
        except ConnectionFailed as e:
            self.log.error("Channel unavailable: %s", e.message)
            await self._settle_history()
            raise
        await self._settle_history()

    async def retry_history(self) -> None:
        """Fetch the history again, e.g. after a HistoryUnavailable."""
        self._ensure_open()
        if self._history_task is not None and not self._history_task.done():
            await self._history_task
            return
        self._history_task = asyncio.create_task(self._load_history())
        await self._settle_history()

    async def close(self) -> None:
        """
        Leave the room: discard any late history result, clear ack timers
        and close the channel. Idempotent.
        """
        if self.closed:
            return
        self.closed = True

        task, self._history_task = self._history_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        for timer in self._ack_timers.values():
            timer.cancel()
        self._ack_timers.clear()

        await self.channel.close()
        self.channel.on_event(None)
        self.channel.on_state_change(None)
        self.channel.on_error(None)
        self.log.info("Left room")

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, text: str) -> Message:
        """
        Send a chat message.

        The optimistic entry is appended and rendered before the network call,
        so the sender never waits for their own echo. Transport problems are
        not raised: the entry is marked and a SendUncertain goes to on_error.

        Returns:
            The optimistic Message as appended

        Raises:
            ValueError: text is blank
            RoomSessionClosed: the session was closed
        """
        self._ensure_open()
        if not text or not text.strip():
            raise ValueError("Cannot send an empty message")

        message = self.reconciler.append_optimistic(text, self.local_user)
        self._notify()
        await self._transmit(message)
        return message

    async def resend(self, message_id: str) -> Message:
        """
        Retransmit an optimistic message that is uncertain or failed.

        The same correlation token is reused, so a late echo of the first
        attempt still reconciles the entry.

        Raises:
            KeyError: no such message
            ValueError: message is not an unsettled optimistic entry
        """
        self._ensure_open()
        message = self.reconciler.get(message_id)
        if message is None:
            raise KeyError(message_id)
        if not message.provisional or message.delivery not in (DeliveryStatus.UNCERTAIN, DeliveryStatus.FAILED):
            raise ValueError(f"Message {message_id} is not awaiting a retry")

        self.reconciler.mark_pending(message_id)
        self._notify()
        await self._transmit(self.reconciler.get(message_id))
        return self.reconciler.get(message_id)

    async def _transmit(self, message: Message) -> None:
        event = SendMessageEvent(
            room_id=self.room_id,
            user_id=self.local_user.id,
            text=message.text,
            client_id=message.client_id,
        )
        delivered = await self.channel.send(event)
        if self.closed:
            return

        if not delivered:
            if self.reconciler.mark_uncertain(message.id):
                self._notify()
                self._emit_error(
                    SendUncertain(
                        "Message could not be handed to the channel",
                        self.room_id,
                        message_id=message.id,
                        client_id=message.client_id,
                    )
                )
            return

        current = self.reconciler.get(message.id)
        if current is not None and current.delivery == DeliveryStatus.PENDING:
            self._start_ack_timer(message.id)

    def _start_ack_timer(self, message_id: str) -> None:
        existing = self._ack_timers.pop(message_id, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._ack_timers[message_id] = loop.call_later(
            self.settings.SEND_ACK_TIMEOUT, self._ack_timed_out, message_id
        )

    def _ack_timed_out(self, message_id: str) -> None:
        self._ack_timers.pop(message_id, None)
        message = self.reconciler.get(message_id)
        if self.closed or message is None or message.delivery != DeliveryStatus.PENDING:
            return

        self.log.warning("No echo for %s after %.1fs", message_id, self.settings.SEND_ACK_TIMEOUT)
        self.reconciler.mark_failed(message_id)
        self._notify()
        self._emit_error(
            SendUncertain(
                "No delivery acknowledgment received",
                self.room_id,
                message_id=message_id,
                client_id=message.client_id,
            )
        )

    def _settle_ack_timers(self) -> None:
        for message_id in list(self._ack_timers):
            message = self.reconciler.get(message_id)
            if message is None or message.delivery != DeliveryStatus.PENDING:
                self._ack_timers.pop(message_id).cancel()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _handle_event(self, event: InboundEvent) -> None:
        if self.closed:
            return

        if event.type == NEW_MESSAGE:
            changed = self.reconciler.apply_server_event(event)
            if changed:
                self._settle_ack_timers()
        elif event.type in PRESENCE_EVENTS:
            changed = self.presence.apply(event)
        else:
            self.log.debug("Ignoring event type %r", event.type)
            return

        if changed:
            self._notify()

    def _handle_state_change(self, state: ConnectionState) -> None:
        if not self.closed:
            self._notify()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def _load_history(self) -> None:
        self.history_loading = True
        self.history_error = None
        self._notify()
        try:
            history = await self.history_loader.fetch_history(self.room_id)
        except HistoryUnavailable as e:
            if self.closed:
                return
            self.history_loading = False
            self.history_error = e
            self._notify()
            self._emit_error(e)
            return

        if self.closed:
            # Caller left the room while the fetch was in flight
            return
        self.reconciler.seed(history)
        self.history_loading = False
        self._notify()

    async def _settle_history(self) -> None:
        task = self._history_task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            if not self.closed:
                raise

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self.closed:
            raise RoomSessionClosed("Room session is closed", self.room_id)

    def _notify(self) -> None:
        if self.on_update is None:
            return
        try:
            self.on_update(self.snapshot())
        except Exception:
            self.log.exception("Update listener failed")

    def _emit_error(self, error: RoomSyncError) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(error)
        except Exception:
            self.log.exception("Error listener failed")
