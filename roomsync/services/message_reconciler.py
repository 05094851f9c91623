# roomsync/services/message_reconciler.py

from __future__ import annotations

import itertools
import uuid
from typing import Iterable, List, Optional, Set, Tuple

from roomsync.core.logging import get_logger
from roomsync.models.models import (
    NEW_MESSAGE,
    DeliveryStatus,
    InboundEvent,
    LocalUser,
    Message,
    utc_now,
)

logger = get_logger(__name__)

# Statuses an optimistic entry can still leave
UNSETTLED = (DeliveryStatus.PENDING, DeliveryStatus.UNCERTAIN, DeliveryStatus.FAILED)

# ============================================================================
# MESSAGE RECONCILER
# ============================================================================

class MessageReconciler:
    """
    Owns a room's message list: history snapshot + optimistic local sends +
    server-confirmed live events, merged into one duplicate-free list.

    Data Structures:
        _messages: Ordered list (append order) of Message
        _ids: Ids currently in the list, for O(1) duplicate checks
        _seeded_ids: Ids that came from the last history snapshot
        _echoed_ids: Server ids of own echoes already settled by the fallback

    Reconciliation of the local user's own messages:
        1. Echo carries the clientId of an optimistic entry -> the entry is
           replaced in place by the server copy (canonical id + timestamp).
        2. Echo without a usable clientId but authored by the local user ->
           dropped; the oldest unsettled optimistic entry with the same text
           is marked delivered and keeps its local id. pending, uncertain
           and failed entries all count as unsettled.
        3. An own echo whose server id or clientId was already seen is a
           repeat and changes nothing.

    Ordering:
        Append order. It approximates send order under normal network
        conditions; no resequencing by sent_at is attempted because the
        server does not guarantee ordering between concurrent senders.
    """

    def __init__(self, local_user: LocalUser, id_prefix: str = "optimistic-") -> None:
        self.local_user = local_user
        self.id_prefix = id_prefix
        self._messages: List[Message] = []
        self._ids: Set[str] = set()
        self._seeded_ids: Set[str] = set()
        self._echoed_ids: Set[str] = set()
        self._counter = itertools.count(1)
        self._live_applied = False

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def get(self, message_id: str) -> Optional[Message]:
        index = self._index_of(message_id)
        return self._messages[index] if index is not None else None

    def pending(self) -> List[Message]:
        """Optimistic entries that have not been acknowledged yet."""
        return [m for m in self._messages if m.provisional and m.delivery in UNSETTLED]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def seed(self, history: Iterable[Message]) -> Tuple[Message, ...]:
        """
        Install the history snapshot.

        Before any live event or local send this replaces the list
        wholesale. If live entries already made it in (history lost the
        race against the channel), they are kept after the snapshot in
        their existing order so nothing already shown is dropped.
        """
        seeded: List[Message] = []
        history_ids: Set[str] = set()
        for message in history:
            if message.id in history_ids:
                continue
            history_ids.add(message.id)
            seeded.append(message)

        if self._live_applied:
            live = [
                m for m in self._messages
                if m.id not in history_ids and m.id not in self._seeded_ids
            ]
            logger.debug("Seeding %d history entries ahead of %d live entries", len(seeded), len(live))
            seeded.extend(live)

        self._messages = seeded
        self._ids = {m.id for m in seeded}
        self._seeded_ids = history_ids
        return self.messages

    def append_optimistic(self, text: str, local_user: Optional[LocalUser] = None) -> Message:
        """
        Append a provisional copy of a message the local user is sending.

        The id uses a prefix the server never issues plus a per-reconciler
        counter and a random suffix, so it cannot collide with any server id
        or with another session's optimistic ids.
        """
        user = local_user or self.local_user
        message = Message(
            id=f"{self.id_prefix}{next(self._counter)}-{uuid.uuid4().hex[:8]}",
            author_id=user.id,
            author_name=user.name,
            text=text,
            sent_at=utc_now(),
            client_id=uuid.uuid4().hex,
            provisional=True,
            delivery=DeliveryStatus.PENDING,
        )
        self._append(message)
        return message

    def apply_server_event(self, event: InboundEvent) -> bool:
        """
        Merge one inbound event into the list.

        Only new_message is handled; every other type is ignored.

        Returns:
            True if the list (or the delivery status of an entry) changed
        """
        if event.type != NEW_MESSAGE:
            return False

        if event.client_id:
            index = self._index_of_client_id(event.client_id)
            if index is not None:
                return self._confirm(index, event)

        if self.local_user.id is not None and event.user_id == self.local_user.id:
            # Our own echo: never rendered twice
            if self._already_echoed(event):
                logger.debug("Repeated echo %s ignored", event.id)
                return False
            delivered = self._mark_echo_delivered(event.text)
            if delivered and event.id is not None:
                self._echoed_ids.add(event.id)
            return delivered

        if event.id is not None and event.id in self._ids:
            logger.debug("Duplicate message %s ignored", event.id)
            return False

        try:
            message = event.to_message()
        except ValueError as e:
            logger.warning("Dropping new_message: %s", e)
            return False

        self._append(message)
        return True

    def mark_pending(self, message_id: str) -> bool:
        return self._set_delivery(message_id, DeliveryStatus.PENDING)

    def mark_uncertain(self, message_id: str) -> bool:
        return self._set_delivery(message_id, DeliveryStatus.UNCERTAIN)

    def mark_failed(self, message_id: str) -> bool:
        return self._set_delivery(message_id, DeliveryStatus.FAILED)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _append(self, message: Message) -> None:
        self._messages.append(message)
        self._ids.add(message.id)
        self._live_applied = True

    def _index_of(self, message_id: str) -> Optional[int]:
        if message_id not in self._ids:
            return None
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        return None

    def _index_of_client_id(self, client_id: str) -> Optional[int]:
        for index, message in enumerate(self._messages):
            if message.provisional and message.client_id == client_id:
                return index
        return None

    def _confirm(self, index: int, event: InboundEvent) -> bool:
        optimistic = self._messages[index]
        try:
            incoming = event.to_message()
        except ValueError as e:
            logger.warning("Cannot confirm %s: %s", optimistic.id, e)
            return False

        if incoming.id in self._ids:
            # Canonical copy is already listed; keep the list duplicate-free
            logger.debug("Server copy %s already present, dropping %s", incoming.id, optimistic.id)
            del self._messages[index]
            self._ids.discard(optimistic.id)
            return True

        confirmed = incoming.model_copy(
            update={
                "author_name": incoming.author_name or optimistic.author_name,
                "delivery": DeliveryStatus.CONFIRMED,
                "provisional": False,
            }
        )
        self._messages[index] = confirmed
        self._ids.discard(optimistic.id)
        self._ids.add(confirmed.id)
        logger.debug("Optimistic %s confirmed as %s", optimistic.id, confirmed.id)
        return True

    def _already_echoed(self, event: InboundEvent) -> bool:
        if event.id is not None and (event.id in self._ids or event.id in self._echoed_ids):
            return True
        if event.client_id:
            return any(m.client_id == event.client_id for m in self._messages)
        return False

    def _mark_echo_delivered(self, text: Optional[str]) -> bool:
        for index, message in enumerate(self._messages):
            if message.provisional and message.delivery in UNSETTLED and message.text == text:
                self._messages[index] = message.model_copy(update={"delivery": DeliveryStatus.DELIVERED})
                return True
        return False

    def _set_delivery(self, message_id: str, status: DeliveryStatus) -> bool:
        index = self._index_of(message_id)
        if index is None:
            return False
        message = self._messages[index]
        if not message.provisional or message.delivery not in UNSETTLED:
            return False
        if message.delivery != status:
            self._messages[index] = message.model_copy(update={"delivery": status})
        return True
