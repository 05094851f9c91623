# roomsync/core/errors.py

from __future__ import annotations

from typing import Optional

# ============================================================================
# ERROR TAXONOMY
# ============================================================================

class RoomSyncError(Exception):
    """
    Base class for every error raised or surfaced by roomsync.

    Transport exceptions (httpx, websockets, OSError, timeouts) never leak
    out of a component; they are chained onto one of these instead.

    Attributes:
        message: Human readable description
        room_id: Room the error belongs to, when known
    """

    def __init__(self, message: str, room_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.room_id = room_id


class HistoryUnavailable(RoomSyncError):
    """History fetch failed. Recoverable: the live channel keeps running."""


class ConnectionFailed(RoomSyncError):
    """
    The channel could not be (re)established.

    Raised by ChannelConnection.open() or surfaced to the error listener
    once every reconnect attempt has been used.
    """

    def __init__(self, message: str, room_id: Optional[str] = None, attempts: int = 0) -> None:
        super().__init__(message, room_id)
        self.attempts = attempts


class ChannelDisconnected(RoomSyncError):
    """A live channel dropped. A reconnect is attempted right after."""


class NotAuthenticated(RoomSyncError):
    """Missing identity or room id. The caller must redirect to sign-in."""


class SendUncertain(RoomSyncError):
    """
    A sent message has no observed delivery acknowledgment.

    Only ever surfaced through on_error, never raised from send().
    """

    def __init__(
        self,
        message: str,
        room_id: Optional[str] = None,
        message_id: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> None:
        super().__init__(message, room_id)
        self.message_id = message_id
        self.client_id = client_id


class RoomSessionClosed(RoomSyncError):
    """Operation attempted on a session that has already been closed."""
