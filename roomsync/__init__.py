# roomsync/__init__.py
"""Realtime chat room synchronization: history, live channel, optimistic sends, presence."""

from roomsync.core.errors import (
    ChannelDisconnected,
    ConnectionFailed,
    HistoryUnavailable,
    NotAuthenticated,
    RoomSessionClosed,
    RoomSyncError,
    SendUncertain,
)
from roomsync.core.logging import get_room_logger, setup_logging
from roomsync.models.models import (
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
from roomsync.services.room_session import RoomSession

__version__ = "0.1.0"

__all__ = [
    "ChannelConnection",
    "ChannelDisconnected",
    "ConnectionFailed",
    "ConnectionState",
    "DeliveryStatus",
    "HistoryLoader",
    "HistoryUnavailable",
    "InboundEvent",
    "LocalUser",
    "Message",
    "MessageReconciler",
    "NotAuthenticated",
    "PresenceTracker",
    "RoomSession",
    "RoomSessionClosed",
    "RoomSnapshot",
    "RoomSyncError",
    "SendMessageEvent",
    "SendUncertain",
    "get_room_logger",
    "setup_logging",
]
