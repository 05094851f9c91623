# roomsync/models/models.py
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Literal, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

ANONYMOUS = "Anonymous"
YOU = "You"

# Inbound event types
NEW_MESSAGE = "new_message"
USER_COUNT_UPDATE = "user_count_update"
USER_JOINED = "user_joined"
USER_LEFT = "user_left"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_str(value: Any) -> Any:
    # Some backends issue numeric ids
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    UNCERTAIN = "uncertain"
    FAILED = "failed"
    DELIVERED = "delivered"
    CONFIRMED = "confirmed"


class LocalUser(BaseModel):
    """Identity of the person using this client, supplied by the host UI."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    name: str = ANONYMOUS

    @field_validator("id", mode="before")
    @classmethod
    def normalize_id(cls, value: Any) -> Any:
        return _as_str(value)

    @classmethod
    def from_identity(cls, data: Optional[dict]) -> "LocalUser":
        """
        Build from the stored identity pair {id, username}.

        A missing username falls back to "Anonymous"; a missing id is kept
        as None so the room session can refuse it.
        """
        if not data:
            return cls()
        return cls(id=data.get("id"), name=data.get("username") or ANONYMOUS)


class Message(BaseModel):
    """
    One entry of a room's message list.

    Provisional entries are optimistic copies of a local send; their id
    lives in a namespace the server never issues.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    author_id: str = Field(alias="userId")
    author_name: str = Field(
        default="",
        validation_alias=AliasChoices("name", "authorDisplayName", "author_name"),
        serialization_alias="name",
    )
    text: str
    sent_at: datetime = Field(default_factory=utc_now, alias="sentAt")
    client_id: Optional[str] = Field(default=None, alias="clientId")
    provisional: bool = False
    delivery: DeliveryStatus = DeliveryStatus.CONFIRMED

    @field_validator("id", "author_id", mode="before")
    @classmethod
    def normalize_ids(cls, value: Any) -> Any:
        return _as_str(value)

    @field_validator("sent_at")
    @classmethod
    def normalize_sent_at(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_aware(value)

    def is_own(self, user: LocalUser) -> bool:
        return user.id is not None and self.author_id == user.id

    def author_label(self, user: LocalUser) -> str:
        """Label shown next to the message: "You" for own messages."""
        if self.is_own(user):
            return YOU
        return self.author_name or self.author_id


class InboundEvent(BaseModel):
    """
    Server -> client envelope.

    Which optional fields are present depends on `type`:
        new_message:        id, userId, name, text, sentAt (+ clientId when echoed)
        user_count_update:  count
        user_joined/left:   userId, name
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str
    id: Optional[str] = None
    room_id: Optional[str] = Field(default=None, alias="roomId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    name: Optional[str] = None
    text: Optional[str] = None
    sent_at: Optional[datetime] = Field(default=None, alias="sentAt")
    count: Optional[int] = None
    client_id: Optional[str] = Field(default=None, alias="clientId")

    @field_validator("id", "user_id", "room_id", mode="before")
    @classmethod
    def normalize_ids(cls, value: Any) -> Any:
        return _as_str(value)

    @field_validator("sent_at")
    @classmethod
    def normalize_sent_at(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_aware(value)

    def to_message(self) -> Message:
        if self.id is None or self.user_id is None or self.text is None:
            raise ValueError(f"Incomplete {self.type} event: id, userId and text are required")
        return Message(
            id=self.id,
            author_id=self.user_id,
            author_name=self.name or "",
            text=self.text,
            sent_at=self.sent_at or utc_now(),
            client_id=self.client_id,
        )


class SendMessageEvent(BaseModel):
    """Client -> server envelope for a chat message."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["send_message"] = "send_message"
    room_id: str = Field(alias="roomId")
    user_id: str = Field(alias="userId")
    text: str
    client_id: Optional[str] = Field(default=None, alias="clientId")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class HistoryItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    user_id: str = Field(alias="userId")
    text: str
    sent_at: datetime = Field(alias="sentAt")
    author_display_name: Optional[str] = Field(default=None, alias="authorDisplayName")

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def normalize_ids(cls, value: Any) -> Any:
        return _as_str(value)

    @field_validator("sent_at")
    @classmethod
    def normalize_sent_at(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_aware(value)

    def to_message(self) -> Message:
        return Message(
            id=self.id,
            author_id=self.user_id,
            author_name=self.author_display_name or "",
            text=self.text,
            sent_at=self.sent_at,
        )


class HistoryResponse(BaseModel):
    """Body of GET /api/room/{roomId}/messages."""

    model_config = ConfigDict(extra="ignore")

    success: bool
    message: List[HistoryItem] = Field(default_factory=list)


class PresenceActivity(BaseModel):
    """Informational join/leave notice. Never affects the presence count."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["user_joined", "user_left"]
    user_id: Optional[str] = None
    name: Optional[str] = None
    at: datetime = Field(default_factory=utc_now)


class RoomSnapshot(BaseModel):
    """Read-only view of a room session handed to the rendering layer."""

    model_config = ConfigDict(frozen=True)

    room_id: str
    local_user: LocalUser
    connection_state: ConnectionState
    messages: Tuple[Message, ...] = ()
    presence_count: int = 0
    history_loading: bool = False
    history_error: Optional[str] = None
    pending_sends: int = 0
