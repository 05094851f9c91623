# roomsync/core/config.py
from __future__ import annotations

import copy
import os

from dotenv import load_dotenv


class Settings:
    """
    Setup environment variables.
        - ROOMSYNC_API_BASE_URL base URL of the REST service that stores room history
        - ROOMSYNC_HISTORY_PATH path template of the history endpoint ({room_id} is substituted)
        - ROOMSYNC_CHANNEL_URL websocket URL of the realtime channel
        - ROOMSYNC_RECONNECT_* bounded reconnect policy for the channel
        - ROOMSYNC_SEND_ACK_TIMEOUT seconds to wait for the server echo of a sent message
    """

    # Load environment variables from the .env file
    load_dotenv()

    API_BASE_URL: str = os.getenv("ROOMSYNC_API_BASE_URL", "http://localhost:3000")
    HISTORY_PATH: str = os.getenv("ROOMSYNC_HISTORY_PATH", "/api/room/{room_id}/messages")
    HISTORY_TIMEOUT: float = float(os.getenv("ROOMSYNC_HISTORY_TIMEOUT", "10"))

    CHANNEL_URL: str = os.getenv("ROOMSYNC_CHANNEL_URL", "ws://localhost:3000/ws")
    CONNECT_TIMEOUT: float = float(os.getenv("ROOMSYNC_CONNECT_TIMEOUT", "10"))
    RECONNECT_MAX_ATTEMPTS: int = int(os.getenv("ROOMSYNC_RECONNECT_MAX_ATTEMPTS", "5"))
    RECONNECT_BASE_DELAY: float = float(os.getenv("ROOMSYNC_RECONNECT_BASE_DELAY", "0.5"))
    RECONNECT_MAX_DELAY: float = float(os.getenv("ROOMSYNC_RECONNECT_MAX_DELAY", "8"))

    SEND_ACK_TIMEOUT: float = float(os.getenv("ROOMSYNC_SEND_ACK_TIMEOUT", "10"))
    OPTIMISTIC_ID_PREFIX: str = os.getenv("ROOMSYNC_OPTIMISTIC_ID_PREFIX", "optimistic-")
    PRESENCE_ACTIVITY_LIMIT: int = int(os.getenv("ROOMSYNC_PRESENCE_ACTIVITY_LIMIT", "50"))

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    def history_url(self, room_id: str) -> str:
        """Absolute URL of the history endpoint for one room."""
        path = self.HISTORY_PATH.format(room_id=room_id)
        return f"{self.API_BASE_URL.rstrip('/')}/{path.lstrip('/')}"

    def backoff_delay(self, attempt: int) -> float:
        """
        Exponential backoff for reconnect attempt number `attempt` (1-based).

        Capped at RECONNECT_MAX_DELAY.
        """
        if attempt <= 1:
            return min(self.RECONNECT_BASE_DELAY, self.RECONNECT_MAX_DELAY)
        return min(self.RECONNECT_BASE_DELAY * (2 ** (attempt - 1)), self.RECONNECT_MAX_DELAY)

    def override(self, **values) -> "Settings":
        """
        Return a copy of these settings with some fields replaced.

        Usage:
            fast = settings.override(RECONNECT_BASE_DELAY=0, SEND_ACK_TIMEOUT=0.05)
        """
        clone = copy.copy(self)
        for key, value in values.items():
            if not hasattr(Settings, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(clone, key, value)
        return clone

settings = Settings()
