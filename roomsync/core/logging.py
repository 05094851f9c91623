# roomsync/core/logging.py

import logging
import sys

from roomsync.core.config import settings


DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(level_name: str | None = None) -> None:
    """
    Configure logging for an application that embeds roomsync.

    The library never calls this itself; its modules only create loggers.
    A host without its own logging setup calls it once at startup:

        import roomsync
        roomsync.setup_logging()

    - Sets root logger level (default: settings.LOG_LEVEL, i.e. the LOG_LEVEL env var)
    - Sends logs to stdout
    - Reduces noise from the websocket and HTTP client libraries
    """
    log_level_name = (level_name or settings.LOG_LEVEL).upper()
    level = getattr(logging, log_level_name, logging.INFO)

    # If logging is already configured (e.g. by the host UI), don't re-add handlers
    root_logger = logging.getLogger()
    if root_logger.handlers:
        root_logger.setLevel(level)
        return

    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(DEFAULT_FORMAT)
    handler.setFormatter(formatter)

    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    # Quiet down noisy libraries
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("websockets.client").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> logging.Logger:
    """
    Helper to get a logger with our app's configuration applied.

    Usage:
        from roomsync.core.logging import get_logger

        logger = get_logger(__name__)
        logger.info("Hello from my module")
    """
    return logging.getLogger(name)


class RoomLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every record with the room it belongs to."""

    def process(self, msg, kwargs):
        return f"[room={self.extra['room_id']}] {msg}", kwargs


def get_room_logger(name: str, room_id: str) -> RoomLoggerAdapter:
    """
    Logger for components that are scoped to a single room.

    Several rooms can be open in one process, so session and channel
    records carry the room id to stay readable when interleaved.
    """
    return RoomLoggerAdapter(logging.getLogger(name), {"room_id": room_id})
