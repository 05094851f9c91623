# roomsync/services/presence_tracker.py

from __future__ import annotations

from collections import deque
from typing import Deque, List

from roomsync.core.logging import get_logger
from roomsync.models.models import (
    USER_COUNT_UPDATE,
    USER_JOINED,
    USER_LEFT,
    InboundEvent,
    PresenceActivity,
)

logger = get_logger(__name__)


class PresenceTracker:
    """
    Number of participants currently connected to the room.

    The server is the single source of truth for the count: only
    user_count_update sets it (last value wins). user_joined and user_left
    are kept as informational activity and never touch the count, so a
    join notice racing a count snapshot cannot double count.
    """

    def __init__(self, activity_limit: int = 50) -> None:
        self.count: int = 0
        self.recent_activity: Deque[PresenceActivity] = deque(maxlen=activity_limit)

    def apply(self, event: InboundEvent) -> bool:
        """Consume a presence event. Returns True when the count changed."""
        if event.type == USER_COUNT_UPDATE:
            if event.count is None or event.count < 0:
                logger.warning("Ignoring user_count_update with count=%r", event.count)
                return False
            changed = event.count != self.count
            self.count = event.count
            return changed

        if event.type in (USER_JOINED, USER_LEFT):
            self.recent_activity.append(
                PresenceActivity(kind=event.type, user_id=event.user_id, name=event.name)
            )
            logger.debug("%s: %s", event.type, event.name or event.user_id)

        return False

    def activity(self) -> List[PresenceActivity]:
        return list(self.recent_activity)

    def reset(self) -> None:
        self.count = 0
        self.recent_activity.clear()
