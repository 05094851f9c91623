# roomsync/services/history_loader.py

from __future__ import annotations

from typing import List, Optional

import httpx
from pydantic import ValidationError

from roomsync.core.config import Settings, settings as default_settings
from roomsync.core.errors import HistoryUnavailable
from roomsync.core.logging import get_logger
from roomsync.models.models import HistoryResponse, Message

logger = get_logger(__name__)

# ============================================================================
# HISTORY LOADER
# ============================================================================

class HistoryLoader:
    """
    One-shot fetch of a room's past messages from the REST service.

    Endpoint:
        GET {API_BASE_URL}/api/room/{room_id}/messages
        Response: {"success": true, "message": [{"id", "userId", "text", "sentAt", "authorDisplayName"}]}

    The fetch has no side effect beyond the network read, so it is safe to
    retry. It never blocks the realtime channel; the room session runs both
    concurrently.

    Args:
        settings: Endpoint and timeout configuration
        client: Optional shared httpx.AsyncClient. When omitted, a client is
                created per fetch and closed afterwards.
    """

    def __init__(
        self,
        settings: Settings = default_settings,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings
        self.client = client

    async def fetch_history(self, room_id: str) -> List[Message]:
        """
        Load the ordered history snapshot of a room.

        Args:
            room_id: Room to load

        Returns:
            Messages in server order

        Raises:
            HistoryUnavailable: network error, non-2xx status, malformed body,
                                or a body with success=false
        """
        url = self.settings.history_url(room_id)

        try:
            if self.client is not None:
                response = await self.client.get(url, timeout=self.settings.HISTORY_TIMEOUT)
            else:
                async with httpx.AsyncClient(timeout=self.settings.HISTORY_TIMEOUT) as client:
                    response = await client.get(url)
            response.raise_for_status()
            body = HistoryResponse.model_validate(response.json())
        except httpx.HTTPStatusError as e:
            logger.error("History fetch for room %s returned %s", room_id, e.response.status_code)
            raise HistoryUnavailable(
                f"History request failed with status {e.response.status_code}", room_id
            ) from e
        except httpx.HTTPError as e:
            logger.error("History fetch for room %s failed: %s", room_id, e)
            raise HistoryUnavailable(f"History request failed: {e}", room_id) from e
        except (ValueError, ValidationError) as e:
            # ValueError covers an undecodable JSON body
            logger.error("History for room %s is malformed: %s", room_id, e)
            raise HistoryUnavailable("History response is malformed", room_id) from e

        if not body.success:
            logger.warning("History for room %s reported success=false", room_id)
            raise HistoryUnavailable("History service reported failure", room_id)

        messages = [item.to_message() for item in body.message]
        logger.info("✓ Loaded %d messages for room %s", len(messages), room_id)
        return messages
