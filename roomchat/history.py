# =============================================================================
# roomchat -- History Loader
# =============================================================================

from __future__ import annotations

import asyncio

from ._logging import logger
from .constants import HISTORY_PAGE_SIZE, HISTORY_TIMEOUT
from .errors import ChatTimeoutError, HistoryUnavailableError, RoomApiError
from .rooms import RoomApiClient
from .types import Message


class HistoryLoader:
    """One-shot fetch of a room's stored messages.

    No retry here; whether to try again is the caller's decision.
    """

    def __init__(
        self,
        api: RoomApiClient,
        *,
        page_size: int = HISTORY_PAGE_SIZE,
        timeout: float = HISTORY_TIMEOUT,
    ) -> None:
        self._api = api
        self._page_size = page_size
        self._timeout = timeout

    async def load(self, room_id: str, *, timeout: float | None = None) -> list[Message]:
        """Return the room's messages, oldest first.

        Raises:
            HistoryUnavailableError: Network or server error.
            ChatTimeoutError: The request took longer than *timeout*.
        """
        limit = self._timeout if timeout is None else timeout
        try:
            messages = await asyncio.wait_for(
                self._api.fetch_history(room_id, size=self._page_size),
                timeout=limit,
            )
        except asyncio.TimeoutError:
            raise ChatTimeoutError(f"History for {room_id} timed out after {limit}s") from None
        except RoomApiError as exc:
            raise HistoryUnavailableError(exc.reason) from exc
        logger.debug("Loaded %d history messages for %s", len(messages), room_id)
        return messages
