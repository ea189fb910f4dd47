# =============================================================================
# roomchat -- Room REST API Client
# =============================================================================
#
#   POST /api/v1/rooms                      create (room id as body)
#   GET  /api/v1/rooms/{roomId}             join
#   GET  /api/v1/rooms/{roomId}/messages    history (page, size)
# =============================================================================

from __future__ import annotations

from typing import Any

import httpx

from ._logging import logger
from .constants import API_PREFIX, DEFAULT_BASE_URL, HISTORY_PAGE_SIZE, HISTORY_TIMEOUT
from .errors import RoomApiError, RoomExistsError, RoomNotFoundError
from .types import Message


class RoomApiClient:
    """Async client for the chat server's room endpoints.

    Args:
        base_url: HTTP(S) root of the chat server.
        api_prefix: Path of the room API.
        timeout: Default request timeout in seconds.
        client: Pre-built ``httpx.AsyncClient`` (tests pass one with a
            ``MockTransport``). Owned by the caller when given.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        api_prefix: str = API_PREFIX,
        timeout: float = HISTORY_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._prefix = api_prefix
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self._base_url, timeout=timeout)

    async def __aenter__(self) -> RoomApiClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -- Rooms ----------------------------------------------------------------

    async def create_room(self, room_id: str) -> str:
        """Create *room_id*. Returns the room id echoed by the server.

        Raises:
            RoomExistsError: The id is already taken.
            RoomApiError: Any other failure.
        """
        response = await self._request(
            "POST",
            self._prefix,
            content=room_id,
            headers={"Content-Type": "text/plain"},
        )
        if response.status_code == 400:
            raise RoomExistsError("Room already exists!", status_code=400)
        data = self._json(response)
        logger.info("Created room %s", room_id)
        return _room_id_of(data, room_id)

    async def join_room(self, room_id: str) -> str:
        """Check that *room_id* exists. Returns the room id.

        Raises:
            RoomNotFoundError: The server does not know the room.
            RoomApiError: Any other failure.
        """
        response = await self._request("GET", f"{self._prefix}/{room_id}")
        if response.status_code in (400, 404):
            detail = response.text.strip() or "Room not found!"
            raise RoomNotFoundError(detail, status_code=response.status_code)
        data = self._json(response)
        logger.info("Joined room %s", room_id)
        return _room_id_of(data, room_id)

    async def fetch_history(
        self,
        room_id: str,
        *,
        page: int = 0,
        size: int = HISTORY_PAGE_SIZE,
        timeout: float | None = None,
    ) -> list[Message]:
        """Return the stored messages of *room_id* in server order.

        Raises:
            RoomApiError: Network failure, non-2xx status or a body that
                is not a list of messages.
        """
        response = await self._request(
            "GET",
            f"{self._prefix}/{room_id}/messages",
            params={"page": page, "size": size},
            timeout=timeout,
        )
        data = self._json(response)
        if not isinstance(data, list):
            raise RoomApiError(
                f"History for {room_id} is not a list", status_code=response.status_code
            )
        messages: list[Message] = []
        for item in data:
            try:
                messages.append(Message.from_payload(item, room_id=room_id))
            except ValueError as exc:
                logger.warning("Skipping malformed history entry: %s", exc)
        return messages

    # -- Internal -------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            return await self._client.request(
                method,
                path,
                timeout=timeout if timeout is not None else self._timeout,
                **kwargs,
            )
        except httpx.TimeoutException as exc:
            raise RoomApiError(f"{method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise RoomApiError(f"{method} {path} failed: {exc}") from exc

    def _json(self, response: httpx.Response) -> Any:
        if response.is_error:
            raise RoomApiError(
                f"{response.request.method} {response.request.url.path} "
                f"returned {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise RoomApiError(
                f"Invalid JSON from {response.request.url.path}",
                status_code=response.status_code,
            ) from exc


def _room_id_of(data: Any, fallback: str) -> str:
    if isinstance(data, dict) and data.get("roomId"):
        return str(data["roomId"])
    return fallback
