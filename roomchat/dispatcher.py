# =============================================================================
# roomchat -- Outbound Dispatcher
# =============================================================================

from __future__ import annotations

from typing import TYPE_CHECKING

from ._logging import logger
from .errors import EmptyMessageError, NotReadyError
from .types import Message, RoomTopic, SessionState

if TYPE_CHECKING:
    from .transport import StompConnection, StompTransport


class OutboundDispatcher:
    """Publish locally authored messages to the room.

    A sent message is not added to the session's sequence here; it shows
    up when the broker echoes it back on the room topic.
    """

    def __init__(
        self,
        transport: StompTransport,
        handle: StompConnection,
        topic: RoomTopic,
    ) -> None:
        self._transport = transport
        self._handle = handle
        self._topic = topic
        self.messages_sent = 0

    def send(self, state: SessionState, message: Message) -> None:
        """Publish *message* if the session is active.

        Raises:
            NotReadyError: *state* is not ``ACTIVE``.
            EmptyMessageError: Content is blank after trimming.
        """
        if state is not SessionState.ACTIVE:
            raise NotReadyError(f"Cannot send while session is {state.value}")
        if not message.content.strip():
            raise EmptyMessageError("Message content is empty")

        self._transport.publish(
            self._handle, self._topic.publish_destination, message.to_payload()
        )
        self.messages_sent += 1
        logger.debug("Published message from %s to %s", message.sender, self._topic)
