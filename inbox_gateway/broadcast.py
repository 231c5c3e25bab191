"""
In-process realtime fan-out to WebSocket clients.

The registry lives in this process only; clients connected to another
instance do not receive these events. Delivery is at-most-once per
connected client, and clients re-fetch over REST to recover anything
they missed.
"""

import json
import logging
from typing import Any

from fastapi.encoders import jsonable_encoder
from starlette.websockets import WebSocket, WebSocketState

from inbox_gateway.metrics import record_broadcast

logger = logging.getLogger(__name__)

MESSAGE_INCOMING = "message_incoming"
MESSAGE_OUTGOING = "message_outgoing"
MESSAGE_DELETED = "message_deleted"


def _is_open(connection: WebSocket) -> bool:
    return (
        connection.client_state == WebSocketState.CONNECTED
        and connection.application_state == WebSocketState.CONNECTED
    )


class Broadcaster:
    """Registry of open WebSocket connections with a publish operation."""

    def __init__(self) -> None:
        # Keyed by id(): Starlette connections are Mappings and unhashable
        self._connections = {}

    def __len__(self) -> int:
        return len(self._connections)

    def register(self, connection: WebSocket) -> None:
        self._connections[id(connection)] = connection
        logger.debug(f"Realtime client registered ({len(self._connections)} connected)")

    def unregister(self, connection: WebSocket) -> None:
        self._connections.pop(id(connection), None)
        logger.debug(f"Realtime client removed ({len(self._connections)} connected)")

    async def publish(self, event: str, data: Any) -> int:
        """
        Send {"event", "data"} to every open connection.

        The envelope is serialized once. Connections that are not open are
        skipped; a connection whose send fails is dropped from the registry.

        Returns:
            Number of connections the envelope was written to
        """
        message = json.dumps({"event": event, "data": jsonable_encoder(data)})
        delivered = 0

        # Copy: unregister may run while we await a send
        for connection in list(self._connections.values()):
            if not _is_open(connection):
                continue
            try:
                await connection.send_text(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping realtime client after send failure: {e}")
                self.unregister(connection)

        record_broadcast(event)
        logger.info(f"Broadcast {event} to {delivered} client(s)")
        return delivered


broadcaster = Broadcaster()
