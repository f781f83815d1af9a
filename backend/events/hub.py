"""In-process fan-out of server events to connected real-time clients.

The EventHub keeps a registry of live connections keyed by user id and
pushes ``{type, payload}`` messages to them. It is created by the process
entry point and injected where needed, so tests can build isolated hubs.

Delivery is best-effort:
- Connections that are not open are skipped, never queued
- Send failures are logged, never retried
- A connection receives nothing until it has been registered (which the
  websocket handler does after the client's ``hello`` message)
"""

import asyncio
from collections import defaultdict
from typing import Any, Protocol

import structlog
from starlette.websockets import WebSocketState

from events.types import ServerEvent

logger = structlog.get_logger(__name__)


class Connection(Protocol):
    """The subset of ``starlette.websockets.WebSocket`` the hub relies on."""

    client_state: WebSocketState
    application_state: WebSocketState

    async def send_json(self, data: Any, mode: str = "text") -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


class EventHub:
    """Registry of live connections with per-user and global broadcast.

    Usage:
        >>> hub = EventHub()
        >>> hub.register(websocket, "user_1")
        >>> await hub.broadcast_to_user("user_1", ServerEvent(
        ...     type=EventType.ORCHESTRATION_UPDATED,
        ...     payload={"orchestrationId": "orch_1", "status": "PLANNING"},
        ... ))
        >>> hub.unregister(websocket)

    Attributes:
        send_timeout: Seconds to wait on one stalled client before giving up.
    """

    def __init__(self, send_timeout: float = 5.0) -> None:
        self.send_timeout = send_timeout
        self._by_user: dict[str, set[Connection]] = defaultdict(set)
        self._user_of: dict[Connection, str] = {}
        logger.info("event_hub_initialized")

    def register(self, connection: Connection, user_id: str) -> None:
        """Register a connection under a user id.

        Re-registering an already known connection moves it to the new user.
        """
        previous = self._user_of.get(connection)
        if previous is not None and previous != user_id:
            self._discard(connection, previous)

        self._by_user[user_id].add(connection)
        self._user_of[connection] = user_id
        logger.info(
            "connection_registered",
            user_id=user_id,
            user_connection_count=len(self._by_user[user_id]),
            total_connections=len(self._user_of),
        )

    def unregister(self, connection: Connection) -> None:
        """Remove a connection from every registry. Unknown connections are a no-op."""
        user_id = self._user_of.pop(connection, None)
        if user_id is None:
            return
        self._discard(connection, user_id)
        logger.info(
            "connection_unregistered",
            user_id=user_id,
            total_connections=len(self._user_of),
        )

    def _discard(self, connection: Connection, user_id: str) -> None:
        connections = self._by_user.get(user_id)
        if connections is None:
            return
        connections.discard(connection)
        if not connections:
            del self._by_user[user_id]

    async def broadcast_to_user(self, user_id: str, event: ServerEvent) -> int:
        """Send an event to every live connection of one user.

        Returns:
            Number of connections the event was delivered to.
        """
        targets = list(self._by_user.get(user_id, ()))
        return await self._deliver(targets, event, scope=user_id)

    async def broadcast_all(self, event: ServerEvent) -> int:
        """Send an event to every registered live connection."""
        targets = list(self._user_of)
        return await self._deliver(targets, event, scope="*")

    async def _deliver(
        self,
        targets: list[Connection],
        event: ServerEvent,
        scope: str,
    ) -> int:
        message = event.to_wire()
        delivered = 0
        for connection in targets:
            if not _is_open(connection):
                continue
            try:
                await asyncio.wait_for(
                    connection.send_json(message), timeout=self.send_timeout
                )
                delivered += 1
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    scope=scope,
                    event_type=event.type.value,
                )
            except Exception as e:
                logger.warning(
                    "event_delivery_failed",
                    scope=scope,
                    event_type=event.type.value,
                    error=str(e),
                )

        logger.debug(
            "event_published",
            scope=scope,
            event_type=event.type.value,
            delivered=delivered,
            targets=len(targets),
        )
        return delivered

    async def close(self) -> None:
        """Close every registered connection and clear the registry."""
        connections = list(self._user_of)
        self._by_user.clear()
        self._user_of.clear()

        for connection in connections:
            if not _is_open(connection):
                continue
            try:
                await connection.close(code=1001, reason="server_shutdown")
            except Exception as e:
                logger.debug("connection_close_failed", error=str(e))

        logger.info("event_hub_closed", connections_closed=len(connections))

    @property
    def connection_count(self) -> int:
        return len(self._user_of)

    def get_user_connection_count(self, user_id: str) -> int:
        return len(self._by_user.get(user_id, ()))


def _is_open(connection: Connection) -> bool:
    return (
        connection.client_state == WebSocketState.CONNECTED
        and connection.application_state == WebSocketState.CONNECTED
    )
