"""Real-time event system for orchestration observers.

This package provides the infrastructure that keeps UI clients consistent
with server state. Events are pushed over websocket connections registered
per user.

Key Components:
    - EventType: Enum of all server-pushed event types
    - ServerEvent: Pydantic model for the ``{type, payload}`` wire message
    - EventHub: Injected registry with per-user and global broadcast

Usage:
    >>> from events import EventHub, EventType, ServerEvent
    >>>
    >>> hub = EventHub()
    >>> hub.register(websocket, "user_1")
    >>> await hub.broadcast_to_user("user_1", ServerEvent(
    ...     type=EventType.AGENT_STATUS,
    ...     payload={"agentRunId": "run_1", "status": "RUNNING"},
    ... ))

Event Flow:
    1. The orchestration manager or reconciler changes persisted state
    2. It publishes a ServerEvent through the EventHub
    3. The hub sends it to the owner's live websocket connections
"""

from events.hub import Connection, EventHub
from events.types import EventType, ServerEvent

__all__ = [
    "Connection",
    "EventHub",
    "EventType",
    "ServerEvent",
]
