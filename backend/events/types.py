"""Event type definitions for the real-time channel.

Every state change the UI cares about is pushed as ``{type, payload}``.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All server-pushed event types.

    Events are categorized by:
    - Orchestration lifecycle: status changes, questions, plans, completion
    - Agent activity: per-run status and new assistant messages
    """

    # Orchestration lifecycle
    ORCHESTRATION_UPDATED = "orchestration.updated"
    ORCHESTRATION_QUESTION = "orchestration.question"
    ORCHESTRATION_PLAN_READY = "orchestration.plan_ready"
    ORCHESTRATION_COMPLETED = "orchestration.completed"
    ORCHESTRATION_ERROR = "orchestration.error"

    # Agent activity
    AGENT_STATUS = "agent.status"
    AGENT_MESSAGE = "agent.message"


class ServerEvent(BaseModel):
    """An event pushed to connected clients.

    Payload schemas by event type:

    ORCHESTRATION_UPDATED:
        - orchestrationId: str
        - status: str - New orchestration status
        - planAccepted: bool

    ORCHESTRATION_QUESTION:
        - orchestrationId: str
        - agentRunId: str - Orchestrator run that asked
        - questions: list[dict] - Validated questions

    ORCHESTRATION_PLAN_READY:
        - orchestrationId: str
        - agentRunId: str
        - plan: dict - Validated plan (camelCase keys)

    ORCHESTRATION_COMPLETED:
        - orchestrationId: str
        - status: str - COMPLETED or FAILED
        - completedAt: Optional[float]

    ORCHESTRATION_ERROR:
        - orchestrationId: str
        - message: str

    AGENT_STATUS:
        - orchestrationId: str
        - agentRunId: str
        - externalAgentId: str
        - status: str

    AGENT_MESSAGE:
        - orchestrationId: str
        - agentRunId: str
        - messageId: str
        - role: str
        - content: str
    """

    type: EventType
    payload: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
