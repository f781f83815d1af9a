"""Persisted records for orchestrations, agent runs and messages.

These dataclasses are what the store hands back to the orchestration
manager and reconciler. They are plain values: mutating one does not touch
the database, only the store's update methods do.
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from models.schemas import (
    AgentMessageResponse,
    AgentRunResponse,
    AgentRunStatus,
    AgentType,
    MessageRole,
    OrchestrationResponse,
    OrchestrationStatus,
    RepositoryResponse,
)


def new_id(prefix: str) -> str:
    """Generate an identifier in the format "{prefix}_{12 hex chars}"."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _load_json(raw: Any) -> Any:
    if raw is None or isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return None


@dataclass
class Repository:
    id: str
    provider: str
    name: str
    full_name: str
    default_branch: str | None = None
    clone_url: str | None = None
    alias: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Repository":
        return cls(
            id=row["id"],
            provider=row["provider"],
            name=row["name"],
            full_name=row["full_name"],
            default_branch=row.get("default_branch"),
            clone_url=row.get("clone_url"),
            alias=row.get("alias"),
        )

    def to_response(self) -> RepositoryResponse:
        return RepositoryResponse(**self.__dict__)


@dataclass
class Orchestration:
    """One feature request against one repository.

    Attributes:
        id: Unique identifier (e.g. "orch_abc123def456").
        user_id: Owner of the orchestration.
        repository_id: Repository the agents work on.
        title: Short name of the feature request.
        description: The user's full request text.
        status: Current lifecycle status.
        plan_accepted: True once the user approved the plan.
        plan_payload: Last validated structured agent output
            (a questions payload or a plan).
        error_message: Reason for the last failure, if any.
    """

    id: str
    user_id: str
    repository_id: str
    title: str
    description: str
    status: OrchestrationStatus = OrchestrationStatus.PENDING
    plan_accepted: bool = False
    plan_payload: dict[str, Any] | None = None
    error_message: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    completed_at: float | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Orchestration":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            repository_id=row["repository_id"],
            title=row["title"],
            description=row["description"],
            status=OrchestrationStatus(row["status"]),
            plan_accepted=bool(row["plan_accepted"]),
            plan_payload=_load_json(row.get("plan_payload")),
            error_message=row.get("error_message"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row.get("completed_at"),
        )

    def to_response(self) -> OrchestrationResponse:
        return OrchestrationResponse(**self.__dict__)


@dataclass
class AgentRun:
    """One external coding-agent invocation."""

    id: str
    orchestration_id: str
    external_agent_id: str
    agent_type: AgentType
    name: str = ""
    parent_run_id: str | None = None
    status: AgentRunStatus = AgentRunStatus.CREATING
    plan_payload: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    last_webhook_event: dict[str, Any] | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AgentRun":
        return cls(
            id=row["id"],
            orchestration_id=row["orchestration_id"],
            external_agent_id=row["external_agent_id"],
            agent_type=AgentType(row["agent_type"]),
            name=row["name"] or "",
            parent_run_id=row.get("parent_run_id"),
            status=AgentRunStatus(row["status"]),
            plan_payload=_load_json(row.get("plan_payload")),
            metadata=_load_json(row.get("metadata")) or {},
            last_webhook_event=_load_json(row.get("last_webhook_event")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_response(self) -> AgentRunResponse:
        return AgentRunResponse(
            id=self.id,
            orchestration_id=self.orchestration_id,
            parent_run_id=self.parent_run_id,
            external_agent_id=self.external_agent_id,
            name=self.name,
            agent_type=self.agent_type,
            status=self.status,
            plan_payload=self.plan_payload,
            metadata=self.metadata,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


@dataclass
class AgentMessage:
    """One conversational turn. Never mutated after creation."""

    id: str
    orchestration_id: str
    role: MessageRole
    content: str
    agent_run_id: str | None = None
    created_at: float = field(default_factory=time.time)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AgentMessage":
        return cls(
            id=row["id"],
            orchestration_id=row["orchestration_id"],
            role=MessageRole(row["role"]),
            content=row["content"],
            agent_run_id=row.get("agent_run_id"),
            created_at=row["created_at"],
        )

    def to_response(self) -> AgentMessageResponse:
        return AgentMessageResponse(
            id=self.id,
            agent_run_id=self.agent_run_id,
            role=self.role,
            content=self.content,
            created_at=self.created_at,
        )
