"""Pydantic schemas for API request/response models.

This module defines the status enums shared by the whole backend and the
data models used by the HTTP API. All models use Pydantic v2.
"""

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class OrchestrationStatus(StrEnum):
    """Orchestration lifecycle status."""

    PENDING = "PENDING"
    COLLECTING_REQUIREMENTS = "COLLECTING_REQUIREMENTS"
    AWAITING_USER = "AWAITING_USER"
    PLANNING = "PLANNING"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    APPROVED = "APPROVED"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ORCHESTRATION_STATUSES


TERMINAL_ORCHESTRATION_STATUSES = frozenset(
    {
        OrchestrationStatus.COMPLETED,
        OrchestrationStatus.FAILED,
        OrchestrationStatus.CANCELLED,
    }
)


class AgentRunStatus(StrEnum):
    """Internal mirror of the external agent lifecycle."""

    CREATING = "CREATING"
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    WAITING_FOR_USER = "WAITING_FOR_USER"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


TERMINAL_RUN_STATUSES = frozenset(
    {
        AgentRunStatus.COMPLETED,
        AgentRunStatus.FAILED,
        AgentRunStatus.CANCELLED,
    }
)


class AgentType(StrEnum):
    """Role of an agent run within its orchestration."""

    ORCHESTRATOR = "ORCHESTRATOR"
    SUB_AGENT = "SUB_AGENT"


class MessageRole(StrEnum):
    """Author of a conversational turn."""

    SYSTEM = "SYSTEM"
    USER = "USER"
    ASSISTANT = "ASSISTANT"
    TOOL = "TOOL"


# -----------------------------------------------------------------------------
# Requests
# -----------------------------------------------------------------------------


class LinkRepositoryRequest(BaseModel):
    """Request body for linking a repository to the current user."""

    model_config = ConfigDict(populate_by_name=True)

    provider: str = Field(default="github", min_length=1, examples=["github"])
    name: str = Field(min_length=1, examples=["webapp"])
    full_name: str = Field(
        min_length=3,
        alias="fullName",
        pattern=r"^[^/\s]+/[^/\s]+$",
        description="Owner-qualified repository name",
        examples=["acme/webapp"],
    )
    default_branch: str | None = Field(default=None, alias="defaultBranch")
    clone_url: str | None = Field(default=None, alias="cloneUrl")
    alias: str | None = None


class CreateOrchestrationRequest(BaseModel):
    """Request body for submitting a feature request."""

    model_config = ConfigDict(populate_by_name=True)

    repository_id: str = Field(min_length=1, alias="repositoryId")
    title: str = Field(min_length=1, max_length=200, examples=["Dark mode"])
    description: str = Field(
        min_length=1,
        max_length=10000,
        examples=["Add dark mode toggle"],
    )
    branch: str | None = Field(
        default=None,
        description="Branch the agents start from (defaults to the repository default)",
    )


class AnswerItem(BaseModel):
    """A single answer to an orchestrator question."""

    model_config = ConfigDict(populate_by_name=True)

    question_id: str = Field(min_length=1, alias="questionId")
    answer: str = Field(min_length=1)


class SubmitAnswersRequest(BaseModel):
    """Request body for answering follow-up questions.

    Accepts either a list of ``{questionId, answer}`` items or a plain
    ``{questionId: answer}`` mapping.
    """

    answers: list[AnswerItem] | dict[str, str] = Field(
        examples=[{"q1": "All pages"}],
    )

    def as_pairs(self) -> list[tuple[str, str]]:
        """Return the answers as ordered ``(question_id, answer)`` pairs."""
        if isinstance(self.answers, dict):
            return list(self.answers.items())
        return [(item.question_id, item.answer) for item in self.answers]


class WebhookAgent(BaseModel):
    id: str = Field(min_length=1)
    status: str | None = None


class WebhookEvent(BaseModel):
    """Inbound signed notification from the agent service."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str | None = None
    type: str = "status.updated"
    created_at: str | None = Field(default=None, alias="createdAt")
    agent: WebhookAgent
    data: Any = None


# -----------------------------------------------------------------------------
# Responses
# -----------------------------------------------------------------------------


class RepositoryResponse(BaseModel):
    """A repository linked to the current user."""

    id: str
    provider: str
    name: str
    full_name: str
    default_branch: str | None = None
    clone_url: str | None = None
    alias: str | None = None


class AgentRunResponse(BaseModel):
    """Read-only view of an agent run."""

    id: str
    orchestration_id: str
    parent_run_id: str | None = None
    external_agent_id: str
    name: str
    agent_type: AgentType
    status: AgentRunStatus
    plan_payload: dict[str, Any] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: float
    updated_at: float


class AgentMessageResponse(BaseModel):
    """A single conversational turn."""

    id: str
    agent_run_id: str | None = None
    role: MessageRole
    content: str
    created_at: float


class OrchestrationResponse(BaseModel):
    """Summary of an orchestration."""

    id: str
    user_id: str
    repository_id: str
    title: str
    description: str
    status: OrchestrationStatus
    plan_accepted: bool
    plan_payload: dict[str, Any] | None = None
    error_message: str | None = None
    created_at: float
    updated_at: float
    completed_at: float | None = None


class OrchestrationDetailResponse(OrchestrationResponse):
    """Orchestration with its runs and message history."""

    agent_runs: list[AgentRunResponse] = Field(default_factory=list)
    messages: list[AgentMessageResponse] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    connected_clients: int = Field(
        default=0,
        description="Number of registered real-time connections",
    )
    background_tasks: int = Field(
        default=0,
        description="Number of supervised background tasks still running",
    )
