"""Models module for Pydantic schemas, persisted records and the store.

This module exposes the request/response models used by the API and the
status enums shared across the backend.
"""

from models.schemas import (
    AgentMessageResponse,
    AgentRunResponse,
    AgentRunStatus,
    AgentType,
    CreateOrchestrationRequest,
    HealthResponse,
    LinkRepositoryRequest,
    MessageRole,
    OrchestrationDetailResponse,
    OrchestrationResponse,
    OrchestrationStatus,
    RepositoryResponse,
    SubmitAnswersRequest,
    WebhookEvent,
)

__all__ = [
    "AgentMessageResponse",
    "AgentRunResponse",
    "AgentRunStatus",
    "AgentType",
    "CreateOrchestrationRequest",
    "HealthResponse",
    "LinkRepositoryRequest",
    "MessageRole",
    "OrchestrationDetailResponse",
    "OrchestrationResponse",
    "OrchestrationStatus",
    "RepositoryResponse",
    "SubmitAnswersRequest",
    "WebhookEvent",
]
