"""Coding-agent integration: API client, prompts, and structured output parsing.

This module exports the key components the orchestration manager needs:
- AgentClient and its wire models for the external agent service
- Prompt builders for the orchestrator and execution agents
- The two-stage structured output pipeline (extract, then validate)
"""

from agents.client import (
    AgentApiError,
    AgentClient,
    AgentHandle,
    AgentSnapshot,
    AgentSpec,
    ConversationMessage,
)
from agents.prompts import (
    branch_name_for,
    build_orchestrator_prompt,
    build_sub_agent_prompt,
    format_answer_line,
    format_answers,
    slugify,
)
from agents.schemas import (
    FollowUpQuestionsResponse,
    Plan,
    PlanResponse,
    PlanSubAgent,
    PlanSubAgentTask,
    Question,
    StructuredOutputError,
    extract_json_candidate,
    parse_agent_output,
    validate_plan_payload,
)

__all__ = [
    # Client
    "AgentApiError",
    "AgentClient",
    "AgentHandle",
    "AgentSnapshot",
    "AgentSpec",
    "ConversationMessage",
    # Prompts
    "branch_name_for",
    "build_orchestrator_prompt",
    "build_sub_agent_prompt",
    "format_answer_line",
    "format_answers",
    "slugify",
    # Structured output
    "FollowUpQuestionsResponse",
    "Plan",
    "PlanResponse",
    "PlanSubAgent",
    "PlanSubAgentTask",
    "Question",
    "StructuredOutputError",
    "extract_json_candidate",
    "parse_agent_output",
    "validate_plan_payload",
]
