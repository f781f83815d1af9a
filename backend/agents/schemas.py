"""Structured output contract for the orchestrator agent.

The orchestrator must answer with exactly one of two JSON shapes:

    {"type": "follow_up_questions", "questions": [...]}
    {"type": "plan", "plan": {...}}

Agents rarely return clean JSON, so parsing is a two-stage pipeline:

1. ``extract_json_candidate`` pulls the first balanced ``{...}`` region out
   of the raw text (anything around it is discarded).
2. ``parse_agent_output`` validates that candidate strictly against the
   models below.

Either stage failing raises ``StructuredOutputError``; nothing is guessed.
"""

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

NonEmptyStr = Annotated[str, Field(min_length=1)]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class Question(_CamelModel):
    """A clarifying question for the user."""

    id: NonEmptyStr
    question: NonEmptyStr
    context: str | None = None
    required: bool = True


class PlanStep(_CamelModel):
    id: NonEmptyStr
    title: NonEmptyStr
    description: str = ""
    deliverables: list[NonEmptyStr] = Field(min_length=1)


class PlanSubAgentTask(_CamelModel):
    id: NonEmptyStr
    title: NonEmptyStr
    details: str = ""
    acceptance_criteria: list[NonEmptyStr] = Field(
        min_length=1, alias="acceptanceCriteria"
    )


class PlanSubAgent(_CamelModel):
    """One parallel execution slice of the plan."""

    id: NonEmptyStr
    name: NonEmptyStr
    scope: str = ""
    instructions: str = ""
    tasks: list[PlanSubAgentTask] = Field(min_length=1)


class Plan(_CamelModel):
    """Execution plan produced by the orchestrator.

    An empty ``sub_agents`` list means the whole plan runs on a single
    executor agent.
    """

    primary_objective: NonEmptyStr = Field(alias="primaryObjective")
    summary: NonEmptyStr
    steps: list[PlanStep] = Field(min_length=1)
    sub_agents: list[PlanSubAgent] = Field(default_factory=list, alias="subAgents")


class FollowUpQuestionsResponse(_CamelModel):
    type: Literal["follow_up_questions"]
    questions: list[Question] = Field(min_length=1)


class PlanResponse(_CamelModel):
    type: Literal["plan"]
    plan: Plan


AgentOutput = Annotated[
    FollowUpQuestionsResponse | PlanResponse,
    Field(discriminator="type"),
]

_agent_output_adapter: TypeAdapter[FollowUpQuestionsResponse | PlanResponse] = (
    TypeAdapter(AgentOutput)
)


class StructuredOutputError(ValueError):
    """Agent text could not be turned into a valid structured payload.

    Attributes:
        reason: Which stage failed and why.
        raw: The text that was being parsed.
    """

    def __init__(self, reason: str, raw: str) -> None:
        super().__init__(reason)
        self.reason = reason
        self.raw = raw


def extract_json_candidate(text: str) -> str | None:
    """Return the first balanced ``{...}`` region of ``text``, or None.

    Braces inside JSON string literals (including escaped quotes) do not
    affect the balance.
    """
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False

    for end in range(start, len(text)):
        ch = text[end]

        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : end + 1]

    return None


def looks_structured(text: str) -> bool:
    """Cheap check used before running the full pipeline on agent messages."""
    return "{" in text and '"type"' in text


def parse_agent_output(text: str) -> FollowUpQuestionsResponse | PlanResponse:
    """Run the extract-then-validate pipeline on raw agent text.

    Raises:
        StructuredOutputError: If no JSON object is found, it does not
            decode, or it does not match either schema.
    """
    candidate = extract_json_candidate(text)
    if candidate is None:
        raise StructuredOutputError("no JSON object found", text)

    try:
        data: Any = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise StructuredOutputError(f"invalid JSON: {e.msg}", text) from e

    try:
        return _agent_output_adapter.validate_python(data)
    except ValidationError as e:
        raise StructuredOutputError(
            f"schema validation failed: {e.error_count()} error(s)", text
        ) from e


def validate_plan_payload(payload: dict[str, Any] | None) -> Plan:
    """Validate a stored ``{"type": "plan", "plan": ...}`` payload."""
    if not payload:
        raise StructuredOutputError("no plan payload stored", "")
    try:
        return PlanResponse.model_validate(payload).plan
    except ValidationError as e:
        raise StructuredOutputError(
            f"stored plan is invalid: {e.error_count()} error(s)", json.dumps(payload)
        ) from e
