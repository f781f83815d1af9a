"""Prompt templates for the orchestrator and execution agents.

This module builds the plain-text prompts sent to the coding-agent service:
- build_orchestrator_prompt: First contact; asks the agent for questions or a
  plan, as strict JSON only
- build_sub_agent_prompt: Scoped instructions for one execution agent
- format_answers: Follow-up text forwarding the user's answers
- slugify / branch_name_for: Deterministic branch names for execution agents
"""

import json
import re

from agents.schemas import Plan, PlanSubAgent

ORCHESTRATOR_PROTOCOL = """\
You are the Orchestrator Agent.
You operate as the first point of contact for an engineer requesting a new feature or refactor.
Follow this protocol strictly:

1. Collect missing information. If anything is unclear, respond ONLY with JSON following the \
`follow_up_questions` schema. Ask concise questions.
2. Once there is enough information, respond ONLY with JSON following the `plan` schema.
3. Plans must split work into sub agents when doing so parallelises non-overlapping tasks. \
Sub agents run at the same time and cannot depend on each other.
4. Never include explanatory text outside the JSON payload."""

FOLLOW_UP_QUESTIONS_EXAMPLE = {
    "type": "follow_up_questions",
    "questions": [
        {
            "id": "q1",
            "question": "string describing the question for the user",
            "context": "optional extra context to help the user answer",
            "required": True,
        }
    ],
}

PLAN_EXAMPLE = {
    "type": "plan",
    "plan": {
        "primaryObjective": "single sentence goal",
        "summary": "short paragraph describing the approach",
        "steps": [
            {
                "id": "step-1",
                "title": "descriptive title",
                "description": "explain what will be done",
                "deliverables": ["list of tangible deliverables"],
            }
        ],
        "subAgents": [
            {
                "id": "agent-frontend",
                "name": "Frontend overhaul agent",
                "scope": "Scope summary",
                "instructions": "Detailed instructions for this agent",
                "tasks": [
                    {
                        "id": "task-1",
                        "title": "Implement new layout",
                        "details": "Detailed work description",
                        "acceptanceCriteria": ["criteria 1", "criteria 2"],
                    }
                ],
            }
        ],
    },
}

ANSWERS_PREAMBLE = "Here are my answers to your questions:"

_SLUG_MAX_LENGTH = 48


def compose_prompt_sections(*sections: str) -> str:
    """Compose prompt sections into a single deterministic prompt."""
    cleaned = [section.strip() for section in sections if section and section.strip()]
    return "\n\n".join(cleaned)


def build_orchestrator_prompt(
    *,
    title: str,
    description: str,
    repository_full_name: str,
    provider: str,
    branch: str,
) -> str:
    """Build the first prompt for an orchestrator agent.

    Args:
        title: Short name of the feature request
        description: The user's full request text
        repository_full_name: Owner-qualified repository name
        provider: Repository host (e.g. "github")
        branch: Branch the agent works from

    Returns:
        The complete orchestrator prompt
    """
    return compose_prompt_sections(
        ORCHESTRATOR_PROTOCOL,
        f"""Repository context:
- Provider: {provider}
- Identifier: {repository_full_name}
- Working branch: {branch}""",
        f'User request summary:\n"""{title}\n{description}"""',
        "JSON schemas:\nfollow_up_questions:\n"
        + json.dumps(FOLLOW_UP_QUESTIONS_EXAMPLE, indent=2)
        + "\n\nplan:\n"
        + json.dumps(PLAN_EXAMPLE, indent=2),
        "Remember: respond with JSON only. No explanations, markdown, or code fences.",
    )


def build_sub_agent_prompt(
    *,
    plan: Plan,
    orchestration_title: str,
    repository_full_name: str,
    base_branch: str,
    focus: PlanSubAgent | None = None,
) -> str:
    """Build the prompt for one execution agent.

    With ``focus`` the agent only receives that sub-agent's scope and tasks;
    without it (single executor) it receives every task of the plan, or the
    plan steps when the plan has no sub-agents at all.
    """
    header = f"""You are an implementation agent working on "{orchestration_title}".
Repository: {repository_full_name}
Base branch: {base_branch}

Overall plan summary:
Objective: {plan.primary_objective}
Summary: {plan.summary}"""

    if focus is not None:
        scope = f"Focus scope: {focus.scope}\nInstructions: {focus.instructions}"
        tasks = focus.tasks
    else:
        scope = ""
        tasks = [task for agent in plan.sub_agents for task in agent.tasks]

    if tasks:
        blocks = []
        for index, task in enumerate(tasks, start=1):
            criteria = "\n".join(f"    - {c}" for c in task.acceptance_criteria)
            blocks.append(
                f"{index}. {task.title}\n"
                f"   Details: {task.details}\n"
                f"   Acceptance criteria:\n{criteria}"
            )
        work = "Tasks:\n\n" + "\n\n".join(blocks)
    else:
        blocks = []
        for index, step in enumerate(plan.steps, start=1):
            deliverables = "\n".join(f"    - {d}" for d in step.deliverables)
            blocks.append(
                f"{index}. {step.title}\n"
                f"   Description: {step.description}\n"
                f"   Deliverables:\n{deliverables}"
            )
        work = "Steps:\n\n" + "\n\n".join(blocks)

    return compose_prompt_sections(
        header,
        scope,
        work,
        "Deliver high-quality commits and a summary when done.",
    )


def format_answer_line(index: int, question_id: str, answer: str) -> str:
    """Format one answer as stored in the conversation history."""
    return f"Answer {index} (question {question_id}): {answer.strip()}"


def format_answers(answers: list[tuple[str, str]]) -> str:
    """Build the follow-up text that forwards all answers to the agent."""
    lines = [
        f"- {format_answer_line(i, question_id, answer)}"
        for i, (question_id, answer) in enumerate(answers, start=1)
    ]
    return "\n".join([ANSWERS_PREAMBLE, *lines])


def slugify(value: str) -> str:
    """Lowercase, collapse non-alphanumerics to '-', cap the length."""
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug[:_SLUG_MAX_LENGTH]


def branch_name_for(name: str, suffix: str) -> str:
    """Branch name for an execution agent, e.g. "feat/dark-mode-abc123"."""
    return f"feat/{slugify(name)}-{suffix}"
