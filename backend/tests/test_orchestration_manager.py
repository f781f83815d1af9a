"""Tests for orchestration_manager.py -- the orchestration state machine.

The agent service is an AsyncMock; agent output is fed through the
reconciler exactly as a webhook or poll tick would deliver it, so these
tests exercise the full create -> questions -> answers -> plan -> accept ->
execute flow against a real temporary store.
"""

import sqlite3
from typing import Any
from unittest.mock import AsyncMock

import pytest

from agents.client import AgentApiError, AgentHandle
from errors import InvalidRequestError, InvalidStateError, NotFoundError
from models.entities import Orchestration, Repository
from models.schemas import (
    AgentRunStatus,
    AgentType,
    MessageRole,
    OrchestrationStatus,
)
from orchestration_manager import OrchestrationManager
from tests.conftest import (
    OTHER_USER_ID,
    USER_ID,
    FakeConnection,
    as_agent_text,
    plan_output,
    questions_output,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _create(manager: OrchestrationManager, repository: Repository) -> Orchestration:
    return await manager.create_orchestration(
        user_id=USER_ID,
        repository_id=repository.id,
        title="Dark mode",
        description="Add dark mode toggle",
    )


async def _orchestrator_reply(
    manager: OrchestrationManager,
    orchestration: Orchestration,
    payload: dict[str, Any] | str,
    message_id: str,
) -> None:
    runs = await manager.store.list_runs(orchestration.id, AgentType.ORCHESTRATOR)
    text = payload if isinstance(payload, str) else as_agent_text(payload)
    await manager.reconciler.apply_update(
        runs[0].external_agent_id, "FINISHED", [(message_id, text)]
    )


async def _to_awaiting_user(
    manager: OrchestrationManager, repository: Repository, *question_ids: str
) -> Orchestration:
    orchestration = await _create(manager, repository)
    await _orchestrator_reply(manager, orchestration, questions_output(*question_ids), "m1")
    return await manager.get_orchestration(orchestration.id, USER_ID)


async def _to_awaiting_approval(
    manager: OrchestrationManager, repository: Repository, sub_agent_count: int = 2
) -> Orchestration:
    orchestration = await _create(manager, repository)
    await _orchestrator_reply(manager, orchestration, plan_output(sub_agent_count), "m1")
    return await manager.get_orchestration(orchestration.id, USER_ID)


# ---------------------------------------------------------------------------
# create_orchestration
# ---------------------------------------------------------------------------


class TestCreateOrchestration:
    async def test_launches_orchestrator_agent(
        self,
        manager: OrchestrationManager,
        repository: Repository,
        mock_agent_client: AsyncMock,
        user_connection: FakeConnection,
    ) -> None:
        orchestration = await _create(manager, repository)

        assert orchestration.status == OrchestrationStatus.COLLECTING_REQUIREMENTS
        spec = mock_agent_client.create_agent.call_args.args[0]
        assert spec.repository == "acme/webapp"
        assert spec.ref == "main"
        assert spec.name == "Orchestrator for Dark mode"
        assert spec.metadata == {"role": "orchestrator", "orchestrationId": orchestration.id}
        assert "Add dark mode toggle" in spec.prompt

        detail = await manager.get_orchestration_detail(orchestration.id, USER_ID)
        assert [r.agent_type for r in detail.runs] == [AgentType.ORCHESTRATOR]
        assert detail.runs[0].external_agent_id == "agent_1"
        assert [(m.role, m.content) for m in detail.messages] == [
            (MessageRole.USER, "Add dark mode toggle")
        ]
        assert user_connection.payloads("orchestration.updated")[-1] == {
            "orchestrationId": orchestration.id,
            "status": "COLLECTING_REQUIREMENTS",
            "planAccepted": False,
        }

    async def test_unlinked_repository_is_not_found(
        self, manager: OrchestrationManager, repository: Repository
    ) -> None:
        with pytest.raises(NotFoundError, match="Repository not linked"):
            await manager.create_orchestration(
                user_id=OTHER_USER_ID,
                repository_id=repository.id,
                title="Dark mode",
                description="Add dark mode toggle",
            )
        assert await manager.list_orchestrations(OTHER_USER_ID) == []

    async def test_blank_title_rejected(
        self, manager: OrchestrationManager, repository: Repository
    ) -> None:
        with pytest.raises(InvalidRequestError):
            await manager.create_orchestration(
                user_id=USER_ID,
                repository_id=repository.id,
                title="   ",
                description="Add dark mode toggle",
            )

    async def test_agent_failure_fails_orchestration(
        self,
        manager: OrchestrationManager,
        repository: Repository,
        mock_agent_client: AsyncMock,
        user_connection: FakeConnection,
    ) -> None:
        mock_agent_client.create_agent.side_effect = AgentApiError(500, "boom")

        with pytest.raises(AgentApiError):
            await _create(manager, repository)

        [orchestration] = await manager.list_orchestrations(USER_ID)
        assert orchestration.status == OrchestrationStatus.FAILED
        assert "Failed to create orchestrator agent" in (orchestration.error_message or "")
        assert await manager.store.list_runs(orchestration.id) == []
        assert "orchestration.error" in user_connection.event_types()


# ---------------------------------------------------------------------------
# Structured output ingestion
# ---------------------------------------------------------------------------


class TestIngestAgentOutput:
    async def test_questions_move_to_awaiting_user(
        self,
        manager: OrchestrationManager,
        repository: Repository,
        user_connection: FakeConnection,
    ) -> None:
        orchestration = await _to_awaiting_user(manager, repository, "q1", "q2")

        assert orchestration.status == OrchestrationStatus.AWAITING_USER
        assert orchestration.plan_payload is not None
        assert orchestration.plan_payload["type"] == "follow_up_questions"
        [question_event] = user_connection.payloads("orchestration.question")
        assert [q["id"] for q in question_event["questions"]] == ["q1", "q2"]

        runs = await manager.store.list_runs(orchestration.id)
        assert runs[0].status == AgentRunStatus.WAITING_FOR_USER

    async def test_plan_moves_to_awaiting_approval(
        self,
        manager: OrchestrationManager,
        repository: Repository,
        user_connection: FakeConnection,
    ) -> None:
        orchestration = await _to_awaiting_approval(manager, repository)

        assert orchestration.status == OrchestrationStatus.AWAITING_APPROVAL
        assert orchestration.plan_accepted is False
        [plan_event] = user_connection.payloads("orchestration.plan_ready")
        assert plan_event["plan"]["primaryObjective"] == "Ship dark mode"

        [run] = await manager.store.list_runs(orchestration.id)
        assert run.plan_payload == orchestration.plan_payload

    async def test_unparseable_output_changes_nothing(
        self,
        manager: OrchestrationManager,
        repository: Repository,
    ) -> None:
        orchestration = await _create(manager, repository)
        await _orchestrator_reply(
            manager, orchestration, '{"type": "plan", "plan": {"summary": ""}}', "m1"
        )

        loaded = await manager.get_orchestration(orchestration.id, USER_ID)
        assert loaded.status == OrchestrationStatus.COLLECTING_REQUIREMENTS
        assert loaded.plan_payload is None

    async def test_plan_events_can_broadcast_to_everyone(
        self,
        manager: OrchestrationManager,
        repository: Repository,
        user_connection: FakeConnection,
    ) -> None:
        manager.config.broadcast_plan_events_to_all = True
        other = FakeConnection()
        manager.event_hub.register(other, OTHER_USER_ID)

        await _to_awaiting_approval(manager, repository)

        assert other.event_types() == ["orchestration.plan_ready"]


# ---------------------------------------------------------------------------
# submit_answers
# ---------------------------------------------------------------------------


class TestSubmitAnswers:
    async def test_answers_forwarded_and_recorded(
        self,
        manager: OrchestrationManager,
        repository: Repository,
        mock_agent_client: AsyncMock,
    ) -> None:
        orchestration = await _to_awaiting_user(manager, repository, "q1", "q2")

        updated = await manager.submit_answers(
            orchestration.id, USER_ID, [("q1", "All pages"), ("q2", "Yes")]
        )

        assert updated.status == OrchestrationStatus.PLANNING
        agent_id, text = mock_agent_client.send_followup.call_args.args
        assert agent_id == "agent_1"
        assert text.startswith("Here are my answers to your questions:")
        assert "Answer 2 (question q2): Yes" in text

        messages = await manager.store.list_messages(orchestration.id)
        user_answers = [
            m for m in messages if m.role == MessageRole.USER and m.agent_run_id is not None
        ]
        assert [m.content for m in user_answers] == [
            "Answer 1 (question q1): All pages",
            "Answer 2 (question q2): Yes",
        ]

    @pytest.mark.parametrize(
        "answers",
        [
            [],
            [("q1", "   ")],
            [("q1", "ok"), ("q9", "unknown")],
            [("q2", "only the second")],
        ],
        ids=["empty", "blank", "unknown-question", "missing-required"],
    )
    async def test_rejections_leave_no_trace(
        self,
        manager: OrchestrationManager,
        repository: Repository,
        mock_agent_client: AsyncMock,
        answers: list[tuple[str, str]],
    ) -> None:
        orchestration = await _to_awaiting_user(manager, repository, "q1", "q2")
        before = await manager.store.list_messages(orchestration.id)

        with pytest.raises(InvalidRequestError):
            await manager.submit_answers(orchestration.id, USER_ID, answers)

        mock_agent_client.send_followup.assert_not_called()
        assert await manager.store.list_messages(orchestration.id) == before
        loaded = await manager.get_orchestration(orchestration.id, USER_ID)
        assert loaded.status == OrchestrationStatus.AWAITING_USER

    async def test_wrong_state_rejected(
        self, manager: OrchestrationManager, repository: Repository
    ) -> None:
        orchestration = await _create(manager, repository)

        with pytest.raises(InvalidStateError):
            await manager.submit_answers(orchestration.id, USER_ID, [("q1", "x")])

    async def test_follow_up_failure_keeps_awaiting_user(
        self,
        manager: OrchestrationManager,
        repository: Repository,
        mock_agent_client: AsyncMock,
    ) -> None:
        orchestration = await _to_awaiting_user(manager, repository, "q1")
        mock_agent_client.send_followup.side_effect = AgentApiError(503)

        with pytest.raises(AgentApiError):
            await manager.submit_answers(orchestration.id, USER_ID, [("q1", "x")])

        loaded = await manager.get_orchestration(orchestration.id, USER_ID)
        assert loaded.status == OrchestrationStatus.AWAITING_USER

    async def test_other_users_cannot_answer(
        self, manager: OrchestrationManager, repository: Repository
    ) -> None:
        orchestration = await _to_awaiting_user(manager, repository, "q1")

        with pytest.raises(NotFoundError):
            await manager.submit_answers(orchestration.id, OTHER_USER_ID, [("q1", "x")])


# ---------------------------------------------------------------------------
# accept_plan
# ---------------------------------------------------------------------------


class TestAcceptPlan:
    async def test_fans_out_one_run_per_sub_agent(
        self,
        manager: OrchestrationManager,
        repository: Repository,
        mock_agent_client: AsyncMock,
    ) -> None:
        orchestration = await _to_awaiting_approval(manager, repository, sub_agent_count=3)

        accepted = await manager.accept_plan(orchestration.id, USER_ID)

        assert accepted.status == OrchestrationStatus.EXECUTING
        assert accepted.plan_accepted is True
        orchestrator = (await manager.store.list_runs(orchestration.id, AgentType.ORCHESTRATOR))[0]
        runs = await manager.store.list_runs(orchestration.id, AgentType.SUB_AGENT)
        assert len(runs) == 3
        assert all(r.parent_run_id == orchestrator.id for r in runs)
        assert sorted(r.metadata["subAgentId"] for r in runs) == ["agent-1", "agent-2", "agent-3"]

        branches = sorted(
            call.args[0].branch_name for call in mock_agent_client.create_agent.call_args_list[1:]
        )
        assert branches == [
            "feat/worker-1-agent-1",
            "feat/worker-2-agent-2",
            "feat/worker-3-agent-3",
        ]

    async def test_plan_without_sub_agents_uses_single_executor(
        self,
        manager: OrchestrationManager,
        repository: Repository,
        mock_agent_client: AsyncMock,
    ) -> None:
        orchestration = await _to_awaiting_approval(manager, repository, sub_agent_count=0)

        await manager.accept_plan(orchestration.id, USER_ID)

        [run] = await manager.store.list_runs(orchestration.id, AgentType.SUB_AGENT)
        spec = mock_agent_client.create_agent.call_args.args[0]
        assert spec.name == "Dark mode executor"
        assert spec.branch_name is not None
        assert spec.branch_name.startswith("feat/dark-mode-")
        assert run.plan_payload is not None
        assert run.plan_payload["primaryObjective"] == "Ship dark mode"

    async def test_second_accept_is_a_noop(
        self,
        manager: OrchestrationManager,
        repository: Repository,
        mock_agent_client: AsyncMock,
    ) -> None:
        orchestration = await _to_awaiting_approval(manager, repository)
        await manager.accept_plan(orchestration.id, USER_ID)
        calls = mock_agent_client.create_agent.call_count

        again = await manager.accept_plan(orchestration.id, USER_ID)

        assert again.status == OrchestrationStatus.EXECUTING
        assert mock_agent_client.create_agent.call_count == calls
        assert len(await manager.store.list_runs(orchestration.id, AgentType.SUB_AGENT)) == 2

    async def test_accept_requires_awaiting_approval(
        self, manager: OrchestrationManager, repository: Repository
    ) -> None:
        orchestration = await _to_awaiting_user(manager, repository, "q1")

        with pytest.raises(InvalidStateError):
            await manager.accept_plan(orchestration.id, USER_ID)

    async def test_failed_fanout_commits_nothing(
        self,
        manager: OrchestrationManager,
        repository: Repository,
        mock_agent_client: AsyncMock,
        user_connection: FakeConnection,
    ) -> None:
        orchestration = await _to_awaiting_approval(manager, repository, sub_agent_count=2)

        async def _duplicate_ids(spec: Any) -> AgentHandle:
            return AgentHandle(id="agent_dup", name=spec.name)

        mock_agent_client.create_agent.side_effect = _duplicate_ids

        with pytest.raises(sqlite3.IntegrityError):
            await manager.accept_plan(orchestration.id, USER_ID)

        loaded = await manager.get_orchestration(orchestration.id, USER_ID)
        assert loaded.status == OrchestrationStatus.FAILED
        assert loaded.plan_accepted is False
        assert await manager.store.list_runs(orchestration.id, AgentType.SUB_AGENT) == []
        assert "orchestration.error" in user_connection.event_types()


# ---------------------------------------------------------------------------
# Execution outcome
# ---------------------------------------------------------------------------


class TestExecutionOutcome:
    async def _executing(
        self, manager: OrchestrationManager, repository: Repository
    ) -> tuple[Orchestration, list[str]]:
        orchestration = await _to_awaiting_approval(manager, repository, sub_agent_count=2)
        await manager.accept_plan(orchestration.id, USER_ID)
        runs = await manager.store.list_runs(orchestration.id, AgentType.SUB_AGENT)
        return orchestration, [r.external_agent_id for r in runs]

    async def test_completes_when_every_sub_agent_completes(
        self,
        manager: OrchestrationManager,
        repository: Repository,
        user_connection: FakeConnection,
    ) -> None:
        orchestration, agent_ids = await self._executing(manager, repository)

        await manager.reconciler.apply_update(agent_ids[0], "FINISHED", [])
        midway = await manager.get_orchestration(orchestration.id, USER_ID)
        assert midway.status == OrchestrationStatus.EXECUTING

        await manager.reconciler.apply_update(agent_ids[1], "FINISHED", [])
        done = await manager.get_orchestration(orchestration.id, USER_ID)
        assert done.status == OrchestrationStatus.COMPLETED
        assert done.completed_at is not None
        [completed] = user_connection.payloads("orchestration.completed")
        assert completed["status"] == "COMPLETED"

    async def test_repeated_completion_keeps_completed_at(
        self, manager: OrchestrationManager, repository: Repository
    ) -> None:
        orchestration = await _to_awaiting_approval(manager, repository, sub_agent_count=0)
        await manager.accept_plan(orchestration.id, USER_ID)
        [run] = await manager.store.list_runs(orchestration.id, AgentType.SUB_AGENT)

        await manager.reconciler.apply_update(run.external_agent_id, "COMPLETED", [])
        first = await manager.get_orchestration(orchestration.id, USER_ID)
        await manager.reconciler.apply_update(run.external_agent_id, "COMPLETED", [])
        second = await manager.get_orchestration(orchestration.id, USER_ID)

        assert first.status == OrchestrationStatus.COMPLETED
        assert second.completed_at == first.completed_at

    async def test_any_failed_sub_agent_fails_orchestration(
        self, manager: OrchestrationManager, repository: Repository
    ) -> None:
        orchestration, agent_ids = await self._executing(manager, repository)

        await manager.reconciler.apply_update(agent_ids[1], "ERROR", [])

        failed = await manager.get_orchestration(orchestration.id, USER_ID)
        assert failed.status == OrchestrationStatus.FAILED
        assert failed.error_message is not None
        assert failed.completed_at is not None

    async def test_orchestrator_failure_before_acceptance(
        self, manager: OrchestrationManager, repository: Repository
    ) -> None:
        orchestration = await _create(manager, repository)

        await manager.reconciler.apply_update("agent_1", "FAILED", [])

        failed = await manager.get_orchestration(orchestration.id, USER_ID)
        assert failed.status == OrchestrationStatus.FAILED


# ---------------------------------------------------------------------------
# cancel / delete / fail
# ---------------------------------------------------------------------------


class TestCancelAndDelete:
    async def test_cancel_cancels_live_runs(
        self,
        manager: OrchestrationManager,
        repository: Repository,
        mock_agent_client: AsyncMock,
    ) -> None:
        orchestration = await _to_awaiting_approval(manager, repository, sub_agent_count=2)
        await manager.accept_plan(orchestration.id, USER_ID)

        cancelled = await manager.cancel_orchestration(orchestration.id, USER_ID)

        assert cancelled.status == OrchestrationStatus.CANCELLED
        runs = await manager.store.list_runs(orchestration.id)
        assert {r.status for r in runs} == {AgentRunStatus.CANCELLED}
        assert mock_agent_client.cancel_agent.await_count == 3

    async def test_cancel_survives_agent_service_errors(
        self,
        manager: OrchestrationManager,
        repository: Repository,
        mock_agent_client: AsyncMock,
    ) -> None:
        orchestration = await _create(manager, repository)
        mock_agent_client.cancel_agent.side_effect = AgentApiError(404, "gone")

        cancelled = await manager.cancel_orchestration(orchestration.id, USER_ID)

        assert cancelled.status == OrchestrationStatus.CANCELLED

    async def test_cancel_terminal_rejected(
        self, manager: OrchestrationManager, repository: Repository
    ) -> None:
        orchestration = await _create(manager, repository)
        await manager.cancel_orchestration(orchestration.id, USER_ID)

        with pytest.raises(InvalidStateError):
            await manager.cancel_orchestration(orchestration.id, USER_ID)

    async def test_delete_removes_everything(
        self,
        manager: OrchestrationManager,
        repository: Repository,
        mock_agent_client: AsyncMock,
    ) -> None:
        orchestration = await _create(manager, repository)

        await manager.delete_orchestration(orchestration.id, USER_ID)

        mock_agent_client.cancel_agent.assert_awaited_once_with("agent_1")
        with pytest.raises(NotFoundError):
            await manager.get_orchestration(orchestration.id, USER_ID)
        assert await manager.store.list_messages(orchestration.id) == []

    async def test_fail_is_noop_for_terminal_orchestration(
        self,
        manager: OrchestrationManager,
        repository: Repository,
    ) -> None:
        orchestration = await _create(manager, repository)
        await manager.cancel_orchestration(orchestration.id, USER_ID)

        await manager.fail_orchestration(orchestration.id, "late failure")

        loaded = await manager.get_orchestration(orchestration.id, USER_ID)
        assert loaded.status == OrchestrationStatus.CANCELLED
        assert loaded.error_message is None


# ---------------------------------------------------------------------------
# Full flow
# ---------------------------------------------------------------------------


async def test_questions_answers_plan_execute_complete(
    manager: OrchestrationManager,
    repository: Repository,
    user_connection: FakeConnection,
) -> None:
    orchestration = await _to_awaiting_user(manager, repository, "q1")
    await manager.submit_answers(orchestration.id, USER_ID, [("q1", "All pages")])
    await _orchestrator_reply(manager, orchestration, plan_output(1), "m2")
    await manager.accept_plan(orchestration.id, USER_ID)
    [sub_run] = await manager.store.list_runs(orchestration.id, AgentType.SUB_AGENT)
    await manager.reconciler.apply_update(sub_run.external_agent_id, "COMPLETED", [])

    statuses = [p["status"] for p in user_connection.payloads("orchestration.updated")]
    assert statuses == [
        "COLLECTING_REQUIREMENTS",
        "AWAITING_USER",
        "PLANNING",
        "AWAITING_APPROVAL",
        "EXECUTING",
        "COMPLETED",
    ]
    detail = await manager.get_orchestration_detail(orchestration.id, USER_ID)
    assert detail.orchestration.plan_accepted is True
    assistant = [m for m in detail.messages if m.role == MessageRole.ASSISTANT]
    assert len(assistant) == 2
    assert '"type": "plan"' in assistant[1].content
