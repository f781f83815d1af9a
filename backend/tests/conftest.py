"""Shared test fixtures for backend tests.

Provides a temporary SQLite store, a mocked agent service client, an
EventHub with fake connections, and a fully wired OrchestrationManager so
tests never touch the real agent API or a shared database.
"""

import asyncio
import itertools
import json
import sys
from collections.abc import Generator
from typing import Any
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketState

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from models.database import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents.client import AgentClient, AgentHandle  # noqa: E402
from api.errors import register_exception_handlers  # noqa: E402
from api.routes import router, set_orchestration_manager  # noqa: E402
from api.webhooks import router as webhook_router  # noqa: E402
from api.websocket import set_event_hub, websocket_router  # noqa: E402
from config import Settings  # noqa: E402
from events import EventHub  # noqa: E402
from models.database import OrchestrationStore  # noqa: E402
from models.entities import Repository  # noqa: E402
from orchestration_manager import OrchestrationManager  # noqa: E402
from supervisor import TaskSupervisor  # noqa: E402

USER_ID = "user_1"
OTHER_USER_ID = "user_2"
WEBHOOK_SECRET = "whsec_test"


# ---------------------------------------------------------------------------
# Fake real-time connection
# ---------------------------------------------------------------------------


class FakeConnection:
    """Stand-in for a starlette WebSocket that records what it was sent."""

    def __init__(self, fail: bool = False) -> None:
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []
        self.closed_with: int | None = None
        self.fail = fail

    async def send_json(self, data: Any, mode: str = "text") -> None:
        if self.fail:
            raise RuntimeError("socket is broken")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed_with = code
        self.client_state = WebSocketState.DISCONNECTED
        self.application_state = WebSocketState.DISCONNECTED

    def event_types(self) -> list[str]:
        return [message["type"] for message in self.sent]

    def payloads(self, event_type: str) -> list[dict[str, Any]]:
        return [m["payload"] for m in self.sent if m["type"] == event_type]


# ---------------------------------------------------------------------------
# Agent output factories
# ---------------------------------------------------------------------------


def questions_output(*question_ids: str, required: bool = True) -> dict[str, Any]:
    ids = question_ids or ("q1",)
    return {
        "type": "follow_up_questions",
        "questions": [
            {"id": qid, "question": f"What about {qid}?", "required": required}
            for qid in ids
        ],
    }


def plan_output(sub_agent_count: int = 2) -> dict[str, Any]:
    return {
        "type": "plan",
        "plan": {
            "primaryObjective": "Ship dark mode",
            "summary": "Add a theme toggle and dark palette",
            "steps": [
                {
                    "id": "step-1",
                    "title": "Add palette",
                    "description": "Define dark colors",
                    "deliverables": ["theme.css"],
                }
            ],
            "subAgents": [
                {
                    "id": f"agent-{i}",
                    "name": f"Worker {i}",
                    "scope": "frontend",
                    "instructions": "Follow the design system",
                    "tasks": [
                        {
                            "id": f"task-{i}",
                            "title": f"Task {i}",
                            "details": "Do the work",
                            "acceptanceCriteria": ["It works"],
                        }
                    ],
                }
                for i in range(1, sub_agent_count + 1)
            ],
        },
    }


def as_agent_text(payload: dict[str, Any]) -> str:
    """Wrap a payload the way agents usually answer: with chatter around it."""
    return f"Sure, here it is:\n```json\n{json.dumps(payload)}\n```\nLet me know."


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path: Any) -> Settings:
    """Settings isolated from the environment, with polling disabled."""
    return Settings(
        _env_file=None,
        database_path=str(tmp_path / "orchestrations.db"),
        webhook_secret=WEBHOOK_SECRET,
        public_base_url=None,
        polling_enabled=False,
        poll_interval_seconds=0.0,
        poll_max_attempts=3,
    )


@pytest.fixture()
async def store(test_settings: Settings) -> OrchestrationStore:
    """Return an initialized store backed by a temporary database file."""
    orchestration_store = OrchestrationStore(test_settings.database_path)
    await orchestration_store.init()
    return orchestration_store


def _make_mock_agent_client() -> AsyncMock:
    """Create a mock AgentClient handing out sequential agent ids.

    All methods are AsyncMock by default. Callers can override return
    values or side effects per-test.
    """
    client = AsyncMock(spec=AgentClient)
    counter = itertools.count(1)

    async def _create_agent(spec: Any) -> AgentHandle:
        return AgentHandle(id=f"agent_{next(counter)}", status="CREATING", name=spec.name)

    client.create_agent.side_effect = _create_agent
    client.send_followup.return_value = None
    client.cancel_agent.return_value = None
    client.get_conversation.return_value = []
    return client


@pytest.fixture()
def mock_agent_client() -> AsyncMock:
    """Provide a mock AgentClient for each test."""
    return _make_mock_agent_client()


@pytest.fixture()
def event_hub() -> EventHub:
    """Return a fresh EventHub instance for each test."""
    return EventHub(send_timeout=1.0)


@pytest.fixture()
def user_connection(event_hub: EventHub) -> FakeConnection:
    """A live connection registered for USER_ID."""
    connection = FakeConnection()
    event_hub.register(connection, USER_ID)
    return connection


@pytest.fixture()
def supervisor() -> TaskSupervisor:
    return TaskSupervisor()


@pytest.fixture()
def manager(
    store: OrchestrationStore,
    mock_agent_client: AsyncMock,
    event_hub: EventHub,
    supervisor: TaskSupervisor,
    test_settings: Settings,
) -> OrchestrationManager:
    """A manager wired to the temporary store and mocked collaborators."""
    return OrchestrationManager(
        store, mock_agent_client, event_hub, supervisor, config=test_settings
    )


@pytest.fixture()
async def repository(manager: OrchestrationManager) -> Repository:
    """A repository linked to USER_ID."""
    return await manager.link_repository(
        USER_ID,
        provider="github",
        name="webapp",
        full_name="acme/webapp",
        default_branch="main",
    )


# ---------------------------------------------------------------------------
# HTTP application
# ---------------------------------------------------------------------------


@pytest.fixture()
def api_manager(
    test_settings: Settings, mock_agent_client: AsyncMock
) -> OrchestrationManager:
    """A manager for TestClient-driven tests.

    Built synchronously because TestClient runs the app on its own loop.
    """
    orchestration_store = OrchestrationStore(test_settings.database_path)
    asyncio.run(orchestration_store.init())
    return OrchestrationManager(
        orchestration_store,
        mock_agent_client,
        EventHub(send_timeout=1.0),
        TaskSupervisor(),
        config=test_settings,
    )


@pytest.fixture()
def client(api_manager: OrchestrationManager) -> Generator[TestClient, None, None]:
    """TestClient over an app wired like main.py, minus the lifespan."""
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(router)
    app.include_router(webhook_router)
    app.include_router(websocket_router)
    set_orchestration_manager(api_manager)
    set_event_hub(api_manager.event_hub)

    with TestClient(app) as test_client:
        yield test_client

    set_orchestration_manager(None)
    set_event_hub(None)


def link_repository(client: TestClient, user_id: str = USER_ID) -> str:
    response = client.post(
        "/api/repositories",
        json={"name": "webapp", "fullName": "acme/webapp", "defaultBranch": "main"},
        headers={"X-User-Id": user_id},
    )
    assert response.status_code == 201
    return response.json()["id"]


def create_orchestration(client: TestClient, repository_id: str) -> dict[str, Any]:
    response = client.post(
        "/api/orchestrations",
        json={
            "repositoryId": repository_id,
            "title": "Dark mode",
            "description": "Add dark mode toggle",
        },
        headers={"X-User-Id": USER_ID},
    )
    assert response.status_code == 201
    return response.json()
