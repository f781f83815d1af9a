"""SQLite-based orchestration persistence using aiosqlite.

This module provides the OrchestrationStore class, the single source of
truth for repositories, orchestrations, agent runs and messages. Errors
are logged and then propagated so the caller can fail the transition.

Tables:
    repositories: Code repositories known to the system (unique full name).
    user_repositories: Which user linked which repository, with an alias.
    orchestrations: One feature request and its lifecycle status.
    agent_runs: External agent invocations (orchestrator + sub-agents).
    agent_messages: Insertion-ordered conversation history.

Usage:
    >>> from models.database import OrchestrationStore
    >>> store = OrchestrationStore("./data/orchestrations.db")
    >>> await store.init()
    >>> async with store.transaction() as tx:
    ...     await tx.update_orchestration(orch_id, plan_accepted=True)
    ...     await tx.insert_run(run)
"""

import json
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from models.entities import AgentMessage, AgentRun, Orchestration, Repository
from models.schemas import AgentType

logger = structlog.get_logger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS repositories (
        id TEXT PRIMARY KEY,
        provider TEXT NOT NULL,
        name TEXT NOT NULL,
        full_name TEXT NOT NULL UNIQUE,
        default_branch TEXT,
        clone_url TEXT,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_repositories (
        user_id TEXT NOT NULL,
        repository_id TEXT NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
        alias TEXT,
        created_at REAL NOT NULL,
        PRIMARY KEY (user_id, repository_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orchestrations (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        repository_id TEXT NOT NULL REFERENCES repositories(id),
        title TEXT NOT NULL,
        description TEXT NOT NULL,
        status TEXT NOT NULL,
        plan_accepted INTEGER NOT NULL DEFAULT 0,
        plan_payload TEXT,
        error_message TEXT,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL,
        completed_at REAL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_runs (
        id TEXT PRIMARY KEY,
        orchestration_id TEXT NOT NULL REFERENCES orchestrations(id) ON DELETE CASCADE,
        parent_run_id TEXT REFERENCES agent_runs(id) ON DELETE CASCADE,
        external_agent_id TEXT NOT NULL UNIQUE,
        name TEXT,
        agent_type TEXT NOT NULL,
        status TEXT NOT NULL,
        plan_payload TEXT,
        metadata TEXT,
        last_webhook_event TEXT,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_messages (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        orchestration_id TEXT NOT NULL REFERENCES orchestrations(id) ON DELETE CASCADE,
        agent_run_id TEXT REFERENCES agent_runs(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_orchestrations_user
    ON orchestrations(user_id, created_at DESC)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_agent_runs_orchestration
    ON agent_runs(orchestration_id)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_agent_messages_orchestration
    ON agent_messages(orchestration_id, seq)
    """,
]

_ORCHESTRATION_COLUMNS = frozenset(
    {"status", "plan_accepted", "plan_payload", "error_message", "completed_at"}
)
_RUN_COLUMNS = frozenset(
    {"status", "plan_payload", "metadata", "last_webhook_event", "name"}
)
_JSON_COLUMNS = frozenset({"plan_payload", "metadata", "last_webhook_event"})


def _encode(column: str, value: Any) -> Any:
    """Convert a Python value into something sqlite can bind."""
    if column in _JSON_COLUMNS:
        return json.dumps(value) if value is not None else None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def _build_update(
    table: str,
    allowed: frozenset[str],
    row_id: str,
    fields: dict[str, Any],
) -> tuple[str, tuple[Any, ...]]:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Cannot update {table} columns: {sorted(unknown)}")
    assignments = [f"{column} = ?" for column in fields]
    assignments.append("updated_at = ?")
    params = [_encode(column, value) for column, value in fields.items()]
    params.extend([time.time(), row_id])
    sql = f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ?"
    return sql, tuple(params)


class StoreTransaction:
    """Write operations bound to a single open transaction.

    Nothing is visible to other connections until the surrounding
    ``OrchestrationStore.transaction()`` block exits without raising.
    """

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def insert_orchestration(self, orchestration: Orchestration) -> None:
        await self._db.execute(
            """
            INSERT INTO orchestrations
                (id, user_id, repository_id, title, description, status,
                 plan_accepted, plan_payload, error_message,
                 created_at, updated_at, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                orchestration.id,
                orchestration.user_id,
                orchestration.repository_id,
                orchestration.title,
                orchestration.description,
                orchestration.status.value,
                int(orchestration.plan_accepted),
                _encode("plan_payload", orchestration.plan_payload),
                orchestration.error_message,
                orchestration.created_at,
                orchestration.updated_at,
                orchestration.completed_at,
            ),
        )

    async def update_orchestration(self, orchestration_id: str, **fields: Any) -> None:
        sql, params = _build_update(
            "orchestrations", _ORCHESTRATION_COLUMNS, orchestration_id, fields
        )
        await self._db.execute(sql, params)

    async def insert_run(self, run: AgentRun) -> None:
        await self._db.execute(
            """
            INSERT INTO agent_runs
                (id, orchestration_id, parent_run_id, external_agent_id, name,
                 agent_type, status, plan_payload, metadata, last_webhook_event,
                 created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.id,
                run.orchestration_id,
                run.parent_run_id,
                run.external_agent_id,
                run.name,
                run.agent_type.value,
                run.status.value,
                _encode("plan_payload", run.plan_payload),
                _encode("metadata", run.metadata),
                _encode("last_webhook_event", run.last_webhook_event),
                run.created_at,
                run.updated_at,
            ),
        )

    async def update_run(self, run_id: str, **fields: Any) -> None:
        sql, params = _build_update("agent_runs", _RUN_COLUMNS, run_id, fields)
        await self._db.execute(sql, params)

    async def append_message(self, message: AgentMessage) -> None:
        await self._db.execute(
            """
            INSERT INTO agent_messages
                (id, orchestration_id, agent_run_id, role, content, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                message.id,
                message.orchestration_id,
                message.agent_run_id,
                message.role.value,
                message.content,
                message.created_at,
            ),
        )


class OrchestrationStore:
    """Async SQLite store for orchestration state.

    Each public method opens its own connection, the way short-lived
    request handlers expect. Multi-statement writes that must commit
    together go through ``transaction()``.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path

    async def init(self) -> None:
        """Create database tables if they do not exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            async with self._connect() as db:
                for statement in _SCHEMA:
                    await db.execute(statement)
                await db.commit()
            logger.info("orchestration_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "orchestration_store_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            yield db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        """Open a transaction; commit on clean exit, roll back on error."""
        async with self._connect() as db:
            try:
                yield StoreTransaction(db)
                await db.commit()
            except BaseException as e:
                await db.rollback()
                logger.warning("store_transaction_rolled_back", error=str(e))
                raise

    async def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> dict[str, Any] | None:
        async with self._connect() as db:
            cursor = await db.execute(sql, params)
            row = await cursor.fetchone()
            return dict(row) if row is not None else None

    async def _fetch_all(self, sql: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        async with self._connect() as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    # -----------------------------------------------------------------
    # Repositories
    # -----------------------------------------------------------------

    async def link_repository(
        self,
        user_id: str,
        repository: Repository,
    ) -> Repository:
        """Upsert a repository by full name and link it to a user.

        Returns:
            The stored repository (its id is the existing one if the full
            name was already known).
        """
        now = time.time()
        async with self.transaction() as tx:
            db = tx._db
            await db.execute(
                """
                INSERT INTO repositories
                    (id, provider, name, full_name, default_branch, clone_url, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(full_name) DO UPDATE SET
                    name = excluded.name,
                    default_branch = excluded.default_branch,
                    clone_url = excluded.clone_url
                """,
                (
                    repository.id,
                    repository.provider,
                    repository.name,
                    repository.full_name,
                    repository.default_branch,
                    repository.clone_url,
                    now,
                ),
            )
            cursor = await db.execute(
                "SELECT id FROM repositories WHERE full_name = ?",
                (repository.full_name,),
            )
            row = await cursor.fetchone()
            repository_id = row["id"]
            await db.execute(
                """
                INSERT INTO user_repositories (user_id, repository_id, alias, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, repository_id) DO UPDATE SET alias = excluded.alias
                """,
                (user_id, repository_id, repository.alias, now),
            )

        logger.debug(
            "repository_linked",
            user_id=user_id,
            repository_id=repository_id,
            full_name=repository.full_name,
        )
        linked = await self.get_repository_for_user(user_id, repository_id)
        assert linked is not None
        return linked

    async def get_repository_for_user(
        self, user_id: str, repository_id: str
    ) -> Repository | None:
        row = await self._fetch_one(
            """
            SELECT r.*, ur.alias AS alias
            FROM repositories r
            JOIN user_repositories ur ON ur.repository_id = r.id
            WHERE ur.user_id = ? AND r.id = ?
            """,
            (user_id, repository_id),
        )
        return Repository.from_row(row) if row else None

    async def get_repository(self, repository_id: str) -> Repository | None:
        row = await self._fetch_one(
            "SELECT * FROM repositories WHERE id = ?", (repository_id,)
        )
        return Repository.from_row(row) if row else None

    async def list_repositories(self, user_id: str) -> list[Repository]:
        rows = await self._fetch_all(
            """
            SELECT r.*, ur.alias AS alias
            FROM repositories r
            JOIN user_repositories ur ON ur.repository_id = r.id
            WHERE ur.user_id = ?
            ORDER BY ur.created_at DESC
            """,
            (user_id,),
        )
        return [Repository.from_row(row) for row in rows]

    # -----------------------------------------------------------------
    # Orchestrations
    # -----------------------------------------------------------------

    async def get_orchestration(self, orchestration_id: str) -> Orchestration | None:
        row = await self._fetch_one(
            "SELECT * FROM orchestrations WHERE id = ?", (orchestration_id,)
        )
        return Orchestration.from_row(row) if row else None

    async def list_orchestrations(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> list[Orchestration]:
        rows = await self._fetch_all(
            """
            SELECT * FROM orchestrations
            WHERE user_id = ?
            ORDER BY created_at DESC
            LIMIT ? OFFSET ?
            """,
            (user_id, limit, offset),
        )
        return [Orchestration.from_row(row) for row in rows]

    async def update_orchestration(self, orchestration_id: str, **fields: Any) -> None:
        """Update selected orchestration columns (``updated_at`` is implied)."""
        async with self.transaction() as tx:
            await tx.update_orchestration(orchestration_id, **fields)
        logger.debug(
            "orchestration_updated",
            orchestration_id=orchestration_id,
            fields=sorted(fields),
        )

    async def delete_orchestration(self, orchestration_id: str) -> None:
        """Hard-delete an orchestration with its runs and messages."""
        async with self.transaction() as tx:
            await tx._db.execute(
                "DELETE FROM orchestrations WHERE id = ?", (orchestration_id,)
            )
        logger.info("orchestration_deleted", orchestration_id=orchestration_id)

    # -----------------------------------------------------------------
    # Agent runs
    # -----------------------------------------------------------------

    async def insert_run(self, run: AgentRun) -> None:
        async with self.transaction() as tx:
            await tx.insert_run(run)

    async def get_run(self, run_id: str) -> AgentRun | None:
        row = await self._fetch_one("SELECT * FROM agent_runs WHERE id = ?", (run_id,))
        return AgentRun.from_row(row) if row else None

    async def get_run_by_external_id(self, external_agent_id: str) -> AgentRun | None:
        row = await self._fetch_one(
            "SELECT * FROM agent_runs WHERE external_agent_id = ?",
            (external_agent_id,),
        )
        return AgentRun.from_row(row) if row else None

    async def list_runs(
        self,
        orchestration_id: str,
        agent_type: AgentType | None = None,
    ) -> list[AgentRun]:
        if agent_type is None:
            rows = await self._fetch_all(
                "SELECT * FROM agent_runs WHERE orchestration_id = ? ORDER BY created_at",
                (orchestration_id,),
            )
        else:
            rows = await self._fetch_all(
                """
                SELECT * FROM agent_runs
                WHERE orchestration_id = ? AND agent_type = ?
                ORDER BY created_at
                """,
                (orchestration_id, agent_type.value),
            )
        return [AgentRun.from_row(row) for row in rows]

    async def update_run(self, run_id: str, **fields: Any) -> None:
        async with self.transaction() as tx:
            await tx.update_run(run_id, **fields)
        logger.debug("agent_run_updated", run_id=run_id, fields=sorted(fields))

    # -----------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------

    async def append_message(self, message: AgentMessage) -> None:
        async with self.transaction() as tx:
            await tx.append_message(message)

    async def list_messages(self, orchestration_id: str) -> list[AgentMessage]:
        rows = await self._fetch_all(
            "SELECT * FROM agent_messages WHERE orchestration_id = ? ORDER BY seq",
            (orchestration_id,),
        )
        return [AgentMessage.from_row(row) for row in rows]
