"""Task stores: durable, upsert-by-natural-key storage for tasks and steps."""

import asyncio
import json
import logging
import sqlite3
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Protocol, TypeVar

import aiosqlite

from ..config import StoreSettings
from ..exceptions import StoreUnavailable
from .models import (
    TERMINAL_TASK_STATUSES,
    AgentStep,
    AgentTask,
    StepStatus,
    StoredStepResult,
    StoredTaskResult,
    TaskStatus,
    TaskTelemetry,
    truncate_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLite's default limit on bound parameters is 999
_IN_CLAUSE_CHUNK = 500


class TaskStore(Protocol):
    """What the orchestrator and the telemetry aggregator need from storage."""

    async def initialize(self) -> None: ...

    async def upsert_task(self, task: AgentTask) -> None: ...

    async def upsert_step(self, task_id: str, step: AgentStep) -> None: ...

    async def query_tasks(self, workspace_id: int, since: datetime) -> list[StoredTaskResult]: ...

    async def query_steps(self, task_ids: Iterable[str]) -> list[StoredStepResult]: ...

    async def get_task_result(self, task_id: str) -> StoredTaskResult | None: ...

    async def get_step_results(self, task_id: str) -> list[StoredStepResult]: ...

    async def load_task(self, task_id: str) -> AgentTask | None: ...

    async def list_task_results(
        self, workspace_id: int, limit: int = 10, status: TaskStatus | None = None
    ) -> list[StoredTaskResult]: ...

    async def search_task_results(
        self,
        query: str,
        workspace_id: int | None = None,
        status: TaskStatus | None = None,
        limit: int = 20,
    ) -> list[StoredTaskResult]: ...

    async def cleanup_old_results(self, days: int) -> int: ...


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _load_json(value: str | None) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


class SQLiteTaskStore:
    """Async SQLite task store.

    Two tables keyed by natural id: ``agent_task_results`` by ``task_id`` and
    ``agent_step_results`` by ``(task_id, step_id)``. Writes are single-statement
    upserts, so retrying a write that failed transiently is always safe.
    """

    def __init__(
        self,
        db_path: Path | None = None,
        write_retries: int = 3,
        retry_backoff_seconds: float = 0.05,
    ):
        """Initialize SQLiteTaskStore.

        Args:
            db_path: Path to SQLite database. Defaults to ~/.config/agent-task-orchestrator/agent_tasks.db
            write_retries: Extra attempts for writes that hit a locked/busy database
            retry_backoff_seconds: Base delay between attempts (grows linearly)
        """
        if db_path is None:
            from ..config import get_config_dir

            db_path = get_config_dir() / "agent_tasks.db"
        self.db_path = Path(db_path)
        self.write_retries = write_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create schema if not exists."""
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                async with aiosqlite.connect(self.db_path) as db:
                    await db.execute("PRAGMA journal_mode = WAL")
                    await db.execute("PRAGMA busy_timeout = 5000")

                    await db.execute("""
                        CREATE TABLE IF NOT EXISTS agent_task_results (
                            task_id TEXT PRIMARY KEY,
                            workspace_id INTEGER NOT NULL,
                            task_type TEXT NOT NULL,
                            task_description TEXT,
                            status TEXT NOT NULL,
                            params TEXT,
                            created_at TEXT NOT NULL,
                            started_at TEXT,
                            completed_at TEXT,
                            duration_ms INTEGER,
                            error TEXT,
                            result_summary TEXT,
                            telemetry TEXT,
                            updated_at TEXT NOT NULL
                        )
                    """)
                    await db.execute("""
                        CREATE TABLE IF NOT EXISTS agent_step_results (
                            task_id TEXT NOT NULL,
                            step_id TEXT NOT NULL,
                            position INTEGER NOT NULL,
                            step_name TEXT NOT NULL,
                            step_description TEXT,
                            action TEXT NOT NULL,
                            params TEXT,
                            max_retries INTEGER DEFAULT 0,
                            status TEXT NOT NULL,
                            result TEXT,
                            error TEXT,
                            started_at TEXT,
                            completed_at TEXT,
                            duration_ms INTEGER,
                            retry_count INTEGER DEFAULT 0,
                            updated_at TEXT NOT NULL,
                            PRIMARY KEY (task_id, step_id)
                        )
                    """)

                    await db.execute(
                        "CREATE INDEX IF NOT EXISTS idx_task_results_workspace ON agent_task_results(workspace_id, created_at)"
                    )
                    await db.execute("CREATE INDEX IF NOT EXISTS idx_task_results_status ON agent_task_results(status, created_at)")
                    await db.execute("CREATE INDEX IF NOT EXISTS idx_step_results_action ON agent_step_results(action, status)")
                    await db.commit()
            except (sqlite3.Error, OSError) as e:
                raise StoreUnavailable(f"Cannot initialize task store at {self.db_path}: {e}") from e

            self._initialized = True

    async def _with_retries(self, operation: Callable[[], Awaitable[T]], what: str) -> T:
        attempts = self.write_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except sqlite3.OperationalError as e:
                if attempt >= attempts:
                    raise StoreUnavailable(f"{what} failed after {attempts} attempts: {e}") from e
                logger.warning(f"{what} failed (attempt {attempt}/{attempts}): {e}")
                await asyncio.sleep(self.retry_backoff_seconds * attempt)
            except (sqlite3.Error, OSError) as e:
                raise StoreUnavailable(f"{what} failed: {e}") from e
        raise AssertionError("unreachable")

    async def _read(self, operation: Callable[[aiosqlite.Connection], Awaitable[T]]) -> T:
        await self.initialize()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                return await operation(db)
        except (sqlite3.Error, OSError) as e:
            raise StoreUnavailable(f"Task store read failed: {e}") from e

    async def upsert_task(self, task: AgentTask) -> None:
        """Insert the task record if absent, else update its mutable fields."""
        await self.initialize()
        now = _iso(datetime.now(UTC))
        params = (
            task.id,
            task.workspace_id,
            task.type,
            task.description,
            task.status.value,
            _dump_json(task.params),
            _iso(task.created_at),
            _iso(task.started_at),
            _iso(task.completed_at),
            task.duration_ms,
            truncate_error(task.error),
            _dump_json(task.result_summary()),
            task.telemetry.model_dump_json(),
            now,
        )

        async def write() -> None:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("PRAGMA busy_timeout = 5000")
                await db.execute(
                    """
                    INSERT INTO agent_task_results (
                        task_id, workspace_id, task_type, task_description, status, params,
                        created_at, started_at, completed_at, duration_ms, error,
                        result_summary, telemetry, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(task_id) DO UPDATE SET
                        status = excluded.status,
                        started_at = excluded.started_at,
                        completed_at = excluded.completed_at,
                        duration_ms = excluded.duration_ms,
                        error = excluded.error,
                        result_summary = excluded.result_summary,
                        telemetry = excluded.telemetry,
                        updated_at = excluded.updated_at
                """,
                    params,
                )
                await db.commit()

        await self._with_retries(write, f"Upsert of task {task.id}")

    async def upsert_step(self, task_id: str, step: AgentStep) -> None:
        """Insert the step record if absent, else update its state.

        A step's position is assigned on first insert, so steps must first be
        written in declaration order.
        """
        await self.initialize()
        now = _iso(datetime.now(UTC))
        params = (
            task_id,
            step.id,
            task_id,
            step.name,
            step.description,
            step.action,
            _dump_json(step.params),
            step.max_retries,
            step.status.value,
            _dump_json(step.result),
            truncate_error(step.error),
            _iso(step.started_at),
            _iso(step.completed_at),
            step.duration_ms,
            step.retry_count,
            now,
        )

        async def write() -> None:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("PRAGMA busy_timeout = 5000")
                await db.execute(
                    """
                    INSERT INTO agent_step_results (
                        task_id, step_id, position, step_name, step_description, action, params,
                        max_retries, status, result, error, started_at, completed_at,
                        duration_ms, retry_count, updated_at
                    ) VALUES (
                        ?, ?,
                        (SELECT COALESCE(MAX(position) + 1, 0) FROM agent_step_results WHERE task_id = ?),
                        ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
                    )
                    ON CONFLICT(task_id, step_id) DO UPDATE SET
                        status = excluded.status,
                        result = excluded.result,
                        error = excluded.error,
                        started_at = excluded.started_at,
                        completed_at = excluded.completed_at,
                        duration_ms = excluded.duration_ms,
                        retry_count = excluded.retry_count,
                        updated_at = excluded.updated_at
                """,
                    params,
                )
                await db.commit()

        await self._with_retries(write, f"Upsert of step {task_id}/{step.id}")

    async def query_tasks(self, workspace_id: int, since: datetime) -> list[StoredTaskResult]:
        """Tasks for a workspace created at or after ``since``, newest first."""

        async def read(db: aiosqlite.Connection) -> list[StoredTaskResult]:
            async with db.execute(
                """
                SELECT * FROM agent_task_results
                WHERE workspace_id = ? AND created_at >= ?
                ORDER BY created_at DESC
            """,
                (workspace_id, _iso(since)),
            ) as cursor:
                return [self._row_to_task_result(row) for row in await cursor.fetchall()]

        return await self._read(read)

    async def query_steps(self, task_ids: Iterable[str]) -> list[StoredStepResult]:
        """Steps of the given tasks, in task then declaration order."""
        ids = list(dict.fromkeys(task_ids))
        if not ids:
            return []

        async def read(db: aiosqlite.Connection) -> list[StoredStepResult]:
            results: list[StoredStepResult] = []
            for start in range(0, len(ids), _IN_CLAUSE_CHUNK):
                chunk = ids[start : start + _IN_CLAUSE_CHUNK]
                placeholders = ", ".join("?" for _ in chunk)
                async with db.execute(
                    f"SELECT * FROM agent_step_results WHERE task_id IN ({placeholders}) ORDER BY task_id, position",
                    chunk,
                ) as cursor:
                    results.extend(self._row_to_step_result(row) for row in await cursor.fetchall())
            return results

        return await self._read(read)

    async def get_task_result(self, task_id: str) -> StoredTaskResult | None:
        async def read(db: aiosqlite.Connection) -> StoredTaskResult | None:
            async with db.execute("SELECT * FROM agent_task_results WHERE task_id = ?", (task_id,)) as cursor:
                row = await cursor.fetchone()
                return self._row_to_task_result(row) if row else None

        return await self._read(read)

    async def get_step_results(self, task_id: str) -> list[StoredStepResult]:
        return await self.query_steps([task_id])

    async def load_task(self, task_id: str) -> AgentTask | None:
        """Rebuild a full AgentTask from its checkpointed records."""

        async def read(db: aiosqlite.Connection) -> AgentTask | None:
            async with db.execute("SELECT * FROM agent_task_results WHERE task_id = ?", (task_id,)) as cursor:
                task_row = await cursor.fetchone()
            if task_row is None:
                return None
            async with db.execute(
                "SELECT * FROM agent_step_results WHERE task_id = ? ORDER BY position", (task_id,)
            ) as cursor:
                step_rows = await cursor.fetchall()
            return self._rows_to_task(task_row, step_rows)

        return await self._read(read)

    async def list_task_results(
        self, workspace_id: int, limit: int = 10, status: TaskStatus | None = None
    ) -> list[StoredTaskResult]:
        """Most recent task results for a workspace."""

        async def read(db: aiosqlite.Connection) -> list[StoredTaskResult]:
            query = "SELECT * FROM agent_task_results WHERE workspace_id = ?"
            params: list[Any] = [workspace_id]
            if status:
                query += " AND status = ?"
                params.append(status.value)
            query += " ORDER BY created_at DESC LIMIT ?"
            params.append(limit)
            async with db.execute(query, params) as cursor:
                return [self._row_to_task_result(row) for row in await cursor.fetchall()]

        return await self._read(read)

    async def search_task_results(
        self,
        query: str,
        workspace_id: int | None = None,
        status: TaskStatus | None = None,
        limit: int = 20,
    ) -> list[StoredTaskResult]:
        """Case-insensitive substring search over task descriptions, types, and step errors."""
        term = query.strip().lower()
        if not term:
            return []
        pattern = f"%{term}%"

        async def read(db: aiosqlite.Connection) -> list[StoredTaskResult]:
            sql = """
                SELECT * FROM agent_task_results atr
                WHERE (
                    LOWER(COALESCE(atr.task_description, '')) LIKE ?
                    OR LOWER(atr.task_type) LIKE ?
                    OR LOWER(COALESCE(atr.error, '')) LIKE ?
                    OR EXISTS (
                        SELECT 1 FROM agent_step_results asr
                        WHERE asr.task_id = atr.task_id
                          AND (LOWER(COALESCE(asr.error, '')) LIKE ? OR LOWER(asr.step_name) LIKE ?)
                    )
                )
            """
            params: list[Any] = [pattern] * 5
            if workspace_id is not None:
                sql += " AND atr.workspace_id = ?"
                params.append(workspace_id)
            if status:
                sql += " AND atr.status = ?"
                params.append(status.value)
            sql += " ORDER BY atr.created_at DESC LIMIT ?"
            params.append(limit)
            async with db.execute(sql, params) as cursor:
                return [self._row_to_task_result(row) for row in await cursor.fetchall()]

        return await self._read(read)

    async def cleanup_old_results(self, days: int) -> int:
        """Delete terminal tasks (and their steps) older than N days. Returns tasks deleted."""
        await self.initialize()
        cutoff = _iso(datetime.now(UTC) - timedelta(days=days))
        terminal = [s.value for s in TERMINAL_TASK_STATUSES]

        async def write() -> int:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("PRAGMA busy_timeout = 5000")
                await db.execute(
                    """
                    DELETE FROM agent_step_results WHERE task_id IN (
                        SELECT task_id FROM agent_task_results
                        WHERE created_at < ? AND status IN (?, ?, ?)
                    )
                """,
                    (cutoff, *terminal),
                )
                cursor = await db.execute(
                    "DELETE FROM agent_task_results WHERE created_at < ? AND status IN (?, ?, ?)",
                    (cutoff, *terminal),
                )
                await db.commit()
                return cursor.rowcount

        return await self._with_retries(write, "Cleanup of old task results")

    @staticmethod
    def _row_to_task_result(row: aiosqlite.Row) -> StoredTaskResult:
        summary = _load_json(row["result_summary"])
        return StoredTaskResult(
            task_id=row["task_id"],
            workspace_id=row["workspace_id"],
            task_type=row["task_type"],
            task_description=row["task_description"] or "",
            status=TaskStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            started_at=_parse_dt(row["started_at"]),
            completed_at=_parse_dt(row["completed_at"]),
            duration_ms=row["duration_ms"],
            error=row["error"],
            result_summary=summary if isinstance(summary, dict) else None,
        )

    @staticmethod
    def _row_to_step_result(row: aiosqlite.Row) -> StoredStepResult:
        return StoredStepResult(
            task_id=row["task_id"],
            step_id=row["step_id"],
            position=row["position"],
            step_name=row["step_name"],
            step_description=row["step_description"] or "",
            action=row["action"],
            status=StepStatus(row["status"]),
            result=_load_json(row["result"]),
            error=row["error"],
            started_at=_parse_dt(row["started_at"]),
            completed_at=_parse_dt(row["completed_at"]),
            duration_ms=row["duration_ms"],
            retry_count=row["retry_count"] or 0,
        )

    @staticmethod
    def _rows_to_task(task_row: aiosqlite.Row, step_rows: Iterable[aiosqlite.Row]) -> AgentTask:
        params = _load_json(task_row["params"])
        telemetry_raw = task_row["telemetry"]
        telemetry = TaskTelemetry.model_validate_json(telemetry_raw) if telemetry_raw else TaskTelemetry()
        steps = []
        for row in step_rows:
            step_params = _load_json(row["params"])
            steps.append(
                AgentStep(
                    id=row["step_id"],
                    name=row["step_name"],
                    description=row["step_description"] or "",
                    action=row["action"],
                    params=step_params if isinstance(step_params, dict) else {},
                    max_retries=row["max_retries"] or 0,
                    status=StepStatus(row["status"]),
                    result=_load_json(row["result"]),
                    error=row["error"],
                    started_at=_parse_dt(row["started_at"]),
                    completed_at=_parse_dt(row["completed_at"]),
                    duration_ms=row["duration_ms"],
                    retry_count=row["retry_count"] or 0,
                )
            )
        return AgentTask(
            id=task_row["task_id"],
            workspace_id=task_row["workspace_id"],
            type=task_row["task_type"],
            description=task_row["task_description"] or "",
            status=TaskStatus(task_row["status"]),
            steps=steps,
            params=params if isinstance(params, dict) else {},
            created_at=datetime.fromisoformat(task_row["created_at"]),
            started_at=_parse_dt(task_row["started_at"]),
            completed_at=_parse_dt(task_row["completed_at"]),
            error=task_row["error"],
            telemetry=telemetry,
        )


class InMemoryTaskStore:
    """Process-local task store for tests and offline runs."""

    def __init__(self) -> None:
        self._tasks: dict[str, AgentTask] = {}
        self._steps: dict[str, dict[str, AgentStep]] = {}

    async def initialize(self) -> None:
        return None

    async def upsert_task(self, task: AgentTask) -> None:
        existing = self._tasks.get(task.id)
        stored = task.model_copy(deep=True, update={"steps": []})
        if existing is not None:
            # Identity fields are fixed by the first write
            stored = stored.model_copy(
                update={
                    "workspace_id": existing.workspace_id,
                    "type": existing.type,
                    "description": existing.description,
                    "created_at": existing.created_at,
                }
            )
        self._tasks[task.id] = stored
        self._steps.setdefault(task.id, {})

    async def upsert_step(self, task_id: str, step: AgentStep) -> None:
        self._steps.setdefault(task_id, {})[step.id] = step.model_copy(deep=True)

    def _with_steps(self, task_id: str) -> AgentTask:
        task = self._tasks[task_id].model_copy(deep=True)
        task.steps = [s.model_copy(deep=True) for s in self._steps.get(task_id, {}).values()]
        return task

    def _to_result(self, task_id: str) -> StoredTaskResult:
        task = self._with_steps(task_id)
        return StoredTaskResult(
            task_id=task.id,
            workspace_id=task.workspace_id,
            task_type=task.type,
            task_description=task.description,
            status=task.status,
            created_at=task.created_at,
            started_at=task.started_at,
            completed_at=task.completed_at,
            duration_ms=task.duration_ms,
            error=truncate_error(task.error),
            result_summary=json.loads(json.dumps(task.result_summary(), default=str)),
        )

    async def query_tasks(self, workspace_id: int, since: datetime) -> list[StoredTaskResult]:
        results = [
            self._to_result(task_id)
            for task_id, task in self._tasks.items()
            if task.workspace_id == workspace_id and task.created_at >= since
        ]
        return sorted(results, key=lambda r: r.created_at, reverse=True)

    async def query_steps(self, task_ids: Iterable[str]) -> list[StoredStepResult]:
        results: list[StoredStepResult] = []
        for task_id in dict.fromkeys(task_ids):
            for position, step in enumerate(self._steps.get(task_id, {}).values()):
                results.append(
                    StoredStepResult(
                        task_id=task_id,
                        step_id=step.id,
                        position=position,
                        step_name=step.name,
                        step_description=step.description,
                        action=step.action,
                        status=step.status,
                        result=step.result,
                        error=truncate_error(step.error),
                        started_at=step.started_at,
                        completed_at=step.completed_at,
                        duration_ms=step.duration_ms,
                        retry_count=step.retry_count,
                    )
                )
        return results

    async def get_task_result(self, task_id: str) -> StoredTaskResult | None:
        if task_id not in self._tasks:
            return None
        return self._to_result(task_id)

    async def get_step_results(self, task_id: str) -> list[StoredStepResult]:
        return await self.query_steps([task_id])

    async def load_task(self, task_id: str) -> AgentTask | None:
        if task_id not in self._tasks:
            return None
        return self._with_steps(task_id)

    async def list_task_results(
        self, workspace_id: int, limit: int = 10, status: TaskStatus | None = None
    ) -> list[StoredTaskResult]:
        results = [
            self._to_result(task_id)
            for task_id, task in self._tasks.items()
            if task.workspace_id == workspace_id and (status is None or task.status == status)
        ]
        return sorted(results, key=lambda r: r.created_at, reverse=True)[:limit]

    async def search_task_results(
        self,
        query: str,
        workspace_id: int | None = None,
        status: TaskStatus | None = None,
        limit: int = 20,
    ) -> list[StoredTaskResult]:
        term = query.strip().lower()
        if not term:
            return []

        def matches(task: AgentTask) -> bool:
            haystacks = [task.description, task.type, task.error or ""]
            for step in task.steps:
                haystacks.extend([step.error or "", step.name])
            return any(term in h.lower() for h in haystacks)

        results = []
        for task_id, task in self._tasks.items():
            if workspace_id is not None and task.workspace_id != workspace_id:
                continue
            if status and task.status != status:
                continue
            if matches(self._with_steps(task_id)):
                results.append(self._to_result(task_id))
        return sorted(results, key=lambda r: r.created_at, reverse=True)[:limit]

    async def cleanup_old_results(self, days: int) -> int:
        cutoff = datetime.now(UTC) - timedelta(days=days)
        stale = [
            task_id
            for task_id, task in self._tasks.items()
            if task.created_at < cutoff and task.status in TERMINAL_TASK_STATUSES
        ]
        for task_id in stale:
            del self._tasks[task_id]
            self._steps.pop(task_id, None)
        return len(stale)


def create_task_store(settings: StoreSettings) -> TaskStore:
    """Build the task store selected by configuration."""
    if settings.backend == "memory":
        return InMemoryTaskStore()
    return SQLiteTaskStore(
        db_path=settings.get_db_path(),
        write_retries=settings.write_retries,
        retry_backoff_seconds=settings.retry_backoff_seconds,
    )
