"""SQLite implementation of the execution store."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, TypeVar

from pydantic_core import PydanticSerializationError

from ..contracts import ApprovalDecision, ExecutionStatus, StepError, StepOutcome, utcnow
from ..errors import ExecutionNotFound, PersistenceError
from .models import (
    Execution,
    StepClaim,
    StepRun,
    TriggerInfo,
    apply_approval,
    apply_outcome,
    apply_pause_request,
    apply_resume,
    apply_rolled_back,
    apply_status,
    claim_step,
)
from .repository import ExecutionStore

T = TypeVar("T")


class SQLiteExecutionStore(ExecutionStore):
    """Persist execution state using SQLite.

    All statements run on one connection in a worker thread. Every mutation
    loads the execution, applies the state machine helper and writes it back
    inside a single ``BEGIN IMMEDIATE`` transaction.
    """

    def __init__(self, db_path: str | Path, clock: Callable[[], datetime] = utcnow):
        self.db_path = str(db_path)
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                definition_id TEXT NOT NULL,
                status TEXT NOT NULL,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_runs (
                execution_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                status TEXT NOT NULL,
                data TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (execution_id, step_name)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS schedules (
                schedule_id TEXT PRIMARY KEY,
                last_fire_at TEXT NOT NULL
            )
            """
        )

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as exc:
            raise PersistenceError(f"SQLite error on {self.db_path}: {exc}") from exc
        except PydanticSerializationError as exc:
            raise PersistenceError(f"Cannot serialize execution state: {exc}") from exc

    def _load(self, execution_id: str) -> Optional[Execution]:
        cur = self._conn.cursor()
        row = cur.execute(
            "SELECT data FROM executions WHERE id = ?", (execution_id,)
        ).fetchone()
        if row is None:
            return None
        execution = Execution.model_validate_json(row["data"])
        step_rows = cur.execute(
            "SELECT data FROM step_runs WHERE execution_id = ? ORDER BY rowid",
            (execution_id,),
        ).fetchall()
        execution.steps = [StepRun.model_validate_json(r["data"]) for r in step_rows]
        return execution

    def _save(self, execution: Execution) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            INSERT INTO executions (id, definition_id, status, data, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                data = excluded.data,
                updated_at = excluded.updated_at
            """,
            (
                execution.id,
                execution.definition_id,
                execution.status.value,
                execution.model_dump_json(exclude={"steps"}),
                execution.created_at.isoformat(),
                execution.updated_at.isoformat(),
            ),
        )
        for run in execution.steps:
            cur.execute(
                """
                INSERT INTO step_runs (execution_id, step_name, status, data, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(execution_id, step_name) DO UPDATE SET
                    status = excluded.status,
                    data = excluded.data,
                    updated_at = excluded.updated_at
                """,
                (
                    execution.id,
                    run.step_name,
                    run.status.value,
                    run.model_dump_json(),
                    run.updated_at.isoformat(),
                ),
            )

    def _transaction(self, execution_id: str, mutate: Callable[[Execution], T]) -> T:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                execution = self._load(execution_id)
                if execution is None:
                    raise ExecutionNotFound(execution_id)
                result = mutate(execution)
                self._save(execution)
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")
            return result

    def _read(self, execution_id: str) -> Optional[Execution]:
        with self._lock:
            return self._load(execution_id)

    def _insert(self, execution: Execution) -> None:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                self._save(execution)
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def _list(
        self, status: Optional[ExecutionStatus], definition_id: Optional[str]
    ) -> List[Execution]:
        query = "SELECT id FROM executions WHERE 1 = 1"
        params: List[Any] = []
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        if definition_id is not None:
            query += " AND definition_id = ?"
            params.append(definition_id)
        query += " ORDER BY created_at, rowid"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
            return [e for e in (self._load(r["id"]) for r in rows) if e is not None]

    # ------------------------------------------------------------------
    # Store API
    async def create_execution(
        self,
        definition_id: str,
        initial_context: Dict[str, Any],
        *,
        dependencies: Dict[str, List[str]],
        trigger: Optional[TriggerInfo] = None,
    ) -> Execution:
        now = self._clock()
        execution = Execution(
            definition_id=definition_id,
            initial_context=dict(initial_context),
            context=dict(initial_context),
            dependencies={k: list(v) for k, v in dependencies.items()},
            trigger=trigger or TriggerInfo(),
            created_at=now,
            updated_at=now,
        )
        await self._run(self._insert, execution)
        return execution

    async def get_execution(self, execution_id: str) -> Execution | None:
        return await self._run(self._read, execution_id)

    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        definition_id: Optional[str] = None,
    ) -> List[Execution]:
        return await self._run(self._list, status, definition_id)

    async def list_runnable_steps(self, execution_id: str) -> Set[str]:
        execution = await self.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFound(execution_id)
        return execution.runnable_steps(self._clock())

    async def record_step_start(self, execution_id: str, step_name: str) -> StepClaim:
        now = self._clock()
        return await self._run(
            self._transaction, execution_id, lambda e: claim_step(e, step_name, now)
        )

    async def record_step_result(
        self, execution_id: str, step_name: str, outcome: StepOutcome
    ) -> StepRun:
        now = self._clock()
        return await self._run(
            self._transaction,
            execution_id,
            lambda e: apply_outcome(e, step_name, outcome, now),
        )

    async def merge_context(self, execution_id: str, payload: Dict[str, Any]) -> Execution:
        now = self._clock()

        def _merge(execution: Execution) -> Execution:
            execution.context.update(payload)
            execution.updated_at = now
            return execution

        return await self._run(self._transaction, execution_id, _merge)

    async def update_execution_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        error: Optional[StepError] = None,
    ) -> Execution:
        now = self._clock()
        return await self._run(
            self._transaction,
            execution_id,
            lambda e: apply_status(e, status, error, now),
        )

    async def resolve_approval(
        self,
        execution_id: str,
        step_name: str,
        decision: ApprovalDecision,
        *,
        error: Optional[StepError] = None,
    ) -> StepRun:
        now = self._clock()
        return await self._run(
            self._transaction,
            execution_id,
            lambda e: apply_approval(e, step_name, decision, error, now),
        )

    async def mark_rolled_back(
        self, execution_id: str, step_name: str, error: Optional[StepError] = None
    ) -> StepRun:
        now = self._clock()
        return await self._run(
            self._transaction,
            execution_id,
            lambda e: apply_rolled_back(e, step_name, error, now),
        )

    async def record_compensation_error(
        self, execution_id: str, error: StepError
    ) -> Execution:
        now = self._clock()

        def _append(execution: Execution) -> Execution:
            execution.compensation_errors.append(error)
            execution.updated_at = now
            return execution

        return await self._run(self._transaction, execution_id, _append)

    async def request_cancellation(self, execution_id: str) -> Execution:
        now = self._clock()

        def _cancel(execution: Execution) -> Execution:
            if not execution.status.terminal:
                execution.cancel_requested = True
                execution.updated_at = now
            return execution

        return await self._run(self._transaction, execution_id, _cancel)

    async def request_pause(self, execution_id: str) -> Execution:
        now = self._clock()
        return await self._run(
            self._transaction, execution_id, lambda e: apply_pause_request(e, now)
        )

    async def resume_execution(
        self, execution_id: str, context: Optional[Dict[str, Any]] = None
    ) -> Execution:
        now = self._clock()
        return await self._run(
            self._transaction, execution_id, lambda e: apply_resume(e, context, now)
        )

    def _get_schedule(self, schedule_id: str) -> Optional[datetime]:
        with self._lock:
            row = self._conn.execute(
                "SELECT last_fire_at FROM schedules WHERE schedule_id = ?",
                (schedule_id,),
            ).fetchone()
        return datetime.fromisoformat(row["last_fire_at"]) if row else None

    def _save_schedule(self, schedule_id: str, last_fire_at: datetime) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO schedules (schedule_id, last_fire_at) VALUES (?, ?)
                ON CONFLICT(schedule_id) DO UPDATE SET last_fire_at = excluded.last_fire_at
                """,
                (schedule_id, last_fire_at.isoformat()),
            )

    async def get_schedule_state(self, schedule_id: str) -> Optional[datetime]:
        return await self._run(self._get_schedule, schedule_id)

    async def save_schedule_state(self, schedule_id: str, last_fire_at: datetime) -> None:
        await self._run(self._save_schedule, schedule_id, last_fire_at)
