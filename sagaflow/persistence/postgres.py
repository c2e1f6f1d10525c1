"""PostgreSQL implementation of the execution store."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, TypeVar

import asyncpg
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


class PostgresExecutionStore(ExecutionStore):
    """Persist execution state using PostgreSQL.

    Mutations lock the execution row with ``SELECT ... FOR UPDATE`` so that
    concurrent processes sharing the database serialize their claims.
    """

    def __init__(self, dsn: str, clock: Callable[[], datetime] = utcnow):
        self._dsn = dsn
        self._clock = clock
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
        except (
            OSError,
            asyncio.TimeoutError,
            asyncpg.PostgresError,
            asyncpg.InterfaceError,
        ) as exc:
            raise PersistenceError(f"Cannot connect to PostgreSQL: {exc}") from exc
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                definition_id TEXT NOT NULL,
                status TEXT NOT NULL,
                data JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_runs (
                seq BIGSERIAL,
                execution_id TEXT NOT NULL REFERENCES executions (id),
                step_name TEXT NOT NULL,
                status TEXT NOT NULL,
                data JSONB NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (execution_id, step_name)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schedules (
                schedule_id TEXT PRIMARY KEY,
                last_fire_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def _load(
        self, conn: asyncpg.Connection, execution_id: str, for_update: bool = False
    ) -> Optional[Execution]:
        query = "SELECT data FROM executions WHERE id = $1"
        if for_update:
            query += " FOR UPDATE"
        row = await conn.fetchrow(query, execution_id)
        if not row:
            return None
        execution = Execution.model_validate_json(row["data"])
        step_rows = await conn.fetch(
            "SELECT data FROM step_runs WHERE execution_id = $1 ORDER BY seq",
            execution_id,
        )
        execution.steps = [StepRun.model_validate_json(r["data"]) for r in step_rows]
        return execution

    async def _save(self, conn: asyncpg.Connection, execution: Execution) -> None:
        await conn.execute(
            """
            INSERT INTO executions (id, definition_id, status, data, created_at, updated_at)
            VALUES ($1, $2, $3, $4::jsonb, $5, $6)
            ON CONFLICT (id) DO UPDATE SET
                status = EXCLUDED.status,
                data = EXCLUDED.data,
                updated_at = EXCLUDED.updated_at
            """,
            execution.id,
            execution.definition_id,
            execution.status.value,
            execution.model_dump_json(exclude={"steps"}),
            execution.created_at,
            execution.updated_at,
        )
        for run in execution.steps:
            await conn.execute(
                """
                INSERT INTO step_runs (execution_id, step_name, status, data, updated_at)
                VALUES ($1, $2, $3, $4::jsonb, $5)
                ON CONFLICT (execution_id, step_name) DO UPDATE SET
                    status = EXCLUDED.status,
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
                """,
                execution.id,
                run.step_name,
                run.status.value,
                run.model_dump_json(),
                run.updated_at,
            )

    async def _transaction(
        self, execution_id: str, mutate: Callable[[Execution], T]
    ) -> T:
        conn = await self._connect()
        try:
            async with conn.transaction():
                execution = await self._load(conn, execution_id, for_update=True)
                if execution is None:
                    raise ExecutionNotFound(execution_id)
                result = mutate(execution)
                await self._save(conn, execution)
            return result
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"PostgreSQL error: {exc}") from exc
        except PydanticSerializationError as exc:
            raise PersistenceError(f"Cannot serialize execution state: {exc}") from exc
        finally:
            await conn.close()

    # ------------------------------------------------------------------
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
        conn = await self._connect()
        try:
            async with conn.transaction():
                await self._save(conn, execution)
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"PostgreSQL error: {exc}") from exc
        except PydanticSerializationError as exc:
            raise PersistenceError(f"Cannot serialize execution state: {exc}") from exc
        finally:
            await conn.close()
        return execution

    async def get_execution(self, execution_id: str) -> Execution | None:
        conn = await self._connect()
        try:
            return await self._load(conn, execution_id)
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"PostgreSQL error: {exc}") from exc
        finally:
            await conn.close()

    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        definition_id: Optional[str] = None,
    ) -> List[Execution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT id FROM executions
                WHERE ($1::text IS NULL OR status = $1)
                  AND ($2::text IS NULL OR definition_id = $2)
                ORDER BY created_at
                """,
                status.value if status else None,
                definition_id,
            )
            executions = []
            for r in rows:
                execution = await self._load(conn, r["id"])
                if execution is not None:
                    executions.append(execution)
            return executions
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"PostgreSQL error: {exc}") from exc
        finally:
            await conn.close()

    async def list_runnable_steps(self, execution_id: str) -> Set[str]:
        execution = await self.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFound(execution_id)
        return execution.runnable_steps(self._clock())

    async def record_step_start(self, execution_id: str, step_name: str) -> StepClaim:
        now = self._clock()
        return await self._transaction(
            execution_id, lambda e: claim_step(e, step_name, now)
        )

    async def record_step_result(
        self, execution_id: str, step_name: str, outcome: StepOutcome
    ) -> StepRun:
        now = self._clock()
        return await self._transaction(
            execution_id, lambda e: apply_outcome(e, step_name, outcome, now)
        )

    async def merge_context(self, execution_id: str, payload: Dict[str, Any]) -> Execution:
        now = self._clock()

        def _merge(execution: Execution) -> Execution:
            execution.context.update(payload)
            execution.updated_at = now
            return execution

        return await self._transaction(execution_id, _merge)

    async def update_execution_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        error: Optional[StepError] = None,
    ) -> Execution:
        now = self._clock()
        return await self._transaction(
            execution_id, lambda e: apply_status(e, status, error, now)
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
        return await self._transaction(
            execution_id,
            lambda e: apply_approval(e, step_name, decision, error, now),
        )

    async def mark_rolled_back(
        self, execution_id: str, step_name: str, error: Optional[StepError] = None
    ) -> StepRun:
        now = self._clock()
        return await self._transaction(
            execution_id, lambda e: apply_rolled_back(e, step_name, error, now)
        )

    async def record_compensation_error(
        self, execution_id: str, error: StepError
    ) -> Execution:
        now = self._clock()

        def _append(execution: Execution) -> Execution:
            execution.compensation_errors.append(error)
            execution.updated_at = now
            return execution

        return await self._transaction(execution_id, _append)

    async def request_cancellation(self, execution_id: str) -> Execution:
        now = self._clock()

        def _cancel(execution: Execution) -> Execution:
            if not execution.status.terminal:
                execution.cancel_requested = True
                execution.updated_at = now
            return execution

        return await self._transaction(execution_id, _cancel)

    async def request_pause(self, execution_id: str) -> Execution:
        now = self._clock()
        return await self._transaction(execution_id, lambda e: apply_pause_request(e, now))

    async def resume_execution(
        self, execution_id: str, context: Optional[Dict[str, Any]] = None
    ) -> Execution:
        now = self._clock()
        return await self._transaction(
            execution_id, lambda e: apply_resume(e, context, now)
        )

    async def get_schedule_state(self, schedule_id: str) -> Optional[datetime]:
        conn = await self._connect()
        try:
            return await conn.fetchval(
                "SELECT last_fire_at FROM schedules WHERE schedule_id = $1",
                schedule_id,
            )
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"PostgreSQL error: {exc}") from exc
        finally:
            await conn.close()

    async def save_schedule_state(self, schedule_id: str, last_fire_at: datetime) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO schedules (schedule_id, last_fire_at) VALUES ($1, $2)
                ON CONFLICT (schedule_id) DO UPDATE SET last_fire_at = EXCLUDED.last_fire_at
                """,
                schedule_id,
                last_fire_at,
            )
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"PostgreSQL error: {exc}") from exc
        finally:
            await conn.close()
