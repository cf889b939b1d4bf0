"""Learning store - durable execution history behind one synchronized access point.

Concurrent tasks in a wave may finish at the same moment, so every read and
write goes through a single asyncio lock. Records are appended to an
in-memory session view and flushed to the database right away; if a flush
fails the records stay queued and go out with the next flush.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, TypeVar
from uuid import uuid4

from loguru import logger
from sqlalchemy import Integer, cast, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from maestro.core.config import Settings
from maestro.core.errors import LearningStoreError
from maestro.knowledge.analysis import analyze_failures, summarize
from maestro.knowledge.database import LearningDatabase
from maestro.knowledge.models import ExecutionRecordRow, LearningSessionRow, RunCounter
from maestro.knowledge.schemas import (
    AgentStats,
    ExecutionRecord,
    FailureAnalysis,
    LearningSession,
    LearningSessionDocument,
    LearningSummary,
)

T = TypeVar("T")


class LearningStore:
    """
    Persistent per-session execution history and pattern statistics.

    Example:
        >>> store = LearningStore("sqlite+aiosqlite:///.maestro/learning.db")
        >>> session = await store.start_session("plans/feature.md")
        >>> await store.record_execution(record)
        >>> history = await store.query("3", plan_identity="plans/feature.md")
    """

    def __init__(
        self,
        database: LearningDatabase | str,
        history_cap: int = 100,
        min_failures_before_adapt: int = 2,
        fallback_agent: str = "general-purpose",
        min_successes_for_alternative: int = 5,
        timeout: float = 10.0,
        output_limit: int = 4000,
    ) -> None:
        """
        Initialize the store.

        Args:
            database: LearningDatabase or async database URL.
            history_cap: Records retained per task identity (oldest evicted).
            min_failures_before_adapt: Consecutive same-category failures
                before an agent suggestion is emitted.
            fallback_agent: Agent suggested when no alternative qualifies.
            min_successes_for_alternative: Successes an alternative agent needs.
            timeout: Timeout for each store operation in seconds.
            output_limit: Characters of task output kept per record.
        """
        self._db = database if isinstance(database, LearningDatabase) else LearningDatabase(database)
        self.history_cap = history_cap
        self.min_failures_before_adapt = min_failures_before_adapt
        self.fallback_agent = fallback_agent
        self.min_successes_for_alternative = min_successes_for_alternative
        self.timeout = timeout
        self.output_limit = output_limit

        self._lock = asyncio.Lock()
        self._initialized = False
        self._session: LearningSession | None = None
        self._pending: list[ExecutionRecord] = []

    @classmethod
    def from_settings(cls, settings: Settings) -> "LearningStore":
        """Create a store configured from application settings."""
        return cls(
            settings.learning_db_url,
            history_cap=settings.history_cap,
            min_failures_before_adapt=settings.min_failures_before_adapt,
            fallback_agent=settings.fallback_agent,
            min_successes_for_alternative=settings.min_successes_for_alternative,
            timeout=settings.learning_timeout,
        )

    @property
    def session(self) -> LearningSession | None:
        """The active in-memory session view."""
        return self._session

    @property
    def pending_count(self) -> int:
        """Records appended but not yet flushed."""
        return len(self._pending)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def open(self) -> None:
        """Create the schema if needed."""
        await self._run("open", self._noop)

    async def close(self) -> None:
        """Flush what is pending and release database connections."""
        try:
            await self.flush()
        except LearningStoreError as e:
            logger.warning(f"Dropping {len(self._pending)} unflushed learning records: {e}")
        await self._db.close()
        self._initialized = False

    async def __aenter__(self) -> "LearningStore":
        await self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _noop(self) -> None:
        return None

    async def _ensure_schema(self) -> None:
        if not self._initialized:
            await self._db.init()
            self._initialized = True

    async def _run(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run one store operation under the lock, bounded by the timeout.

        Raises:
            LearningStoreError: On any database, filesystem, or timeout failure.
        """

        async def locked() -> T:
            async with self._lock:
                await self._ensure_schema()
                return await fn()

        try:
            return await asyncio.wait_for(locked(), timeout=self.timeout)
        except LearningStoreError:
            raise
        except TimeoutError as e:
            raise LearningStoreError(
                f"Learning store {operation} timed out after {self.timeout}s"
            ) from e
        except (SQLAlchemyError, OSError, ValueError) as e:
            raise LearningStoreError(f"Learning store {operation} failed: {e}") from e

    # =========================================================================
    # SESSIONS
    # =========================================================================

    async def start_session(self, plan_identity: str) -> LearningSession:
        """
        Create a session with the next run number for this plan identity.

        Args:
            plan_identity: Identity of the plan being executed.

        Returns:
            The new in-memory LearningSession.
        """

        async def create() -> LearningSession:
            async with self._db.session() as db:
                counter = await db.get(RunCounter, plan_identity)
                if counter is None:
                    counter = RunCounter(plan_identity=plan_identity, last_run=0)
                    db.add(counter)
                counter.last_run += 1

                row = LearningSessionRow(
                    id=str(uuid4()),
                    plan_identity=plan_identity,
                    run_number=counter.last_run,
                    created_at=datetime.now(timezone.utc),
                )
                db.add(row)

            session = LearningSession(
                session_id=row.id,
                plan_identity=plan_identity,
                run_number=row.run_number,
                created_at=row.created_at,
            )
            self._session = session
            self._pending = []
            return session

        session = await self._run("start_session", create)
        logger.info(
            f"Learning session {session.session_id} started "
            f"(plan={plan_identity}, run={session.run_number})"
        )
        return session

    async def get_run_count(self, plan_identity: str) -> int:
        """Number of runs recorded for a plan identity."""

        async def read() -> int:
            async with self._db.session() as db:
                counter = await db.get(RunCounter, plan_identity)
                return counter.last_run if counter else 0

        return await self._run("get_run_count", read)

    async def list_sessions(
        self,
        plan_identity: str | None = None,
        limit: int = 20,
    ) -> list[LearningSession]:
        """List recent sessions, newest first, without their records."""

        async def read() -> list[LearningSession]:
            stmt = select(LearningSessionRow).order_by(
                LearningSessionRow.created_at.desc(),
                LearningSessionRow.run_number.desc(),
            )
            if plan_identity:
                stmt = stmt.where(LearningSessionRow.plan_identity == plan_identity)
            stmt = stmt.limit(limit)

            async with self._db.session() as db:
                rows = (await db.execute(stmt)).scalars().all()

            return [
                LearningSession(
                    session_id=row.id,
                    plan_identity=row.plan_identity,
                    run_number=row.run_number,
                    created_at=row.created_at,
                )
                for row in rows
            ]

        return await self._run("list_sessions", read)

    async def export_session(self, session_id: str) -> dict[str, Any]:
        """
        Export one session as its durable document.

        Returns:
            {session_id, plan_identity, run_number, created_at, records[]}

        Raises:
            LearningStoreError: If the session does not exist.
        """

        async def read() -> dict[str, Any]:
            stmt = (
                select(LearningSessionRow)
                .where(LearningSessionRow.id == session_id)
                .options(selectinload(LearningSessionRow.records))
            )
            async with self._db.session() as db:
                row = (await db.execute(stmt)).scalar_one_or_none()

            if row is None:
                raise LearningStoreError(f"Learning session not found: {session_id}")

            document = LearningSessionDocument(
                session_id=row.id,
                plan_identity=row.plan_identity,
                run_number=row.run_number,
                created_at=row.created_at,
                records=[self._to_record(r) for r in row.records],
            )
            return document.model_dump(mode="json")

        return await self._run("export_session", read)

    # =========================================================================
    # RECORDING
    # =========================================================================

    async def record_execution(self, record: ExecutionRecord) -> None:
        """
        Append a record to the active session and flush it.

        Raises:
            LearningStoreError: If there is no active session or the flush
                fails (the record stays queued for the next flush).
        """
        if self._session is None:
            raise LearningStoreError("No active learning session")

        if record.output and len(record.output) > self.output_limit:
            record = record.model_copy(update={"output": record.output[-self.output_limit:]})

        self._session.records.append(record)
        self._pending.append(record)
        await self.flush()

    async def flush(self) -> int:
        """
        Write queued records to the database.

        Returns:
            Number of records written.
        """
        if self._session is None or not self._pending:
            return 0

        session = self._session

        async def write() -> int:
            batch = list(self._pending)
            if not batch:
                return 0

            async with self._db.session() as db:
                for record in batch:
                    db.add(self._to_row(session, record))
                await db.flush()
                for task_key in dict.fromkeys(r.task_key for r in batch):
                    await self._evict(db, session.plan_identity, task_key)

            del self._pending[: len(batch)]
            return len(batch)

        written = await self._run("flush", write)
        if written:
            logger.debug(f"Flushed {written} learning records")
        return written

    async def _evict(self, db: AsyncSession, plan_identity: str, task_key: str) -> None:
        """Delete records beyond the per-task cap, oldest first."""
        stmt = (
            select(ExecutionRecordRow.id)
            .where(
                ExecutionRecordRow.plan_identity == plan_identity,
                ExecutionRecordRow.task_key == task_key,
            )
            .order_by(ExecutionRecordRow.id.desc())
            .offset(self.history_cap)
        )
        stale = list((await db.execute(stmt)).scalars().all())
        if stale:
            await db.execute(delete(ExecutionRecordRow).where(ExecutionRecordRow.id.in_(stale)))
            logger.debug(f"Evicted {len(stale)} old records for task {task_key}")

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def query(
        self,
        task_key: str,
        plan_identity: str | None = None,
        limit: int | None = None,
    ) -> list[ExecutionRecord]:
        """
        Get execution history for one task identity.

        Args:
            task_key: Task key.
            plan_identity: Restrict to one plan (all plans when None).
            limit: Only the most recent N records.

        Returns:
            Records ordered oldest first.
        """

        async def read() -> list[ExecutionRecord]:
            async with self._db.session() as db:
                return await self._history(db, task_key, plan_identity, limit)

        return await self._run("query", read)

    async def analyze_failures(
        self,
        task_key: str,
        plan_identity: str | None = None,
    ) -> FailureAnalysis:
        """
        Analyze one task's history and suggest how to adapt the next attempt.

        Returns:
            FailureAnalysis (empty when there is no history).
        """

        async def read() -> FailureAnalysis:
            async with self._db.session() as db:
                history = await self._history(db, task_key, plan_identity, None)
                agents = await self._agent_stats(db) if history else {}

            return analyze_failures(
                history,
                agents,
                min_failures=self.min_failures_before_adapt,
                fallback_agent=self.fallback_agent,
                min_successes=self.min_successes_for_alternative,
            )

        return await self._run("analyze_failures", read)

    async def summary(self, plan_identity: str | None = None) -> LearningSummary:
        """Aggregate statistics over stored records."""

        async def read() -> LearningSummary:
            stmt = select(ExecutionRecordRow).order_by(ExecutionRecordRow.id)
            if plan_identity:
                stmt = stmt.where(ExecutionRecordRow.plan_identity == plan_identity)
            async with self._db.session() as db:
                rows = (await db.execute(stmt)).scalars().all()
            return summarize([self._to_record(r) for r in rows])

        return await self._run("summary", read)

    async def clear(self, plan_identity: str | None = None) -> int:
        """
        Delete recorded history.

        Args:
            plan_identity: Only this plan's data (everything when None).

        Returns:
            Number of sessions deleted.
        """

        async def wipe() -> int:
            async with self._db.session() as db:
                sessions = select(LearningSessionRow.id)
                records = delete(ExecutionRecordRow)
                counters = delete(RunCounter)
                if plan_identity:
                    sessions = sessions.where(LearningSessionRow.plan_identity == plan_identity)
                    records = records.where(ExecutionRecordRow.plan_identity == plan_identity)
                    counters = counters.where(RunCounter.plan_identity == plan_identity)

                ids = list((await db.execute(sessions)).scalars().all())
                await db.execute(records)
                if ids:
                    await db.execute(
                        delete(LearningSessionRow).where(LearningSessionRow.id.in_(ids))
                    )
                await db.execute(counters)
                return len(ids)

        deleted = await self._run("clear", wipe)
        logger.info(f"Cleared {deleted} learning sessions")
        return deleted

    async def _history(
        self,
        db: AsyncSession,
        task_key: str,
        plan_identity: str | None,
        limit: int | None,
    ) -> list[ExecutionRecord]:
        stmt = select(ExecutionRecordRow).where(ExecutionRecordRow.task_key == task_key)
        if plan_identity:
            stmt = stmt.where(ExecutionRecordRow.plan_identity == plan_identity)
        stmt = stmt.order_by(ExecutionRecordRow.id.desc())
        if limit:
            stmt = stmt.limit(limit)

        rows = (await db.execute(stmt)).scalars().all()
        return [self._to_record(r) for r in reversed(rows)]

    @staticmethod
    async def _agent_stats(db: AsyncSession) -> dict[str, AgentStats]:
        stmt = (
            select(
                ExecutionRecordRow.agent,
                func.count(ExecutionRecordRow.id),
                func.sum(cast(ExecutionRecordRow.success, Integer)),
            )
            .where(ExecutionRecordRow.agent.is_not(None))
            .group_by(ExecutionRecordRow.agent)
        )
        result = await db.execute(stmt)
        return {
            agent: AgentStats(agent=agent, total=total, successes=int(successes or 0))
            for agent, total, successes in result.all()
        }

    # =========================================================================
    # CONVERSION
    # =========================================================================

    @staticmethod
    def _to_row(session: LearningSession, record: ExecutionRecord) -> ExecutionRecordRow:
        return ExecutionRecordRow(
            session_id=session.session_id,
            plan_identity=session.plan_identity,
            task_key=record.task_key,
            task_name=record.task_name,
            agent=record.agent,
            outcome=record.outcome,
            success=record.success,
            attempt=record.attempt,
            duration_seconds=record.duration_seconds,
            qc_verdict=record.qc_verdict,
            qc_feedback=record.qc_feedback,
            output=record.output,
            error=record.error,
            patterns=list(record.patterns),
            pattern_keywords=dict(record.pattern_keywords),
            extra={},
            timestamp=record.timestamp,
        )

    @staticmethod
    def _to_record(row: ExecutionRecordRow) -> ExecutionRecord:
        return ExecutionRecord.model_validate(row, from_attributes=True)
