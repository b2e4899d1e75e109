"""
Outbox worker for computed fields.

``run_once`` claims a batch of tasks and processes each one: load the
base's dependency graph, compile the plan, execute it, then mark the task
done or failed. Each task runs in its own session, so one task's failure
never rolls back another's writes.

A task's plan covers the full transitive closure of its seed, so the
worker never spawns follow-on tasks and a drain terminates after one pass
over the queue.
"""

import asyncio
import os
import socket
import time
from collections.abc import Callable
from typing import Optional

from celery.utils.imports import symbol_by_name
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calcbase.computed.evaluator import Evaluator, FieldEvaluator
from calcbase.computed.executor import ComputedFieldUpdater, ExecutionResult
from calcbase.computed.graph import FieldDependencyGraph
from calcbase.computed.graph_cache import GraphCache, graph_cache
from calcbase.computed.outbox import ComputedOutbox, OutboxPayload
from calcbase.computed.planner import PlanCompiler
from calcbase.computed.repository import RecordRepository, SqlRecordRepository
from calcbase.core.config import settings
from calcbase.core.events import DeferredEvents, EventBus, OutboxTaskFailed
from calcbase.core.exceptions import (
    CalcBaseException,
    FormulaEngineLoadError,
    LeaseLostError,
    TaskTimeoutError,
)
from calcbase.core.logging import get_logger
from calcbase.db.session import AsyncSessionLocal
from calcbase.fields import FormulaEngine
from calcbase.metrics import computed_task_counter, computed_task_duration_histogram
from calcbase.models.outbox import ComputedOutboxTask

logger = get_logger(__name__)

EvaluatorFactory = Callable[[RecordRepository, FieldDependencyGraph], Evaluator]


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def load_formula_engine(path: Optional[str]) -> Optional[FormulaEngine]:
    """
    Load the formula engine named by an import path.

    Accepts ``package.module:attr`` or ``package.module.attr``. A class is
    instantiated without arguments; any other object is used as is.

    Raises:
        FormulaEngineLoadError: If the path cannot be imported or the object
            has no ``evaluate`` method
    """
    if not path:
        return None
    try:
        target = symbol_by_name(path)
    except (ImportError, AttributeError, ValueError) as e:
        raise FormulaEngineLoadError(path, str(e)) from e

    engine = target() if isinstance(target, type) else target
    if not callable(getattr(engine, "evaluate", None)):
        raise FormulaEngineLoadError(path, "object has no evaluate() method")
    logger.info(f"Loaded formula engine {path}")
    return engine


class ComputedUpdateWorker:
    """Claims outbox tasks and runs their plans."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        *,
        cache: Optional[GraphCache] = None,
        formula_engine: Optional[FormulaEngine] = None,
        evaluator_factory: Optional[EvaluatorFactory] = None,
        event_bus: Optional[EventBus] = None,
        timeout_seconds: Optional[float] = None,
        lease_seconds: Optional[int] = None,
        chunk_size: Optional[int] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.cache = cache or graph_cache
        if formula_engine is None:
            formula_engine = load_formula_engine(settings.computed_formula_engine)
        self.formula_engine = formula_engine
        self.evaluator_factory = evaluator_factory or self._default_evaluator
        self.event_bus = event_bus
        self.timeout_seconds = timeout_seconds or settings.computed_task_timeout_seconds
        self.lease_seconds = lease_seconds or settings.computed_lease_seconds
        self.chunk_size = chunk_size or settings.computed_write_chunk_size
        if self.lease_seconds <= self.timeout_seconds:
            raise ValueError("lease_seconds must be greater than timeout_seconds")

    def _default_evaluator(
        self, repository: RecordRepository, graph: FieldDependencyGraph
    ) -> Evaluator:
        return FieldEvaluator(repository, graph, self.formula_engine)

    async def run_once(self, worker_id: Optional[str] = None, limit: Optional[int] = None) -> int:
        """
        Claim and process up to ``limit`` tasks.

        Args:
            worker_id: Identity recorded on claimed tasks
            limit: Maximum tasks to claim

        Returns:
            Number of tasks processed (done or failed)
        """
        worker_id = worker_id or default_worker_id()
        limit = settings.computed_claim_batch_size if limit is None else limit

        async with self.session_factory() as db:
            tasks = await ComputedOutbox(db).claim(worker_id, limit, self.lease_seconds)

        if not tasks:
            return 0

        logger.info("computed:run:start", extra={"workerId": worker_id, "taskCount": len(tasks)})

        processed = 0
        statuses: dict[str, int] = {}
        for task in tasks:
            status = await self._process(task, worker_id)
            statuses[status] = statuses.get(status, 0) + 1
            if status != "lease_lost":
                processed += 1

        logger.info(
            "computed:run:done",
            extra={"workerId": worker_id, "processed": processed, "statuses": statuses},
        )
        return processed

    async def drain(self, worker_id: Optional[str] = None, max_rounds: int = 100) -> int:
        """Run until no task is runnable; returns the number of tasks processed."""
        total = 0
        for _ in range(max_rounds):
            processed = await self.run_once(worker_id)
            if processed == 0:
                break
            total += processed
        return total

    # -------------------------------------------------------------------------
    # Task processing
    # -------------------------------------------------------------------------

    async def _process(self, task: ComputedOutboxTask, worker_id: str) -> str:
        started = time.perf_counter()
        # Commit notifications are held back until the task is settled
        events = DeferredEvents()
        error: Optional[Exception] = None

        async with self.session_factory() as db:
            outbox = ComputedOutbox(db)
            try:
                await outbox.renew_lease(task.id, worker_id, self.lease_seconds)
            except LeaseLostError:
                logger.warning(f"Lease lost on outbox task {task.id} before execution")
                computed_task_counter.labels(status="lease_lost").inc()
                return "lease_lost"

            try:
                payload = OutboxPayload.model_validate(task.get_payload())
                result = await asyncio.wait_for(
                    self._execute(db, task.base_id, payload, events),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                await db.rollback()
                error = TaskTimeoutError(task.id, self.timeout_seconds)
                retryable = True
            except CalcBaseException as e:
                await db.rollback()
                error, retryable = e, e.retryable
            except Exception as e:
                logger.exception(f"Outbox task {task.id} raised: {e}")
                await db.rollback()
                error, retryable = e, True

            try:
                if error is None:
                    await outbox.complete(task.id, worker_id)
                    status = "done"
                else:
                    failed = await outbox.fail(task.id, worker_id, str(error), retryable=retryable)
                    status = failed.status if failed.status == "failed" else "retry"
            except LeaseLostError:
                logger.warning(f"Lease lost on outbox task {task.id} while settling it")
                computed_task_counter.labels(status="lease_lost").inc()
                status = "lease_lost"

        # Chunks committed before a failure or a lost lease are still announced
        await events.flush(self.event_bus)
        if status == "lease_lost":
            return status

        self._record(task, status, started, result if error is None else None)
        if status == "failed" and self.event_bus is not None:
            await self.event_bus.publish(
                OutboxTaskFailed(task_id=task.id, error=str(error), permanent=True)
            )
        return status

    async def _execute(
        self,
        db: AsyncSession,
        base_id: str,
        payload: OutboxPayload,
        events: Optional[DeferredEvents] = None,
    ) -> ExecutionResult:
        repository = SqlRecordRepository(db)

        record_ids = payload.seed_record_ids
        if payload.scope == "table":
            record_ids = await repository.list_record_ids(payload.seed_table_id)

        if record_ids:
            graph = await self.cache.get(repository, base_id)
        else:
            # Nothing to propagate: compile a zero-step plan without reading storage
            graph = FieldDependencyGraph()

        plan = PlanCompiler(graph).compile(
            payload.seed_table_id,
            record_ids,
            payload.change_type,
            payload.seed_field_ids or None,
        )
        updater = ComputedFieldUpdater(
            repository,
            self.evaluator_factory(repository, graph),
            graph,
            event_bus=events,
            chunk_size=self.chunk_size,
        )
        return await updater.execute(plan, base_id)

    def _record(
        self,
        task: ComputedOutboxTask,
        status: str,
        started: float,
        result: Optional[ExecutionResult],
    ) -> None:
        duration = time.perf_counter() - started
        computed_task_counter.labels(status=status).inc()
        computed_task_duration_histogram.observe(duration)

        extra = {"taskId": task.id, "status": status, "durationMs": round(duration * 1000, 2)}
        if result is not None:
            extra.update(
                updatedCells=result.updated_cells,
                errorCells=result.error_cells,
                commits=result.commits,
            )
        logger.info(f"Processed outbox task {task.id}: {status}", extra=extra)


async def run_once(worker_id: Optional[str] = None, limit: Optional[int] = None) -> int:
    """Process one batch with a worker built from settings."""
    from calcbase.realtime.publisher import default_event_bus

    worker = ComputedUpdateWorker(event_bus=default_event_bus())
    return await worker.run_once(worker_id, limit)
