"""
Computed outbox service.

Durable queue of "a change happened" tasks. The write path enqueues a task
inside its own transaction; workers claim tasks with a lease and report
completion or failure.

Claiming is atomic at the storage layer: candidates are selected with
``FOR UPDATE SKIP LOCKED`` where the database supports it, and each claim
is a conditional UPDATE that only succeeds while the task is still pending
(or its previous lease has expired).
"""

from datetime import datetime, timedelta
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from calcbase.computed.planner import ChangeType
from calcbase.core.config import settings
from calcbase.core.exceptions import (
    LeaseLostError,
    OutboxTaskNotFoundError,
    PersistenceError,
)
from calcbase.core.logging import get_logger
from calcbase.db.base import utc_now
from calcbase.metrics import computed_outbox_claimed_counter
from calcbase.models.outbox import ComputedOutboxTask, OutboxTaskStatus

logger = get_logger(__name__)


# =============================================================================
# Payload
# =============================================================================


class OutboxPayload(BaseModel):
    """Seed of an outbox task."""

    seed_table_id: str
    seed_record_ids: list[str] = Field(default_factory=list)
    seed_field_ids: list[str] = Field(default_factory=list)
    change_type: ChangeType = ChangeType.UPDATE
    scope: Literal["records", "table"] = "records"

    @field_validator("seed_record_ids", "seed_field_ids")
    @classmethod
    def dedupe_ids(cls, v: list[str]) -> list[str]:
        """Drop duplicate ids, keeping first-seen order."""
        return list(dict.fromkeys(v))

    def seed_key(self, base_id: str) -> str:
        """Merge key: tasks with equal keys differ only in their record ids."""
        fields = ",".join(sorted(self.seed_field_ids)) or "*"
        return f"{base_id}:{self.seed_table_id}:{self.change_type.value}:{self.scope}:{fields}"

    def merged_with(self, other: "OutboxPayload") -> "OutboxPayload":
        return self.model_copy(
            update={
                "seed_record_ids": list(
                    dict.fromkeys([*self.seed_record_ids, *other.seed_record_ids])
                )
            }
        )


def calculate_backoff(
    attempts: int,
    base_delay: int | None = None,
    max_delay: int | None = None,
) -> int:
    """
    Retry delay using exponential backoff.

    Args:
        attempts: Failed attempts so far (1-indexed)
        base_delay: Base delay in seconds
        max_delay: Maximum delay cap in seconds

    Returns:
        Delay in seconds
    """
    base_delay = settings.computed_backoff_base_seconds if base_delay is None else base_delay
    max_delay = settings.computed_backoff_max_seconds if max_delay is None else max_delay
    delay = base_delay * (2 ** max(attempts - 1, 0))
    return min(int(delay), max_delay)


# =============================================================================
# Service
# =============================================================================


class ComputedOutbox:
    """Service for the computed outbox table."""

    def __init__(self, db: AsyncSession):
        """Initialize service with database session."""
        self.db = db

    # -------------------------------------------------------------------------
    # Enqueue
    # -------------------------------------------------------------------------

    async def enqueue(
        self,
        base_id: str,
        payload: OutboxPayload,
        *,
        merge: Optional[bool] = None,
        max_attempts: Optional[int] = None,
    ) -> ComputedOutboxTask:
        """
        Add a task to the caller's transaction.

        Does not commit: the task becomes visible together with the write
        that caused it. When ``merge`` is on, the seed is folded into an
        identical task that is still pending.

        Args:
            base_id: Base the change belongs to
            payload: Seed payload
            merge: Merge into an identical pending task (default from settings)
            max_attempts: Retry bound (default from settings)

        Returns:
            The new or merged ComputedOutboxTask
        """
        merge = settings.computed_merge_pending if merge is None else merge
        seed_key = payload.seed_key(base_id)

        if merge and payload.scope == "records":
            merged = await self._merge_pending(seed_key, payload)
            if merged is not None:
                return merged

        task = ComputedOutboxTask(
            base_id=base_id,
            seed_key=seed_key,
            status=OutboxTaskStatus.PENDING.value,
            attempts=0,
            max_attempts=max_attempts or settings.computed_max_attempts,
            next_attempt_at=utc_now(),
        )
        task.set_payload(payload.model_dump(mode="json"))
        self.db.add(task)
        await self.db.flush()

        logger.info(
            "computed:outbox:enqueued",
            extra={
                "taskId": task.id,
                "baseId": base_id,
                "seedTableId": payload.seed_table_id,
                "changeType": payload.change_type.value,
                "recordCount": len(payload.seed_record_ids),
            },
        )
        return task

    async def _merge_pending(
        self, seed_key: str, payload: OutboxPayload
    ) -> Optional[ComputedOutboxTask]:
        result = await self.db.execute(
            select(ComputedOutboxTask)
            .where(
                ComputedOutboxTask.seed_key == seed_key,
                ComputedOutboxTask.status == OutboxTaskStatus.PENDING.value,
                ComputedOutboxTask.attempts == 0,
            )
            .order_by(ComputedOutboxTask.created_at.asc())
            .limit(1)
        )
        task = result.scalar_one_or_none()
        if task is None:
            return None

        existing = OutboxPayload.model_validate(task.get_payload())
        combined = existing.merged_with(payload)

        # Only merge while the task is still unclaimed
        result = await self.db.execute(
            update(ComputedOutboxTask)
            .where(
                ComputedOutboxTask.id == task.id,
                ComputedOutboxTask.status == OutboxTaskStatus.PENDING.value,
                ComputedOutboxTask.payload == task.payload,
            )
            .values(payload=combined.model_dump_json())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None

        await self.db.refresh(task)
        logger.info(
            "computed:outbox:merged",
            extra={"taskId": task.id, "recordCount": len(combined.seed_record_ids)},
        )
        return task

    # -------------------------------------------------------------------------
    # Claim
    # -------------------------------------------------------------------------

    async def claim(
        self,
        worker_id: str,
        limit: int,
        lease_seconds: Optional[int] = None,
    ) -> list[ComputedOutboxTask]:
        """
        Atomically claim up to ``limit`` runnable tasks.

        Runnable means pending and due, or claimed with an expired lease.
        Commits the claims so other workers observe them immediately.

        Args:
            worker_id: Claiming worker
            limit: Maximum tasks to claim
            lease_seconds: Lease duration (default from settings)

        Returns:
            Claimed tasks, oldest first
        """
        if limit <= 0:
            return []

        lease_seconds = lease_seconds or settings.computed_lease_seconds
        now = utc_now()
        runnable = self._runnable(now)

        try:
            result = await self.db.execute(
                select(ComputedOutboxTask.id)
                .where(runnable)
                .order_by(ComputedOutboxTask.created_at.asc(), ComputedOutboxTask.id.asc())
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            candidate_ids = list(result.scalars().all())

            claimed_ids: list[str] = []
            lease_expires_at = now + timedelta(seconds=lease_seconds)
            for task_id in candidate_ids:
                result = await self.db.execute(
                    update(ComputedOutboxTask)
                    .where(ComputedOutboxTask.id == task_id, runnable)
                    .values(
                        status=OutboxTaskStatus.CLAIMED.value,
                        claimed_by=worker_id,
                        lease_expires_at=lease_expires_at,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed_ids.append(task_id)

            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError("Failed to claim outbox tasks", e) from e

        if not claimed_ids:
            return []

        computed_outbox_claimed_counter.inc(len(claimed_ids))
        result = await self.db.execute(
            select(ComputedOutboxTask)
            .where(ComputedOutboxTask.id.in_(claimed_ids))
            .order_by(ComputedOutboxTask.created_at.asc(), ComputedOutboxTask.id.asc())
            .execution_options(populate_existing=True)
        )
        tasks = list(result.scalars().all())

        logger.info(
            "computed:outbox:claimed",
            extra={"workerId": worker_id, "taskIds": claimed_ids},
        )
        return tasks

    @staticmethod
    def _runnable(now: datetime):
        return or_(
            and_(
                ComputedOutboxTask.status == OutboxTaskStatus.PENDING.value,
                or_(
                    ComputedOutboxTask.next_attempt_at.is_(None),
                    ComputedOutboxTask.next_attempt_at <= now,
                ),
            ),
            and_(
                ComputedOutboxTask.status == OutboxTaskStatus.CLAIMED.value,
                ComputedOutboxTask.lease_expires_at < now,
            ),
        )

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def complete(self, task_id: str, worker_id: str) -> None:
        """
        Mark a claimed task done.

        Raises:
            LeaseLostError: If the task is no longer claimed by ``worker_id``
        """
        now = utc_now()
        await self._transition(
            task_id,
            worker_id,
            status=OutboxTaskStatus.DONE.value,
            completed_at=now,
            lease_expires_at=None,
            last_error=None,
        )
        logger.info(f"Completed outbox task {task_id}")

    async def renew_lease(
        self, task_id: str, worker_id: str, lease_seconds: Optional[int] = None
    ) -> None:
        """
        Extend the lease of a claimed task just before it is executed.

        Tasks in a batch share the lease taken at claim time, so each one is
        renewed when its turn comes. An expired lease that nobody reclaimed
        yet is renewed too; a task reclaimed by another worker is not.

        Raises:
            LeaseLostError: If the task is no longer claimed by ``worker_id``
        """
        lease_seconds = lease_seconds or settings.computed_lease_seconds
        await self._transition(
            task_id,
            worker_id,
            lease_expires_at=utc_now() + timedelta(seconds=lease_seconds),
        )

    async def fail(
        self,
        task_id: str,
        worker_id: str,
        error: str,
        *,
        retryable: bool = True,
    ) -> ComputedOutboxTask:
        """
        Record a failed attempt.

        Requeues with exponential backoff while attempts remain; otherwise
        (or when the error is not retryable) the task becomes ``failed`` and
        is excluded from automatic retry.

        Returns:
            Updated ComputedOutboxTask

        Raises:
            LeaseLostError: If the task is no longer claimed by ``worker_id``
        """
        task = await self.get_task(task_id)
        attempts = task.attempts + 1
        now = utc_now()

        if retryable and attempts < task.max_attempts:
            delay = calculate_backoff(attempts)
            values: dict[str, Any] = {
                "status": OutboxTaskStatus.PENDING.value,
                "next_attempt_at": now + timedelta(seconds=delay),
            }
            logger.warning(
                "computed:outbox:retry_scheduled",
                extra={
                    "taskId": task_id,
                    "attempts": attempts,
                    "maxAttempts": task.max_attempts,
                    "delaySeconds": delay,
                    "error": error,
                },
            )
        else:
            values = {"status": OutboxTaskStatus.FAILED.value, "completed_at": now}
            logger.error(
                "computed:outbox:failed",
                extra={
                    "taskId": task_id,
                    "attempts": attempts,
                    "retryable": retryable,
                    "error": error,
                },
            )

        await self._transition(
            task_id,
            worker_id,
            attempts=attempts,
            last_error=error,
            claimed_by=None,
            lease_expires_at=None,
            **values,
        )
        await self.db.refresh(task)
        return task

    async def _transition(self, task_id: str, worker_id: str, **values: Any) -> None:
        try:
            result = await self.db.execute(
                update(ComputedOutboxTask)
                .where(
                    ComputedOutboxTask.id == task_id,
                    ComputedOutboxTask.status == OutboxTaskStatus.CLAIMED.value,
                    ComputedOutboxTask.claimed_by == worker_id,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.db.rollback()
                raise LeaseLostError(task_id, worker_id)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to update outbox task {task_id}", e) from e

    async def retry_failed(self, task_id: str) -> ComputedOutboxTask:
        """
        Put a permanently failed task back in the queue with a fresh attempt budget.

        Raises:
            OutboxTaskNotFoundError: If the task does not exist
            ValueError: If the task is not failed
        """
        task = await self.get_task(task_id)
        if task.status != OutboxTaskStatus.FAILED.value:
            raise ValueError(f"Cannot retry task with status: {task.status}")

        task.status = OutboxTaskStatus.PENDING.value
        task.attempts = 0
        task.next_attempt_at = utc_now()
        task.completed_at = None
        task.claimed_by = None
        task.lease_expires_at = None

        await self.db.commit()
        await self.db.refresh(task)

        logger.info(f"Requeued failed outbox task {task_id}")
        return task

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_task(self, task_id: str) -> ComputedOutboxTask:
        """
        Get a task by ID.

        Raises:
            OutboxTaskNotFoundError: If the task does not exist
        """
        result = await self.db.execute(
            select(ComputedOutboxTask)
            .where(ComputedOutboxTask.id == task_id)
            .execution_options(populate_existing=True)
        )
        task = result.scalar_one_or_none()
        if task is None:
            raise OutboxTaskNotFoundError(task_id)
        return task

    async def list_failed(self, limit: int = 100) -> list[ComputedOutboxTask]:
        """Permanently failed tasks awaiting operator action, newest first."""
        result = await self.db.execute(
            select(ComputedOutboxTask)
            .where(ComputedOutboxTask.status == OutboxTaskStatus.FAILED.value)
            .order_by(ComputedOutboxTask.completed_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_runnable(self) -> int:
        """Number of tasks a worker could claim right now."""
        result = await self.db.execute(
            select(func.count()).select_from(ComputedOutboxTask).where(self._runnable(utc_now()))
        )
        return result.scalar() or 0

    async def get_stats(self) -> dict[str, int]:
        """
        Get task counts by status.

        Returns:
            Dict with counts per status
        """
        stats = {status.value: 0 for status in OutboxTaskStatus}
        result = await self.db.execute(
            select(ComputedOutboxTask.status, func.count()).group_by(ComputedOutboxTask.status)
        )
        for status, count in result.all():
            stats[status] = count
        return stats
