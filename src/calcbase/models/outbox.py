"""
Computed outbox task model.

An outbox task records "a change happened" inside the write transaction.
Workers claim tasks later and run the computed-field plan for them.

Lifecycle:
- pending: waiting to be claimed (possibly after a retry delay)
- claimed: owned by one worker until lease_expires_at
- done: plan executed and committed
- failed: retries exhausted or a fatal error; needs operator action
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from calcbase.db.base import BaseModel, ensure_utc, utc_now


# =============================================================================
# Enums
# =============================================================================


class OutboxTaskStatus(str, Enum):
    """Status of a computed outbox task."""

    PENDING = "pending"
    CLAIMED = "claimed"
    DONE = "done"
    FAILED = "failed"


# =============================================================================
# Models
# =============================================================================


class ComputedOutboxTask(BaseModel):
    """
    ComputedOutboxTask - durable intent to recompute dependents of a change.

    Mutated only by the claim/complete/fail transitions in ComputedOutbox.
    """

    __tablename__: str = "computed_outbox_tasks"  # type: ignore[assignment]

    base_id: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
        index=True,
    )

    # Seed payload (JSON): seed_table_id, seed_record_ids, seed_field_ids,
    # change_type, scope
    payload: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="{}",
    )

    # Merge key for identical pending seeds (table, change type, fields)
    seed_key: Mapped[str] = mapped_column(
        String(512),
        nullable=False,
        index=True,
        doc="Merge key used to coalesce identical pending seeds",
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=OutboxTaskStatus.PENDING.value,
        nullable=False,
        index=True,
    )

    # Retry logic
    attempts: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        doc="Number of failed execution attempts",
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer,
        default=5,
        nullable=False,
    )
    next_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        doc="Earliest time a pending task may be claimed",
    )

    # Lease
    claimed_by: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Error tracking
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        Index("ix_computed_outbox_status_created", "status", "created_at"),
        Index("ix_computed_outbox_status_lease", "status", "lease_expires_at"),
    )

    def __repr__(self) -> str:
        return f"<ComputedOutboxTask {self.id} ({self.status}, attempts={self.attempts})>"

    @property
    def status_enum(self) -> OutboxTaskStatus:
        return OutboxTaskStatus(self.status)

    def get_payload(self) -> dict[str, Any]:
        """Parse payload JSON."""
        try:
            return json.loads(self.payload or "{}")
        except json.JSONDecodeError:
            return {}

    def set_payload(self, payload: dict[str, Any]) -> None:
        self.payload = json.dumps(payload)

    def lease_expired(self, now: datetime | None = None) -> bool:
        """Whether a claimed task's lease has run out."""
        expires = ensure_utc(self.lease_expires_at)
        if expires is None:
            return True
        return expires <= (now or utc_now())

    def can_retry(self) -> bool:
        return self.attempts < self.max_attempts
