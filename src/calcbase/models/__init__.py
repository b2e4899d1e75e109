"""SQLAlchemy models for CalcBase."""

from calcbase.models.base import Base
from calcbase.models.field import COMPUTED_FIELD_TYPES, Field, FieldType
from calcbase.models.outbox import ComputedOutboxTask, OutboxTaskStatus
from calcbase.models.record import Record
from calcbase.models.table import Table

__all__ = [
    "Base",
    "COMPUTED_FIELD_TYPES",
    "ComputedOutboxTask",
    "Field",
    "FieldType",
    "OutboxTaskStatus",
    "Record",
    "Table",
]
