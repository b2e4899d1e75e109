"""
Field model - defines column schema in a table.

Computed fields keep their source references in ``options``; the
dependency graph is derived from those options.
"""

import json
from enum import Enum
from typing import Any

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from calcbase.db.base import SoftDeleteModel


class FieldType(str, Enum):
    """Available field types."""

    # Basic Types
    TEXT = "text"
    NUMBER = "number"
    CHECKBOX = "checkbox"
    DATE = "date"

    # Reference Types
    LINKED_RECORD = "linked_record"
    LOOKUP = "lookup"
    ROLLUP = "rollup"
    CONDITIONAL_ROLLUP = "conditional_rollup"

    # Computed Types
    FORMULA = "formula"
    AUTONUMBER = "autonumber"


COMPUTED_FIELD_TYPES = frozenset(
    {
        FieldType.FORMULA.value,
        FieldType.LOOKUP.value,
        FieldType.ROLLUP.value,
        FieldType.CONDITIONAL_ROLLUP.value,
    }
)


class Field(SoftDeleteModel):
    """
    Field model - defines a column in a table.

    Contains the field type and its type-specific options.
    """

    __tablename__: str = "fields"  # type: ignore[assignment]

    table_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tables.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    field_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    # Type-specific options (JSON stored as text)
    # - linked_record: linked_table_id, inverse_field_id
    # - formula: formula, referenced_field_ids
    # - lookup: link_field_id, lookup_field_id
    # - rollup: link_field_id, rollup_field_id, aggregation
    # - conditional_rollup: foreign_table_id, rollup_field_id, aggregation, conditions
    options: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        default="{}",
    )

    position: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    is_computed: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_fields_table_name", "table_id", "name"),
        Index("ix_fields_table_type", "table_id", "field_type"),
    )

    def __repr__(self) -> str:
        return f"<Field {self.name} ({self.field_type})>"

    def get_options(self) -> dict[str, Any]:
        """Parse options JSON."""
        try:
            return json.loads(self.options or "{}")
        except json.JSONDecodeError:
            return {}

    def set_options(self, options: dict[str, Any]) -> None:
        """Set options from dict."""
        self.options = json.dumps(options)
