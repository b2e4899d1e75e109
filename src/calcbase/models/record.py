"""
Record model - a row of data in a table.

Cell values are stored as JSON text keyed by field id.
"""

import json
from typing import Any

from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from calcbase.db.base import SoftDeleteModel


class Record(SoftDeleteModel):
    """Record model - a row in a table."""

    __tablename__ = "records"

    table_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tables.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Field values (JSON: field_id -> value)
    data: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="{}",
    )

    __table_args__ = (Index("ix_records_table_created", "table_id", "created_at"),)

    def __repr__(self) -> str:
        return f"<Record {self.id} in table {self.table_id}>"

    def get_all_values(self) -> dict[str, Any]:
        """Get all field values as a dict."""
        try:
            return json.loads(self.data or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def set_all_values(self, values: dict[str, Any]) -> None:
        self.data = json.dumps(values)

    def get_field_value(self, field_id: str) -> Any:
        """Get value for a specific field, or None if unset."""
        return self.get_all_values().get(field_id)

    def set_field_value(self, field_id: str, value: Any) -> None:
        """Set value for a specific field."""
        data = self.get_all_values()
        data[field_id] = value
        self.set_all_values(data)
