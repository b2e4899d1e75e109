"""
Table model - a collection of records with a defined schema.
"""

from sqlalchemy import ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from calcbase.db.base import SoftDeleteModel


class Table(SoftDeleteModel):
    """Table model - contains fields (columns) and records (rows)."""

    __tablename__ = "tables"

    base_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bases.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    position: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    __table_args__ = (Index("ix_tables_base_name", "base_id", "name"),)

    def __repr__(self) -> str:
        return f"<Table {self.name}>"
