"""
Base model - container for tables (like an Airtable base).

A base is the tenant scope of the computed-field engine: the dependency
graph is built and cached per base.
"""

from sqlalchemy import Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from calcbase.db.base import SoftDeleteModel


class Base(SoftDeleteModel):
    """
    Base model - a collection of related tables.

    Tables inside one base may link to each other; computed fields never
    reach across bases.
    """

    __tablename__ = "bases"

    # Owning workspace (tenant)
    workspace_id: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Bumped on every field schema change; invalidates cached dependency graphs
    schema_version: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )

    __table_args__ = (Index("ix_bases_workspace", "workspace_id"),)

    def __repr__(self) -> str:
        return f"<Base {self.name} v{self.schema_version}>"
