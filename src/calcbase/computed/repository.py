"""
Record/table repository used by the computed-field engine.

The engine reads and writes cells only through RecordRepository so the
storage engine stays replaceable; SqlRecordRepository implements it on
the CalcBase models.
"""

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from calcbase.computed.types import FieldDefinition, LinkDefinition
from calcbase.core.exceptions import BaseNotFoundError, PersistenceError
from calcbase.core.logging import get_logger
from calcbase.fields import LinkFieldHandler
from calcbase.models.base import Base
from calcbase.models.field import Field
from calcbase.models.record import Record
from calcbase.models.table import Table

logger = get_logger(__name__)


@dataclass
class RecordRow:
    """A record as the engine sees it: id plus cell values."""

    id: str
    table_id: str
    values: dict[str, Any] = field(default_factory=dict)
    deleted: bool = False


class RecordRepository(Protocol):
    """Storage operations the engine depends on."""

    async def get_records(
        self, table_id: str, ids: Iterable[str], include_deleted: bool = False
    ) -> list[RecordRow]: ...

    async def list_records(self, table_id: str) -> list[RecordRow]: ...

    async def list_record_ids(self, table_id: str) -> list[str]: ...

    async def find_linking_records(
        self, link: LinkDefinition, target_ids: Iterable[str]
    ) -> set[str]: ...

    async def write_computed_values(
        self, table_id: str, updates: Mapping[str, Mapping[str, Any]]
    ) -> int: ...

    async def list_fields_and_links(
        self, base_id: str
    ) -> tuple[list[FieldDefinition], list[LinkDefinition]]: ...

    async def get_schema_version(self, base_id: str) -> int: ...

    async def commit(self) -> None: ...


class SqlRecordRepository:
    """RecordRepository backed by the SQLAlchemy models."""

    def __init__(self, db: AsyncSession):
        """Initialize repository with database session."""
        self.db = db

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    async def list_fields_and_links(
        self, base_id: str
    ) -> tuple[list[FieldDefinition], list[LinkDefinition]]:
        """
        Load every live field of a base.

        Returns:
            Tuple of (field definitions, link definitions)
        """
        query = (
            select(Field)
            .join(Table, Table.id == Field.table_id)
            .where(
                Table.base_id == base_id,
                Table.deleted_at.is_(None),
                Field.deleted_at.is_(None),
            )
            .order_by(Field.table_id, Field.position, Field.id)
        )
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load fields for base {base_id}", e) from e

        definitions = [FieldDefinition.from_model(f) for f in result.scalars().all()]
        links = [
            LinkDefinition.from_definition(d)
            for d in definitions
            if d.field_type == LinkFieldHandler.field_type
        ]
        return definitions, links

    async def get_schema_version(self, base_id: str) -> int:
        """
        Get the schema version of a base.

        Raises:
            BaseNotFoundError: If the base does not exist
        """
        try:
            result = await self.db.execute(select(Base.schema_version).where(Base.id == base_id))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read schema version of base {base_id}", e) from e
        version = result.scalar_one_or_none()
        if version is None:
            raise BaseNotFoundError(base_id)
        return version

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    async def get_records(
        self,
        table_id: str,
        ids: Iterable[str],
        include_deleted: bool = False,
    ) -> list[RecordRow]:
        """
        Fetch records of a table by id.

        Args:
            table_id: Table the records belong to
            ids: Record ids
            include_deleted: Also return soft-deleted records

        Returns:
            Rows in id order; unknown ids are skipped
        """
        ids = sorted(set(ids))
        if not ids:
            return []

        query = select(Record).where(Record.table_id == table_id, Record.id.in_(ids))
        if not include_deleted:
            query = query.where(Record.deleted_at.is_(None))
        return await self._fetch(query.order_by(Record.id))

    async def list_records(self, table_id: str) -> list[RecordRow]:
        """All live records of a table."""
        query = (
            select(Record)
            .where(Record.table_id == table_id, Record.deleted_at.is_(None))
            .order_by(Record.id)
        )
        return await self._fetch(query)

    async def list_record_ids(self, table_id: str) -> list[str]:
        query = (
            select(Record.id)
            .where(Record.table_id == table_id, Record.deleted_at.is_(None))
            .order_by(Record.id)
        )
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list records of table {table_id}", e) from e
        return list(result.scalars().all())

    async def find_linking_records(
        self,
        link: LinkDefinition,
        target_ids: Iterable[str],
    ) -> set[str]:
        """
        Records of ``link.table_id`` whose link cell points at any target.

        Soft-deleted targets still count: their inverse link cell is read so
        rows that referenced a deleted record are found after the delete.

        Args:
            link: Link field on the table being resolved
            target_ids: Records of the linked table that changed

        Returns:
            Ids of live records in ``link.table_id``
        """
        targets = set(target_ids)
        if not targets:
            return set()

        found: set[str] = set()

        if link.inverse_field_id:
            for row in await self.get_records(link.linked_table_id, targets, include_deleted=True):
                found.update(LinkFieldHandler.record_ids(row.values.get(link.inverse_field_id)))

        for row in await self.list_records(link.table_id):
            linked = LinkFieldHandler.record_ids(row.values.get(link.field_id))
            if targets.intersection(linked):
                found.add(row.id)

        if found and link.inverse_field_id:
            # Inverse cells may be stale; keep only live rows of the host table
            live = await self.get_records(link.table_id, found)
            found = {row.id for row in live}
        return found

    async def write_computed_values(
        self,
        table_id: str,
        updates: Mapping[str, Mapping[str, Any]],
    ) -> int:
        """
        Merge computed cell values into records.

        Rows are locked (``SELECT ... FOR UPDATE``) before their current data
        is read, so cells a concurrent writer commits first are merged rather
        than overwritten. Rows whose stored data is not valid JSON are skipped
        and logged; rewriting them would erase their stored cells.

        Args:
            table_id: Table being written
            updates: record_id -> {field_id: value}

        Returns:
            Number of rows written
        """
        if not updates:
            return 0

        try:
            result = await self.db.execute(
                select(Record.id, Record.data)
                .where(Record.table_id == table_id, Record.id.in_(list(updates)))
                .order_by(Record.id)
                .with_for_update()
            )
            current = {row.id: row.data for row in result}

            written = 0
            for record_id, values in updates.items():
                if record_id not in current:
                    continue
                try:
                    data = json.loads(current[record_id] or "{}")
                except json.JSONDecodeError as e:
                    logger.error(
                        f"Skipping computed write to record {record_id}: stored data is not valid JSON",
                        extra={"tableId": table_id, "recordId": record_id, "error": str(e)},
                    )
                    continue
                data.update(values)
                await self.db.execute(
                    update(Record).where(Record.id == record_id).values(data=json.dumps(data))
                )
                written += 1
            await self.db.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to write computed values to table {table_id}", e) from e

        return written

    async def commit(self) -> None:
        """Commit the session; roll back and raise PersistenceError on failure."""
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError("Failed to commit computed values", e) from e

    async def _fetch(self, query) -> list[RecordRow]:
        try:
            result = await self.db.execute(query.execution_options(populate_existing=True))
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to read records", e) from e
        return [
            RecordRow(
                id=record.id,
                table_id=record.table_id,
                values=record.get_all_values(),
                deleted=record.is_deleted,
            )
            for record in result.scalars().all()
        ]
