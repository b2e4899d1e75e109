"""Record service: record writes plus their outbox tasks."""

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from calcbase.computed.outbox import ComputedOutbox, OutboxPayload
from calcbase.computed.planner import ChangeType
from calcbase.core.exceptions import RecordNotFoundError, TableNotFoundError
from calcbase.core.logging import get_logger
from calcbase.fields import LinkFieldHandler
from calcbase.models.field import COMPUTED_FIELD_TYPES, Field, FieldType
from calcbase.models.outbox import ComputedOutboxTask
from calcbase.models.record import Record
from calcbase.models.table import Table

logger = get_logger(__name__)


class RecordService:
    """
    Service for record operations.

    Every write adds its outbox task to the same session without
    committing, so the record change and the intent to recompute its
    dependents commit (or roll back) together.
    """

    def __init__(self, db: AsyncSession):
        """Initialize service with database session."""
        self.db = db
        self.outbox = ComputedOutbox(db)

    async def create_record(self, table_id: str, data: Optional[dict[str, Any]] = None) -> Record:
        """Create a record and enqueue an insert seed.

        Args:
            table_id: Table ID
            data: Cell values keyed by field ID

        Returns:
            Created record

        Raises:
            TableNotFoundError: If the table does not exist

        """
        table = await self._get_table(table_id)
        fields = await self._get_fields(table_id)
        values = self._writable_values(fields, data or {})

        record = Record(table_id=table_id)
        record.set_all_values(values)
        self.db.add(record)
        await self.db.flush()

        await self._sync_inverse_links(record, fields, {}, values)
        await self.outbox.enqueue(
            table.base_id,
            OutboxPayload(
                seed_table_id=table_id,
                seed_record_ids=[record.id],
                change_type=ChangeType.INSERT,
            ),
        )
        return record

    async def update_record(self, record_id: str, data: dict[str, Any]) -> Record:
        """Update cells of a record and enqueue an update seed for the changed fields.

        Args:
            record_id: Record ID
            data: Cell values to set, keyed by field ID

        Returns:
            Updated record

        Raises:
            RecordNotFoundError: If the record does not exist

        """
        record = await self.get_record(record_id, for_update=True)
        table = await self._get_table(record.table_id)
        fields = await self._get_fields(record.table_id)

        old_values = record.get_all_values()
        changes = {
            field_id: value
            for field_id, value in self._writable_values(fields, data).items()
            if old_values.get(field_id) != value
        }
        if not changes:
            return record

        record.set_all_values({**old_values, **changes})
        await self.db.flush()

        await self._sync_inverse_links(record, fields, old_values, changes)
        await self.outbox.enqueue(
            table.base_id,
            OutboxPayload(
                seed_table_id=record.table_id,
                seed_record_ids=[record.id],
                seed_field_ids=sorted(changes),
                change_type=ChangeType.UPDATE,
            ),
        )
        return record

    async def delete_record(self, record_id: str) -> ComputedOutboxTask:
        """Soft delete a record and enqueue a delete seed.

        Link cells pointing at the record are left in place; lookups and
        rollups skip deleted records when they are recomputed.

        Returns:
            The enqueued outbox task

        Raises:
            RecordNotFoundError: If the record does not exist

        """
        record = await self.get_record(record_id, for_update=True)
        table = await self._get_table(record.table_id)

        record.soft_delete()
        await self.db.flush()

        return await self.outbox.enqueue(
            table.base_id,
            OutboxPayload(
                seed_table_id=record.table_id,
                seed_record_ids=[record.id],
                change_type=ChangeType.DELETE,
            ),
        )

    async def get_record(self, record_id: str, for_update: bool = False) -> Record:
        """Get a live record by ID.

        With ``for_update`` the row is locked and reloaded, so a read-modify-write
        of its data cannot overwrite cells another transaction committed meanwhile.

        Raises:
            RecordNotFoundError: If the record does not exist or is deleted

        """
        if for_update:
            record = await self.db.get(
                Record, record_id, with_for_update=True, populate_existing=True
            )
        else:
            record = await self.db.get(Record, record_id)
        if not record or record.is_deleted:
            raise RecordNotFoundError(record_id)
        return record

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _get_table(self, table_id: str) -> Table:
        table = await self.db.get(Table, table_id)
        if not table or table.is_deleted:
            raise TableNotFoundError(table_id)
        return table

    async def _get_fields(self, table_id: str) -> dict[str, Field]:
        result = await self.db.execute(
            select(Field).where(Field.table_id == table_id, Field.deleted_at.is_(None))
        )
        return {field.id: field for field in result.scalars().all()}

    @staticmethod
    def _writable_values(fields: dict[str, Field], data: dict[str, Any]) -> dict[str, Any]:
        """Drop unknown and computed fields; normalize link cells."""
        values: dict[str, Any] = {}
        for field_id, value in data.items():
            field = fields.get(field_id)
            if field is None:
                logger.debug(f"Ignoring value for unknown field {field_id}")
                continue
            if field.is_computed or field.field_type in COMPUTED_FIELD_TYPES:
                logger.debug(f"Ignoring value for computed field {field_id}")
                continue
            if field.field_type == FieldType.LINKED_RECORD.value:
                value = LinkFieldHandler.record_ids(value)
            values[field_id] = value
        return values

    async def _sync_inverse_links(
        self,
        record: Record,
        fields: dict[str, Field],
        old_values: dict[str, Any],
        new_values: dict[str, Any],
    ) -> None:
        """Mirror link cell changes onto the inverse link field of the linked records.

        The linked records' inverse cells change too, so an update seed is
        enqueued for them as well.
        """
        table = await self._get_table(record.table_id)

        for field_id, value in new_values.items():
            field = fields[field_id]
            if field.field_type != FieldType.LINKED_RECORD.value:
                continue
            options = field.get_options()
            inverse_field_id = options.get("inverse_field_id")
            if not inverse_field_id:
                continue

            old_ids = set(LinkFieldHandler.record_ids(old_values.get(field_id)))
            new_ids = set(LinkFieldHandler.record_ids(value))
            touched = old_ids ^ new_ids
            if not touched:
                continue

            result = await self.db.execute(
                select(Record)
                .where(
                    Record.table_id == options["linked_table_id"],
                    Record.id.in_(sorted(touched)),
                    Record.deleted_at.is_(None),
                )
                .order_by(Record.id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            linked_records = list(result.scalars().all())
            for linked in linked_records:
                ids = LinkFieldHandler.record_ids(linked.get_field_value(inverse_field_id))
                if linked.id in new_ids and record.id not in ids:
                    ids.append(record.id)
                elif linked.id not in new_ids and record.id in ids:
                    ids.remove(record.id)
                linked.set_field_value(inverse_field_id, ids)
            await self.db.flush()

            if linked_records:
                await self.outbox.enqueue(
                    table.base_id,
                    OutboxPayload(
                        seed_table_id=options["linked_table_id"],
                        seed_record_ids=sorted(linked.id for linked in linked_records),
                        seed_field_ids=[inverse_field_id],
                        change_type=ChangeType.UPDATE,
                    ),
                )
