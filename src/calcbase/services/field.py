"""Field service: schema changes with definition-time validation."""

from collections import defaultdict
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from calcbase.computed.graph import FieldDependencyGraph
from calcbase.computed.outbox import ComputedOutbox, OutboxPayload
from calcbase.computed.planner import ChangeType
from calcbase.computed.repository import SqlRecordRepository
from calcbase.computed.types import FieldDefinition
from calcbase.core.exceptions import FieldNotFoundError, TableNotFoundError
from calcbase.core.logging import get_logger
from calcbase.db.base import generate_uuid
from calcbase.models.base import Base
from calcbase.models.field import COMPUTED_FIELD_TYPES, Field
from calcbase.models.table import Table

logger = get_logger(__name__)


class FieldService:
    """
    Service for field operations.

    Computed definitions are checked against the rest of the base (dangling
    references, cycles) before anything is written. Every schema change
    bumps ``Base.schema_version`` so cached dependency graphs are rebuilt,
    and computed fields get a table-wide backfill task.
    """

    def __init__(self, db: AsyncSession):
        """Initialize service with database session."""
        self.db = db
        self.repository = SqlRecordRepository(db)
        self.outbox = ComputedOutbox(db)

    async def create_field(
        self,
        table_id: str,
        name: str,
        field_type: str,
        options: Optional[dict[str, Any]] = None,
    ) -> Field:
        """Create a new field in a table.

        Args:
            table_id: Table ID
            name: Field name
            field_type: Field type identifier
            options: Type-specific options

        Returns:
            Created field

        Raises:
            TableNotFoundError: If the table does not exist
            InvalidFieldOptionsError: If the options are malformed
            DanglingReferenceError: If a referenced table or field does not exist
            CyclicDependencyError: If the field would create a dependency cycle

        """
        table = await self._get_table(table_id)
        is_computed = field_type in COMPUTED_FIELD_TYPES
        candidate = FieldDefinition(
            id=generate_uuid(),
            table_id=table_id,
            field_type=field_type,
            name=name,
            options=dict(options or {}),
            is_computed=is_computed,
        )
        graph = await self._current_graph(table.base_id)
        graph.validate_definition(candidate)

        result = await self.db.execute(
            select(func.coalesce(func.max(Field.position), -1)).where(Field.table_id == table_id)
        )
        field = Field(
            id=candidate.id,
            table_id=table_id,
            name=name,
            field_type=field_type,
            position=result.scalar() + 1,
            is_computed=is_computed,
        )
        field.set_options(candidate.options)
        self.db.add(field)
        await self.db.flush()

        await self._bump_schema_version(table.base_id)
        if is_computed:
            await self._enqueue_backfill(table.base_id, {table_id: [field.id]})

        logger.info(f"Created {field_type} field {field.id} in table {table_id}")
        return field

    async def update_field(
        self,
        field_id: str,
        name: Optional[str] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> Field:
        """Update a field's name and/or options.

        Raises:
            FieldNotFoundError: If the field does not exist
            InvalidFieldOptionsError: If the options are malformed
            DanglingReferenceError: If a referenced table or field does not exist
            CyclicDependencyError: If the change would create a dependency cycle

        """
        field = await self.get_field(field_id)
        table = await self._get_table(field.table_id)

        if name is not None:
            field.name = name

        if options is not None:
            candidate = FieldDefinition(
                id=field.id,
                table_id=field.table_id,
                field_type=field.field_type,
                name=field.name,
                options=dict(options),
                is_computed=field.is_computed,
            )
            graph = await self._current_graph(table.base_id)
            graph.validate_definition(candidate)
            field.set_options(candidate.options)

        await self.db.flush()

        if options is not None:
            await self._bump_schema_version(table.base_id)
            if field.is_computed:
                await self._enqueue_backfill(table.base_id, {field.table_id: [field.id]})

        return field

    async def delete_field(self, field_id: str) -> None:
        """Soft delete a field.

        Computed fields that read from it are left with a dangling reference
        and are recomputed, which stores an error value in their cells.

        Raises:
            FieldNotFoundError: If the field does not exist

        """
        field = await self.get_field(field_id)
        table = await self._get_table(field.table_id)

        graph = await self._current_graph(table.base_id)
        node = graph.definition_by_id(field.id)
        dependents: dict[str, list[str]] = defaultdict(list)
        if node is not None:
            for target in sorted(graph.downstream_nodes([node.node])):
                if target.field_id != field.id:
                    dependents[target.table_id].append(target.field_id)

        field.soft_delete()
        await self.db.flush()

        await self._bump_schema_version(table.base_id)
        if dependents:
            await self._enqueue_backfill(table.base_id, dependents)

        logger.info(f"Deleted field {field_id} ({sum(map(len, dependents.values()))} dependents)")

    async def get_field(self, field_id: str) -> Field:
        """Get a live field by ID.

        Raises:
            FieldNotFoundError: If the field does not exist or is deleted

        """
        field = await self.db.get(Field, field_id)
        if not field or field.is_deleted:
            raise FieldNotFoundError(field_id)
        return field

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _get_table(self, table_id: str) -> Table:
        table = await self.db.get(Table, table_id)
        if not table or table.is_deleted:
            raise TableNotFoundError(table_id)
        return table

    async def _current_graph(self, base_id: str) -> FieldDependencyGraph:
        fields, links = await self.repository.list_fields_and_links(base_id)
        return FieldDependencyGraph.build(fields, links)

    async def _bump_schema_version(self, base_id: str) -> None:
        await self.db.execute(
            update(Base)
            .where(Base.id == base_id)
            .values(schema_version=Base.schema_version + 1)
            .execution_options(synchronize_session=False)
        )

    async def _enqueue_backfill(self, base_id: str, fields_by_table: dict[str, list[str]]) -> None:
        for table_id, field_ids in sorted(fields_by_table.items()):
            await self.outbox.enqueue(
                base_id,
                OutboxPayload(
                    seed_table_id=table_id,
                    seed_field_ids=field_ids,
                    change_type=ChangeType.UPDATE,
                    scope="table",
                ),
            )
