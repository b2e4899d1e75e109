"""
Executor for computed-field plans.

Runs an ExecutionPlan against a RecordRepository:

1. Resolve which records of every planned field are affected, following
   the plan's edges from the seed records (same record for direct edges,
   linking records for link edges, the whole table for conditional rollups).
2. For each same-table batch, load the affected rows once, evaluate the
   batch's steps in level order against the in-memory values, and write
   only the cells whose value changed.
3. Commit in chunks and publish ComputedValuesCommitted after each commit.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Optional

from calcbase.computed.evaluator import (
    ComputedError,
    Evaluator,
    RecordContext,
    evaluate_field,
)
from calcbase.computed.graph import FieldDependencyGraph
from calcbase.computed.planner import ExecutionPlan, PlanEdge, PlanStep, SameTableBatch
from calcbase.computed.repository import RecordRepository, RecordRow
from calcbase.computed.types import EdgeKind, FieldNode
from calcbase.core.config import settings
from calcbase.core.events import ComputedValuesCommitted, DeferredEvents, EventBus
from calcbase.core.exceptions import InvariantViolationError
from calcbase.core.logging import get_logger
from calcbase.metrics import computed_cell_counter
from calcbase.realtime.changes import Change, RecordChange

logger = get_logger(__name__)


@dataclass
class ExecutionResult:
    """Outcome of executing one plan."""

    updated_cells: int = 0
    unchanged_cells: int = 0
    error_cells: int = 0
    records_written: int = 0
    commits: int = 0
    changes: list[RecordChange] = field(default_factory=list)

    @property
    def evaluated_cells(self) -> int:
        return self.updated_cells + self.unchanged_cells + self.error_cells


class ComputedFieldUpdater:
    """Executes compiled plans, one same-table batch at a time."""

    def __init__(
        self,
        repository: RecordRepository,
        evaluator: Evaluator,
        graph: FieldDependencyGraph,
        event_bus: Optional[EventBus | DeferredEvents] = None,
        chunk_size: Optional[int] = None,
    ):
        self.repository = repository
        self.evaluator = evaluator
        self.graph = graph
        self.event_bus = event_bus
        self.chunk_size = chunk_size or settings.computed_write_chunk_size

    async def execute(self, plan: ExecutionPlan, base_id: str) -> ExecutionResult:
        """
        Execute a plan.

        Emits the ``computed:plan`` trace exactly once. A zero-step plan
        returns without touching the repository.

        Args:
            plan: Compiled plan
            base_id: Base the plan belongs to

        Returns:
            ExecutionResult with cell counts and committed changes

        Raises:
            PersistenceError: If reading or writing records fails
        """
        logger.info("computed:plan", extra=plan.to_trace(base_id))

        result = ExecutionResult()
        if plan.is_empty:
            return result

        affected = await self._resolve_affected(plan)

        for index, batch in enumerate(plan.same_table_batches):
            await self._execute_batch(base_id, batch, plan.steps_for_batch(index), affected, result)

        return result

    # -------------------------------------------------------------------------
    # Affected records
    # -------------------------------------------------------------------------

    async def _resolve_affected(self, plan: ExecutionPlan) -> dict[FieldNode, set[str]]:
        """Affected record ids per planned node, propagated in level order."""
        levels = plan.levels()
        incoming: dict[FieldNode, list[PlanEdge]] = defaultdict(list)
        for edge in plan.edges:
            incoming[edge.target].append(edge)

        affected: dict[FieldNode, set[str]] = defaultdict(set)
        for node in plan.seed_nodes:
            affected[node].update(plan.seed_record_ids)

        link_cache: dict[tuple[str, frozenset[str]], set[str]] = {}
        table_cache: dict[str, set[str]] = {}

        for node in sorted(levels, key=lambda n: (levels[n], n)):
            for edge in sorted(incoming.get(node, ()), key=lambda e: e.order):
                source_ids = affected.get(edge.source)
                if not source_ids:
                    continue

                if edge.kind is EdgeKind.DIRECT:
                    affected[node].update(source_ids)

                elif edge.kind is EdgeKind.VIA_LINK:
                    link = self.graph.links.get(edge.link_field_id or "")
                    if link is None:
                        raise InvariantViolationError(
                            f"Plan edge {edge.source} -> {edge.target} uses unknown link",
                            details={"edge": edge.to_dict()},
                        )
                    key = (link.field_id, frozenset(source_ids))
                    if key not in link_cache:
                        link_cache[key] = await self.repository.find_linking_records(
                            link, source_ids
                        )
                    affected[node].update(link_cache[key])

                elif edge.kind is EdgeKind.VIA_CONDITION:
                    if node.table_id not in table_cache:
                        table_cache[node.table_id] = set(
                            await self.repository.list_record_ids(node.table_id)
                        )
                    affected[node].update(table_cache[node.table_id])

        return affected

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    async def _execute_batch(
        self,
        base_id: str,
        batch: SameTableBatch,
        steps: tuple[PlanStep, ...],
        affected: dict[FieldNode, set[str]],
        result: ExecutionResult,
    ) -> None:
        table_id = batch.table_id
        record_ids: set[str] = set()
        for step in steps:
            for field_id in step.field_ids:
                record_ids.update(affected.get(FieldNode(table_id, field_id), ()))

        if not record_ids:
            logger.debug(f"No affected records for batch on table {table_id}")
            return

        rows = {row.id: row for row in await self.repository.get_records(table_id, record_ids)}

        pending: dict[str, dict[str, Any]] = {}
        changes: list[RecordChange] = []

        for step in steps:
            for field_id in step.field_ids:
                node = FieldNode(table_id, field_id)
                targets = [rows[rid] for rid in sorted(affected.get(node, ())) if rid in rows]
                if not targets:
                    continue
                await self._evaluate_node(node, targets, pending, changes, result)

            # Flush per step: later steps may read these cells through self-links
            if pending:
                await self._write(table_id, pending, result)
                pending = {}
            if len(changes) >= self.chunk_size:
                await self._commit(base_id, table_id, changes, result)
                changes = []

        if changes:
            await self._commit(base_id, table_id, changes, result)

    async def _evaluate_node(
        self,
        node: FieldNode,
        rows: list[RecordRow],
        pending: dict[str, dict[str, Any]],
        changes: list[RecordChange],
        result: ExecutionResult,
    ) -> None:
        definition = self.graph.definition(node)
        contexts = [RecordContext.from_row(row) for row in rows]
        values = await evaluate_field(self.evaluator, definition, contexts)

        errors: list[tuple[str, ComputedError]] = []
        for row in rows:
            value = values.get(row.id, ComputedError("NO_RESULT", "Evaluator returned no value"))
            if isinstance(value, ComputedError):
                errors.append((row.id, value))
                result.error_cells += 1
                computed_cell_counter.labels(outcome="error").inc()
                value = value.to_cell()

            if node.field_id in row.values and row.values[node.field_id] == value:
                if not ComputedError.is_error_cell(value):
                    result.unchanged_cells += 1
                    computed_cell_counter.labels(outcome="unchanged").inc()
                continue

            row.values[node.field_id] = value
            pending.setdefault(row.id, {})[node.field_id] = value
            changes.append(
                RecordChange(node.table_id, row.id, Change.set(["fields", node.field_id], value))
            )
            if not ComputedError.is_error_cell(value):
                result.updated_cells += 1
                computed_cell_counter.labels(outcome="updated").inc()

        if errors:
            record_id, error = errors[0]
            logger.warning(
                "computed:cell_error",
                extra={
                    "tableId": node.table_id,
                    "fieldId": node.field_id,
                    "recordId": record_id,
                    "code": error.code,
                    "error": error.message,
                    "errorCount": len(errors),
                },
            )

    async def _write(
        self,
        table_id: str,
        pending: dict[str, dict[str, Any]],
        result: ExecutionResult,
    ) -> None:
        items = list(pending.items())
        for start in range(0, len(items), self.chunk_size):
            chunk = dict(items[start : start + self.chunk_size])
            result.records_written += await self.repository.write_computed_values(table_id, chunk)

    async def _commit(
        self,
        base_id: str,
        table_id: str,
        changes: list[RecordChange],
        result: ExecutionResult,
    ) -> None:
        await self.repository.commit()
        result.commits += 1
        result.changes.extend(changes)

        if self.event_bus is not None:
            await self.event_bus.publish(
                ComputedValuesCommitted(base_id=base_id, table_id=table_id, changes=tuple(changes))
            )
