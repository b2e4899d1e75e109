"""
Evaluator adapter for computed fields.

Per-cell failures are returned as ComputedError values instead of being
raised, so one bad cell never aborts the batch. Storage failures while
fetching linked records are raised as PersistenceError and abort the task.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from calcbase.computed.graph import FieldDependencyGraph
from calcbase.computed.repository import RecordRepository, RecordRow
from calcbase.computed.types import FieldDefinition
from calcbase.core.exceptions import PersistenceError
from calcbase.core.logging import get_logger
from calcbase.fields import (
    ConditionalRollupFieldHandler,
    FormulaEngine,
    FormulaFieldHandler,
    LinkFieldHandler,
    LookupFieldHandler,
    RollupFieldHandler,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class ComputedError:
    """Typed error value stored in a computed cell."""

    code: str
    message: str

    def to_cell(self) -> dict[str, Any]:
        return {"error": {"code": self.code, "message": self.message}}

    @staticmethod
    def is_error_cell(value: Any) -> bool:
        return (
            isinstance(value, dict)
            and set(value) == {"error"}
            and isinstance(value["error"], dict)
            and "code" in value["error"]
        )


@dataclass
class RecordContext:
    """The record a computed cell is evaluated for."""

    record_id: str
    table_id: str
    values: dict[str, Any]

    @classmethod
    def from_row(cls, row: RecordRow) -> "RecordContext":
        return cls(record_id=row.id, table_id=row.table_id, values=row.values)


class Evaluator(Protocol):
    """Computes one field for one record."""

    async def evaluate(self, field: FieldDefinition, context: RecordContext) -> Any: ...


async def evaluate_field(
    evaluator: Evaluator,
    field: FieldDefinition,
    contexts: Sequence[RecordContext],
) -> dict[str, Any]:
    """
    Evaluate a field over many records.

    Uses the evaluator's vectorised ``evaluate_many`` when it has one,
    otherwise calls ``evaluate`` once per record.

    Returns:
        record_id -> value or ComputedError
    """
    evaluate_many = getattr(evaluator, "evaluate_many", None)
    if evaluate_many is not None:
        return await evaluate_many(field, contexts)

    results: dict[str, Any] = {}
    for context in contexts:
        try:
            results[context.record_id] = await evaluator.evaluate(field, context)
        except PersistenceError:
            raise
        except Exception as e:
            results[context.record_id] = ComputedError("EVALUATION_ERROR", str(e))
    return results


class FieldEvaluator:
    """
    Default evaluator dispatching to the field type handlers.

    Lookups and rollups fetch every linked record of a field in one call;
    conditional rollups read the foreign table once per field.
    """

    def __init__(
        self,
        repository: RecordRepository,
        graph: FieldDependencyGraph,
        formula_engine: FormulaEngine | None = None,
    ):
        self.repository = repository
        self.graph = graph
        self.formula_engine = formula_engine

    async def evaluate(self, field: FieldDefinition, context: RecordContext) -> Any:
        results = await self.evaluate_many(field, [context])
        return results[context.record_id]

    async def evaluate_many(
        self,
        field: FieldDefinition,
        contexts: Sequence[RecordContext],
    ) -> dict[str, Any]:
        if not contexts:
            return {}

        missing = self.graph.unresolved.get(field.node)
        if missing:
            error = ComputedError(
                "DANGLING_REFERENCE", f"Missing referenced fields: {', '.join(missing)}"
            )
            return {context.record_id: error for context in contexts}

        try:
            if field.field_type == FormulaFieldHandler.field_type:
                return self._evaluate_formula(field, contexts)
            if field.field_type == LookupFieldHandler.field_type:
                return await self._evaluate_linked(field, contexts, rollup=False)
            if field.field_type == RollupFieldHandler.field_type:
                return await self._evaluate_linked(field, contexts, rollup=True)
            if field.field_type == ConditionalRollupFieldHandler.field_type:
                return await self._evaluate_conditional_rollup(field, contexts)
        except PersistenceError:
            raise
        except Exception as e:
            logger.warning(f"Evaluation of field {field.node} failed: {e}")
            error = ComputedError("EVALUATION_ERROR", str(e))
            return {context.record_id: error for context in contexts}

        error = ComputedError("UNSUPPORTED_FIELD_TYPE", f"Cannot compute '{field.field_type}'")
        return {context.record_id: error for context in contexts}

    # -------------------------------------------------------------------------
    # Field types
    # -------------------------------------------------------------------------

    def _evaluate_formula(
        self,
        field: FieldDefinition,
        contexts: Sequence[RecordContext],
    ) -> dict[str, Any]:
        if self.formula_engine is None:
            error = ComputedError("FORMULA_ENGINE_UNAVAILABLE", "No formula engine configured")
            return {context.record_id: error for context in contexts}

        results: dict[str, Any] = {}
        for context in contexts:
            try:
                results[context.record_id] = FormulaFieldHandler.compute(
                    self.formula_engine, field, context.values
                )
            except Exception as e:
                results[context.record_id] = ComputedError("FORMULA_ERROR", str(e))
        return results

    async def _evaluate_linked(
        self,
        field: FieldDefinition,
        contexts: Sequence[RecordContext],
        rollup: bool,
    ) -> dict[str, Any]:
        options = field.options
        link = self.graph.links[options["link_field_id"]]

        linked_ids = {
            context.record_id: LinkFieldHandler.record_ids(
                context.values.get(link.field_id)
            )
            for context in contexts
        }
        all_ids = {rid for ids in linked_ids.values() for rid in ids}
        rows = await self.repository.get_records(link.linked_table_id, all_ids)
        by_id = {row.id: row.values for row in rows}

        results: dict[str, Any] = {}
        for context in contexts:
            linked = [by_id[rid] for rid in linked_ids[context.record_id] if rid in by_id]
            if not rollup:
                results[context.record_id] = LookupFieldHandler.compute(
                    linked, options["lookup_field_id"]
                )
                continue

            values: list[Any] = []
            for values_of in linked:
                value = values_of.get(options["rollup_field_id"])
                if isinstance(value, list):
                    values.extend(value)
                else:
                    values.append(value)
            results[context.record_id] = RollupFieldHandler.compute(
                values, options["aggregation"], options
            )
        return results

    async def _evaluate_conditional_rollup(
        self,
        field: FieldDefinition,
        contexts: Sequence[RecordContext],
    ) -> dict[str, Any]:
        rows = await self.repository.list_records(field.options["foreign_table_id"])
        value = ConditionalRollupFieldHandler.compute([row.values for row in rows], field.options)
        return {context.record_id: value for context in contexts}
