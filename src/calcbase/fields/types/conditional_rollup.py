"""Conditional rollup field type handler for CalcBase.

A conditional rollup aggregates a field over every record of a foreign
table that matches a set of conditions. There is no link field, so a
change to any matching source record affects every record of the host
table.
"""

from collections.abc import Mapping
from typing import Any

from calcbase.computed.types import (
    EdgeKind,
    FieldDefinition,
    FieldNode,
    LinkDefinition,
    SourceRef,
)
from calcbase.core.exceptions import InvalidFieldOptionsError
from calcbase.fields.base import ComputedFieldTypeHandler
from calcbase.fields.types.rollup import RollupFieldHandler


def _compare(left: Any, right: Any, op: str) -> bool:
    try:
        if op == "gt":
            return left > right
        if op == "gte":
            return left >= right
        if op == "lt":
            return left < right
        if op == "lte":
            return left <= right
    except TypeError:
        return False
    return False


OPERATORS = {
    "eq": lambda value, target: value == target,
    "neq": lambda value, target: value != target,
    "gt": lambda value, target: _compare(value, target, "gt"),
    "gte": lambda value, target: _compare(value, target, "gte"),
    "lt": lambda value, target: _compare(value, target, "lt"),
    "lte": lambda value, target: _compare(value, target, "lte"),
    "contains": lambda value, target: (
        target in value if isinstance(value, (list, str)) and target is not None else False
    ),
    "is_empty": lambda value, _: value is None or value == "" or value == [],
    "is_not_empty": lambda value, _: not (value is None or value == "" or value == []),
}


class ConditionalRollupFieldHandler(ComputedFieldTypeHandler):
    """
    Handler for conditional rollup fields.

    Options:
        foreign_table_id: Table whose records are aggregated (required)
        rollup_field_id: Field of the foreign table to aggregate (required)
        aggregation: Aggregation function name (required)
        conditions: List of {field_id, operator, value}; all must match
    """

    field_type = "conditional_rollup"
    required_options = ("foreign_table_id", "rollup_field_id", "aggregation")

    @classmethod
    def validate_options(cls, options: dict[str, Any] | None) -> None:
        super().validate_options(options)
        options = options or {}
        RollupFieldHandler.validate_aggregation(str(options["aggregation"]))

        for condition in options.get("conditions") or []:
            if not isinstance(condition, dict) or not condition.get("field_id"):
                raise InvalidFieldOptionsError(cls.field_type, "condition requires 'field_id'")
            if condition.get("operator", "eq") not in OPERATORS:
                raise InvalidFieldOptionsError(
                    cls.field_type, f"unknown operator '{condition.get('operator')}'"
                )

    @classmethod
    def source_refs(
        cls,
        definition: FieldDefinition,
        links: Mapping[str, LinkDefinition],
    ) -> list[SourceRef]:
        options = definition.options
        foreign_table_id = options.get("foreign_table_id")
        if not foreign_table_id:
            return []

        field_ids = [options.get("rollup_field_id")]
        field_ids.extend(c.get("field_id") for c in options.get("conditions") or [])

        refs: list[SourceRef] = []
        for field_id in field_ids:
            if not field_id:
                continue
            ref = SourceRef(FieldNode(foreign_table_id, field_id), EdgeKind.VIA_CONDITION)
            if ref not in refs:
                refs.append(ref)
        return refs

    @classmethod
    def matches(cls, record: dict[str, Any], conditions: list[dict[str, Any]]) -> bool:
        """Whether a foreign record satisfies every condition."""
        for condition in conditions:
            op = OPERATORS[condition.get("operator", "eq")]
            if not op(record.get(condition["field_id"]), condition.get("value")):
                return False
        return True

    @classmethod
    def compute(
        cls,
        foreign_records: list[dict[str, Any]],
        options: dict[str, Any],
    ) -> Any:
        """
        Aggregate the rollup field over matching foreign records.

        Args:
            foreign_records: Cell dicts of every live record of the foreign table
            options: Field options

        Returns:
            Aggregated value
        """
        conditions = options.get("conditions") or []
        rollup_field_id = options["rollup_field_id"]
        values = [
            record.get(rollup_field_id)
            for record in foreign_records
            if cls.matches(record, conditions)
        ]
        return RollupFieldHandler.compute(values, options["aggregation"], options)
