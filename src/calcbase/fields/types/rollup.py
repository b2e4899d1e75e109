"""Rollup field type handler for CalcBase.

Rollup fields aggregate values from linked records using an aggregation
function such as sum, average or count.
"""

from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

from calcbase.computed.types import FieldDefinition, LinkDefinition, SourceRef
from calcbase.core.exceptions import InvalidFieldOptionsError
from calcbase.fields.base import ComputedFieldTypeHandler
from calcbase.fields.types.lookup import linked_source_refs


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []


def _to_decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal, str)):
        try:
            return Decimal(str(value))
        except (InvalidOperation, ValueError):
            return None
    return None


def _numeric_sum(values: list[Any]) -> int | float | None:
    numbers = [d for d in (_to_decimal(v) for v in values) if d is not None]
    if not numbers:
        return None
    total = sum(numbers, Decimal(0))
    # Whole numbers come back as int
    if total == total.to_integral_value():
        return int(total)
    return float(total)


def _numeric_avg(values: list[Any]) -> float | None:
    numbers = [d for d in (_to_decimal(v) for v in values) if d is not None]
    if not numbers:
        return None
    return float(sum(numbers, Decimal(0)) / len(numbers))


def _safe_min(values: list[Any]) -> Any:
    try:
        return min(values)
    except TypeError:
        return None


def _safe_max(values: list[Any]) -> Any:
    try:
        return max(values)
    except TypeError:
        return None


def _range(values: list[Any]) -> Any:
    low, high = _safe_min(values), _safe_max(values)
    if low is None or high is None:
        return None
    try:
        return high - low
    except TypeError:
        return None


def _unique(values: list[Any]) -> list[Any]:
    result: list[Any] = []
    for v in values:
        if v is not None and v not in result:
            result.append(v)
    return result


# Aggregations over all values (empties included)
_ALL_VALUES: dict[str, Callable[[list[Any], dict[str, Any]], Any]] = {
    "count": lambda values, _: len(values),
    "countall": lambda values, _: len(values),
    "counta": lambda values, _: len([v for v in values if not _is_empty(v)]),
    "empty": lambda values, _: len([v for v in values if _is_empty(v)]),
    "array_unique": lambda values, _: _unique(values),
    "array_compact": lambda values, _: [v for v in values if not _is_empty(v)],
    "array_join": lambda values, options: options.get("separator", ", ").join(
        str(v) for v in values if not _is_empty(v)
    ),
}

# Aggregations over non-null values; None when nothing is left
_NON_NULL: dict[str, Callable[[list[Any]], Any]] = {
    "sum": _numeric_sum,
    "avg": _numeric_avg,
    "average": _numeric_avg,
    "min": _safe_min,
    "max": _safe_max,
    "earliest": _safe_min,
    "latest": _safe_max,
    "range": _range,
    "and": lambda values: all(bool(v) for v in values),
    "or": lambda values: any(bool(v) for v in values),
}


class RollupFieldHandler(ComputedFieldTypeHandler):
    """
    Handler for rollup fields.

    Options:
        link_field_id: Link field in this table to roll up through (required)
        rollup_field_id: Field of the linked table to aggregate (required)
        aggregation: Aggregation function name (required)
        separator: Separator for array_join (optional)
    """

    field_type = "rollup"
    required_options = ("link_field_id", "rollup_field_id", "aggregation")

    AGGREGATIONS = frozenset(_ALL_VALUES) | frozenset(_NON_NULL)

    @classmethod
    def validate_options(cls, options: dict[str, Any] | None) -> None:
        super().validate_options(options)
        cls.validate_aggregation(str((options or {})["aggregation"]))

    @classmethod
    def validate_aggregation(cls, aggregation: str) -> None:
        if aggregation.lower() not in cls.AGGREGATIONS:
            raise InvalidFieldOptionsError(
                cls.field_type,
                f"invalid aggregation '{aggregation}'. "
                f"Supported: {', '.join(sorted(cls.AGGREGATIONS))}",
            )

    @classmethod
    def source_refs(
        cls,
        definition: FieldDefinition,
        links: Mapping[str, LinkDefinition],
    ) -> list[SourceRef]:
        return linked_source_refs(definition, links, definition.options.get("rollup_field_id"))

    @classmethod
    def compute(
        cls,
        values: list[Any],
        aggregation: str,
        options: dict[str, Any] | None = None,
    ) -> Any:
        """
        Compute rollup result from values.

        Args:
            values: Values collected from linked records
            aggregation: Aggregation function name
            options: Additional options (e.g. separator for array_join)

        Returns:
            Aggregated value
        """
        aggregation = aggregation.lower()
        options = options or {}

        if aggregation in _ALL_VALUES:
            return _ALL_VALUES[aggregation](values, options)

        func = _NON_NULL.get(aggregation)
        if func is None:
            raise ValueError(f"Unsupported aggregation '{aggregation}'")

        filtered = [v for v in values if v is not None]
        if not filtered:
            return None
        return cls.serialize(func(filtered))

    @classmethod
    def serialize(cls, value: Any) -> Any:
        """Make an aggregation result JSON-serializable."""
        if isinstance(value, Decimal):
            return float(value)
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        return value
