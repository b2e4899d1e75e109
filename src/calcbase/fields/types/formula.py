"""Formula field type handler for CalcBase.

Formula fields compute a value from sibling fields of the same record.
The expression language itself is provided by a pluggable FormulaEngine;
this handler only knows which fields an expression reads.
"""

from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Protocol

from calcbase.computed.types import (
    EdgeKind,
    FieldDefinition,
    FieldNode,
    LinkDefinition,
    SourceRef,
)
from calcbase.core.exceptions import InvalidFieldOptionsError
from calcbase.fields.base import ComputedFieldTypeHandler


class FormulaEngine(Protocol):
    """Evaluates a formula expression against the referenced cell values."""

    def evaluate(self, expression: str, values: dict[str, Any]) -> Any: ...


class FormulaFieldHandler(ComputedFieldTypeHandler):
    """
    Handler for formula fields.

    Options:
        formula: The formula expression string (required)
        referenced_field_ids: IDs of the sibling fields the expression reads
    """

    field_type = "formula"
    required_options = ("formula",)

    @classmethod
    def validate_options(cls, options: dict[str, Any] | None) -> None:
        super().validate_options(options)
        refs = (options or {}).get("referenced_field_ids", [])
        if not isinstance(refs, list) or not all(isinstance(r, str) for r in refs):
            raise InvalidFieldOptionsError(
                cls.field_type, "'referenced_field_ids' must be a list of field ids"
            )

    @classmethod
    def referenced_field_ids(cls, definition: FieldDefinition) -> list[str]:
        return list(definition.options.get("referenced_field_ids") or [])

    @classmethod
    def source_refs(
        cls,
        definition: FieldDefinition,
        links: Mapping[str, LinkDefinition],
    ) -> list[SourceRef]:
        return [
            SourceRef(FieldNode(definition.table_id, field_id), EdgeKind.DIRECT)
            for field_id in cls.referenced_field_ids(definition)
        ]

    @classmethod
    def compute(
        cls,
        engine: FormulaEngine,
        definition: FieldDefinition,
        record_values: dict[str, Any],
    ) -> Any:
        """Evaluate the formula for one record and serialize the result."""
        values = {
            field_id: record_values.get(field_id)
            for field_id in cls.referenced_field_ids(definition)
        }
        return cls.serialize(engine.evaluate(definition.options["formula"], values))

    @classmethod
    def serialize(cls, value: Any) -> Any:
        if isinstance(value, Decimal):
            return float(value)
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        return value
