"""Field type handlers for CalcBase.

Each handler validates its field options; computed handlers also declare
the source references the dependency graph is built from.
"""

from calcbase.fields.base import BaseFieldTypeHandler, ComputedFieldTypeHandler, stored_handler
from calcbase.fields.types.conditional_rollup import ConditionalRollupFieldHandler
from calcbase.fields.types.formula import FormulaEngine, FormulaFieldHandler
from calcbase.fields.types.link import LinkFieldHandler
from calcbase.fields.types.lookup import LookupFieldHandler
from calcbase.fields.types.rollup import RollupFieldHandler
from calcbase.models.field import FieldType

# Registry of field type handlers
FIELD_HANDLERS: dict[str, type[BaseFieldTypeHandler]] = {
    # Stored types
    FieldType.TEXT.value: stored_handler(FieldType.TEXT.value),
    FieldType.NUMBER.value: stored_handler(FieldType.NUMBER.value),
    FieldType.CHECKBOX.value: stored_handler(FieldType.CHECKBOX.value),
    FieldType.DATE.value: stored_handler(FieldType.DATE.value),
    FieldType.AUTONUMBER.value: stored_handler(FieldType.AUTONUMBER.value),
    # Relational types
    LinkFieldHandler.field_type: LinkFieldHandler,
    LookupFieldHandler.field_type: LookupFieldHandler,
    RollupFieldHandler.field_type: RollupFieldHandler,
    ConditionalRollupFieldHandler.field_type: ConditionalRollupFieldHandler,
    # Formula
    FormulaFieldHandler.field_type: FormulaFieldHandler,
}


def get_field_handler(field_type: str) -> type[BaseFieldTypeHandler] | None:
    """
    Get the handler class for a field type.

    Args:
        field_type: Field type identifier

    Returns:
        Handler class or None if the type is unknown
    """
    return FIELD_HANDLERS.get(field_type)


__all__ = [
    "BaseFieldTypeHandler",
    "ComputedFieldTypeHandler",
    "ConditionalRollupFieldHandler",
    "FIELD_HANDLERS",
    "FormulaEngine",
    "FormulaFieldHandler",
    "LinkFieldHandler",
    "LookupFieldHandler",
    "RollupFieldHandler",
    "get_field_handler",
]
