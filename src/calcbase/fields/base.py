"""Base class for field type handlers."""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from calcbase.computed.types import FieldDefinition, LinkDefinition, SourceRef
from calcbase.core.exceptions import InvalidFieldOptionsError


class BaseFieldTypeHandler(ABC):
    """
    Base class for field type handlers.

    A handler validates a field's options and, for computed types, declares
    the source references the dependency graph turns into edges.

    Example:
        class MyFieldHandler(BaseFieldTypeHandler):
            field_type = "my_type"
            required_options = ("source_field_id",)
    """

    field_type: str
    computed: bool = False
    required_options: tuple[str, ...] = ()

    @classmethod
    def validate_options(cls, options: dict[str, Any] | None) -> None:
        """
        Validate field options.

        Raises:
            InvalidFieldOptionsError: If a required option is missing
        """
        options = options or {}
        for key in cls.required_options:
            if not options.get(key):
                raise InvalidFieldOptionsError(cls.field_type, f"'{key}' is required")

    @classmethod
    def source_refs(
        cls,
        definition: FieldDefinition,
        links: Mapping[str, LinkDefinition],
    ) -> list[SourceRef]:
        """Sources this field reads from; empty for stored fields."""
        return []


class ComputedFieldTypeHandler(BaseFieldTypeHandler):
    """Base class for formula, lookup and rollup handlers."""

    computed = True

    @classmethod
    @abstractmethod
    def source_refs(
        cls,
        definition: FieldDefinition,
        links: Mapping[str, LinkDefinition],
    ) -> list[SourceRef]:
        """Sources this field reads from."""


def stored_handler(field_type: str) -> type[BaseFieldTypeHandler]:
    """Build a handler class for a stored field type (text, number, ...)."""
    return type(
        f"{field_type.title().replace('_', '')}FieldHandler",
        (BaseFieldTypeHandler,),
        {"field_type": field_type},
    )
