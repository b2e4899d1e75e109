"""
Value types shared by the dependency graph, plan compiler and executor.

Nodes are plain (table_id, field_id) keys; the graph stores adjacency
lists keyed by them instead of object references.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from calcbase.models.field import Field


@dataclass(frozen=True, order=True)
class FieldNode:
    """A (table, field) node of the dependency graph."""

    table_id: str
    field_id: str

    def __str__(self) -> str:
        return f"{self.table_id}.{self.field_id}"

    def to_dict(self) -> dict[str, str]:
        return {"tableId": self.table_id, "fieldId": self.field_id}


class EdgeKind(str, Enum):
    """How a change on the source node reaches records of the target node."""

    # Same record: the target cell of record R reads the source cell of R
    DIRECT = "direct"
    # Through a link field on the target table
    VIA_LINK = "via_link"
    # Conditional rollup: no link, every record of the target table is affected
    VIA_CONDITION = "via_condition"


class ComputedKind(str, Enum):
    """Kinds of computed field."""

    FORMULA = "formula"
    LOOKUP = "lookup"
    ROLLUP = "rollup"
    CONDITIONAL_ROLLUP = "conditional_rollup"


@dataclass(frozen=True)
class SourceRef:
    """One source a computed field reads from."""

    node: FieldNode
    kind: EdgeKind = EdgeKind.DIRECT
    link_field_id: str | None = None


@dataclass(frozen=True)
class FieldDependencyEdge:
    """``target`` is computed from ``source``."""

    source: FieldNode
    target: FieldNode
    kind: EdgeKind = EdgeKind.DIRECT
    link_field_id: str | None = None


@dataclass(frozen=True)
class FieldDefinition:
    """Schema of one field as the engine sees it."""

    id: str
    table_id: str
    field_type: str
    name: str = ""
    options: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    is_computed: bool = False

    @property
    def node(self) -> FieldNode:
        return FieldNode(self.table_id, self.id)

    @classmethod
    def from_model(cls, model: "Field") -> "FieldDefinition":
        from calcbase.models.field import COMPUTED_FIELD_TYPES

        return cls(
            id=model.id,
            table_id=model.table_id,
            field_type=model.field_type,
            name=model.name,
            options=model.get_options(),
            is_computed=model.is_computed or model.field_type in COMPUTED_FIELD_TYPES,
        )


@dataclass(frozen=True)
class LinkDefinition:
    """A link field: records of ``table_id`` point at records of ``linked_table_id``."""

    field_id: str
    table_id: str
    linked_table_id: str
    inverse_field_id: str | None = None

    @classmethod
    def from_definition(cls, definition: FieldDefinition) -> "LinkDefinition":
        return cls(
            field_id=definition.id,
            table_id=definition.table_id,
            linked_table_id=definition.options.get("linked_table_id", ""),
            inverse_field_id=definition.options.get("inverse_field_id"),
        )


@dataclass(frozen=True)
class ComputedField:
    """A computed field together with the sources it reads."""

    table_id: str
    field_id: str
    kind: ComputedKind
    source_refs: tuple[SourceRef, ...] = ()

    @property
    def node(self) -> FieldNode:
        return FieldNode(self.table_id, self.field_id)
