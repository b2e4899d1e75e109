"""Lookup field type handler for CalcBase.

Lookup fields pull a field's values from the records linked through a
link field in the same table.
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
from calcbase.fields.base import ComputedFieldTypeHandler


def linked_source_refs(
    definition: FieldDefinition,
    links: Mapping[str, LinkDefinition],
    foreign_field_id: str | None,
) -> list[SourceRef]:
    """
    Edges for a field that reads a foreign field through a link.

    The link cell of the same record is a direct source: relinking a record
    changes the result. The foreign field is a source through the link.
    """
    link_field_id = definition.options.get("link_field_id")
    if not link_field_id:
        return []

    refs = [SourceRef(FieldNode(definition.table_id, link_field_id), EdgeKind.DIRECT)]
    link = links.get(link_field_id)
    if link is not None and foreign_field_id:
        refs.append(
            SourceRef(
                FieldNode(link.linked_table_id, foreign_field_id),
                EdgeKind.VIA_LINK,
                link_field_id=link_field_id,
            )
        )
    return refs


class LookupFieldHandler(ComputedFieldTypeHandler):
    """
    Handler for lookup fields.

    Options:
        link_field_id: Link field in this table to follow (required)
        lookup_field_id: Field of the linked table to read (required)

    Storage format:
        List of the looked-up values, in link order.
    """

    field_type = "lookup"
    required_options = ("link_field_id", "lookup_field_id")

    @classmethod
    def source_refs(
        cls,
        definition: FieldDefinition,
        links: Mapping[str, LinkDefinition],
    ) -> list[SourceRef]:
        return linked_source_refs(definition, links, definition.options.get("lookup_field_id"))

    @classmethod
    def compute(
        cls,
        linked_records: list[dict[str, Any]],
        lookup_field_id: str,
    ) -> list[Any]:
        """
        Compute lookup values from linked records.

        Lookups of lookups are flattened one level so chained lookups stay
        a flat list.

        Args:
            linked_records: Cell dicts (field_id -> value) of the linked records
            lookup_field_id: ID of the field to extract

        Returns:
            List of extracted values
        """
        values: list[Any] = []
        for record in linked_records:
            if not isinstance(record, dict) or lookup_field_id not in record:
                continue
            value = record[lookup_field_id]
            if isinstance(value, list):
                values.extend(value)
            else:
                values.append(value)
        return values
