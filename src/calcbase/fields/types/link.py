"""Link field type handler for CalcBase.

Link fields store references to records in another table (or the same
table). Lookups and rollups traverse them to reach foreign values.
"""

from typing import Any

from calcbase.fields.base import BaseFieldTypeHandler


class LinkFieldHandler(BaseFieldTypeHandler):
    """
    Handler for linked record fields.

    Options:
        linked_table_id: ID of the table being linked to (required)
        inverse_field_id: Link field on the linked table pointing back (optional)

    Storage format:
        List of record ID strings: ["rec_id_1", "rec_id_2"]
        Objects of the form {"id": "rec_id"} are accepted on read.
    """

    field_type = "linked_record"
    required_options = ("linked_table_id",)

    @classmethod
    def record_ids(cls, value: Any) -> list[str]:
        """
        Normalize a stored link cell to a list of record ids.

        Args:
            value: Cell value (None, a single id, a list of ids or of {"id": ...})

        Returns:
            Ordered, de-duplicated list of record ids
        """
        if value is None or value == "":
            return []
        if isinstance(value, (str, dict)):
            value = [value]
        if not isinstance(value, (list, tuple)):
            return []

        result: list[str] = []
        seen: set[str] = set()
        for item in value:
            if isinstance(item, dict):
                item = item.get("id")
            if not isinstance(item, str) or not item or item in seen:
                continue
            seen.add(item)
            result.append(item)
        return result
