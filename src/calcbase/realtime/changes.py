"""Change records and their translation into operational-transform ops.

The engine describes every committed cell update as a Change. The
realtime layer turns Changes into json0-style OT ops and publishes them
on ``{collection}`` and ``{collection}.{doc_id}`` channels.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

RECORD_COLLECTION_PREFIX = "rec_"


class ChangeType(str, Enum):
    """Kind of document change."""

    SET = "set"
    INSERT = "insert"
    DELETE = "delete"


@dataclass(frozen=True)
class Change:
    """
    One change to a document.

    - set: replace the value at ``path``
    - insert: insert ``value`` into the list at ``path`` before ``index``
    - delete: remove ``count`` items from the list at ``path`` starting at ``index``
    """

    type: ChangeType
    path: tuple[str | int, ...]
    value: Any = None
    index: int | None = None
    count: int | None = None

    @classmethod
    def set(cls, path: list[str | int] | tuple[str | int, ...], value: Any) -> "Change":
        return cls(ChangeType.SET, tuple(path), value=value)

    @classmethod
    def insert(cls, path: list[str | int] | tuple[str | int, ...], index: int, value: Any) -> "Change":
        if index < 0:
            raise ValueError("insert index must be >= 0")
        return cls(ChangeType.INSERT, tuple(path), value=value, index=index)

    @classmethod
    def delete(cls, path: list[str | int] | tuple[str | int, ...], index: int, count: int = 1) -> "Change":
        if index < 0 or count < 1:
            raise ValueError("delete needs index >= 0 and count >= 1")
        return cls(ChangeType.DELETE, tuple(path), index=index, count=count)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value, "path": list(self.path)}
        if self.type is ChangeType.SET or self.type is ChangeType.INSERT:
            data["value"] = self.value
        if self.index is not None:
            data["index"] = self.index
        if self.count is not None:
            data["count"] = self.count
        return data


@dataclass(frozen=True)
class RecordChange:
    """A Change addressed to one record document."""

    table_id: str
    record_id: str
    change: Change

    @property
    def collection(self) -> str:
        return record_collection(self.table_id)


def record_collection(table_id: str) -> str:
    """Collection name of a table's record documents."""
    return f"{RECORD_COLLECTION_PREFIX}{table_id}"


def change_to_ops(change: Change) -> list[dict[str, Any]]:
    """
    Translate a Change into OT ops.

    Deletes are emitted from the highest index down to the lowest so each
    op's index is still valid after the ops before it were applied.

    Args:
        change: Change to translate

    Returns:
        List of json0 ops
    """
    path = list(change.path)

    if change.type is ChangeType.SET:
        return [{"p": path, "oi": change.value}]

    if change.type is ChangeType.INSERT:
        return [{"p": path + [change.index], "li": change.value}]

    if change.type is ChangeType.DELETE:
        start = change.index or 0
        count = change.count or 1
        return [{"p": path + [i], "ld": None} for i in range(start + count - 1, start - 1, -1)]

    raise ValueError(f"Unknown change type: {change.type}")


def changes_to_ops(changes: list[Change]) -> list[dict[str, Any]]:
    """Translate several changes, preserving their order."""
    ops: list[dict[str, Any]] = []
    for change in changes:
        ops.extend(change_to_ops(change))
    return ops


def channel_names(collection: str, doc_id: str | None = None, prefix: str = "") -> list[str]:
    """
    Channels a document op is published on.

    Returns:
        ``[collection, collection.doc_id]`` (or just the collection channel)
    """
    base = f"{prefix}{collection}"
    if doc_id is None:
        return [base]
    return [base, f"{base}.{doc_id}"]
