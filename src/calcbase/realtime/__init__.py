"""Realtime fan-out of computed value changes."""

from calcbase.realtime.changes import (
    Change,
    ChangeType,
    RecordChange,
    change_to_ops,
    changes_to_ops,
    channel_names,
    record_collection,
)

__all__ = [
    "Change",
    "ChangeType",
    "RecordChange",
    "change_to_ops",
    "changes_to_ops",
    "channel_names",
    "record_collection",
]
