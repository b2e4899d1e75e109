"""Fan-out of committed computed values to realtime subscribers."""

from collections import defaultdict
from typing import Any, Optional, Protocol

from calcbase.core.config import settings
from calcbase.core.events import ComputedValuesCommitted, EventBus
from calcbase.core.logging import get_logger
from calcbase.realtime.changes import RecordChange, change_to_ops, channel_names
from calcbase.realtime.pubsub import get_pubsub_manager

logger = get_logger(__name__)


class Publisher(Protocol):
    async def publish(self, channel: str, message: dict[str, Any]) -> bool: ...


class RealtimePublisher:
    """
    Publishes OT ops for every ComputedValuesCommitted event.

    Ops are grouped per record document; each document's message goes to
    the collection channel and the document channel. A failed publish is
    logged and never affects the committed values.
    """

    def __init__(self, pubsub: Optional[Publisher] = None, channel_prefix: Optional[str] = None):
        self.pubsub = pubsub or get_pubsub_manager()
        self.channel_prefix = (
            settings.realtime_channel_prefix if channel_prefix is None else channel_prefix
        )

    def register(self, event_bus: EventBus) -> None:
        event_bus.subscribe(ComputedValuesCommitted, self.on_committed)

    def build_messages(self, changes: tuple[RecordChange, ...]) -> list[tuple[str, dict[str, Any]]]:
        """(channel, message) pairs for a batch of record changes, in change order."""
        by_doc: dict[tuple[str, str], list[dict[str, Any]]] = defaultdict(list)
        for record_change in changes:
            key = (record_change.collection, record_change.record_id)
            by_doc[key].extend(change_to_ops(record_change.change))

        messages = []
        for (collection, doc_id), ops in by_doc.items():
            message = {"collection": collection, "doc": doc_id, "ops": ops}
            for channel in channel_names(collection, doc_id, prefix=self.channel_prefix):
                messages.append((channel, message))
        return messages

    async def on_committed(self, event: ComputedValuesCommitted) -> None:
        failed = 0
        messages = self.build_messages(event.changes)
        for channel, message in messages:
            if not await self.pubsub.publish(channel, message):
                failed += 1

        if failed:
            logger.warning(
                f"Failed to publish {failed}/{len(messages)} realtime messages "
                f"for table {event.table_id}"
            )


def default_event_bus() -> EventBus:
    """Event bus with the realtime publisher attached when realtime is enabled."""
    bus = EventBus()
    if settings.realtime_enabled:
        RealtimePublisher().register(bus)
    return bus
