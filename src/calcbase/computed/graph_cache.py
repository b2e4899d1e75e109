"""In-process cache of dependency graphs keyed by base schema version."""

import asyncio
from dataclasses import dataclass
from typing import Optional

from calcbase.computed.graph import FieldDependencyGraph
from calcbase.computed.repository import RecordRepository
from calcbase.core.logging import get_logger
from calcbase.metrics import graph_cache_counter

logger = get_logger(__name__)


@dataclass
class _Entry:
    schema_version: int
    graph: FieldDependencyGraph


class GraphCache:
    """Dependency graph cache.

    A cached graph is reused while the base's ``schema_version`` is
    unchanged. Field create/update/delete bumps the version, so the next
    lookup rebuilds the graph from the repository.
    """

    def __init__(self) -> None:
        """Initialize an empty cache."""
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    async def get(self, repository: RecordRepository, base_id: str) -> FieldDependencyGraph:
        """Get the graph of a base, rebuilding it when the schema changed.

        Args:
            repository: Repository to read the schema from
            base_id: Base ID

        Returns:
            Dependency graph of the base

        """
        version = await repository.get_schema_version(base_id)

        entry = self._entries.get(base_id)
        if entry is not None and entry.schema_version == version:
            graph_cache_counter.labels(status="hit").inc()
            return entry.graph

        graph_cache_counter.labels(status="miss").inc()
        fields, links = await repository.list_fields_and_links(base_id)
        graph = FieldDependencyGraph.build(fields, links)

        async with self._lock:
            current = self._entries.get(base_id)
            if current is None or current.schema_version <= version:
                self._entries[base_id] = _Entry(schema_version=version, graph=graph)

        logger.debug(f"Built dependency graph for base {base_id} (v{version}): {graph!r}")
        return graph

    def invalidate(self, base_id: Optional[str] = None) -> None:
        """Drop one base's graph, or every graph when ``base_id`` is None."""
        if base_id is None:
            self._entries.clear()
        else:
            self._entries.pop(base_id, None)

    def __len__(self) -> int:
        return len(self._entries)


graph_cache = GraphCache()
