"""Plan compiler for computed-field propagation.

Turns one change (seed table, records, change type) into an immutable
ExecutionPlan: the computed fields to refresh, grouped into per-table
steps ordered by topological level.
"""

from collections import defaultdict, deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from calcbase.computed.graph import FieldDependencyGraph
from calcbase.computed.types import EdgeKind, FieldDependencyEdge, FieldNode
from calcbase.core.exceptions import InvariantViolationError
from calcbase.core.logging import get_logger

logger = get_logger(__name__)


class ChangeType(str, Enum):
    """Kind of record change that seeded a plan."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


# =============================================================================
# Plan value objects
# =============================================================================


@dataclass(frozen=True)
class PlanStep:
    """All fields of one table computed at one level."""

    table_id: str
    level: int
    field_ids: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {"tableId": self.table_id, "level": self.level, "fieldIds": list(self.field_ids)}


@dataclass(frozen=True)
class PlanEdge:
    """A dependency edge traversed while compiling, in discovery order."""

    source: FieldNode
    target: FieldNode
    kind: EdgeKind
    link_field_id: str | None
    order: int

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"from": self.source.to_dict(), "to": self.target.to_dict()}
        if self.link_field_id is not None:
            data["linkFieldId"] = self.link_field_id
        data["order"] = self.order
        return data


@dataclass(frozen=True)
class SameTableBatch:
    """Summary of a run of contiguous steps on the same table."""

    table_id: str
    step_count: int
    min_level: int
    max_level: int
    field_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "tableId": self.table_id,
            "stepCount": self.step_count,
            "minLevel": self.min_level,
            "maxLevel": self.max_level,
            "fieldCount": self.field_count,
        }


@dataclass(frozen=True)
class ExecutionPlan:
    """
    Immutable plan for one outbox task.

    ``node_levels`` holds the level of every visited node and ``seed_nodes``
    the fields the change started from, so the executor can propagate
    affected records along ``edges``.
    """

    seed_table_id: str
    seed_record_ids: tuple[str, ...]
    change_type: ChangeType
    steps: tuple[PlanStep, ...] = ()
    edges: tuple[PlanEdge, ...] = ()
    same_table_batches: tuple[SameTableBatch, ...] = ()
    seed_field_ids: tuple[str, ...] = ()
    node_levels: tuple[tuple[FieldNode, int], ...] = ()
    seed_nodes: tuple[FieldNode, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.steps

    @property
    def field_count(self) -> int:
        return sum(len(step.field_ids) for step in self.steps)

    def levels(self) -> dict[FieldNode, int]:
        return dict(self.node_levels)

    def steps_for_batch(self, index: int) -> tuple[PlanStep, ...]:
        """The steps summarised by ``same_table_batches[index]``."""
        start = sum(batch.step_count for batch in self.same_table_batches[:index])
        return self.steps[start : start + self.same_table_batches[index].step_count]

    def to_trace(self, base_id: str) -> dict[str, Any]:
        """The ``computed:plan`` trace record."""
        return {
            "baseId": base_id,
            "seedTableId": self.seed_table_id,
            "seedRecordIds": list(self.seed_record_ids),
            "changeType": self.change_type.value,
            "steps": [step.to_dict() for step in self.steps],
            "edges": [edge.to_dict() for edge in self.edges],
            "sameTableBatches": [batch.to_dict() for batch in self.same_table_batches],
        }


def build_same_table_batches(steps: Sequence[PlanStep]) -> tuple[SameTableBatch, ...]:
    """
    Coalesce contiguous same-table steps.

    Lossless: step counts add up to ``len(steps)`` and field counts to the
    total number of scheduled fields, so the steps list can be split back
    into batches in order.
    """
    runs: list[list[PlanStep]] = []
    for step in steps:
        if runs and runs[-1][0].table_id == step.table_id:
            runs[-1].append(step)
        else:
            runs.append([step])

    return tuple(
        SameTableBatch(
            table_id=run[0].table_id,
            step_count=len(run),
            min_level=min(step.level for step in run),
            max_level=max(step.level for step in run),
            field_count=sum(len(step.field_ids) for step in run),
        )
        for run in runs
    )


# =============================================================================
# Compiler
# =============================================================================


class PlanCompiler:
    """Compiles changes into execution plans against one dependency graph."""

    def __init__(self, graph: FieldDependencyGraph):
        self.graph = graph

    def compile(
        self,
        seed_table_id: str,
        seed_record_ids: Iterable[str],
        change_type: ChangeType | str,
        seed_field_ids: Iterable[str] | None = None,
    ) -> ExecutionPlan:
        """
        Compile the plan for one change.

        Args:
            seed_table_id: Table whose records changed
            seed_record_ids: Changed records
            change_type: insert, update or delete
            seed_field_ids: Changed fields; every field of the table when omitted

        Returns:
            ExecutionPlan (zero steps when nothing depends on the change)

        Raises:
            InvariantViolationError: If traversal finds a cycle or schedules a node twice
        """
        change_type = ChangeType(change_type)
        record_ids = tuple(dict.fromkeys(seed_record_ids))
        field_ids = tuple(dict.fromkeys(seed_field_ids or ()))

        empty = ExecutionPlan(
            seed_table_id=seed_table_id,
            seed_record_ids=record_ids,
            change_type=change_type,
            seed_field_ids=field_ids,
        )
        if not record_ids:
            return empty

        seeds = self._seed_nodes(seed_table_id, field_ids)
        if not seeds:
            return empty

        visited, traversed = self._discover(seeds)
        levels = self._assign_levels(visited, traversed)

        edges = tuple(
            PlanEdge(
                source=edge.source,
                target=edge.target,
                kind=edge.kind,
                link_field_id=edge.link_field_id,
                order=order,
            )
            for order, edge in enumerate(traversed)
        )
        for edge in edges:
            if levels[edge.source] >= levels[edge.target]:
                raise InvariantViolationError(
                    f"Plan edge {edge.source} -> {edge.target} does not increase level",
                    details={"edge": edge.to_dict()},
                )

        skip_table = seed_table_id if change_type is ChangeType.DELETE else None
        steps = self._build_steps(levels, skip_table)

        return ExecutionPlan(
            seed_table_id=seed_table_id,
            seed_record_ids=record_ids,
            change_type=change_type,
            steps=steps,
            edges=edges,
            same_table_batches=build_same_table_batches(steps),
            seed_field_ids=field_ids,
            node_levels=tuple(sorted(levels.items(), key=lambda item: (item[1], item[0]))),
            seed_nodes=tuple(seeds),
        )

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def _seed_nodes(self, seed_table_id: str, field_ids: tuple[str, ...]) -> list[FieldNode]:
        if not field_ids:
            return self.graph.fields_of_table(seed_table_id)

        seeds = []
        for field_id in field_ids:
            node = FieldNode(seed_table_id, field_id)
            if node in self.graph.fields:
                seeds.append(node)
            else:
                logger.warning(f"Ignoring unknown seed field {node}")
        return sorted(seeds)

    def _discover(
        self, seeds: list[FieldNode]
    ) -> tuple[dict[FieldNode, None], list[FieldDependencyEdge]]:
        """
        Level-order traversal from the seeds.

        Every reachable node enters the frontier exactly once; every edge
        between visited nodes is recorded once, in discovery order.
        """
        visited: dict[FieldNode, None] = dict.fromkeys(seeds)
        traversed: list[FieldDependencyEdge] = []
        seen_edges: set[FieldDependencyEdge] = set()

        frontier = list(seeds)
        while frontier:
            next_frontier: list[FieldNode] = []
            for edge in self.graph.downstream(frontier):
                if edge not in seen_edges:
                    seen_edges.add(edge)
                    traversed.append(edge)
                if edge.target not in visited:
                    visited[edge.target] = None
                    next_frontier.append(edge.target)
            frontier = next_frontier

        return visited, traversed

    def _assign_levels(
        self,
        nodes: dict[FieldNode, None],
        edges: list[FieldDependencyEdge],
    ) -> dict[FieldNode, int]:
        """
        Longest-path level of every visited node (Kahn's algorithm).

        A node sits one level above the highest of its in-plan sources, so
        diamonds resolve to the maximum observed level.
        """
        in_degree = dict.fromkeys(nodes, 0)
        outgoing: dict[FieldNode, list[FieldNode]] = defaultdict(list)
        for edge in edges:
            in_degree[edge.target] += 1
            outgoing[edge.source].append(edge.target)

        levels = {node: 0 for node, degree in in_degree.items() if degree == 0}
        queue = deque(sorted(levels))
        processed = 0

        while queue:
            node = queue.popleft()
            processed += 1
            for target in outgoing.get(node, ()):
                levels[target] = max(levels.get(target, 0), levels[node] + 1)
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    queue.append(target)

        if processed != len(nodes):
            remaining = sorted(node for node, degree in in_degree.items() if degree > 0)
            logger.error(
                "computed:invariant_violation",
                extra={"reason": "cycle", "nodes": [str(node) for node in remaining]},
            )
            raise InvariantViolationError(
                "Dependency cycle found during plan traversal",
                details={"nodes": [str(node) for node in remaining]},
            )
        return levels

    def _build_steps(
        self,
        levels: dict[FieldNode, int],
        skip_table: str | None,
    ) -> tuple[PlanStep, ...]:
        by_level: dict[int, dict[str, list[str]]] = defaultdict(lambda: defaultdict(list))
        for node, level in levels.items():
            if not self.graph.is_computed(node) or node.table_id == skip_table:
                continue
            by_level[level][node.table_id].append(node.field_id)

        steps: list[PlanStep] = []
        scheduled: set[FieldNode] = set()
        for level in sorted(by_level):
            tables = sorted(by_level[level])
            # Keep the previous step's table adjacent so it can share a batch
            if steps and steps[-1].table_id in by_level[level]:
                tables.remove(steps[-1].table_id)
                tables.insert(0, steps[-1].table_id)

            for table_id in tables:
                field_ids = tuple(sorted(by_level[level][table_id]))
                for field_id in field_ids:
                    node = FieldNode(table_id, field_id)
                    if node in scheduled:
                        raise InvariantViolationError(
                            f"Field {node} scheduled twice", details={"node": str(node)}
                        )
                    scheduled.add(node)
                steps.append(PlanStep(table_id=table_id, level=level, field_ids=field_ids))

        return tuple(steps)
