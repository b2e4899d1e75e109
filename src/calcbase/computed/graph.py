"""Field dependency graph for CalcBase.

Tracks which (table, field) nodes are computed from which, including
cross-table edges introduced by link fields, for one base.
"""

from collections import defaultdict
from collections.abc import Iterable

from calcbase.computed.types import (
    ComputedField,
    ComputedKind,
    EdgeKind,
    FieldDefinition,
    FieldDependencyEdge,
    FieldNode,
    LinkDefinition,
)
from calcbase.core.exceptions import (
    CyclicDependencyError,
    DanglingReferenceError,
    FieldNotFoundError,
)
from calcbase.core.logging import get_logger
from calcbase.fields import ComputedFieldTypeHandler, LinkFieldHandler, get_field_handler

logger = get_logger(__name__)

# DFS colours
_WHITE, _GRAY, _BLACK = 0, 1, 2


class FieldDependencyGraph:
    """
    Dependency graph over (table, field) nodes.

    Maintains adjacency lists in both directions:
    - dependents: node -> edges to fields computed from it
    - sources: node -> edges from the fields it is computed from

    Fields whose references cannot be resolved are listed in ``unresolved``
    and contribute no downstream edges.
    """

    def __init__(self) -> None:
        self.dependents: dict[FieldNode, list[FieldDependencyEdge]] = defaultdict(list)
        self.sources: dict[FieldNode, list[FieldDependencyEdge]] = defaultdict(list)
        self.fields: dict[FieldNode, FieldDefinition] = {}
        self.links: dict[str, LinkDefinition] = {}
        self.computed: dict[FieldNode, ComputedField] = {}
        self.unresolved: dict[FieldNode, list[str]] = {}
        self._fields_by_id: dict[str, FieldDefinition] = {}
        self._tables: dict[str, list[FieldNode]] = defaultdict(list)

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    def build(
        cls,
        fields: Iterable[FieldDefinition],
        links: Iterable[LinkDefinition] | None = None,
    ) -> "FieldDependencyGraph":
        """
        Build the graph from every field definition of a base.

        Args:
            fields: All field definitions
            links: Link definitions; derived from linked_record fields when omitted

        Returns:
            Populated graph
        """
        graph = cls()
        definitions = list(fields)
        for definition in definitions:
            graph.fields[definition.node] = definition
            graph._fields_by_id[definition.id] = definition
            graph._tables[definition.table_id].append(definition.node)

        if links is None:
            links = [
                LinkDefinition.from_definition(d)
                for d in definitions
                if d.field_type == LinkFieldHandler.field_type
            ]
        graph.links = {link.field_id: link for link in links}

        for nodes in graph._tables.values():
            nodes.sort()

        for definition in definitions:
            if definition.is_computed:
                graph._add_computed(definition)

        return graph

    def _add_computed(self, definition: FieldDefinition) -> None:
        handler = get_field_handler(definition.field_type)
        if handler is None or not issubclass(handler, ComputedFieldTypeHandler):
            # Stored types flagged as computed (autonumber etc.) have no sources
            return

        refs = handler.source_refs(definition, self.links)
        missing = self._missing_references(definition, refs)

        self.computed[definition.node] = ComputedField(
            table_id=definition.table_id,
            field_id=definition.id,
            kind=ComputedKind(definition.field_type),
            source_refs=tuple(refs),
        )

        for ref in refs:
            if str(ref.node) in missing:
                continue
            edge = FieldDependencyEdge(
                source=ref.node,
                target=definition.node,
                kind=ref.kind,
                link_field_id=ref.link_field_id,
            )
            self.dependents[ref.node].append(edge)
            self.sources[definition.node].append(edge)

        if missing:
            self.unresolved[definition.node] = missing
            logger.warning(
                f"Field {definition.node} has unresolved references: {', '.join(missing)}",
                extra={"field_id": definition.id, "missing": missing},
            )

    def _missing_references(self, definition: FieldDefinition, refs) -> list[str]:
        missing: list[str] = []

        link_field_id = definition.options.get("link_field_id")
        if link_field_id:
            link = self.links.get(link_field_id)
            if link is None or link.table_id != definition.table_id:
                missing.append(str(FieldNode(definition.table_id, link_field_id)))

        for ref in refs:
            if ref.node not in self.fields and str(ref.node) not in missing:
                missing.append(str(ref.node))
        return missing

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def downstream(self, nodes: Iterable[FieldNode]) -> list[FieldDependencyEdge]:
        """
        One-hop expansion: every edge leaving any of ``nodes``.

        Edges leaving a field with unresolved references are skipped.
        Order is deterministic (sorted sources, then definition order).

        Args:
            nodes: Source nodes

        Returns:
            Traversed edges; ``edge.target`` is the dependent node
        """
        edges: list[FieldDependencyEdge] = []
        for node in sorted(set(nodes)):
            if node in self.unresolved:
                continue
            edges.extend(self.dependents.get(node, ()))
        return edges

    def downstream_nodes(self, nodes: Iterable[FieldNode]) -> set[FieldNode]:
        return {edge.target for edge in self.downstream(nodes)}

    def upstream(self, node: FieldNode) -> list[FieldDependencyEdge]:
        """Edges into ``node`` (its direct sources)."""
        return list(self.sources.get(node, ()))

    def fields_of_table(self, table_id: str) -> list[FieldNode]:
        """All field nodes of a table, sorted by field id."""
        return list(self._tables.get(table_id, ()))

    def definition(self, node: FieldNode) -> FieldDefinition:
        """
        Get the definition of a node.

        Raises:
            FieldNotFoundError: If the node is not part of the base
        """
        definition = self.fields.get(node)
        if definition is None:
            raise FieldNotFoundError(str(node))
        return definition

    def definition_by_id(self, field_id: str) -> FieldDefinition | None:
        return self._fields_by_id.get(field_id)

    def resolve(self, node: FieldNode) -> FieldDefinition:
        """
        Get a definition whose references all resolve.

        Raises:
            FieldNotFoundError: If the node is not part of the base
            DanglingReferenceError: If the field references missing fields
        """
        definition = self.definition(node)
        if node in self.unresolved:
            raise DanglingReferenceError(node.field_id, self.unresolved[node])
        return definition

    def is_computed(self, node: FieldNode) -> bool:
        definition = self.fields.get(node)
        return definition is not None and definition.is_computed

    # -------------------------------------------------------------------------
    # Cycle detection
    # -------------------------------------------------------------------------

    def find_cycle(self) -> list[FieldNode] | None:
        """
        Find one dependency cycle using DFS colouring.

        Returns:
            Nodes of the cycle (first node repeated at the end), or None
        """
        color: dict[FieldNode, int] = defaultdict(int)
        parent: dict[FieldNode, FieldNode] = {}

        for start in sorted(self.dependents):
            if color[start] != _WHITE:
                continue
            stack = [(start, iter(self.dependents.get(start, ())))]
            color[start] = _GRAY
            while stack:
                node, edges = stack[-1]
                advanced = False
                for edge in edges:
                    target = edge.target
                    if color[target] == _GRAY:
                        cycle = [target]
                        current = node
                        while current != target:
                            cycle.append(current)
                            current = parent[current]
                        cycle.append(target)
                        cycle.reverse()
                        return cycle
                    if color[target] == _WHITE:
                        color[target] = _GRAY
                        parent[target] = node
                        stack.append((target, iter(self.dependents.get(target, ()))))
                        advanced = True
                        break
                if not advanced:
                    color[node] = _BLACK
                    stack.pop()
        return None

    def validate_definition(self, candidate: FieldDefinition) -> "FieldDependencyGraph":
        """
        Check a new or edited field against the rest of the base.

        Args:
            candidate: Field definition to add or replace

        Returns:
            Graph including the candidate

        Raises:
            InvalidFieldOptionsError: If the options are malformed
            DanglingReferenceError: If a referenced table/field does not exist
            CyclicDependencyError: If the field would create a cycle
        """
        handler = get_field_handler(candidate.field_type)
        if handler is not None:
            handler.validate_options(candidate.options)

        definitions = [d for d in self.fields.values() if d.id != candidate.id]
        definitions.append(candidate)
        links = [link for link in self.links.values() if link.field_id != candidate.id]
        if candidate.field_type == LinkFieldHandler.field_type:
            links.append(LinkDefinition.from_definition(candidate))

        graph = FieldDependencyGraph.build(definitions, links)
        if candidate.node in graph.unresolved:
            raise DanglingReferenceError(candidate.id, graph.unresolved[candidate.node])

        cycle = graph.find_cycle()
        if cycle:
            raise CyclicDependencyError([str(node) for node in cycle])
        return graph

    def without_field(self, field_id: str) -> "FieldDependencyGraph":
        """Graph with one field removed (dependents become unresolved)."""
        return FieldDependencyGraph.build(
            [d for d in self.fields.values() if d.id != field_id],
            [link for link in self.links.values() if link.field_id != field_id],
        )

    def edge_count(self) -> int:
        return sum(len(edges) for edges in self.dependents.values())

    def __repr__(self) -> str:
        return (
            f"FieldDependencyGraph("
            f"fields={len(self.fields)}, "
            f"computed={len(self.computed)}, "
            f"edges={self.edge_count()})"
        )


__all__ = ["EdgeKind", "FieldDependencyGraph"]
