"""Unit tests for FieldDependencyGraph."""

import pytest

from calcbase.computed.graph import FieldDependencyGraph
from calcbase.computed.types import EdgeKind, FieldDefinition, FieldNode
from calcbase.core.exceptions import (
    CyclicDependencyError,
    DanglingReferenceError,
    FieldNotFoundError,
    InvalidFieldOptionsError,
)
from calcbase.models.field import COMPUTED_FIELD_TYPES


def fd(table_id, field_id, field_type="number", **options):
    return FieldDefinition(
        id=field_id,
        table_id=table_id,
        field_type=field_type,
        name=field_id,
        options=options,
        is_computed=field_type in COMPUTED_FIELD_TYPES,
    )


def orders_customers():
    return [
        fd("orders", "price"),
        fd("orders", "customer", "linked_record", linked_table_id="customers", inverse_field_id="orders"),
        fd("customers", "orders", "linked_record", linked_table_id="orders", inverse_field_id="customer"),
        fd(
            "customers",
            "total",
            "rollup",
            link_field_id="orders",
            rollup_field_id="price",
            aggregation="sum",
        ),
    ]


class TestGraphBuild:
    """Tests for building the graph from field definitions."""

    def test_empty_graph(self):
        """Test that an empty graph has no edges."""
        graph = FieldDependencyGraph.build([])
        assert graph.edge_count() == 0
        assert graph.downstream([FieldNode("t", "f")]) == []

    def test_formula_adds_direct_edges(self):
        """Test that a formula depends directly on its referenced siblings."""
        graph = FieldDependencyGraph.build(
            [
                fd("t", "a"),
                fd("t", "b"),
                fd("t", "sum", "formula", formula="a+b", referenced_field_ids=["a", "b"]),
            ]
        )

        edges = graph.upstream(FieldNode("t", "sum"))
        assert {edge.source for edge in edges} == {FieldNode("t", "a"), FieldNode("t", "b")}
        assert all(edge.kind is EdgeKind.DIRECT for edge in edges)

    def test_rollup_adds_link_and_foreign_edges(self):
        """Test that a rollup depends on its link cell and on the foreign field via the link."""
        graph = FieldDependencyGraph.build(orders_customers())

        edges = {edge.source: edge for edge in graph.upstream(FieldNode("customers", "total"))}
        assert edges[FieldNode("customers", "orders")].kind is EdgeKind.DIRECT
        via_link = edges[FieldNode("orders", "price")]
        assert via_link.kind is EdgeKind.VIA_LINK
        assert via_link.link_field_id == "orders"

    def test_links_derived_from_link_fields(self):
        """Test that link definitions are derived when not given."""
        graph = FieldDependencyGraph.build(orders_customers())
        assert graph.links["orders"].linked_table_id == "orders"
        assert graph.links["orders"].inverse_field_id == "customer"

    def test_conditional_rollup_edges(self):
        """Test that a conditional rollup depends on rollup and condition fields via condition."""
        graph = FieldDependencyGraph.build(
            [
                fd("orders", "price"),
                fd("orders", "status", "text"),
                fd(
                    "summary",
                    "open_total",
                    "conditional_rollup",
                    foreign_table_id="orders",
                    rollup_field_id="price",
                    aggregation="sum",
                    conditions=[{"field_id": "status", "operator": "eq", "value": "open"}],
                ),
            ]
        )

        edges = graph.upstream(FieldNode("summary", "open_total"))
        assert {edge.source.field_id for edge in edges} == {"price", "status"}
        assert all(edge.kind is EdgeKind.VIA_CONDITION for edge in edges)


class TestGraphQueries:
    """Tests for graph queries."""

    def test_downstream_one_hop(self):
        """Test that downstream only expands one hop."""
        graph = FieldDependencyGraph.build(
            [
                fd("t", "a"),
                fd("t", "b", "formula", formula="a", referenced_field_ids=["a"]),
                fd("t", "c", "formula", formula="b", referenced_field_ids=["b"]),
            ]
        )

        assert graph.downstream_nodes([FieldNode("t", "a")]) == {FieldNode("t", "b")}
        assert graph.downstream_nodes([FieldNode("t", "b")]) == {FieldNode("t", "c")}

    def test_downstream_is_deterministic(self):
        """Test that downstream returns edges in sorted source order."""
        graph = FieldDependencyGraph.build(
            [
                fd("t", "b"),
                fd("t", "a"),
                fd("t", "x", "formula", formula="", referenced_field_ids=["b"]),
                fd("t", "y", "formula", formula="", referenced_field_ids=["a"]),
            ]
        )

        edges = graph.downstream([FieldNode("t", "b"), FieldNode("t", "a")])
        assert [edge.source.field_id for edge in edges] == ["a", "b"]

    def test_fields_of_table_sorted(self):
        """Test that fields of a table come back sorted by id."""
        graph = FieldDependencyGraph.build([fd("t", "z"), fd("t", "a"), fd("u", "m")])
        assert graph.fields_of_table("t") == [FieldNode("t", "a"), FieldNode("t", "z")]

    def test_definition_unknown_node(self):
        """Test that an unknown node raises FieldNotFoundError."""
        graph = FieldDependencyGraph.build([])
        with pytest.raises(FieldNotFoundError):
            graph.definition(FieldNode("t", "missing"))


class TestDanglingReferences:
    """Tests for fields whose references cannot be resolved."""

    def test_missing_formula_reference_is_unresolved(self):
        """Test that a formula referencing a missing field is unresolved."""
        graph = FieldDependencyGraph.build(
            [fd("t", "f", "formula", formula="x", referenced_field_ids=["gone"])]
        )
        assert graph.unresolved[FieldNode("t", "f")] == ["t.gone"]

    def test_missing_link_is_unresolved(self):
        """Test that a rollup through a missing link field is unresolved."""
        graph = FieldDependencyGraph.build(
            [
                fd("orders", "price"),
                fd("customers", "total", "rollup", link_field_id="gone", rollup_field_id="price", aggregation="sum"),
            ]
        )
        assert FieldNode("customers", "total") in graph.unresolved

    def test_unresolved_field_has_no_downstream_effect(self):
        """Test that edges leaving an unresolved field are not traversed."""
        graph = FieldDependencyGraph.build(
            [
                fd("t", "a"),
                fd("t", "broken", "formula", formula="", referenced_field_ids=["a", "gone"]),
                fd("t", "after", "formula", formula="", referenced_field_ids=["broken"]),
            ]
        )

        assert graph.downstream_nodes([FieldNode("t", "a")]) == {FieldNode("t", "broken")}
        assert graph.downstream_nodes([FieldNode("t", "broken")]) == set()

    def test_resolve_raises_for_unresolved(self):
        """Test that resolve raises DanglingReferenceError."""
        graph = FieldDependencyGraph.build(
            [fd("t", "f", "formula", formula="x", referenced_field_ids=["gone"])]
        )
        with pytest.raises(DanglingReferenceError):
            graph.resolve(FieldNode("t", "f"))


class TestCycleDetection:
    """Tests for DFS cycle detection and definition-time validation."""

    def test_no_cycle(self):
        """Test that a DAG has no cycle."""
        graph = FieldDependencyGraph.build(orders_customers())
        assert graph.find_cycle() is None

    def test_direct_cycle(self):
        """Test detecting A -> B -> A."""
        graph = FieldDependencyGraph.build(
            [
                fd("t", "a", "formula", formula="", referenced_field_ids=["b"]),
                fd("t", "b", "formula", formula="", referenced_field_ids=["a"]),
            ]
        )

        cycle = graph.find_cycle()
        assert cycle is not None
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {FieldNode("t", "a"), FieldNode("t", "b")}

    def test_cross_table_cycle(self):
        """Test rejecting a lookup that closes a cycle with a rollup across a link."""
        graph = FieldDependencyGraph.build(
            orders_customers()
            + [
                fd(
                    "orders",
                    "customer_total",
                    "lookup",
                    link_field_id="customer",
                    lookup_field_id="total",
                ),
            ]
        )
        assert graph.find_cycle() is None

        with pytest.raises(CyclicDependencyError):
            graph.validate_definition(
                fd("orders", "price", "lookup", link_field_id="customer", lookup_field_id="total")
            )

    def test_validate_rejects_dangling_reference(self):
        """Test that validation rejects a field referencing a missing field."""
        graph = FieldDependencyGraph.build(orders_customers())
        with pytest.raises(DanglingReferenceError):
            graph.validate_definition(
                fd("customers", "names", "lookup", link_field_id="orders", lookup_field_id="nope")
            )

    def test_validate_rejects_bad_options(self):
        """Test that validation rejects malformed options."""
        graph = FieldDependencyGraph.build(orders_customers())
        with pytest.raises(InvalidFieldOptionsError):
            graph.validate_definition(
                fd("customers", "bad", "rollup", link_field_id="orders", rollup_field_id="price", aggregation="median")
            )

    def test_validate_accepts_new_field(self):
        """Test that a valid field is returned as part of a new graph."""
        graph = FieldDependencyGraph.build(orders_customers())
        new_graph = graph.validate_definition(
            fd("customers", "prices", "lookup", link_field_id="orders", lookup_field_id="price")
        )

        assert FieldNode("customers", "prices") in new_graph.computed
        assert FieldNode("customers", "prices") not in graph.fields

    def test_without_field_leaves_dependents_unresolved(self):
        """Test that removing a source field makes its dependents unresolved."""
        graph = FieldDependencyGraph.build(orders_customers()).without_field("price")
        assert FieldNode("customers", "total") in graph.unresolved
