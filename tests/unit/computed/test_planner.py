"""Unit tests for the plan compiler."""

import random

import pytest

from calcbase.computed.graph import FieldDependencyGraph
from calcbase.computed.planner import (
    ChangeType,
    ExecutionPlan,
    PlanCompiler,
    PlanStep,
    build_same_table_batches,
)
from calcbase.computed.types import EdgeKind, FieldDefinition, FieldNode
from calcbase.core.exceptions import InvariantViolationError
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


def link(table_id, field_id, linked_table_id, inverse_field_id):
    return fd(
        table_id,
        field_id,
        "linked_record",
        linked_table_id=linked_table_id,
        inverse_field_id=inverse_field_id,
    )


def formula(table_id, field_id, *refs):
    return fd(table_id, field_id, "formula", formula=field_id, referenced_field_ids=list(refs))


@pytest.fixture
def orders_graph():
    return FieldDependencyGraph.build(
        [
            fd("orders", "price"),
            link("orders", "customer", "customers", "orders"),
            link("customers", "orders", "orders", "customer"),
            fd(
                "customers",
                "total_spend",
                "rollup",
                link_field_id="orders",
                rollup_field_id="price",
                aggregation="sum",
            ),
        ]
    )


class TestPlanShape:
    """Tests for the steps and batches of compiled plans."""

    def test_rollup_over_linked_price(self, orders_graph):
        """Test that a price change schedules the customer rollup at level 1."""
        plan = PlanCompiler(orders_graph).compile("orders", ["ord_1"], ChangeType.UPDATE, ["price"])

        assert plan.steps == (PlanStep(table_id="customers", level=1, field_ids=("total_spend",)),)
        assert [(e.source, e.target, e.kind) for e in plan.edges] == [
            (FieldNode("orders", "price"), FieldNode("customers", "total_spend"), EdgeKind.VIA_LINK)
        ]
        assert plan.edges[0].link_field_id == "orders"
        assert plan.seed_nodes == (FieldNode("orders", "price"),)

    def test_delete_produces_one_batch(self, orders_graph):
        """Test that deleting an order yields one customers batch with one field."""
        plan = PlanCompiler(orders_graph).compile("orders", ["ord_1"], "delete")

        assert len(plan.same_table_batches) == 1
        batch = plan.same_table_batches[0]
        assert batch.table_id == "customers"
        assert batch.field_count == 1
        assert batch.step_count == 1

    def test_delete_drops_seed_table_steps(self):
        """Test that a delete does not schedule fields of the deleted records' table."""
        graph = FieldDependencyGraph.build(
            [fd("orders", "price"), formula("orders", "tax", "price")]
        )

        update = PlanCompiler(graph).compile("orders", ["ord_1"], ChangeType.UPDATE)
        delete = PlanCompiler(graph).compile("orders", ["ord_1"], ChangeType.DELETE)

        assert [step.table_id for step in update.steps] == ["orders"]
        assert delete.is_empty

    def test_empty_seed_records_give_zero_steps(self, orders_graph):
        """Test that no seed records produce an empty plan."""
        plan = PlanCompiler(orders_graph).compile("orders", [], ChangeType.UPDATE, ["price"])

        assert plan.is_empty
        assert plan.edges == ()
        assert plan.same_table_batches == ()

    def test_unknown_seed_field_is_ignored(self, orders_graph):
        """Test that a seed field not in the graph does not fail compilation."""
        plan = PlanCompiler(orders_graph).compile("orders", ["ord_1"], ChangeType.UPDATE, ["nope"])
        assert plan.is_empty

    def test_computed_seed_field_is_scheduled(self, orders_graph):
        """Test that a computed seed field is recomputed at level 0."""
        plan = PlanCompiler(orders_graph).compile("customers", ["cus_1"], ChangeType.UPDATE, ["total_spend"])
        assert plan.steps == (PlanStep(table_id="customers", level=0, field_ids=("total_spend",)),)

    def test_seed_record_ids_deduplicated(self, orders_graph):
        """Test that repeated seed record ids are collapsed in order."""
        plan = PlanCompiler(orders_graph).compile("orders", ["b", "a", "b"], ChangeType.UPDATE)
        assert plan.seed_record_ids == ("b", "a")

    def test_trace_shape(self, orders_graph):
        """Test the keys of the plan trace record."""
        plan = PlanCompiler(orders_graph).compile("orders", ["ord_1"], ChangeType.UPDATE, ["price"])
        trace = plan.to_trace("base_1")

        assert trace["baseId"] == "base_1"
        assert trace["changeType"] == "update"
        assert trace["steps"] == [{"tableId": "customers", "level": 1, "fieldIds": ["total_spend"]}]
        assert trace["edges"][0]["from"] == {"tableId": "orders", "fieldId": "price"}
        assert trace["edges"][0]["linkFieldId"] == "orders"
        assert trace["sameTableBatches"][0]["fieldCount"] == 1


class TestLevels:
    """Tests for longest-path level assignment."""

    def test_diamond_takes_longest_path(self):
        """Test that a node reached by a short and a long path gets the higher level."""
        graph = FieldDependencyGraph.build(
            [
                fd("t", "a"),
                formula("t", "b", "a"),
                formula("t", "c", "b"),
                formula("t", "d", "a", "c"),
            ]
        )

        plan = PlanCompiler(graph).compile("t", ["r1"], ChangeType.UPDATE, ["a"])
        levels = plan.levels()

        assert levels[FieldNode("t", "b")] == 1
        assert levels[FieldNode("t", "c")] == 2
        assert levels[FieldNode("t", "d")] == 3
        assert [step.field_ids for step in plan.steps] == [("b",), ("c",), ("d",)]

    def test_same_level_fields_share_a_step(self):
        """Test that fields of one table at the same level are grouped and sorted."""
        graph = FieldDependencyGraph.build(
            [fd("t", "a"), formula("t", "y", "a"), formula("t", "x", "a")]
        )

        plan = PlanCompiler(graph).compile("t", ["r1"], ChangeType.UPDATE, ["a"])
        assert plan.steps == (PlanStep(table_id="t", level=1, field_ids=("x", "y")),)

    def test_previous_table_kept_adjacent(self):
        """Test that the table of the last step leads the next level."""
        graph = FieldDependencyGraph.build(
            [
                fd("z", "a"),
                formula("z", "b", "a"),
                link("a_tbl", "to_z", "z", None),
                fd("a_tbl", "lk", "lookup", link_field_id="to_z", lookup_field_id="b"),
                formula("z", "c", "b"),
            ]
        )

        plan = PlanCompiler(graph).compile("z", ["r1"], ChangeType.UPDATE, ["a"])

        assert [(step.table_id, step.level) for step in plan.steps] == [
            ("z", 1),
            ("z", 2),
            ("a_tbl", 2),
        ]
        assert [batch.step_count for batch in plan.same_table_batches] == [2, 1]

    def test_cycle_raises_invariant_violation(self):
        """Test that a cycle reaching the compiler is rejected."""
        graph = FieldDependencyGraph.build(
            [fd("t", "a"), formula("t", "b", "a", "c"), formula("t", "c", "b")]
        )

        with pytest.raises(InvariantViolationError):
            PlanCompiler(graph).compile("t", ["r1"], ChangeType.UPDATE, ["a"])


class TestSameTableBatches:
    """Tests for build_same_table_batches."""

    def test_contiguous_runs_coalesce(self):
        """Test that only adjacent steps of one table are merged."""
        steps = [
            PlanStep("a", 1, ("x",)),
            PlanStep("a", 2, ("y", "z")),
            PlanStep("b", 2, ("w",)),
            PlanStep("a", 3, ("v",)),
        ]

        batches = build_same_table_batches(steps)

        assert [(b.table_id, b.step_count, b.field_count) for b in batches] == [
            ("a", 2, 3),
            ("b", 1, 1),
            ("a", 1, 1),
        ]
        assert (batches[0].min_level, batches[0].max_level) == (1, 2)

    def test_steps_for_batch(self):
        """Test splitting the steps back into batches."""
        steps = (PlanStep("a", 1, ("x",)), PlanStep("a", 2, ("y",)), PlanStep("b", 2, ("w",)))
        plan = ExecutionPlan(
            seed_table_id="a",
            seed_record_ids=("r",),
            change_type=ChangeType.UPDATE,
            steps=steps,
            same_table_batches=build_same_table_batches(steps),
        )

        assert plan.steps_for_batch(0) == steps[:2]
        assert plan.steps_for_batch(1) == steps[2:]


def random_graph(rng: random.Random, table_count: int, field_count: int) -> FieldDependencyGraph:
    """A random DAG: field k only reads fields with a lower index."""
    tables = [f"t{i}" for i in range(table_count)]
    definitions = []
    for source in tables:
        for target in tables:
            if source != target:
                definitions.append(link(source, f"l_{source}_{target}", target, f"l_{target}_{source}"))

    placed: list[tuple[str, str]] = []
    for k in range(field_count):
        table_id = rng.choice(tables)
        field_id = f"f{k}"
        same_table = [fid for tid, fid in placed if tid == table_id]
        other_table = [(tid, fid) for tid, fid in placed if tid != table_id]

        roll = rng.random()
        if k < 2 or roll < 0.2:
            definitions.append(fd(table_id, field_id))
        elif same_table and (roll < 0.6 or not other_table):
            refs = rng.sample(same_table, rng.randint(1, min(3, len(same_table))))
            definitions.append(formula(table_id, field_id, *refs))
        elif other_table:
            foreign_table, foreign_field = rng.choice(other_table)
            kind = rng.choice(["lookup", "rollup"])
            options = {"link_field_id": f"l_{table_id}_{foreign_table}"}
            if kind == "lookup":
                options["lookup_field_id"] = foreign_field
            else:
                options.update(rollup_field_id=foreign_field, aggregation="sum")
            definitions.append(fd(table_id, field_id, kind, **options))
        else:
            definitions.append(fd(table_id, field_id))
        placed.append((table_id, field_id))

    return FieldDependencyGraph.build(definitions)


class TestPlanProperties:
    """Randomized checks of ordering, uniqueness and lossless batching."""

    @pytest.mark.parametrize("seed", range(25))
    def test_random_dag_plans(self, seed):
        """Test plan invariants on seeded random DAGs."""
        rng = random.Random(seed)
        graph = random_graph(rng, table_count=rng.randint(1, 4), field_count=rng.randint(5, 30))
        assert graph.find_cycle() is None

        seed_node = rng.choice(sorted(graph.fields))
        change_type = rng.choice(list(ChangeType))
        plan = PlanCompiler(graph).compile(
            seed_node.table_id, ["rec_1"], change_type, [seed_node.field_id]
        )
        levels = plan.levels()

        # Edges strictly increase level
        for edge in plan.edges:
            assert levels[edge.source] < levels[edge.target]

        # Steps are in non-decreasing level order
        step_levels = [step.level for step in plan.steps]
        assert step_levels == sorted(step_levels)

        # No node is scheduled twice and every step node is computed
        scheduled = [
            FieldNode(step.table_id, field_id) for step in plan.steps for field_id in step.field_ids
        ]
        assert len(scheduled) == len(set(scheduled))
        assert all(graph.is_computed(node) for node in scheduled)

        # A scheduled node is never below one of its in-plan sources
        for node in scheduled:
            step_level = levels[node]
            for edge in graph.upstream(node):
                if edge.source in levels:
                    assert levels[edge.source] < step_level

        # Every reachable computed node is scheduled, except seed-table nodes on delete
        reachable = {node for node in levels if graph.is_computed(node)}
        if change_type is ChangeType.DELETE:
            reachable = {node for node in reachable if node.table_id != seed_node.table_id}
        assert set(scheduled) == reachable

        # Batching is lossless
        assert sum(batch.step_count for batch in plan.same_table_batches) == len(plan.steps)
        assert sum(batch.field_count for batch in plan.same_table_batches) == plan.field_count
        rebuilt = [
            step for index in range(len(plan.same_table_batches)) for step in plan.steps_for_batch(index)
        ]
        assert tuple(rebuilt) == plan.steps
