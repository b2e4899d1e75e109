"""
Integration tests for the outbox worker.

Writes go through RecordService so every scenario starts from a real
outbox task; the worker then drains the queue against SQLite.
"""

import asyncio
import logging
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import update

from calcbase.computed.evaluator import FieldEvaluator
from calcbase.computed.graph_cache import GraphCache
from calcbase.computed.outbox import ComputedOutbox, OutboxPayload
from calcbase.computed.planner import ChangeType
from calcbase.computed.worker import ComputedUpdateWorker
from calcbase.core.events import ComputedValuesCommitted, EventBus, OutboxTaskFailed
from calcbase.core.exceptions import PersistenceError
from calcbase.core.logging import record_extra
from calcbase.db.base import utc_now
from calcbase.models.outbox import ComputedOutboxTask, OutboxTaskStatus
from calcbase.realtime.publisher import RealtimePublisher
from calcbase.services import RecordService

pytestmark = pytest.mark.integration


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def worker(session_factory, formula_engine, event_bus):
    return ComputedUpdateWorker(
        session_factory,
        cache=GraphCache(),
        formula_engine=formula_engine,
        event_bus=event_bus,
    )


async def update_record(session_factory, record_id, data):
    async with session_factory() as db:
        await RecordService(db).update_record(record_id, data)
        await db.commit()


async def enqueue(session_factory, payload, **kwargs):
    async with session_factory() as db:
        task = await ComputedOutbox(db).enqueue("base_1", payload, **kwargs)
        await db.commit()
        return task.id


async def get_task(session_factory, task_id):
    async with session_factory() as db:
        return await ComputedOutbox(db).get_task(task_id)


async def outbox_stats(session_factory):
    async with session_factory() as db:
        return await ComputedOutbox(db).get_stats()


def plan_traces(caplog):
    return [record_extra(r) for r in caplog.records if r.getMessage() == "computed:plan"]


class TestPropagation:
    """End-to-end propagation through the outbox."""

    @pytest.mark.asyncio
    async def test_price_change_updates_customer_rollup(
        self, orders_schema, session_factory, worker, event_bus, caplog
    ):
        """Test that an order price change reaches the linked customer's total."""
        pubsub = MagicMock()
        pubsub.publish = AsyncMock(return_value=True)
        RealtimePublisher(pubsub, channel_prefix="").register(event_bus)

        await update_record(session_factory, "ord_1", {"fld_price": 20})
        with caplog.at_level(logging.INFO, logger="calcbase.computed.executor"):
            processed = await worker.drain("w1")

        assert processed == 1
        assert (await orders_schema.values("cus_1"))["fld_total_spend"] == 25
        assert (await orders_schema.values("cus_2"))["fld_total_spend"] == 7

        [trace] = plan_traces(caplog)
        assert trace["steps"] == [
            {"tableId": "tbl_customers", "level": 1, "fieldIds": ["fld_total_spend"]}
        ]

        published = {call.args[0]: call.args[1] for call in pubsub.publish.await_args_list}
        assert published["rec_tbl_customers.cus_1"]["ops"] == [
            {"p": ["fields", "fld_total_spend"], "oi": 25}
        ]
        assert "rec_tbl_customers" in published

    @pytest.mark.asyncio
    async def test_delete_updates_every_linking_customer_in_one_batch(
        self, schema, session_factory, worker, caplog
    ):
        """Test that deleting an order linked from three customers recomputes them together."""
        await schema.base()
        await schema.table("tbl_customers")
        await schema.table("tbl_orders")
        await schema.field("tbl_orders", "fld_price", "number")
        await schema.field(
            "tbl_orders",
            "fld_customer",
            "linked_record",
            {"linked_table_id": "tbl_customers", "inverse_field_id": "fld_orders"},
        )
        await schema.field(
            "tbl_customers",
            "fld_orders",
            "linked_record",
            {"linked_table_id": "tbl_orders", "inverse_field_id": "fld_customer"},
        )
        await schema.field(
            "tbl_customers",
            "fld_total_spend",
            "rollup",
            {"link_field_id": "fld_orders", "rollup_field_id": "fld_price", "aggregation": "sum"},
        )
        await schema.record("tbl_orders", "ord_x", {"fld_price": 10, "fld_customer": ["cus_a", "cus_b", "cus_c"]})
        await schema.record("tbl_orders", "ord_y", {"fld_price": 5, "fld_customer": ["cus_b"]})
        await schema.record("tbl_customers", "cus_a", {"fld_orders": ["ord_x"], "fld_total_spend": 10})
        await schema.record("tbl_customers", "cus_b", {"fld_orders": ["ord_x", "ord_y"], "fld_total_spend": 15})
        await schema.record("tbl_customers", "cus_c", {"fld_orders": ["ord_x"], "fld_total_spend": 10})

        async with session_factory() as db:
            await RecordService(db).delete_record("ord_x")
            await db.commit()

        with caplog.at_level(logging.INFO, logger="calcbase.computed"):
            await worker.drain("w1")

        [trace] = plan_traces(caplog)
        assert trace["changeType"] == "delete"
        assert [
            (b["tableId"], b["fieldCount"], b["stepCount"]) for b in trace["sameTableBatches"]
        ] == [("tbl_customers", 1, 1)]

        processed = [
            record_extra(r) for r in caplog.records if r.getMessage().startswith("Processed outbox task")
        ]
        assert processed[0]["status"] == "done"
        assert processed[0]["updatedCells"] == 3
        assert processed[0]["commits"] == 1

        assert (await schema.values("cus_a"))["fld_total_spend"] is None
        assert (await schema.values("cus_b"))["fld_total_spend"] == 5
        assert (await schema.values("cus_c"))["fld_total_spend"] is None

    @pytest.mark.asyncio
    async def test_empty_seed_never_touches_repository(self, orders_schema, session_factory, worker):
        """Test that a task without seed records completes without reading storage."""
        task_id = await enqueue(session_factory, OutboxPayload(seed_table_id="tbl_orders"))

        with patch("calcbase.computed.worker.SqlRecordRepository") as repository_cls:
            processed = await worker.run_once("w1")

        assert processed == 1
        assert repository_cls.return_value.method_calls == []
        assert (await get_task(session_factory, task_id)).status == OutboxTaskStatus.DONE.value

    @pytest.mark.asyncio
    async def test_rerunning_a_seed_is_idempotent(self, orders_schema, session_factory, worker):
        """Test that processing the same seed twice leaves the same values."""
        await update_record(session_factory, "ord_2", {"fld_price": 8})
        await worker.drain("w1")
        first = await orders_schema.values("cus_1")

        await enqueue(
            session_factory,
            OutboxPayload(seed_table_id="tbl_orders", seed_record_ids=["ord_2"], seed_field_ids=["fld_price"]),
        )
        await worker.drain("w1")

        assert await orders_schema.values("cus_1") == first
        assert first["fld_total_spend"] == 18
        assert (await outbox_stats(session_factory))["done"] == 2

    @pytest.mark.asyncio
    async def test_table_scope_backfills_every_record(self, orders_schema, session_factory, worker):
        """Test that a table-scoped seed recomputes all records of the table."""
        # Stored total is stale
        await orders_schema.record("tbl_customers", "cus_3", {"fld_orders": ["ord_3"], "fld_total_spend": 0})

        await enqueue(
            session_factory,
            OutboxPayload(seed_table_id="tbl_customers", seed_field_ids=["fld_total_spend"], scope="table"),
        )
        await worker.drain("w1")

        assert (await orders_schema.values("cus_3"))["fld_total_spend"] == 7
        assert (await orders_schema.values("cus_1"))["fld_total_spend"] == 15


class TestConcurrency:
    """Tests for workers running side by side."""

    @pytest.mark.asyncio
    async def test_parallel_run_once_processes_task_once(self, orders_schema, session_factory, worker):
        """Test that two concurrent passes complete a single task exactly once."""
        task_id = await enqueue(
            session_factory,
            OutboxPayload(seed_table_id="tbl_orders", seed_record_ids=["ord_1"], seed_field_ids=["fld_price"]),
        )

        results = await asyncio.gather(worker.run_once("w1"), worker.run_once("w2"))

        assert sorted(results) == [0, 1]
        task = await get_task(session_factory, task_id)
        assert task.status == OutboxTaskStatus.DONE.value
        assert (await outbox_stats(session_factory))["done"] == 1

    @pytest.mark.asyncio
    async def test_lease_lost_during_execution(self, orders_schema, session_factory, formula_engine):
        """Test that a worker whose task was taken over does not mark it done."""
        task_id = await enqueue(
            session_factory,
            OutboxPayload(seed_table_id="tbl_orders", seed_record_ids=["ord_1"], seed_field_ids=["fld_price"]),
        )

        class HijackingEvaluator(FieldEvaluator):
            async def evaluate_many(self, field, contexts):
                async with session_factory() as db:
                    await db.execute(
                        update(ComputedOutboxTask)
                        .where(ComputedOutboxTask.id == task_id)
                        .values(claimed_by="w2", lease_expires_at=utc_now() + timedelta(minutes=5))
                    )
                    await db.commit()
                return await super().evaluate_many(field, contexts)

        worker = ComputedUpdateWorker(
            session_factory,
            cache=GraphCache(),
            evaluator_factory=lambda repository, graph: HijackingEvaluator(repository, graph),
        )

        assert await worker.run_once("w1") == 0
        task = await get_task(session_factory, task_id)
        assert task.status == OutboxTaskStatus.CLAIMED.value
        assert task.claimed_by == "w2"

    @pytest.mark.asyncio
    async def test_task_reclaimed_later_in_batch_is_skipped(self, orders_schema, session_factory):
        """Test that a batch task taken over by another worker is never executed twice."""
        first_id, second_id = [
            await enqueue(
                session_factory,
                OutboxPayload(seed_table_id="tbl_orders", seed_record_ids=[order_id], seed_field_ids=["fld_price"]),
                merge=False,
            )
            for order_id in ("ord_1", "ord_3")
        ]
        other_task = {"cus_1": second_id, "cus_2": first_id}
        executions = []

        class SlowBatchEvaluator(FieldEvaluator):
            async def evaluate_many(self, field, contexts):
                executions.append([context.record_id for context in contexts])
                if len(executions) == 1:
                    # The batch lease ran out and worker w2 took the other task
                    async with session_factory() as db:
                        await db.execute(
                            update(ComputedOutboxTask)
                            .where(ComputedOutboxTask.id == other_task[contexts[0].record_id])
                            .values(claimed_by="w2", lease_expires_at=utc_now() + timedelta(minutes=5))
                        )
                        await db.commit()
                return await super().evaluate_many(field, contexts)

        worker = ComputedUpdateWorker(
            session_factory,
            cache=GraphCache(),
            evaluator_factory=lambda repository, graph: SlowBatchEvaluator(repository, graph),
        )

        assert await worker.run_once("w1") == 1

        assert len(executions) == 1
        taken = await get_task(session_factory, other_task[executions[0][0]])
        assert taken.status == OutboxTaskStatus.CLAIMED.value
        assert taken.claimed_by == "w2"

    @pytest.mark.asyncio
    async def test_lease_renewed_before_each_task(self, orders_schema, session_factory):
        """Test that a task whose batch lease expired cannot be claimed while it runs."""
        first_id, second_id = [
            await enqueue(
                session_factory,
                OutboxPayload(seed_table_id="tbl_orders", seed_record_ids=[order_id], seed_field_ids=["fld_price"]),
                merge=False,
            )
            for order_id in ("ord_1", "ord_3")
        ]
        other_task = {"cus_1": second_id, "cus_2": first_id}
        stolen = []

        class SlowBatchEvaluator(FieldEvaluator):
            async def evaluate_many(self, field, contexts):
                async with session_factory() as db:
                    if not stolen:
                        # First task ran past the batch lease of the second one
                        await db.execute(
                            update(ComputedOutboxTask)
                            .where(ComputedOutboxTask.id == other_task[contexts[0].record_id])
                            .values(lease_expires_at=utc_now() - timedelta(seconds=1))
                        )
                        await db.commit()
                        stolen.append(None)
                    else:
                        stolen[0] = await ComputedOutbox(db).claim("w2", 10)
                return await super().evaluate_many(field, contexts)

        worker = ComputedUpdateWorker(
            session_factory,
            cache=GraphCache(),
            evaluator_factory=lambda repository, graph: SlowBatchEvaluator(repository, graph),
        )

        assert await worker.run_once("w1") == 2

        assert stolen == [[]]
        assert (await outbox_stats(session_factory))["done"] == 2


class TestFailures:
    """Tests for retry, permanent failure and per-cell errors."""

    @pytest.mark.asyncio
    async def test_storage_errors_retry_then_fail(self, orders_schema, session_factory, event_bus):
        """Test that a retryable error backs off and finally fails the task."""
        failures = []

        async def on_failed(event):
            failures.append(event)

        event_bus.subscribe(OutboxTaskFailed, on_failed)

        class BrokenEvaluator:
            async def evaluate_many(self, field, contexts):
                raise PersistenceError("connection reset")

        worker = ComputedUpdateWorker(
            session_factory,
            cache=GraphCache(),
            evaluator_factory=lambda repository, graph: BrokenEvaluator(),
            event_bus=event_bus,
        )
        task_id = await enqueue(
            session_factory,
            OutboxPayload(seed_table_id="tbl_orders", seed_record_ids=["ord_1"], seed_field_ids=["fld_price"]),
            max_attempts=2,
        )

        assert await worker.run_once("w1") == 1
        task = await get_task(session_factory, task_id)
        assert task.status == OutboxTaskStatus.PENDING.value
        assert task.attempts == 1
        assert task.last_error == "connection reset"
        assert failures == []

        async with session_factory() as db:
            await db.execute(
                update(ComputedOutboxTask)
                .where(ComputedOutboxTask.id == task_id)
                .values(next_attempt_at=utc_now() - timedelta(seconds=1))
            )
            await db.commit()

        assert await worker.run_once("w1") == 1
        task = await get_task(session_factory, task_id)
        assert task.status == OutboxTaskStatus.FAILED.value
        assert task.attempts == 2
        assert [(f.task_id, f.permanent) for f in failures] == [(task_id, True)]
        # Values were never half-written
        assert (await orders_schema.values("cus_1"))["fld_total_spend"] == 15

    @pytest.mark.asyncio
    async def test_cycle_fails_without_retry(self, schema, session_factory, worker):
        """Test that a dependency cycle found at plan time fails the task permanently."""
        await schema.base()
        await schema.table("tbl_t")
        await schema.field("tbl_t", "fld_c", "number")
        # Written directly: definition-time validation would reject this
        await schema.field("tbl_t", "fld_a", "formula", {"formula": "a", "referenced_field_ids": ["fld_c", "fld_b"]})
        await schema.field("tbl_t", "fld_b", "formula", {"formula": "b", "referenced_field_ids": ["fld_a"]})
        await schema.record("tbl_t", "rec_1", {"fld_c": 1})

        task_id = await enqueue(
            session_factory,
            OutboxPayload(seed_table_id="tbl_t", seed_record_ids=["rec_1"], seed_field_ids=["fld_c"]),
        )
        await worker.run_once("w1")

        task = await get_task(session_factory, task_id)
        assert task.status == OutboxTaskStatus.FAILED.value
        assert task.attempts == 1
        assert "cycle" in task.last_error

    @pytest.mark.asyncio
    async def test_cell_errors_are_stored_and_task_completes(
        self, orders_schema, session_factory, worker, formula_engine
    ):
        """Test that a failing formula cell stores an error while other cells update."""
        formula_engine.functions["double"] = lambda values: float(values["fld_price"]) * 2
        await orders_schema.field(
            "tbl_orders",
            "fld_double",
            "formula",
            {"formula": "double", "referenced_field_ids": ["fld_price"]},
        )

        await update_record(session_factory, "ord_1", {"fld_price": "n/a"})
        await update_record(session_factory, "ord_2", {"fld_price": 6})
        await worker.drain("w1")

        assert (await orders_schema.values("ord_1"))["fld_double"]["error"]["code"] == "FORMULA_ERROR"
        assert (await orders_schema.values("ord_2"))["fld_double"] == 12
        assert (await orders_schema.values("cus_1"))["fld_total_spend"] == 6
        stats = await outbox_stats(session_factory)
        assert stats["done"] >= 1
        assert stats["failed"] == 0

    @pytest.mark.asyncio
    async def test_timeout_requeues_task(self, orders_schema, session_factory):
        """Test that a task exceeding its timeout is aborted and retried later."""

        class SlowEvaluator:
            async def evaluate_many(self, field, contexts):
                await asyncio.sleep(5)
                return {}

        worker = ComputedUpdateWorker(
            session_factory,
            cache=GraphCache(),
            evaluator_factory=lambda repository, graph: SlowEvaluator(),
            timeout_seconds=0.05,
        )
        task_id = await enqueue(
            session_factory,
            OutboxPayload(seed_table_id="tbl_orders", seed_record_ids=["ord_1"], seed_field_ids=["fld_price"]),
        )

        assert await worker.run_once("w1") == 1

        task = await get_task(session_factory, task_id)
        assert task.status == OutboxTaskStatus.PENDING.value
        assert task.attempts == 1
        assert "exceeded timeout" in task.last_error

    @pytest.mark.asyncio
    async def test_slow_subscriber_does_not_time_out_task(self, orders_schema, session_factory, event_bus):
        """Test that publishing happens after the task settles and outside its timeout."""
        received = []

        async def on_committed(event):
            await asyncio.sleep(0.5)
            received.append(event)

        event_bus.subscribe(ComputedValuesCommitted, on_committed)
        worker = ComputedUpdateWorker(
            session_factory,
            cache=GraphCache(),
            event_bus=event_bus,
            timeout_seconds=0.2,
        )
        task_id = await enqueue(
            session_factory,
            OutboxPayload(seed_table_id="tbl_orders", seed_record_ids=["ord_1"], seed_field_ids=["fld_price"]),
        )

        assert await worker.run_once("w1") == 1

        task = await get_task(session_factory, task_id)
        assert task.status == OutboxTaskStatus.DONE.value
        assert task.attempts == 0
        assert "tbl_customers" in {event.table_id for event in received}
