"""
Pytest configuration and fixtures for CalcBase tests.
"""

from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calcbase.db.base import Base as ModelBase
from calcbase.db.session import create_engine, create_session_factory
from calcbase.models import Base, Field, Record, Table
from calcbase.models.field import COMPUTED_FIELD_TYPES


class FakeFormulaEngine:
    """Formula engine for tests: expressions are Python lambdas over the values dict."""

    def __init__(self, functions: dict[str, Any] | None = None):
        self.functions = functions or {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def evaluate(self, expression: str, values: dict[str, Any]) -> Any:
        self.calls.append((expression, dict(values)))
        return self.functions[expression](values)


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create a SQLite test database per test function."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'calcbase.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(ModelBase.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(ModelBase.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(test_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@dataclass
class SchemaBuilder:
    """Writes bases, tables, fields and records directly, bypassing the outbox."""

    session_factory: async_sessionmaker[AsyncSession]
    base_id: str = "base_1"
    created: dict[str, list[str]] = field(default_factory=dict)

    async def base(self, base_id: str | None = None) -> str:
        base_id = base_id or self.base_id
        async with self.session_factory() as db:
            db.add(Base(id=base_id, workspace_id="ws_1", name="Test Base"))
            await db.commit()
        return base_id

    async def table(self, table_id: str, name: str | None = None) -> str:
        async with self.session_factory() as db:
            db.add(Table(id=table_id, base_id=self.base_id, name=name or table_id))
            await db.commit()
        return table_id

    async def field(
        self,
        table_id: str,
        field_id: str,
        field_type: str,
        options: dict[str, Any] | None = None,
    ) -> str:
        async with self.session_factory() as db:
            model = Field(
                id=field_id,
                table_id=table_id,
                name=field_id,
                field_type=field_type,
                is_computed=field_type in COMPUTED_FIELD_TYPES,
            )
            model.set_options(options or {})
            db.add(model)
            await db.commit()
        return field_id

    async def record(self, table_id: str, record_id: str, values: dict[str, Any]) -> str:
        async with self.session_factory() as db:
            record = Record(id=record_id, table_id=table_id)
            record.set_all_values(values)
            db.add(record)
            await db.commit()
        return record_id

    async def values(self, record_id: str) -> dict[str, Any]:
        async with self.session_factory() as db:
            record = await db.get(Record, record_id)
            return record.get_all_values()


@pytest.fixture
def schema(session_factory) -> SchemaBuilder:
    return SchemaBuilder(session_factory)


@pytest_asyncio.fixture
async def orders_schema(schema: SchemaBuilder) -> SchemaBuilder:
    """
    Customers <-> Orders base.

    Customers.total_spend is a SUM rollup of Orders.price through
    Customers.orders; Orders.customer is the inverse link.

    cus_1: ord_1 (10), ord_2 (5)
    cus_2: ord_3 (7)
    """
    await schema.base()
    await schema.table("tbl_customers", "Customers")
    await schema.table("tbl_orders", "Orders")

    await schema.field("tbl_orders", "fld_price", "number")
    await schema.field(
        "tbl_orders",
        "fld_customer",
        "linked_record",
        {"linked_table_id": "tbl_customers", "inverse_field_id": "fld_orders"},
    )
    await schema.field("tbl_customers", "fld_name", "text")
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

    await schema.record("tbl_customers", "cus_1", {"fld_name": "Ada", "fld_orders": ["ord_1", "ord_2"], "fld_total_spend": 15})
    await schema.record("tbl_customers", "cus_2", {"fld_name": "Bob", "fld_orders": ["ord_3"], "fld_total_spend": 7})
    await schema.record("tbl_orders", "ord_1", {"fld_price": 10, "fld_customer": ["cus_1"]})
    await schema.record("tbl_orders", "ord_2", {"fld_price": 5, "fld_customer": ["cus_1"]})
    await schema.record("tbl_orders", "ord_3", {"fld_price": 7, "fld_customer": ["cus_2"]})
    return schema


@pytest.fixture
def formula_engine() -> FakeFormulaEngine:
    return FakeFormulaEngine()
