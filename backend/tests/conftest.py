"""Shared fixtures: a throwaway SQLite database per test, plus data factories."""
import os

os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime
from uuid import UUID, uuid4

import pytest
from sqlalchemy import event, inspect, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from serialstock.db.base import Base
from serialstock.models import OrderStatus, Product, SalesOrder, SalesOrderLine, SerializedUnit, Tenant, UnitStatus
from serialstock.services.unit_repository import UnitRepository


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'serialstock.db'}")

    # pysqlite/aiosqlite transaction handling breaks SAVEPOINT; emit BEGIN ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


async def _make_tenant(db: AsyncSession, name: str) -> Tenant:
    tenant = Tenant(name=name, slug=f"{name.lower()}-{uuid4().hex[:8]}")
    db.add(tenant)
    await db.commit()
    return tenant


@pytest.fixture
async def tenant(db):
    return await _make_tenant(db, "Acme")


@pytest.fixture
async def other_tenant(db):
    return await _make_tenant(db, "Globex")


@pytest.fixture
def make_product(db, tenant):
    async def _make(stock: int = 0, sku: str | None = None, name: str | None = None, tenant_id=None) -> Product:
        product = Product(
            tenant_id=tenant_id or tenant.id,
            sku=sku,
            name=name or f"Product {uuid4().hex[:6]}",
            stock=stock,
        )
        db.add(product)
        await db.commit()
        return product

    return _make


@pytest.fixture
def make_unit(db):
    async def _make(product: Product, serial: str, status: UnitStatus = UnitStatus.IN_STOCK, **fields) -> SerializedUnit:
        unit = await UnitRepository.create(
            db,
            product.tenant_id,
            {"serial_number": serial, "product_id": product.id, "status": status, **fields},
        )
        await db.commit()
        return unit

    return _make


@pytest.fixture
def make_order(db, tenant):
    async def _make(
        product: Product,
        quantity: int,
        status: OrderStatus = OrderStatus.COMPLETED,
        customer_name: str = "Acme Corp",
        created_at: datetime | None = None,
    ) -> SalesOrder:
        order = SalesOrder(
            tenant_id=product.tenant_id,
            customer_name=customer_name,
            status=status.value,
            lines=[SalesOrderLine(product_id=product.id, product_name=product.name, quantity=quantity)],
        )
        if created_at:
            order.created_at = created_at
        db.add(order)
        await db.commit()
        return order

    return _make


def _pk(obj):
    """Primary key of a model instance (or the id itself); never triggers a refresh."""
    if isinstance(obj, UUID):
        return obj
    return inspect(obj).identity[0]


@pytest.fixture
def stock_of(db):
    """Current product.stock, read straight from the database."""

    async def _stock(product: Product | UUID) -> int:
        value = await db.scalar(select(Product.stock).where(Product.id == _pk(product)))
        await db.commit()
        return value

    return _stock


@pytest.fixture
def in_stock_count(db):
    async def _count(product: Product | UUID) -> int:
        product = await db.get(Product, _pk(product))
        value = await UnitRepository.count_units(db, product.tenant_id, product.id, status=UnitStatus.IN_STOCK)
        await db.commit()
        return value

    return _count
