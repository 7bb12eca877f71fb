from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from reservation_service import database
from reservation_service.models import Order, OrderItem, Reservation, Sku


def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'reservations.db'}"


@pytest_asyncio.fixture
async def db(tmp_path):
    """Fresh SQLite database file per test."""
    database.configure(db_url(tmp_path), echo=False, lock_timeout_ms=30000)
    await database.init_db()
    yield
    await database.dispose()


@pytest.fixture
def add_sku(db):
    async def _add_sku(sku_id="sku-1", quantity=5, price="10.00", name=None):
        async with database.transaction() as session:
            session.add(
                Sku(
                    id=sku_id,
                    name=name or sku_id,
                    unit_price=Decimal(price),
                    available_quantity=quantity,
                )
            )
        return sku_id

    return _add_sku


async def available(sku_id):
    async with database.transaction() as session:
        return (await session.get(Sku, sku_id)).available_quantity


async def reserved(sku_id):
    async with database.transaction() as session:
        total = await session.execute(
            select(func.coalesce(func.sum(Reservation.quantity), 0)).where(Reservation.sku_id == sku_id)
        )
        return total.scalar_one()


async def sold(sku_id):
    async with database.transaction() as session:
        total = await session.execute(
            select(func.coalesce(func.sum(OrderItem.quantity), 0)).where(OrderItem.sku_id == sku_id)
        )
        return total.scalar_one()


async def order_count():
    async with database.transaction() as session:
        return (await session.execute(select(func.count(Order.id)))).scalar_one()
