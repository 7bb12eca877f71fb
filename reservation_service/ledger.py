"""
Stock ledger: the per-SKU available quantity.

Every mutation is a single conditional UPDATE, so concurrent callers on the same
SKU are serialized by the row lock the database takes for the update, and a
failed reserve never leaves a partial decrement behind. Durability comes from
the caller's transaction commit.

release() must be paired exactly once with a prior successful reserve(); a
double release is a caller bug and is not detected here.
"""
import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from reservation_service.errors import InsufficientStock
from reservation_service.models import Sku, utcnow

logger = logging.getLogger(__name__)


def _check_quantity(quantity):
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValueError(f"quantity must be a positive integer, got {quantity!r}")


async def get_available(session: AsyncSession, sku_id: str) -> Optional[int]:
    result = await session.execute(select(Sku.available_quantity).where(Sku.id == sku_id))
    return result.scalar_one_or_none()


async def reserve(session: AsyncSession, sku_id: str, quantity: int):
    _check_quantity(quantity)
    result = await session.execute(
        update(Sku)
        .where(Sku.id == sku_id, Sku.available_quantity >= quantity)
        .values(
            available_quantity=Sku.available_quantity - quantity,
            version=Sku.version + 1,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        available = await get_available(session, sku_id)
        raise InsufficientStock(sku_id, quantity, available)
    logger.debug("Reserved %s x %s", quantity, sku_id)


async def release(session: AsyncSession, sku_id: str, quantity: int):
    _check_quantity(quantity)
    result = await session.execute(
        update(Sku)
        .where(Sku.id == sku_id)
        .values(
            available_quantity=Sku.available_quantity + quantity,
            version=Sku.version + 1,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # SKUs referenced by reservations cannot be deleted, so this is corruption.
        raise LookupError(f"SKU {sku_id} vanished while stock was held against it")
    logger.debug("Released %s x %s", quantity, sku_id)
