import pytest
from sqlalchemy import func, select

from reservation_service.database import transaction
from reservation_service.models import Sku
from reservation_service.seeder import SEED_SKUS, seed_inventory


@pytest.mark.asyncio
async def test_seed_inventory_is_idempotent(db):
    await seed_inventory()
    await seed_inventory()

    async with transaction() as session:
        count = (await session.execute(select(func.count(Sku.id)))).scalar_one()
        sold_out = await session.get(Sku, "cap-navy-os")

    assert count == len(SEED_SKUS)
    assert sold_out.available_quantity == 0
