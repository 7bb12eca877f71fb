import asyncio
import logging
from decimal import Decimal

from reservation_service.config import get_settings
from reservation_service.database import configure, init_db, transaction
from reservation_service.models import Sku

logger = logging.getLogger(__name__)

SEED_SKUS = [
    {"id": "tee-black-m", "name": "Essential Tee / Black / M", "unit_price": Decimal("2500.00"), "available_quantity": 10},
    {"id": "tee-black-l", "name": "Essential Tee / Black / L", "unit_price": Decimal("2500.00"), "available_quantity": 5},
    {"id": "hoodie-grey-m", "name": "Heavy Hoodie / Grey / M", "unit_price": Decimal("6800.00"), "available_quantity": 3},
    # For testing OUT_OF_STOCK
    {"id": "cap-navy-os", "name": "Logo Cap / Navy / One Size", "unit_price": Decimal("1800.00"), "available_quantity": 0},
]


async def seed_inventory():
    await init_db()
    async with transaction() as session:
        # Check if inventory is already seeded
        if await session.get(Sku, SEED_SKUS[0]["id"]):
            logger.info("Inventory already seeded.")
            return

        session.add_all([Sku(**row) for row in SEED_SKUS])
    logger.info("Inventory seeded with %d SKUs.", len(SEED_SKUS))


if __name__ == "__main__":
    logging.basicConfig(level=get_settings().log_level)
    configure()
    asyncio.run(seed_inventory())
