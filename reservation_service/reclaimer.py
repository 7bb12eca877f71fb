import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, Optional, Tuple
from uuid import uuid4

from reservation_service import ledger, reservations
from reservation_service.config import get_settings
from reservation_service.database import configure, init_db, transaction
from reservation_service.errors import StorageUnavailable, TransientContention
from reservation_service.messaging import close_rabbitmq, publish_event, setup_rabbitmq
from reservation_service.models import Cart, CartStatus, utcnow
from reservation_service.schemas import ReclaimReport

logger = logging.getLogger(__name__)


async def return_stock(session, held: Iterable[Tuple[str, int]]) -> Dict[str, int]:
    """Release held quantities to the ledger, one update per SKU in id order."""
    totals = defaultdict(int)
    for sku_id, quantity in held:
        totals[sku_id] += quantity
    for sku_id in sorted(totals):
        await ledger.release(session, sku_id, totals[sku_id])
    return dict(totals)


async def reclaim_expired(
    now: Optional[datetime] = None, batch_size: Optional[int] = None
) -> ReclaimReport:
    """One reclaim pass over carts whose expiry has passed.

    The carts are locked, their stock returned and the rows marked RECLAIMED in a
    single transaction. A cart settled or reclaimed by someone else first is no
    longer ACTIVE and is not listed. On lock contention the pass gives up and
    leaves the work to the next one.
    """
    now = now or utcnow()
    batch_size = batch_size or get_settings().reclaim_batch_size

    try:
        async with transaction() as session:
            expired = await reservations.list_expired(session, now, limit=batch_size)
            held = [line for _, lines in expired for line in lines]
            released = await return_stock(session, held)
            for cart_id, _ in expired:
                cart = await session.get(Cart, cart_id)
                await reservations.retire_cart(session, cart, CartStatus.RECLAIMED)
    except TransientContention as exc:
        logger.warning("Reclaim pass abandoned due to contention: %s", exc)
        return ReclaimReport(contended=True)

    report = ReclaimReport(
        reclaimed_carts=[cart_id for cart_id, _ in expired],
        released_units=released,
    )
    if report.reclaimed_carts:
        logger.info(
            "Reclaimed %d expired carts, returned stock for %d SKUs",
            len(report.reclaimed_carts),
            len(report.released_units),
        )
    for cart_id, lines in expired:
        await publish_cart_reclaimed(cart_id, lines, now)
    return report


async def reclaim_cart(cart_id: str, now: Optional[datetime] = None) -> bool:
    """Reclaim a single cart if it is expired. False if it is live, retired or unknown."""
    now = now or utcnow()
    async with transaction() as session:
        cart = await reservations.lock_cart(session, cart_id)
        if cart is None or cart.state(now) is not CartStatus.EXPIRED:
            return False
        held = await reservations.retire_cart(session, cart, CartStatus.RECLAIMED)
        await return_stock(session, held)

    logger.info("Reclaimed expired cart %s", cart_id)
    await publish_cart_reclaimed(cart_id, held, now)
    return True


async def publish_cart_reclaimed(cart_id: str, lines, now: datetime):
    event_data = {
        "event_id": str(uuid4()),
        "event_type": "CartReclaimed",
        "timestamp": now.isoformat(),
        "cart_id": cart_id,
        "items": [{"sku_id": sku_id, "quantity": quantity} for sku_id, quantity in lines],
    }
    await publish_event("reservation_exchange", "cart.reclaimed", event_data)


async def run_forever(interval: Optional[float] = None):
    interval = interval or get_settings().reclaim_interval_seconds
    logger.info("Expiry reclaimer running every %ss", interval)
    while True:
        try:
            await reclaim_expired()
        except StorageUnavailable:
            logger.exception("Reclaim pass failed, storage unavailable")
        await asyncio.sleep(interval)


async def main():
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    configure()
    await init_db()
    await setup_rabbitmq()
    try:
        await run_forever(settings.reclaim_interval_seconds)
    finally:
        await close_rabbitmq()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Expiry reclaimer stopped.")
