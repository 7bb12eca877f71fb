"""
Cart lifecycle: add, adjust, remove and read cart lines.

Each operation is one transaction spanning the reservation store and the stock
ledger. Locks are always taken cart row first, then the SKU row. Stock is held
from the moment an item is added; settlement later turns the hold into a sale and
the reclaimer returns it if the cart expires.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError

from reservation_service import ledger, reservations
from reservation_service.config import get_settings
from reservation_service.database import transaction
from reservation_service.errors import InsufficientStock, TransientContention
from reservation_service.models import Cart, CartStatus, utcnow
from reservation_service.reclaimer import return_stock
from reservation_service.schemas import CartLine, CartView, Outcome, Result

logger = logging.getLogger(__name__)

CART_GONE = "Cart no longer available"


def _ttl(ttl: Optional[timedelta]) -> timedelta:
    return ttl if ttl is not None else get_settings().cart_ttl


async def _view(session, cart: Cart, now: datetime) -> CartView:
    lines = await reservations.list_by_cart(session, cart.id)
    remaining = (cart.expires_at - now).total_seconds()
    return CartView(
        cart_id=cart.id,
        owner_id=cart.owner_id,
        lines=[CartLine.model_validate(line) for line in lines],
        created_at=cart.created_at,
        expires_at=cart.expires_at,
        seconds_to_expiry=max(0, int(remaining)),
    )


async def _restart(session, cart: Cart, owner_id, now: datetime, expires_at: datetime):
    # Expired carts are reclaimed in place; settled or reclaimed tombstones hold nothing.
    previous = cart.state(now)
    held = await reservations.clear(session, cart.id)
    await return_stock(session, held)
    cart.status = CartStatus.ACTIVE
    cart.owner_id = owner_id if owner_id is not None else cart.owner_id
    cart.created_at = now
    cart.expires_at = expires_at
    await session.flush()
    logger.info("Reusing %s cart %s, returned %d lines", previous.value, cart.id, len(held))


async def add_item(
    cart_id: str,
    sku_id: str,
    quantity: int,
    owner_id: Optional[str] = None,
    now: Optional[datetime] = None,
    ttl: Optional[timedelta] = None,
) -> Result:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValueError(f"quantity must be a positive integer, got {quantity!r}")
    now = now or utcnow()
    expires_at = now + _ttl(ttl)

    try:
        async with transaction() as session:
            cart = await reservations.lock_cart(session, cart_id)
            if cart is None:
                cart = await reservations.create_cart(session, cart_id, owner_id, now, expires_at)
            elif not cart.is_live(now):
                await _restart(session, cart, owner_id, now, expires_at)

            await ledger.reserve(session, sku_id, quantity)
            current = await reservations.get_quantity(session, cart_id, sku_id)
            await reservations.put(session, cart_id, sku_id, current + quantity, expires_at)
            view = await _view(session, cart, now)
    except InsufficientStock as exc:
        logger.info("add_item %s to cart %s refused: %s", sku_id, cart_id, exc)
        return Result.failure(Outcome.OUT_OF_STOCK, str(exc))
    except TransientContention as exc:
        return Result.failure(Outcome.TRANSIENT_CONTENTION, str(exc))
    except IntegrityError as exc:
        # Two first adds raced to create the same cart row.
        logger.warning("Cart %s creation raced: %s", cart_id, exc.orig)
        return Result.failure(Outcome.TRANSIENT_CONTENTION, "Cart is being modified concurrently")

    return Result.success(view)


async def update_quantity(
    cart_id: str,
    sku_id: str,
    new_quantity: int,
    now: Optional[datetime] = None,
    ttl: Optional[timedelta] = None,
) -> Result:
    if isinstance(new_quantity, bool) or not isinstance(new_quantity, int) or new_quantity < 0:
        raise ValueError(f"quantity must be a non-negative integer, got {new_quantity!r}")
    if new_quantity == 0:
        return await remove_item(cart_id, sku_id, now=now, ttl=ttl)
    now = now or utcnow()
    expires_at = now + _ttl(ttl)

    try:
        async with transaction() as session:
            cart = await reservations.lock_cart(session, cart_id)
            if cart is None or not cart.is_live(now):
                return Result.failure(Outcome.CART_EXPIRED_OR_MISSING, CART_GONE)

            current = await reservations.get_quantity(session, cart_id, sku_id)
            delta = new_quantity - current
            if delta > 0:
                await ledger.reserve(session, sku_id, delta)
            elif delta < 0:
                await ledger.release(session, sku_id, -delta)
            await reservations.put(session, cart_id, sku_id, new_quantity, expires_at)
            view = await _view(session, cart, now)
    except InsufficientStock as exc:
        logger.info("update_quantity %s in cart %s refused: %s", sku_id, cart_id, exc)
        return Result.failure(Outcome.OUT_OF_STOCK, str(exc))
    except TransientContention as exc:
        return Result.failure(Outcome.TRANSIENT_CONTENTION, str(exc))

    return Result.success(view)


async def remove_item(
    cart_id: str,
    sku_id: str,
    now: Optional[datetime] = None,
    ttl: Optional[timedelta] = None,
) -> Result:
    now = now or utcnow()

    try:
        async with transaction() as session:
            cart = await reservations.lock_cart(session, cart_id)
            if cart is None or not cart.is_live(now):
                return Result.failure(Outcome.CART_EXPIRED_OR_MISSING, CART_GONE)

            released = await reservations.remove(session, cart_id, sku_id)
            if released:
                await ledger.release(session, sku_id, released)
                await reservations.touch(session, cart_id, now + _ttl(ttl))
            view = await _view(session, cart, now)
    except TransientContention as exc:
        return Result.failure(Outcome.TRANSIENT_CONTENTION, str(exc))

    return Result.success(view)


async def get_cart(cart_id: str, now: Optional[datetime] = None) -> Result:
    """Read-only view of the cart. Does not move the expiry."""
    now = now or utcnow()

    try:
        async with transaction() as session:
            cart = await reservations.get_cart(session, cart_id)
            if cart is None or not cart.is_live(now):
                return Result.failure(Outcome.CART_EXPIRED_OR_MISSING, CART_GONE)
            view = await _view(session, cart, now)
    except TransientContention as exc:
        return Result.failure(Outcome.TRANSIENT_CONTENTION, str(exc))

    return Result.success(view)
