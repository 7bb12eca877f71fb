"""Reservation store: cart rows and their (cart, SKU, quantity) bindings."""
import logging
from collections import OrderedDict
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reservation_service.models import Cart, CartStatus, Reservation, utcnow

logger = logging.getLogger(__name__)


async def lock_cart(session: AsyncSession, cart_id: str) -> Optional[Cart]:
    """SELECT ... FOR UPDATE on the cart row. None when the row is gone."""
    result = await session.execute(
        select(Cart)
        .where(Cart.id == cart_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_cart(session: AsyncSession, cart_id: str) -> Optional[Cart]:
    result = await session.execute(select(Cart).where(Cart.id == cart_id))
    return result.scalar_one_or_none()


async def create_cart(
    session: AsyncSession,
    cart_id: str,
    owner_id: Optional[str],
    now: datetime,
    expires_at: datetime,
) -> Cart:
    cart = Cart(
        id=cart_id,
        owner_id=owner_id,
        status=CartStatus.ACTIVE,
        created_at=now,
        expires_at=expires_at,
    )
    session.add(cart)
    await session.flush()
    return cart


async def get_quantity(session: AsyncSession, cart_id: str, sku_id: str) -> int:
    reservation = await session.get(Reservation, (cart_id, sku_id))
    return reservation.quantity if reservation is not None else 0


async def put(
    session: AsyncSession,
    cart_id: str,
    sku_id: str,
    quantity: int,
    expires_at: datetime,
) -> Reservation:
    """Set the cart's hold on a SKU to `quantity` and move the cart's expiry."""
    if quantity <= 0:
        raise ValueError(f"reserved quantity must be positive, got {quantity}")

    reservation = await session.get(Reservation, (cart_id, sku_id))
    if reservation is None:
        reservation = Reservation(cart_id=cart_id, sku_id=sku_id, quantity=quantity)
        session.add(reservation)
    else:
        reservation.quantity = quantity
        reservation.updated_at = utcnow()

    cart = await session.get(Cart, cart_id)
    cart.expires_at = expires_at
    await session.flush()
    return reservation


async def remove(session: AsyncSession, cart_id: str, sku_id: str) -> int:
    """Delete the binding and return the quantity it held (0 if there was none)."""
    reservation = await session.get(Reservation, (cart_id, sku_id))
    if reservation is None:
        return 0
    quantity = reservation.quantity
    await session.delete(reservation)
    await session.flush()
    return quantity


async def touch(session: AsyncSession, cart_id: str, expires_at: datetime):
    cart = await session.get(Cart, cart_id)
    cart.expires_at = expires_at
    await session.flush()


async def list_by_cart(session: AsyncSession, cart_id: str) -> List[Reservation]:
    result = await session.execute(
        select(Reservation)
        .where(Reservation.cart_id == cart_id)
        .order_by(Reservation.sku_id)
    )
    return list(result.scalars().all())


async def list_expired(
    session: AsyncSession, now: datetime, limit: Optional[int] = None
) -> List[Tuple[str, List[Tuple[str, int]]]]:
    """Lock the live carts whose expiry has passed and return their holdings.

    Must run in the same transaction that returns the stock, so the rows seen
    here are exactly the rows reversed.
    """
    query = (
        select(Cart.id)
        .where(Cart.status == CartStatus.ACTIVE, Cart.expires_at <= now)
        .order_by(Cart.expires_at, Cart.id)
        .with_for_update()
    )
    if limit is not None:
        query = query.limit(limit)
    cart_ids = list((await session.execute(query)).scalars().all())
    if not cart_ids:
        return []

    expired = OrderedDict((cart_id, []) for cart_id in cart_ids)
    rows = await session.execute(
        select(Reservation.cart_id, Reservation.sku_id, Reservation.quantity)
        .where(Reservation.cart_id.in_(cart_ids))
        .order_by(Reservation.cart_id, Reservation.sku_id)
    )
    for cart_id, sku_id, quantity in rows:
        expired[cart_id].append((sku_id, quantity))
    return list(expired.items())


async def clear(session: AsyncSession, cart_id: str) -> List[Tuple[str, int]]:
    """Delete every binding of the cart and return what they held."""
    held = []
    for reservation in await list_by_cart(session, cart_id):
        held.append((reservation.sku_id, reservation.quantity))
        await session.delete(reservation)
    await session.flush()
    return held


async def retire_cart(session: AsyncSession, cart: Cart, status: CartStatus) -> List[Tuple[str, int]]:
    """Drop the cart's bindings and leave the row behind as a SETTLED or RECLAIMED tombstone."""
    held = await clear(session, cart.id)
    cart.status = status
    await session.flush()
    return held
