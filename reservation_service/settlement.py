import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from reservation_service import reservations
from reservation_service.database import transaction
from reservation_service.errors import InvalidTransition, OrderNotFound, TransientContention
from reservation_service.messaging import publish_event
from reservation_service.models import (
    ORDER_TRANSITIONS,
    CartStatus,
    Order,
    OrderItem,
    OrderStatus,
    Sku,
    utcnow,
)
from reservation_service.schemas import OrderRead, Outcome, Result

logger = logging.getLogger(__name__)


async def _order_by_reference(session, payment_reference: str) -> Optional[Order]:
    result = await session.execute(
        select(Order).where(Order.payment_reference == payment_reference)
    )
    return result.scalar_one_or_none()


async def settle(cart_id: str, payment_reference: str, now: Optional[datetime] = None) -> Result:
    """Turn a paid cart into an order, exactly once per payment reference.

    Replays with a known payment reference return the existing order. Stock is not
    touched: it was taken from the ledger when the items were reserved, and
    deleting the reservations makes that hold permanent.
    """
    if not payment_reference:
        raise ValueError("payment_reference is required")
    now = now or utcnow()

    try:
        async with transaction() as session:
            existing = await _order_by_reference(session, payment_reference)
            if existing is not None:
                logger.info("Payment %s already settled as order %s", payment_reference, existing.id)
                return Result.success(OrderRead.model_validate(existing))

            cart = await reservations.lock_cart(session, cart_id)
            if cart is None:
                return Result.failure(Outcome.CART_EXPIRED_OR_MISSING, "Cart no longer available")

            state = cart.state(now)
            if state is CartStatus.SETTLED:
                # A duplicate callback may have committed while we waited for the lock.
                existing = await _order_by_reference(session, payment_reference)
                if existing is not None:
                    return Result.success(OrderRead.model_validate(existing))
                logger.warning(
                    "Cart %s was settled under another payment, %s needs refunding",
                    cart_id,
                    payment_reference,
                )
                return Result.failure(Outcome.ALREADY_SETTLED, "Cart was already checked out")
            if state is not CartStatus.ACTIVE:
                logger.info("Cart %s was %s before payment %s settled", cart_id, state.value, payment_reference)
                return Result.failure(Outcome.CART_EXPIRED_OR_MISSING, "Cart has expired")

            lines = await reservations.list_by_cart(session, cart_id)
            if not lines:
                return Result.failure(Outcome.CART_EXPIRED_OR_MISSING, "Cart is empty")

            sku_rows = await session.execute(
                select(Sku).where(Sku.id.in_([line.sku_id for line in lines]))
            )
            skus = {sku.id: sku for sku in sku_rows.scalars()}

            order = Order(
                id=str(uuid4()),
                payment_reference=payment_reference,
                cart_id=cart_id,
                owner_id=cart.owner_id,
                status=OrderStatus.PAID,
                created_at=now,
                updated_at=now,
                items=[],
            )
            total = Decimal("0")
            for line in lines:
                sku = skus[line.sku_id]
                order.items.append(
                    OrderItem(
                        sku_id=sku.id,
                        sku_name=sku.name,
                        quantity=line.quantity,
                        unit_price=sku.unit_price,
                    )
                )
                total += Decimal(sku.unit_price) * line.quantity
            order.total_amount = total
            session.add(order)
            await session.flush()

            await reservations.retire_cart(session, cart, CartStatus.SETTLED)
            settled = OrderRead.model_validate(order)
    except IntegrityError:
        # Lost the insert race to a duplicate callback with the same reference.
        async with transaction() as session:
            existing = await _order_by_reference(session, payment_reference)
            if existing is None:
                raise
            return Result.success(OrderRead.model_validate(existing))
    except TransientContention as exc:
        return Result.failure(Outcome.TRANSIENT_CONTENTION, str(exc))

    logger.info("Settled cart %s as order %s (payment %s)", cart_id, settled.id, payment_reference)
    await publish_order_settled(settled)
    return Result.success(settled)


async def publish_order_settled(order: OrderRead):
    event_data = {
        "event_id": str(uuid4()),
        "event_type": "OrderSettled",
        "timestamp": order.created_at.isoformat(),
        "order_id": order.id,
        "cart_id": order.cart_id,
        "payment_reference": order.payment_reference,
        "total_amount": str(order.total_amount),
        "items": [
            {"sku_id": item.sku_id, "quantity": item.quantity, "unit_price": str(item.unit_price)}
            for item in order.items
        ],
    }
    await publish_event("reservation_exchange", "order.settled", event_data)


async def get_order(order_id: str) -> OrderRead:
    async with transaction() as session:
        order = await session.get(Order, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return OrderRead.model_validate(order)


async def get_order_by_payment(payment_reference: str) -> Optional[OrderRead]:
    async with transaction() as session:
        order = await _order_by_reference(session, payment_reference)
        return OrderRead.model_validate(order) if order is not None else None


async def transition_order(order_id: str, new_status: OrderStatus) -> OrderRead:
    async with transaction() as session:
        result = await session.execute(
            select(Order).where(Order.id == order_id).with_for_update()
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFound(order_id)
        if new_status not in ORDER_TRANSITIONS[order.status]:
            raise InvalidTransition(order.status, new_status)
        order.status = new_status
        order.updated_at = utcnow()
        await session.flush()
        logger.info("Order %s moved to %s", order_id, new_status.value)
        return OrderRead.model_validate(order)
