from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from reservation_service import carts, reclaimer, settlement
from reservation_service.database import transaction
from reservation_service.errors import InvalidTransition, OrderNotFound
from reservation_service.models import OrderStatus, Sku
from reservation_service.schemas import Outcome

from conftest import available, order_count, reserved, sold

T0 = datetime(2024, 5, 1, 12, 0, 0)
TTL = timedelta(minutes=30)


@pytest.mark.asyncio
async def test_settle_creates_paid_order_and_keeps_stock_consumed(add_sku):
    await add_sku("sku-1", quantity=5, price="12.50", name="Tee / M")
    await add_sku("sku-2", quantity=5, price="3.00")
    await carts.add_item("cart-a", "sku-1", 2, owner_id="user-7", now=T0, ttl=TTL)
    await carts.add_item("cart-a", "sku-2", 1, now=T0, ttl=TTL)

    result = await settlement.settle("cart-a", "pay_123", now=T0 + timedelta(minutes=5))

    assert result.outcome is Outcome.OK
    order = result.data
    assert order.status is OrderStatus.PAID
    assert order.payment_reference == "pay_123"
    assert order.owner_id == "user-7"
    assert order.total_amount == Decimal("28.00")
    assert [(item.sku_id, item.sku_name, item.quantity) for item in order.items] == [
        ("sku-1", "Tee / M", 2),
        ("sku-2", "sku-2", 1),
    ]
    # Settlement neither releases nor takes stock again
    assert await available("sku-1") == 3
    assert await available("sku-2") == 4
    assert await reserved("sku-1") == 0
    gone = await carts.get_cart("cart-a", now=T0 + timedelta(minutes=5))
    assert gone.outcome is Outcome.CART_EXPIRED_OR_MISSING


@pytest.mark.asyncio
async def test_line_prices_are_snapshotted(add_sku):
    await add_sku("sku-1", quantity=5, price="10.00")
    await carts.add_item("cart-a", "sku-1", 1, now=T0, ttl=TTL)
    result = await settlement.settle("cart-a", "pay_1", now=T0)

    async with transaction() as session:
        sku = await session.get(Sku, "sku-1")
        sku.unit_price = Decimal("99.00")

    order = await settlement.get_order(result.data.id)
    assert order.items[0].unit_price == Decimal("10.00")


@pytest.mark.asyncio
async def test_duplicate_webhook_returns_the_same_order(add_sku):
    await add_sku("sku-1", quantity=5)
    await carts.add_item("cart-a", "sku-1", 2, now=T0, ttl=TTL)

    first = await settlement.settle("cart-a", "pay_123", now=T0)
    second = await settlement.settle("cart-a", "pay_123", now=T0 + timedelta(minutes=1))

    assert first.outcome is Outcome.OK
    assert second.outcome is Outcome.OK
    assert second.data.id == first.data.id
    assert await order_count() == 1
    assert await available("sku-1") == 3


@pytest.mark.asyncio
async def test_replay_succeeds_even_after_cart_would_have_expired(add_sku):
    await add_sku("sku-1", quantity=5)
    await carts.add_item("cart-a", "sku-1", 2, now=T0, ttl=TTL)
    first = await settlement.settle("cart-a", "pay_123", now=T0)

    replay = await settlement.settle("cart-a", "pay_123", now=T0 + timedelta(days=1))

    assert replay.outcome is Outcome.OK
    assert replay.data.id == first.data.id


@pytest.mark.asyncio
async def test_second_payment_for_settled_cart_is_already_settled(add_sku):
    await add_sku("sku-1", quantity=5)
    await carts.add_item("cart-a", "sku-1", 2, now=T0, ttl=TTL)
    await settlement.settle("cart-a", "pay_1", now=T0)

    result = await settlement.settle("cart-a", "pay_2", now=T0)

    assert result.outcome is Outcome.ALREADY_SETTLED
    assert await order_count() == 1


@pytest.mark.asyncio
async def test_settle_missing_cart(db):
    result = await settlement.settle("cart-x", "pay_1", now=T0)

    assert result.outcome is Outcome.CART_EXPIRED_OR_MISSING
    assert await order_count() == 0


@pytest.mark.asyncio
async def test_settle_expired_cart_is_refused_and_stock_stays_held(add_sku):
    await add_sku("sku-1", quantity=5)
    await carts.add_item("cart-a", "sku-1", 2, now=T0, ttl=TTL)

    result = await settlement.settle("cart-a", "pay_1", now=T0 + timedelta(minutes=31))

    assert result.outcome is Outcome.CART_EXPIRED_OR_MISSING
    assert await order_count() == 0
    assert await available("sku-1") == 3
    report = await reclaimer.reclaim_expired(now=T0 + timedelta(minutes=31))
    assert report.reclaimed_carts == ["cart-a"]
    assert await available("sku-1") == 5


@pytest.mark.asyncio
async def test_settle_after_reclaim_is_missing(add_sku):
    await add_sku("sku-1", quantity=5)
    await carts.add_item("cart-a", "sku-1", 2, now=T0, ttl=TTL)
    await reclaimer.reclaim_expired(now=T0 + timedelta(hours=1))

    result = await settlement.settle("cart-a", "pay_1", now=T0 + timedelta(hours=1))

    assert result.outcome is Outcome.CART_EXPIRED_OR_MISSING


@pytest.mark.asyncio
async def test_reused_cart_id_that_expired_is_missing_not_already_settled(add_sku):
    await add_sku("sku-1", quantity=5)
    await carts.add_item("session-1", "sku-1", 1, now=T0, ttl=TTL)
    first = await settlement.settle("session-1", "pay_1", now=T0)
    assert first.outcome is Outcome.OK

    reuse_at = T0 + timedelta(hours=1)
    reused = await carts.add_item("session-1", "sku-1", 2, now=reuse_at, ttl=TTL)
    assert reused.outcome is Outcome.OK
    await reclaimer.reclaim_expired(now=reuse_at + timedelta(minutes=31))

    result = await settlement.settle("session-1", "pay_2", now=reuse_at + timedelta(minutes=31))

    assert result.outcome is Outcome.CART_EXPIRED_OR_MISSING
    assert await order_count() == 1
    assert await available("sku-1") == 4


@pytest.mark.asyncio
async def test_reused_cart_id_can_be_settled_again(add_sku):
    await add_sku("sku-1", quantity=5)
    await carts.add_item("session-1", "sku-1", 1, now=T0, ttl=TTL)
    await settlement.settle("session-1", "pay_1", now=T0)

    reuse_at = T0 + timedelta(hours=1)
    await carts.add_item("session-1", "sku-1", 2, now=reuse_at, ttl=TTL)
    second = await settlement.settle("session-1", "pay_2", now=reuse_at)

    assert second.outcome is Outcome.OK
    assert [item.quantity for item in second.data.items] == [2]
    assert await order_count() == 2
    assert await available("sku-1") == 2
    assert await reserved("sku-1") == 0


@pytest.mark.asyncio
async def test_settle_empty_cart_is_refused(add_sku):
    await add_sku("sku-1", quantity=5)
    await carts.add_item("cart-a", "sku-1", 2, now=T0, ttl=TTL)
    await carts.remove_item("cart-a", "sku-1", now=T0, ttl=TTL)

    result = await settlement.settle("cart-a", "pay_1", now=T0)

    assert result.outcome is Outcome.CART_EXPIRED_OR_MISSING
    assert await order_count() == 0


@pytest.mark.asyncio
async def test_settle_requires_payment_reference(db):
    with pytest.raises(ValueError):
        await settlement.settle("cart-a", "", now=T0)


@pytest.mark.asyncio
async def test_settled_order_is_announced_once(add_sku):
    await add_sku("sku-1", quantity=5)
    await carts.add_item("cart-a", "sku-1", 2, now=T0, ttl=TTL)

    with patch("reservation_service.settlement.publish_event", new=AsyncMock()) as mock_publish_event:
        result = await settlement.settle("cart-a", "pay_1", now=T0)
        await settlement.settle("cart-a", "pay_1", now=T0)

    mock_publish_event.assert_called_once()
    args, _ = mock_publish_event.call_args
    assert args[1] == "order.settled"
    assert args[2]["order_id"] == result.data.id
    assert args[2]["payment_reference"] == "pay_1"


@pytest.mark.asyncio
async def test_conservation_across_a_mixed_session(add_sku):
    """
    available + live reservations + settled quantities always equals the initial stock.
    """
    initial = 20
    await add_sku("sku-1", quantity=initial)

    async def conserved():
        return await available("sku-1") + await reserved("sku-1") + await sold("sku-1")

    await carts.add_item("cart-a", "sku-1", 4, now=T0, ttl=TTL)
    await carts.add_item("cart-b", "sku-1", 6, now=T0, ttl=TTL)
    await carts.add_item("cart-c", "sku-1", 3, now=T0, ttl=TTL)
    assert await conserved() == initial

    await carts.update_quantity("cart-b", "sku-1", 2, now=T0, ttl=TTL)
    await carts.update_quantity("cart-c", "sku-1", 5, now=T0, ttl=TTL)
    assert await conserved() == initial

    await settlement.settle("cart-a", "pay_a", now=T0)
    await settlement.settle("cart-a", "pay_a", now=T0)
    assert await conserved() == initial

    await reclaimer.reclaim_expired(now=T0 + timedelta(hours=1))
    assert await conserved() == initial
    assert await sold("sku-1") == 4
    assert await available("sku-1") == 16


@pytest.mark.asyncio
async def test_order_status_transitions(add_sku):
    await add_sku("sku-1", quantity=5)
    await carts.add_item("cart-a", "sku-1", 1, now=T0, ttl=TTL)
    order = (await settlement.settle("cart-a", "pay_1", now=T0)).data

    processing = await settlement.transition_order(order.id, OrderStatus.PROCESSING)
    shipped = await settlement.transition_order(order.id, OrderStatus.SHIPPED)

    assert processing.status is OrderStatus.PROCESSING
    assert shipped.status is OrderStatus.SHIPPED
    with pytest.raises(InvalidTransition):
        await settlement.transition_order(order.id, OrderStatus.PAID)
    with pytest.raises(OrderNotFound):
        await settlement.transition_order("missing", OrderStatus.PROCESSING)


@pytest.mark.asyncio
async def test_get_order_by_payment(add_sku):
    await add_sku("sku-1", quantity=5)
    await carts.add_item("cart-a", "sku-1", 1, now=T0, ttl=TTL)
    order = (await settlement.settle("cart-a", "pay_1", now=T0)).data

    found = await settlement.get_order_by_payment("pay_1")

    assert found.id == order.id
    assert await settlement.get_order_by_payment("pay_unknown") is None
