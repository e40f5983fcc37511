from decimal import Decimal

import pytest
from sqlalchemy import exc as sa_exc, select

from core.errors import InsufficientStockError, InvalidTransitionError
from core.events import INVENTORY_CHANGED, INVENTORY_LOW_STOCK, LOYALTY_UPDATED, ORDER_UPDATED
from db.database import Customer, InventoryMovement, Order, OrderStatusHistory
from services.order_state import TRANSITIONS, can_transition
from services.stock_store import StockStore


async def _order(session_maker, order_id) -> Order:
    async with session_maker() as s:
        return await s.get(Order, order_id)


async def _history(session_maker, order_id):
    async with session_maker() as s:
        res = await s.execute(
            select(OrderStatusHistory.from_status, OrderStatusHistory.to_status)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.id)
        )
        return [tuple(r) for r in res.all()]


async def _movements(session_maker, order_id, kind):
    async with session_maker() as s:
        res = await s.execute(
            select(InventoryMovement)
            .where(InventoryMovement.order_id == order_id)
            .where(InventoryMovement.kind == kind)
        )
        return list(res.scalars().all())


def test_transition_table():
    assert can_transition("pending", "pending_verification")
    assert can_transition("preparing", "ready")
    assert can_transition("ready", "cancelled")
    assert not can_transition("pending", "ready")
    assert not can_transition("completed", "cancelled")
    assert TRANSITIONS["cancelled"] == frozenset()


async def test_full_lifecycle(session_maker, cafe, place, machine, stock):
    order_id = await place([{"menu_item_id": cafe.latte}, {"menu_item_id": cafe.latte}], customer_id=cafe.customer)

    ready = await machine("mark_ready", order_id)
    assert ready.deduction.applied
    assert await stock(cafe.milk) == Decimal("9.600")

    done = await machine("complete", order_id)
    assert done.accrual.points == 9
    order = await _order(session_maker, order_id)
    assert order.status == "completed"
    assert order.payment_status == "paid"
    assert order.completed_at is not None

    assert await _history(session_maker, order_id) == [
        (None, "pending"),
        ("pending", "pending_verification"),
        ("pending_verification", "preparing"),
        ("preparing", "ready"),
        ("ready", "completed"),
    ]


async def test_invalid_transition_is_rejected(session_maker, cafe, place, machine, stock):
    order_id = await place([{"menu_item_id": cafe.latte}], confirm=False)

    with pytest.raises(InvalidTransitionError) as exc:
        await machine("transition", order_id, "ready")
    assert exc.value.current == "pending"
    assert exc.value.requested == "ready"
    assert (await _order(session_maker, order_id)).status == "pending"
    assert await stock(cafe.milk) == Decimal("10.000")


async def test_insufficient_stock_keeps_order_preparing(session_maker, cafe, place, machine, stock, events):
    _, received = events
    order_id = await place([{"menu_item_id": cafe.carafe, "quantity": 4}])
    async with session_maker() as s:
        await StockStore(s).adjust_to(cafe.milk, Decimal("3"))
        await s.commit()

    with pytest.raises(InsufficientStockError):
        await machine("mark_ready", order_id)

    assert (await _order(session_maker, order_id)).status == "preparing"
    assert await stock(cafe.milk) == Decimal("3.000")
    assert await _movements(session_maker, order_id, "usage") == []
    assert received == []


async def test_completing_from_preparing_still_deducts(session_maker, cafe, place, machine, stock):
    order_id = await place([{"menu_item_id": cafe.latte}])

    result = await machine("complete", order_id)

    assert result.from_status == "preparing"
    assert result.deduction.applied
    assert await stock(cafe.milk) == Decimal("9.800")
    assert (await _history(session_maker, order_id))[-2:] == [("preparing", "ready"), ("ready", "completed")]


async def test_cancel_after_ready_restocks_exactly_once(session_maker, cafe, place, machine, stock):
    order_id = await place([{"menu_item_id": cafe.latte, "quantity": 2}])
    await machine("mark_ready", order_id)
    assert await stock(cafe.milk) == Decimal("9.600")

    cancelled = await machine("cancel", order_id, "customer left")
    assert cancelled.compensation.restocked
    assert await stock(cafe.milk) == Decimal("10.000")

    with pytest.raises(InvalidTransitionError):
        await machine("cancel", order_id)
    assert await stock(cafe.milk) == Decimal("10.000")

    usage = {mv.ingredient_id: mv for mv in await _movements(session_maker, order_id, "usage")}
    restock = await _movements(session_maker, order_id, "restock")
    assert len(restock) == 2
    for mv in restock:
        assert mv.amount == usage[mv.ingredient_id].amount
        assert mv.reversal_of_id == usage[mv.ingredient_id].id
    assert (await _order(session_maker, order_id)).cancelled_at is not None


async def test_cancel_before_deduction_touches_no_stock(session_maker, cafe, place, machine, stock):
    order_id = await place([{"menu_item_id": cafe.latte}])
    result = await machine("cancel", order_id)
    assert not result.compensation.restocked
    assert await _movements(session_maker, order_id, "restock") == []
    assert await stock(cafe.milk) == Decimal("10.000")


async def test_refund_changes_payment_only(session_maker, cafe, place, machine, stock):
    order_id = await place([{"menu_item_id": cafe.latte}], customer_id=cafe.customer)
    await machine("mark_ready", order_id)
    await machine("complete", order_id)
    milk_after_sale = await stock(cafe.milk)

    order = await machine("refund", order_id, "wrong order")

    assert order.payment_status == "refunded"
    assert order.status == "completed"
    assert await stock(cafe.milk) == milk_after_sale
    assert await _movements(session_maker, order_id, "restock") == []
    async with session_maker() as s:
        customer = await s.get(Customer, cafe.customer)
        assert customer.loyalty_points == 4

    with pytest.raises(InvalidTransitionError):
        await machine("refund", order_id)


async def test_refund_requires_paid_order(cafe, place, machine):
    order_id = await place([{"menu_item_id": cafe.latte}], confirm=False)
    with pytest.raises(InvalidTransitionError):
        await machine("refund", order_id)


async def test_completing_refunded_order_keeps_refund_and_awards_nothing(session_maker, cafe, place, machine):
    order_id = await place([{"menu_item_id": cafe.latte}], customer_id=cafe.customer)
    await machine("mark_ready", order_id)
    await machine("refund", order_id, "customer left")

    result = await machine("complete", order_id)

    assert result.to_status == "completed"
    assert result.accrual.skipped == "refunded"
    order = await _order(session_maker, order_id)
    assert order.payment_status == "refunded"
    async with session_maker() as s:
        customer = await s.get(Customer, cafe.customer)
        assert customer.loyalty_points == 0


async def test_orders_table_rejects_unknown_status(session_maker, cafe, place):
    order_id = await place([{"menu_item_id": cafe.latte}], confirm=False)
    async with session_maker() as s:
        order = await s.get(Order, order_id)
        order.status = "shipped"
        with pytest.raises(sa_exc.IntegrityError):
            await s.commit()
        await s.rollback()
    assert (await _order(session_maker, order_id)).status == "pending"


async def test_deducted_then_cancelled_then_refunded(session_maker, cafe, place, machine, stock):
    order_id = await place([{"menu_item_id": cafe.latte}])
    await machine("mark_ready", order_id)
    await machine("cancel", order_id)
    assert await stock(cafe.milk) == Decimal("10.000")

    # Payment was confirmed, so the money can still be returned.
    await machine("refund", order_id)
    assert await stock(cafe.milk) == Decimal("10.000")
    assert len(await _movements(session_maker, order_id, "restock")) == 2


async def test_confirm_payment_from_pending_records_both_hops(session_maker, cafe, place, machine):
    order_id = await place([{"menu_item_id": cafe.latte}], confirm=False)

    result = await machine("confirm_payment", order_id, reference="TXN-1")

    assert result.from_status == "pending"
    assert result.to_status == "preparing"
    order = await _order(session_maker, order_id)
    assert order.payment_status == "paid"
    assert order.payment_reference == "TXN-1"
    assert await _history(session_maker, order_id) == [
        (None, "pending"),
        ("pending", "pending_verification"),
        ("pending_verification", "preparing"),
    ]

    with pytest.raises(InvalidTransitionError):
        await machine("confirm_payment", order_id)


async def test_payment_proof_moves_to_verification(session_maker, cafe, place, machine):
    order_id = await place([{"menu_item_id": cafe.latte}], confirm=False)
    await machine("submit_payment_proof", order_id, reference="GCASH-42")

    order = await _order(session_maker, order_id)
    assert order.status == "pending_verification"
    assert order.payment_status == "unpaid"
    assert order.payment_reference == "GCASH-42"


async def test_events_are_published_after_commit(cafe, place, machine, events):
    _, received = events
    order_id = await place([{"menu_item_id": cafe.carafe, "quantity": 8}], customer_id=cafe.customer)

    await machine("mark_ready", order_id)
    names = [name for name, _ in received]
    assert names.count(INVENTORY_CHANGED) == 1
    assert INVENTORY_LOW_STOCK in names
    assert names[-1] == ORDER_UPDATED

    received.clear()
    await machine("complete", order_id)
    assert [name for name, _ in received] == [LOYALTY_UPDATED, ORDER_UPDATED]
