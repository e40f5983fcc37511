import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from core.errors import ConcurrencyConflict, InsufficientStockError
from db.database import InventoryMovement, Order
from services.deduction import ALREADY_APPLIED, APPLIED, DeductionEngine
from services.stock_store import StockStore


async def _usage_rows(session_maker, order_id):
    async with session_maker() as s:
        res = await s.execute(
            select(InventoryMovement)
            .where(InventoryMovement.order_id == order_id)
            .where(InventoryMovement.kind == "usage")
        )
        return list(res.scalars().all())


async def test_two_lattes_deduct_aggregated_milk_once(session_maker, cafe, place, stock):
    order_id = await place([{"menu_item_id": cafe.latte}, {"menu_item_id": cafe.latte}])

    async with session_maker() as s:
        result = await DeductionEngine(s).deduct(order_id)
        await s.commit()
    assert result.status == APPLIED

    assert await stock(cafe.milk) == Decimal("9.600")
    rows = [mv for mv in await _usage_rows(session_maker, order_id) if mv.ingredient_id == cafe.milk]
    assert len(rows) == 1
    assert rows[0].amount == Decimal("0.400")
    assert rows[0].quantity_before == Decimal("10.000")
    assert rows[0].quantity_after == Decimal("9.600")


async def test_deduct_is_idempotent(session_maker, cafe, place, stock):
    order_id = await place([{"menu_item_id": cafe.latte, "quantity": 2}])

    async with session_maker() as s:
        await DeductionEngine(s).deduct(order_id)
        await s.commit()
    async with session_maker() as s:
        again = await DeductionEngine(s).deduct(order_id)
        await s.commit()

    assert again.status == ALREADY_APPLIED
    assert await stock(cafe.milk) == Decimal("9.600")
    assert await stock(cafe.espresso) == Decimal("0.964")
    assert len(await _usage_rows(session_maker, order_id)) == 2


async def test_deduct_is_all_or_nothing(session_maker, cafe, place, stock):
    order_id = await place([{"menu_item_id": cafe.mocha}])
    async with session_maker() as s:
        await StockStore(s).adjust_to(cafe.chocolate, Decimal("0.010"), notes="Spilled")
        await s.commit()

    async with session_maker() as s:
        with pytest.raises(InsufficientStockError) as exc:
            await DeductionEngine(s).deduct(order_id)
        await s.rollback()

    assert [sf.ingredient_id for sf in exc.value.shortfalls] == [cafe.chocolate]
    assert await stock(cafe.milk) == Decimal("10.000")
    assert await stock(cafe.espresso) == Decimal("1.000")
    assert await _usage_rows(session_maker, order_id) == []


async def test_deduct_aborts_for_cancelled_order(session_maker, cafe, place, machine, stock):
    order_id = await place([{"menu_item_id": cafe.latte}])
    await machine("cancel", order_id)

    async with session_maker() as s:
        with pytest.raises(ConcurrencyConflict):
            await DeductionEngine(s).deduct(order_id)
        await s.rollback()
    assert await stock(cafe.milk) == Decimal("10.000")


async def test_deduct_aborts_for_order_not_yet_paid(session_maker, cafe, place):
    order_id = await place([{"menu_item_id": cafe.latte}], confirm=False)
    async with session_maker() as s:
        with pytest.raises(ConcurrencyConflict):
            await DeductionEngine(s).deduct(order_id)
        await s.rollback()


async def test_compensate_returns_exact_usage_once(session_maker, cafe, place, stock):
    order_id = await place([{"menu_item_id": cafe.latte, "quantity": 2}])
    async with session_maker() as s:
        await DeductionEngine(s).deduct(order_id)
        await s.commit()

    async with session_maker() as s:
        first = await DeductionEngine(s).compensate(order_id)
        await s.commit()
    async with session_maker() as s:
        second = await DeductionEngine(s).compensate(order_id)
        await s.commit()

    assert len(first.movements) == 2
    assert all(mv.reversal_of_id is not None for mv in first.movements)
    assert not second.restocked
    assert await stock(cafe.milk) == Decimal("10.000")
    assert await stock(cafe.espresso) == Decimal("1.000")


async def test_compensate_without_usage_is_a_noop(session_maker, cafe, place):
    order_id = await place([{"menu_item_id": cafe.latte}])
    async with session_maker() as s:
        result = await DeductionEngine(s).compensate(order_id)
        await s.commit()
    assert result.movements == []


async def test_concurrent_orders_never_oversell(session_maker, cafe, place, machine, stock):
    # Milk 10 l: A needs 3 l, B needs 8 l. Only one of them can reach `ready`.
    order_a = await place([{"menu_item_id": cafe.carafe, "quantity": 3}])
    order_b = await place([{"menu_item_id": cafe.carafe, "quantity": 8}])

    results = await asyncio.gather(
        machine("mark_ready", order_a),
        machine("mark_ready", order_b),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    successes = [r for r in results if not isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], InsufficientStockError)

    winner = successes[0].order.id
    loser = order_b if winner == order_a else order_a
    used = Decimal("3.000") if winner == order_a else Decimal("8.000")
    assert await stock(cafe.milk) == Decimal("10.000") - used

    async with session_maker() as s:
        statuses = dict((await s.execute(select(Order.id, Order.status))).all())
        loser_usage = await s.scalar(
            select(func.count()).select_from(InventoryMovement).where(InventoryMovement.order_id == loser)
        )
    assert statuses[winner] == "ready"
    assert statuses[loser] == "preparing"
    assert loser_usage == 0
