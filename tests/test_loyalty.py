from decimal import Decimal

import pytest
from sqlalchemy import select

from core.errors import NotFoundError, ValidationError
from db.database import Customer, LoyaltyTransaction, Order
from services.loyalty import LoyaltyAccrual, points_for
from services.settings import SettingsProvider


async def _balance(session_maker, customer_id) -> int:
    async with session_maker() as s:
        return (await s.get(Customer, customer_id)).loyalty_points


async def _earn_rows(session_maker, order_id):
    async with session_maker() as s:
        res = await s.execute(
            select(LoyaltyTransaction)
            .where(LoyaltyTransaction.order_id == order_id)
            .where(LoyaltyTransaction.kind == "earn")
        )
        return list(res.scalars().all())


def test_points_are_floored():
    assert points_for(Decimal("9.99"), Decimal("1")) == 9
    assert points_for(Decimal("14.00"), Decimal("0.5")) == 7
    assert points_for(Decimal("0.99"), Decimal("1")) == 0


async def test_completion_credits_points_once(session_maker, cafe, place, machine):
    order_id = await place([{"menu_item_id": cafe.latte, "quantity": 2}], customer_id=cafe.customer)
    await machine("complete", order_id)
    assert await _balance(session_maker, cafe.customer) == 9

    async with session_maker() as s:
        order = await s.get(Order, order_id)
        again = await LoyaltyAccrual(s).accrue(order)
        await s.commit()

    assert again.skipped == "already_awarded"
    assert not again.awarded
    assert await _balance(session_maker, cafe.customer) == 9
    earned = await _earn_rows(session_maker, order_id)
    assert len(earned) == 1
    assert earned[0].balance_after == 9


async def test_guest_orders_earn_nothing(session_maker, cafe, place, machine):
    order_id = await place([{"menu_item_id": cafe.latte}])
    result = await machine("complete", order_id)
    assert result.accrual.skipped == "guest_order"
    assert await _earn_rows(session_maker, order_id) == []


async def test_disabled_program_earns_nothing(session_maker, cafe, place, machine):
    async with session_maker() as s:
        await SettingsProvider(s).update(enabled=False)
        await s.commit()
    order_id = await place([{"menu_item_id": cafe.latte}], customer_id=cafe.customer)

    result = await machine("complete", order_id)

    assert result.accrual.skipped == "disabled"
    assert await _balance(session_maker, cafe.customer) == 0


async def test_rate_comes_from_settings_table(session_maker, cafe, place, machine):
    async with session_maker() as s:
        conf = await SettingsProvider(s).update(points_per_unit=Decimal("2"))
        await s.commit()
    assert conf.points_per_unit == Decimal("2")

    order_id = await place([{"menu_item_id": cafe.latte}], customer_id=cafe.customer)
    await machine("complete", order_id)
    assert await _balance(session_maker, cafe.customer) == 9


async def test_redeem_and_refund_redemption(session_maker, cafe):
    async with session_maker() as s:
        await LoyaltyAccrual(s).adjust(cafe.customer, 20, "Welcome bonus")
        await s.commit()

    async with session_maker() as s:
        redemption = await LoyaltyAccrual(s).redeem(cafe.customer, 8, "Free cookie")
        await s.commit()
    assert redemption.points_delta == -8
    assert redemption.balance_after == 12

    async with session_maker() as s:
        refund = await LoyaltyAccrual(s).refund_redemption(redemption.id)
        await s.commit()
    assert refund.points_delta == 8
    assert refund.reversal_of_id == redemption.id
    assert await _balance(session_maker, cafe.customer) == 20

    async with session_maker() as s:
        with pytest.raises(ValidationError):
            await LoyaltyAccrual(s).refund_redemption(redemption.id)
    assert await _balance(session_maker, cafe.customer) == 20


async def test_redeem_below_minimum_is_rejected(session_maker, cafe):
    async with session_maker() as s:
        await LoyaltyAccrual(s).adjust(cafe.customer, 20, "Welcome bonus")
        await s.commit()
    async with session_maker() as s:
        with pytest.raises(ValidationError):
            await LoyaltyAccrual(s).redeem(cafe.customer, 4)


async def test_redeem_more_than_balance_is_rejected(session_maker, cafe):
    async with session_maker() as s:
        with pytest.raises(ValidationError):
            await LoyaltyAccrual(s).redeem(cafe.customer, 10)
    assert await _balance(session_maker, cafe.customer) == 0


async def test_adjustment_cannot_go_negative(session_maker, cafe):
    async with session_maker() as s:
        with pytest.raises(ValidationError):
            await LoyaltyAccrual(s).adjust(cafe.customer, -1, "Correction")


async def test_refund_of_non_redemption_is_rejected(session_maker, cafe):
    async with session_maker() as s:
        bonus = await LoyaltyAccrual(s).adjust(cafe.customer, 10, "Bonus")
        await s.commit()
    async with session_maker() as s:
        with pytest.raises(ValidationError):
            await LoyaltyAccrual(s).refund_redemption(bonus.id)


async def test_unknown_customer(session_maker, cafe):
    async with session_maker() as s:
        with pytest.raises(NotFoundError):
            await LoyaltyAccrual(s).balance(cafe.milk)


async def test_history_is_newest_first(session_maker, cafe):
    async with session_maker() as s:
        loyalty = LoyaltyAccrual(s)
        await loyalty.adjust(cafe.customer, 10, "First")
        await loyalty.adjust(cafe.customer, 5, "Second")
        await s.commit()
        rows = await loyalty.history(cafe.customer)
    assert [r.description for r in rows] == ["Second", "First"]
    assert [r.balance_after for r in rows] == [15, 10]
