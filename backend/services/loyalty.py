"""
LoyaltyAccrual: points earned on completed orders, plus redemptions and admin
adjustments.

Customer.loyalty_points and loyalty_transactions are always written together in
the caller's transaction; every transaction row stores the balance it produced.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import exc as sa_exc
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import IntegrityError, NotFoundError, ValidationError
from db.customer import Customer
from db.loyalty import LoyaltyTransaction
from db.order import Order
from services.settings import SettingsProvider

logger = logging.getLogger(__name__)


@dataclass
class AccrualResult:
    order_id: UUID
    points: int = 0
    transaction: Optional[LoyaltyTransaction] = None
    skipped: Optional[str] = None  # already_awarded | guest_order | refunded | disabled | no_points

    @property
    def awarded(self) -> bool:
        return self.transaction is not None


def points_for(total: Decimal, rate: Decimal) -> int:
    return int((Decimal(total) * Decimal(rate)).to_integral_value(rounding=ROUND_FLOOR))


class LoyaltyAccrual:
    def __init__(
        self,
        db: AsyncSession,
        *,
        settings_provider: Optional[SettingsProvider] = None,
        user_id: Optional[UUID] = None,
    ):
        self.db = db
        self.settings = settings_provider or SettingsProvider(db)
        self.user_id = user_id

    async def _lock_customer(self, customer_id: UUID) -> Customer:
        res = await self.db.execute(
            select(Customer)
            .where(Customer.id == customer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        customer = res.scalar_one_or_none()
        if not customer:
            raise NotFoundError(f"Customer {customer_id} not found")
        return customer

    async def _append(
        self,
        customer: Customer,
        *,
        kind: str,
        points_delta: int,
        order_id: Optional[UUID] = None,
        reversal_of_id: Optional[int] = None,
        description: Optional[str] = None,
    ) -> LoyaltyTransaction:
        new_balance = int(customer.loyalty_points or 0) + points_delta
        if new_balance < 0:
            raise ValidationError(
                f"Customer {customer.id} has {customer.loyalty_points} points, cannot apply {points_delta}"
            )
        customer.loyalty_points = new_balance
        row = LoyaltyTransaction(
            customer_id=customer.id,
            order_id=order_id,
            kind=kind,
            points_delta=points_delta,
            balance_after=new_balance,
            reversal_of_id=reversal_of_id,
            description=description,
            created_by_user_id=self.user_id,
        )
        self.db.add(row)
        try:
            await self.db.flush()
        except sa_exc.IntegrityError as e:
            logger.error("Loyalty ledger rejected %s for customer %s", kind, customer.id, exc_info=True)
            raise IntegrityError(f"Duplicate {kind} loyalty entry (order {order_id})") from e
        return row

    async def _earn_entry(self, order_id: UUID) -> Optional[LoyaltyTransaction]:
        res = await self.db.execute(
            select(LoyaltyTransaction)
            .where(LoyaltyTransaction.order_id == order_id)
            .where(LoyaltyTransaction.kind == "earn")
        )
        return res.scalar_one_or_none()

    async def accrue(self, order: Order) -> AccrualResult:
        """Credit points for a completed order, at most once per order."""
        existing = await self._earn_entry(order.id)
        if existing is not None:
            return AccrualResult(order_id=order.id, points=existing.points_delta, skipped="already_awarded")
        if order.customer_id is None:
            return AccrualResult(order_id=order.id, skipped="guest_order")
        if order.payment_status == "refunded":
            return AccrualResult(order_id=order.id, skipped="refunded")

        conf = await self.settings.loyalty()
        if not conf.enabled:
            return AccrualResult(order_id=order.id, skipped="disabled")

        points = points_for(order.total_amount or 0, conf.points_per_unit)
        if points <= 0:
            return AccrualResult(order_id=order.id, skipped="no_points")

        customer = await self._lock_customer(order.customer_id)
        row = await self._append(
            customer,
            kind="earn",
            points_delta=points,
            order_id=order.id,
            description=f"Earned {points} points from order {order.id} ({order.total_amount})",
        )
        logger.info("Awarded %d points to customer %s for order %s", points, customer.id, order.id)
        return AccrualResult(order_id=order.id, points=points, transaction=row)

    async def redeem(self, customer_id: UUID, points: int, description: Optional[str] = None) -> LoyaltyTransaction:
        if points <= 0:
            raise ValidationError("Points to redeem must be > 0")
        conf = await self.settings.loyalty()
        if not conf.enabled:
            raise ValidationError("Loyalty program is disabled")
        if points < conf.minimum_redemption:
            raise ValidationError(f"At least {conf.minimum_redemption} points are needed to redeem")
        customer = await self._lock_customer(customer_id)
        return await self._append(
            customer,
            kind="redeem",
            points_delta=-points,
            description=description or f"Redeemed {points} points",
        )

    async def refund_redemption(self, transaction_id: int, description: Optional[str] = None) -> LoyaltyTransaction:
        redemption = await self.db.get(LoyaltyTransaction, transaction_id)
        if redemption is None:
            raise NotFoundError(f"Loyalty transaction {transaction_id} not found")
        if redemption.kind != "redeem":
            raise ValidationError(f"Loyalty transaction {transaction_id} is not a redemption")

        res = await self.db.execute(
            select(LoyaltyTransaction.id).where(LoyaltyTransaction.reversal_of_id == transaction_id)
        )
        if res.first() is not None:
            raise ValidationError(f"Redemption {transaction_id} was already refunded")

        customer = await self._lock_customer(redemption.customer_id)
        return await self._append(
            customer,
            kind="refund",
            points_delta=-int(redemption.points_delta),
            reversal_of_id=redemption.id,
            description=description or f"Points refunded for redemption {redemption.id}",
        )

    async def adjust(self, customer_id: UUID, points_delta: int, description: str) -> LoyaltyTransaction:
        if points_delta == 0:
            raise ValidationError("Adjustment cannot be zero")
        customer = await self._lock_customer(customer_id)
        return await self._append(customer, kind="adjustment", points_delta=points_delta, description=description)

    async def balance(self, customer_id: UUID) -> Customer:
        customer = await self.db.get(Customer, customer_id, populate_existing=True)
        if customer is None:
            raise NotFoundError(f"Customer {customer_id} not found")
        return customer

    async def history(self, customer_id: UUID, limit: int = 100) -> List[LoyaltyTransaction]:
        res = await self.db.execute(
            select(LoyaltyTransaction)
            .where(LoyaltyTransaction.customer_id == customer_id)
            .order_by(LoyaltyTransaction.id.desc())
            .limit(limit)
        )
        return list(res.scalars().all())
