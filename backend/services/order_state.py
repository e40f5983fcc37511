"""
OrderStateMachine: the single owner of order status and payment status.

    pending -> pending_verification -> preparing -> ready -> completed
    any non-terminal state -> cancelled

Side effects are bound to the state being entered:
    ready      DeductionEngine.deduct (transition fails if stock is short)
    completed  LoyaltyAccrual.accrue, payment_status forced to paid
    cancelled  DeductionEngine.compensate (restock from the ledger)

Every public method runs in one transaction: lock the order row, compare-and-set
the status, run the side effect, commit. Notifications are published only after
the commit succeeds.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional
from uuid import UUID

from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import ConcurrencyConflict, InvalidTransitionError, is_transient_db_error
from core.events import (
    INVENTORY_CHANGED,
    INVENTORY_LOW_STOCK,
    LOYALTY_UPDATED,
    ORDER_UPDATED,
    EventEmitter,
    PendingEvents,
    emitter as default_emitter,
)
from db.database import utcnow
from db.order import Order
from services.deduction import CompensationResult, DeductionEngine, DeductionResult
from services.loyalty import AccrualResult, LoyaltyAccrual
from services.orders import OrderRepository

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"pending_verification", "cancelled"}),
    "pending_verification": frozenset({"preparing", "cancelled"}),
    "preparing": frozenset({"ready", "completed", "cancelled"}),
    "ready": frozenset({"completed", "cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, frozenset())


@dataclass
class TransitionResult:
    order: Order
    from_status: str
    to_status: str
    deduction: Optional[DeductionResult] = None
    compensation: Optional[CompensationResult] = None
    accrual: Optional[AccrualResult] = None
    path: List[str] = field(default_factory=list)


class OrderStateMachine:
    def __init__(
        self,
        db: AsyncSession,
        *,
        emitter: Optional[EventEmitter] = None,
        user_id: Optional[UUID] = None,
    ):
        self.db = db
        self.emitter = emitter or default_emitter
        self.user_id = user_id
        self.orders = OrderRepository(db)
        self.deductions = DeductionEngine(db, user_id=user_id)
        self.loyalty = LoyaltyAccrual(db, user_id=user_id)
        self._events = PendingEvents()

    # -- public operations ---------------------------------------------------

    async def transition(self, order_id: UUID, new_status: str, *, notes: Optional[str] = None) -> TransitionResult:
        async def run() -> TransitionResult:
            order = await self.orders.get(order_id, lock=True)
            return await self._move(order, new_status, notes=notes)

        return await self._in_transaction(run)

    async def submit_payment_proof(
        self, order_id: UUID, reference: Optional[str] = None, notes: Optional[str] = None
    ) -> TransitionResult:
        async def run() -> TransitionResult:
            order = await self.orders.get(order_id, lock=True)
            extra = {"payment_reference": reference} if reference else {}
            return await self._move(order, "pending_verification", notes=notes or "Payment proof submitted", extra=extra)

        return await self._in_transaction(run)

    async def confirm_payment(
        self, order_id: UUID, reference: Optional[str] = None, notes: Optional[str] = None
    ) -> TransitionResult:
        """Payment verified by an admin or a payment webhook: the order starts preparing."""

        async def run() -> TransitionResult:
            order = await self.orders.get(order_id, lock=True)
            if order.status not in ("pending", "pending_verification"):
                raise InvalidTransitionError(order.id, order.status, "preparing")
            extra = {"payment_status": "paid"}
            if reference:
                extra["payment_reference"] = reference
            if order.status == "pending":
                first = await self._move(order, "pending_verification", notes=notes or "Payment received")
                second = await self._move(order, "preparing", notes=notes or "Payment verified", extra=extra)
                second.from_status = first.from_status
                second.path = first.path + second.path
                return second
            return await self._move(order, "preparing", notes=notes or "Payment verified", extra=extra)

        return await self._in_transaction(run)

    async def mark_ready(self, order_id: UUID, notes: Optional[str] = None) -> TransitionResult:
        return await self.transition(order_id, "ready", notes=notes)

    async def complete(self, order_id: UUID, notes: Optional[str] = None) -> TransitionResult:
        return await self.transition(order_id, "completed", notes=notes)

    async def cancel(self, order_id: UUID, reason: Optional[str] = None) -> TransitionResult:
        return await self.transition(order_id, "cancelled", notes=reason)

    async def refund(self, order_id: UUID, reason: Optional[str] = None) -> Order:
        """Mark a paid order as refunded. Status is unchanged and stock is NOT returned."""

        async def run() -> Order:
            order = await self.orders.get(order_id, lock=True)
            if order.payment_status != "paid":
                raise InvalidTransitionError(order.id, f"payment {order.payment_status}", "payment refunded")
            ok = await self.orders.compare_and_set(
                order.id,
                expected={"payment_status": "paid"},
                values={"payment_status": "refunded"},
            )
            if not ok:
                raise ConcurrencyConflict(f"Order {order.id} payment status changed concurrently")
            await self.orders.add_history(
                order,
                from_status=order.status,
                to_status=order.status,
                notes=reason or "Refunded",
                user_id=self.user_id,
            )
            self._events.add(
                ORDER_UPDATED,
                {"order_id": order.id, "status": order.status, "payment_status": "refunded"},
            )
            logger.info("Order %s refunded, no stock returned", order.id)
            return order

        return await self._in_transaction(run)

    # -- internals -----------------------------------------------------------

    async def _in_transaction(self, fn):
        self._events.clear()
        try:
            result = await fn()
            await self.db.commit()
        except sa_exc.DBAPIError as e:
            await self.db.rollback()
            self._events.clear()
            if is_transient_db_error(e):
                raise ConcurrencyConflict("Order was changed by another request, retry") from e
            raise
        except Exception:
            await self.db.rollback()
            self._events.clear()
            raise
        await self._events.publish(self.emitter)
        return result

    async def _move(
        self,
        order: Order,
        new_status: str,
        *,
        notes: Optional[str] = None,
        extra: Optional[dict] = None,
    ) -> TransitionResult:
        current = order.status
        if not can_transition(current, new_status):
            logger.warning("Rejected transition of order %s: %s -> %s", order.id, current, new_status)
            raise InvalidTransitionError(order.id, current, new_status)

        # Completing straight from preparing still has to consume stock.
        if current == "preparing" and new_status == "completed":
            ready = await self._step(order, "ready", notes=notes)
            done = await self._step(order, "completed", notes=notes, extra=extra)
            done.from_status = current
            done.deduction = ready.deduction
            done.path = ready.path + done.path
            return done
        return await self._step(order, new_status, notes=notes, extra=extra)

    async def _step(
        self,
        order: Order,
        new_status: str,
        *,
        notes: Optional[str] = None,
        extra: Optional[dict] = None,
    ) -> TransitionResult:
        prior = order.status
        values = {"status": new_status, **(extra or {})}
        if new_status == "completed":
            if order.payment_status == "unpaid":
                values.setdefault("payment_status", "paid")
            values["completed_at"] = utcnow()
        elif new_status == "cancelled":
            values["cancelled_at"] = utcnow()

        ok = await self.orders.compare_and_set(order.id, expected={"status": prior}, values=values)
        if not ok:
            raise ConcurrencyConflict(f"Order {order.id} is no longer '{prior}'")

        result = TransitionResult(order=order, from_status=prior, to_status=new_status, path=[prior, new_status])

        if new_status == "ready":
            result.deduction = await self.deductions.deduct(order.id, order=order)
            if result.deduction.applied:
                self._inventory_events(order.id, result.deduction.movements, "usage")
                for ing in result.deduction.low_stock:
                    self._events.add(
                        INVENTORY_LOW_STOCK,
                        {
                            "ingredient_id": ing.id,
                            "name": ing.name,
                            "quantity": float(ing.quantity),
                            "reorder_level": float(ing.reorder_level or 0),
                            "unit": ing.unit,
                        },
                    )
        elif new_status == "completed":
            result.accrual = await self.loyalty.accrue(order)
            if result.accrual.awarded:
                self._events.add(
                    LOYALTY_UPDATED,
                    {
                        "customer_id": order.customer_id,
                        "order_id": order.id,
                        "points": result.accrual.points,
                        "balance": result.accrual.transaction.balance_after,
                    },
                )
        elif new_status == "cancelled":
            result.compensation = await self.deductions.compensate(order.id)
            if result.compensation.restocked:
                self._inventory_events(order.id, result.compensation.movements, "restock")

        await self.orders.add_history(
            order, from_status=prior, to_status=new_status, notes=notes, user_id=self.user_id
        )
        self._events.add(
            ORDER_UPDATED,
            {
                "order_id": order.id,
                "from_status": prior,
                "status": new_status,
                "payment_status": order.payment_status,
            },
        )
        logger.info("Order %s: %s -> %s", order.id, prior, new_status)
        return result

    def _inventory_events(self, order_id: UUID, movements, kind: str) -> None:
        for mv in movements:
            self._events.add(
                INVENTORY_CHANGED,
                {
                    "ingredient_id": mv.ingredient_id,
                    "kind": kind,
                    "previous": float(mv.quantity_before),
                    "new": float(mv.quantity_after),
                    "delta": float(mv.quantity_after - mv.quantity_before),
                    "order_id": order_id,
                },
            )
