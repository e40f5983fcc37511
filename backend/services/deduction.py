"""
DeductionEngine: consumes an order's ingredients exactly once, and gives them
back exactly once if the order is cancelled afterwards.

Neither method commits. Both run inside the caller's transaction and either
raise before writing anything or leave a complete set of stock writes and
ledger rows for the caller to commit.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import ConcurrencyConflict, InsufficientStockError, Shortfall
from db.ingredient import Ingredient
from db.inventory.movement import InventoryMovement
from db.order import Order
from services.fulfillment import resolve_demand
from services.ledger import MovementLedger
from services.orders import OrderRepository
from services.stock_store import StockStore

logger = logging.getLogger(__name__)

# Statuses in which an order may still have its stock consumed.
DEDUCTIBLE_STATUSES = ("preparing", "ready")

APPLIED = "applied"
ALREADY_APPLIED = "already_applied"


@dataclass
class DeductionResult:
    order_id: UUID
    status: str
    movements: List[InventoryMovement] = field(default_factory=list)
    low_stock: List[Ingredient] = field(default_factory=list)

    @property
    def applied(self) -> bool:
        return self.status == APPLIED


@dataclass
class CompensationResult:
    order_id: UUID
    movements: List[InventoryMovement] = field(default_factory=list)

    @property
    def restocked(self) -> bool:
        return bool(self.movements)


class DeductionEngine:
    def __init__(self, db: AsyncSession, *, user_id: Optional[UUID] = None):
        self.db = db
        self.user_id = user_id
        self.ledger = MovementLedger(db)
        self.stock = StockStore(db, self.ledger)
        self.orders = OrderRepository(db)

    async def deduct(self, order_id: UUID, *, order: Optional[Order] = None) -> DeductionResult:
        # Order row lock first: it serialises every deduction of the same order,
        # so the ledger check below cannot race with another deduct().
        if order is None:
            order = await self.orders.get(order_id, lock=True)

        existing = await self.ledger.for_order(order_id, kind="usage")
        if existing:
            logger.info("Order %s already deducted (%d usage rows)", order_id, len(existing))
            return DeductionResult(order_id=order_id, status=ALREADY_APPLIED, movements=existing)

        demand = await resolve_demand(self.db, order.items)

        if order.status not in DEDUCTIBLE_STATUSES:
            raise ConcurrencyConflict(f"Order {order_id} is '{order.status}', stock will not be deducted")

        locked = await self.stock.lock(demand.keys())

        plan: Dict[UUID, Decimal] = {}
        shortfalls: List[Shortfall] = []
        for ingredient_id in sorted(demand):
            ing = locked[ingredient_id]
            new_quantity = ing.quantity - demand[ingredient_id]
            if new_quantity < 0:
                shortfalls.append(
                    Shortfall(
                        ingredient_id=ing.id,
                        ingredient_name=ing.name,
                        required=demand[ingredient_id],
                        available=ing.quantity,
                        unit=ing.unit,
                    )
                )
            plan[ingredient_id] = new_quantity

        if shortfalls:
            logger.warning("Order %s cannot be deducted: %s", order_id, shortfalls)
            raise InsufficientStockError(shortfalls, order_id=order_id)

        result = DeductionResult(order_id=order_id, status=APPLIED)
        for ingredient_id, new_quantity in plan.items():
            ing = locked[ingredient_id]
            before = ing.quantity
            self.stock.write(ing, new_quantity)
            result.movements.append(
                await self.ledger.append(
                    ingredient_id=ingredient_id,
                    kind="usage",
                    amount=demand[ingredient_id],
                    quantity_before=before,
                    quantity_after=ing.quantity,
                    order_id=order_id,
                    notes=f"Used for order {order_id}",
                    created_by_user_id=self.user_id,
                )
            )
            if ing.is_low_stock:
                result.low_stock.append(ing)

        logger.info("Deducted %d ingredients for order %s", len(result.movements), order_id)
        return result

    async def compensate(self, order_id: UUID) -> CompensationResult:
        """Return previously deducted stock for a cancelled order.

        Amounts come from the usage rows themselves, never from the current
        recipe. Usage rows that already have a restock are skipped.
        """
        usages = await self.ledger.for_order(order_id, kind="usage")
        result = CompensationResult(order_id=order_id)
        if not usages:
            return result

        restocked = {mv.ingredient_id for mv in await self.ledger.for_order(order_id, kind="restock")}
        pending = [mv for mv in usages if mv.ingredient_id not in restocked]
        if not pending:
            logger.info("Order %s already restocked", order_id)
            return result

        locked = await self.stock.lock(mv.ingredient_id for mv in pending)
        for usage in sorted(pending, key=lambda mv: mv.ingredient_id):
            ing = locked[usage.ingredient_id]
            before = ing.quantity
            self.stock.write(ing, before + usage.amount)
            result.movements.append(
                await self.ledger.append(
                    ingredient_id=ing.id,
                    kind="restock",
                    amount=usage.amount,
                    quantity_before=before,
                    quantity_after=ing.quantity,
                    order_id=order_id,
                    reversal_of_id=usage.id,
                    notes=f"Restocked after cancellation of order {order_id}",
                    created_by_user_id=self.user_id,
                )
            )

        logger.info("Restocked %d ingredients for cancelled order %s", len(result.movements), order_id)
        return result
