"""
MovementLedger: append-only access to inventory_movements.

Rows are never updated or deleted. `append` checks that a row's before/after
snapshot agrees with its kind and amount, so the ledger can always be replayed
back to Ingredient.quantity (see `reconcile`).
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import exc as sa_exc
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import IntegrityError
from db.ingredient import Ingredient
from db.inventory.movement import MOVEMENT_KINDS, InventoryMovement

logger = logging.getLogger(__name__)


def _expected_after(kind: str, before: Decimal, amount: Decimal, after: Decimal) -> Optional[Decimal]:
    if kind == "usage":
        return before - amount
    if kind == "restock":
        return before + amount
    if kind == "status_note":
        return before
    # manual_adjustment: amount is the magnitude of whichever direction was taken
    if after >= before:
        return before + amount
    return before - amount


@dataclass
class ReconciliationIssue:
    ingredient_id: UUID
    ingredient_name: str
    problem: str
    movement_id: Optional[int] = None
    expected: Optional[Decimal] = None
    actual: Optional[Decimal] = None

    def to_dict(self) -> dict:
        return {
            "ingredient_id": self.ingredient_id,
            "ingredient_name": self.ingredient_name,
            "movement_id": self.movement_id,
            "problem": self.problem,
            "expected": float(self.expected) if self.expected is not None else None,
            "actual": float(self.actual) if self.actual is not None else None,
        }


@dataclass
class ReconciliationResult:
    ingredients_checked: int = 0
    movements_checked: int = 0
    issues: List[ReconciliationIssue] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.issues

    def to_dict(self) -> dict:
        return {
            "ingredients_checked": self.ingredients_checked,
            "movements_checked": self.movements_checked,
            "is_consistent": self.is_consistent,
            "issues": [i.to_dict() for i in self.issues],
        }


class MovementLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(
        self,
        *,
        ingredient_id: UUID,
        kind: str,
        amount: Decimal,
        quantity_before: Decimal,
        quantity_after: Decimal,
        order_id: Optional[UUID] = None,
        reversal_of_id: Optional[int] = None,
        notes: Optional[str] = None,
        created_by_user_id: Optional[UUID] = None,
    ) -> InventoryMovement:
        amount = Decimal(amount)
        quantity_before = Decimal(quantity_before)
        quantity_after = Decimal(quantity_after)

        if kind not in MOVEMENT_KINDS:
            raise IntegrityError(f"Unknown movement kind '{kind}'")
        if amount < 0:
            raise IntegrityError(f"Movement amount must be a magnitude, got {amount}")
        if quantity_after < 0:
            raise IntegrityError(f"Movement would leave ingredient {ingredient_id} at {quantity_after}")
        if _expected_after(kind, quantity_before, amount, quantity_after) != quantity_after:
            raise IntegrityError(
                f"{kind} of {amount} does not take {quantity_before} to {quantity_after}"
            )

        row = InventoryMovement(
            ingredient_id=ingredient_id,
            kind=kind,
            amount=amount,
            quantity_before=quantity_before,
            quantity_after=quantity_after,
            order_id=order_id,
            reversal_of_id=reversal_of_id,
            notes=notes,
            created_by_user_id=created_by_user_id,
        )
        self.db.add(row)
        try:
            await self.db.flush()
        except sa_exc.IntegrityError as e:
            logger.error(
                "Ledger rejected %s row for ingredient=%s order=%s",
                kind, ingredient_id, order_id, exc_info=True,
            )
            raise IntegrityError(
                f"Duplicate or invalid {kind} movement for ingredient {ingredient_id} (order {order_id})"
            ) from e
        return row

    async def for_order(
        self,
        order_id: UUID,
        *,
        kind: Optional[str] = None,
        ingredient_id: Optional[UUID] = None,
    ) -> List[InventoryMovement]:
        stmt = select(InventoryMovement).where(InventoryMovement.order_id == order_id)
        if kind:
            stmt = stmt.where(InventoryMovement.kind == kind)
        if ingredient_id:
            stmt = stmt.where(InventoryMovement.ingredient_id == ingredient_id)
        res = await self.db.execute(stmt.order_by(InventoryMovement.id))
        return list(res.scalars().all())

    async def list(
        self,
        *,
        ingredient_id: Optional[UUID] = None,
        order_id: Optional[UUID] = None,
        kind: Optional[str] = None,
        limit: int = 200,
    ) -> List[InventoryMovement]:
        stmt = select(InventoryMovement)
        if ingredient_id:
            stmt = stmt.where(InventoryMovement.ingredient_id == ingredient_id)
        if order_id:
            stmt = stmt.where(InventoryMovement.order_id == order_id)
        if kind:
            stmt = stmt.where(InventoryMovement.kind == kind)
        res = await self.db.execute(stmt.order_by(InventoryMovement.id.desc()).limit(limit))
        return list(res.scalars().all())

    async def reconcile(self) -> ReconciliationResult:
        """Replay every ingredient's movements and compare with its current quantity.

        Ingredients without movements are taken as their own baseline.
        """
        ing_res = await self.db.execute(select(Ingredient).order_by(Ingredient.name))
        ingredients = list(ing_res.scalars().all())

        mv_res = await self.db.execute(select(InventoryMovement).order_by(InventoryMovement.id))
        by_ingredient: Dict[UUID, List[InventoryMovement]] = {}
        for mv in mv_res.scalars().all():
            by_ingredient.setdefault(mv.ingredient_id, []).append(mv)

        result = ReconciliationResult()
        for ing in ingredients:
            result.ingredients_checked += 1
            movements = by_ingredient.get(ing.id, [])
            if not movements:
                continue

            running: Optional[Decimal] = None
            for mv in movements:
                result.movements_checked += 1
                if running is not None and mv.quantity_before != running:
                    result.issues.append(
                        ReconciliationIssue(
                            ingredient_id=ing.id,
                            ingredient_name=ing.name,
                            movement_id=mv.id,
                            problem="chain_break",
                            expected=running,
                            actual=mv.quantity_before,
                        )
                    )
                expected_after = _expected_after(mv.kind, mv.quantity_before, mv.amount, mv.quantity_after)
                if expected_after != mv.quantity_after:
                    result.issues.append(
                        ReconciliationIssue(
                            ingredient_id=ing.id,
                            ingredient_name=ing.name,
                            movement_id=mv.id,
                            problem="amount_mismatch",
                            expected=expected_after,
                            actual=mv.quantity_after,
                        )
                    )
                running = mv.quantity_after

            if running != ing.quantity:
                result.issues.append(
                    ReconciliationIssue(
                        ingredient_id=ing.id,
                        ingredient_name=ing.name,
                        problem="quantity_drift",
                        expected=running,
                        actual=ing.quantity,
                    )
                )

        if result.issues:
            logger.error("Inventory ledger has %d inconsistencies", len(result.issues))
        return result
