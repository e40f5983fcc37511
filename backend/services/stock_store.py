"""
StockStore: the only code path that reads-for-update or writes Ingredient.quantity.

Locks are taken with SELECT ... FOR UPDATE in ascending ingredient id order, so
two transactions locking overlapping ingredient sets cannot deadlock.
"""

import logging
from decimal import Decimal
from typing import Dict, Iterable, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import IntegrityError, NotFoundError, ValidationError
from core.units import quantize
from db.database import utcnow
from db.ingredient import Ingredient
from db.inventory.movement import InventoryMovement
from services.ledger import MovementLedger

logger = logging.getLogger(__name__)


class StockStore:
    def __init__(self, db: AsyncSession, ledger: Optional[MovementLedger] = None):
        self.db = db
        self.ledger = ledger or MovementLedger(db)

    async def get(self, ingredient_id: UUID) -> Ingredient:
        res = await self.db.execute(
            select(Ingredient)
            .where(Ingredient.id == ingredient_id)
            .execution_options(populate_existing=True)
        )
        ing = res.scalar_one_or_none()
        if not ing:
            raise NotFoundError(f"Ingredient {ingredient_id} not found")
        return ing

    async def read(self, ingredient_ids: Iterable[UUID]) -> Dict[UUID, Ingredient]:
        """Unlocked snapshot, for advisory checks and dashboards."""
        ids = sorted(set(ingredient_ids))
        if not ids:
            return {}
        res = await self.db.execute(
            select(Ingredient)
            .where(Ingredient.id.in_(ids))
            .execution_options(populate_existing=True)
        )
        return {ing.id: ing for ing in res.scalars().all()}

    async def lock(self, ingredient_ids: Iterable[UUID]) -> Dict[UUID, Ingredient]:
        ids = sorted(set(ingredient_ids))
        if not ids:
            return {}
        res = await self.db.execute(
            select(Ingredient)
            .where(Ingredient.id.in_(ids))
            .order_by(Ingredient.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        locked = {ing.id: ing for ing in res.scalars().all()}
        missing = [str(i) for i in ids if i not in locked]
        if missing:
            raise NotFoundError(f"Ingredients not found: {', '.join(missing)}")
        return locked

    def write(self, ingredient: Ingredient, new_quantity: Decimal) -> None:
        """Set the new quantity on a row this transaction has locked."""
        new_quantity = quantize(new_quantity)
        if new_quantity < 0:
            logger.error("Refusing to write negative stock %s for %s", new_quantity, ingredient.name)
            raise IntegrityError(f"Ingredient {ingredient.name} would go negative ({new_quantity})")
        ingredient.quantity = new_quantity
        ingredient.updated_at = utcnow()

    async def restock(
        self,
        ingredient_id: UUID,
        amount: Decimal,
        *,
        order_id: Optional[UUID] = None,
        reversal_of_id: Optional[int] = None,
        notes: Optional[str] = None,
        user_id: Optional[UUID] = None,
    ) -> InventoryMovement:
        amount = quantize(Decimal(str(amount)))
        if amount <= 0:
            raise ValidationError("Restock amount must be > 0")
        ing = (await self.lock([ingredient_id]))[ingredient_id]
        before = ing.quantity
        self.write(ing, before + amount)
        return await self.ledger.append(
            ingredient_id=ing.id,
            kind="restock",
            amount=amount,
            quantity_before=before,
            quantity_after=ing.quantity,
            order_id=order_id,
            reversal_of_id=reversal_of_id,
            notes=notes or "Restock",
            created_by_user_id=user_id,
        )

    async def adjust_to(
        self,
        ingredient_id: UUID,
        new_quantity: Decimal,
        *,
        notes: Optional[str] = None,
        user_id: Optional[UUID] = None,
    ) -> InventoryMovement:
        new_quantity = quantize(Decimal(str(new_quantity)))
        if new_quantity < 0:
            raise ValidationError("Stock cannot be set below zero")
        ing = (await self.lock([ingredient_id]))[ingredient_id]
        before = ing.quantity
        self.write(ing, new_quantity)
        delta = ing.quantity - before
        return await self.ledger.append(
            ingredient_id=ing.id,
            kind="manual_adjustment",
            amount=abs(delta),
            quantity_before=before,
            quantity_after=ing.quantity,
            notes=notes or ("Manual count increase" if delta >= 0 else "Manual count decrease"),
            created_by_user_id=user_id,
        )

    async def add_note(
        self,
        ingredient_id: UUID,
        notes: str,
        *,
        order_id: Optional[UUID] = None,
        user_id: Optional[UUID] = None,
    ) -> InventoryMovement:
        ing = (await self.lock([ingredient_id]))[ingredient_id]
        return await self.ledger.append(
            ingredient_id=ing.id,
            kind="status_note",
            amount=Decimal("0"),
            quantity_before=ing.quantity,
            quantity_after=ing.quantity,
            order_id=order_id,
            notes=notes,
            created_by_user_id=user_id,
        )
