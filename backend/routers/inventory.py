import logging
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import current_active_superuser, current_active_user
from core.errors import FulfillmentError, http_error
from core.events import INVENTORY_CHANGED, INVENTORY_LOW_STOCK, get_event_emitter
from db.database import get_async_session, Ingredient as IngredientModel
from db.inventory.movement import InventoryMovement as InventoryMovementModel
from db.users import User
from schemas.inventory import (
    IngredientStockOut,
    InventoryMovementOut,
    MovementKind,
    ReconciliationReport,
    RestockCreate,
    StockAdjustmentCreate,
    StockNoteCreate,
)
from services.ledger import MovementLedger
from services.stock_store import StockStore

logger = logging.getLogger(__name__)

router = APIRouter()


async def _publish_movement(mv: InventoryMovementModel, ing: IngredientModel) -> None:
    emitter = get_event_emitter()
    if mv.quantity_after != mv.quantity_before:
        await emitter.emit(
            INVENTORY_CHANGED,
            {
                "ingredient_id": mv.ingredient_id,
                "kind": mv.kind,
                "previous": float(mv.quantity_before),
                "new": float(mv.quantity_after),
                "delta": float(mv.signed_change),
                "order_id": mv.order_id,
            },
        )
    if mv.quantity_after < mv.quantity_before and ing.is_low_stock:
        await emitter.emit(
            INVENTORY_LOW_STOCK,
            {
                "ingredient_id": ing.id,
                "name": ing.name,
                "quantity": float(ing.quantity),
                "reorder_level": float(ing.reorder_level or 0),
                "unit": ing.unit,
            },
        )


@router.get("/ingredients", response_model=List[IngredientStockOut])
async def list_stock(
    low_stock: bool = False,
    category: Optional[str] = None,
    db: AsyncSession = Depends(get_async_session),
    user: User = Depends(current_active_user),
):
    """Current stock per ingredient. `low_stock=true` keeps only items at or below their reorder level."""
    stmt = select(IngredientModel).order_by(IngredientModel.name)
    if category:
        stmt = stmt.where(IngredientModel.category == category)
    if low_stock:
        stmt = stmt.where(IngredientModel.quantity <= IngredientModel.reorder_level)
    res = await db.execute(stmt)
    return [ing.to_schema for ing in res.scalars().all()]


@router.get("/ingredients/{ingredient_id}", response_model=IngredientStockOut)
async def get_stock(
    ingredient_id: UUID,
    db: AsyncSession = Depends(get_async_session),
    user: User = Depends(current_active_user),
):
    try:
        ing = await StockStore(db).get(ingredient_id)
    except FulfillmentError as e:
        raise http_error(e)
    return ing.to_schema


@router.get("/movements", response_model=List[InventoryMovementOut])
async def list_movements(
    ingredient_id: Optional[UUID] = None,
    order_id: Optional[UUID] = None,
    kind: Optional[MovementKind] = None,
    limit: int = Query(200, ge=1, le=1000),
    db: AsyncSession = Depends(get_async_session),
    user: User = Depends(current_active_user),
):
    movements = await MovementLedger(db).list(ingredient_id=ingredient_id, order_id=order_id, kind=kind, limit=limit)
    return [mv.to_schema for mv in movements]


@router.post("/restock", response_model=InventoryMovementOut, status_code=status.HTTP_201_CREATED)
async def restock(
    payload: RestockCreate,
    db: AsyncSession = Depends(get_async_session),
    user: User = Depends(current_active_superuser),
):
    store = StockStore(db)
    try:
        mv = await store.restock(
            payload.ingredient_id,
            Decimal(str(payload.amount)),
            notes=payload.notes,
            user_id=user.id,
        )
        ing = await store.get(payload.ingredient_id)
        await db.commit()
    except FulfillmentError as e:
        await db.rollback()
        raise http_error(e)
    except Exception:
        await db.rollback()
        raise

    logger.info("Restocked %s %s of %s", payload.amount, ing.unit, ing.name)
    await _publish_movement(mv, ing)
    return mv.to_schema


@router.post("/adjustments", response_model=InventoryMovementOut, status_code=status.HTTP_201_CREATED)
async def adjust_stock(
    payload: StockAdjustmentCreate,
    db: AsyncSession = Depends(get_async_session),
    user: User = Depends(current_active_superuser),
):
    """Record a physical count. The ledger row carries the difference to the previous quantity."""
    store = StockStore(db)
    try:
        mv = await store.adjust_to(
            payload.ingredient_id,
            Decimal(str(payload.new_quantity)),
            notes=payload.notes,
            user_id=user.id,
        )
        ing = await store.get(payload.ingredient_id)
        await db.commit()
    except FulfillmentError as e:
        await db.rollback()
        raise http_error(e)
    except Exception:
        await db.rollback()
        raise

    logger.info("Adjusted %s: %s -> %s", ing.name, mv.quantity_before, mv.quantity_after)
    await _publish_movement(mv, ing)
    return mv.to_schema


@router.post("/notes", response_model=InventoryMovementOut, status_code=status.HTTP_201_CREATED)
async def add_stock_note(
    payload: StockNoteCreate,
    db: AsyncSession = Depends(get_async_session),
    user: User = Depends(current_active_user),
):
    try:
        mv = await StockStore(db).add_note(payload.ingredient_id, payload.notes, user_id=user.id)
        await db.commit()
    except FulfillmentError as e:
        await db.rollback()
        raise http_error(e)
    except Exception:
        await db.rollback()
        raise
    return mv.to_schema


@router.get("/reconcile", response_model=ReconciliationReport)
async def reconcile(
    db: AsyncSession = Depends(get_async_session),
    user: User = Depends(current_active_superuser),
):
    """Replay the movement ledger and report any drift from current stock."""
    result = await MovementLedger(db).reconcile()
    return result.to_dict()
