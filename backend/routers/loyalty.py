import logging
from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import current_active_superuser, current_active_user
from core.errors import FulfillmentError, http_error
from core.events import LOYALTY_UPDATED, get_event_emitter
from db.database import get_async_session
from db.loyalty import LoyaltyTransaction as LoyaltyTransactionModel
from db.users import User
from schemas.loyalty import (
    AdjustmentRequest,
    LoyaltyBalanceOut,
    LoyaltySettingsOut,
    LoyaltySettingsUpdate,
    LoyaltyTransactionOut,
    RedeemRequest,
)
from services.loyalty import LoyaltyAccrual
from services.settings import SettingsProvider

logger = logging.getLogger(__name__)

router = APIRouter()


async def _publish(tx: LoyaltyTransactionModel) -> None:
    await get_event_emitter().emit(
        LOYALTY_UPDATED,
        {
            "customer_id": tx.customer_id,
            "order_id": tx.order_id,
            "points": int(tx.points_delta),
            "balance": int(tx.balance_after),
        },
    )


@router.get("/customers/{customer_id}", response_model=LoyaltyBalanceOut)
async def get_balance(
    customer_id: UUID,
    limit: int = Query(50, ge=0, le=500),
    db: AsyncSession = Depends(get_async_session),
    user: User = Depends(current_active_user),
):
    loyalty = LoyaltyAccrual(db)
    try:
        customer = await loyalty.balance(customer_id)
    except FulfillmentError as e:
        raise http_error(e)
    transactions = await loyalty.history(customer_id, limit=limit) if limit else []
    return {
        "customer_id": customer.id,
        "name": customer.name,
        "loyalty_points": int(customer.loyalty_points or 0),
        "transactions": [t.to_schema for t in transactions],
    }


@router.post("/redeem", response_model=LoyaltyTransactionOut, status_code=status.HTTP_201_CREATED)
async def redeem_points(
    payload: RedeemRequest,
    db: AsyncSession = Depends(get_async_session),
    user: User = Depends(current_active_user),
):
    try:
        tx = await LoyaltyAccrual(db, user_id=user.id).redeem(payload.customer_id, payload.points, payload.description)
        await db.commit()
    except FulfillmentError as e:
        await db.rollback()
        raise http_error(e)
    except Exception:
        await db.rollback()
        raise
    await _publish(tx)
    return tx.to_schema


@router.post("/redemptions/{transaction_id}/refund", response_model=LoyaltyTransactionOut, status_code=status.HTTP_201_CREATED)
async def refund_redemption(
    transaction_id: int,
    db: AsyncSession = Depends(get_async_session),
    user: User = Depends(current_active_superuser),
):
    """Give back the points of a redemption. A redemption can be refunded once."""
    try:
        tx = await LoyaltyAccrual(db, user_id=user.id).refund_redemption(transaction_id)
        await db.commit()
    except FulfillmentError as e:
        await db.rollback()
        raise http_error(e)
    except Exception:
        await db.rollback()
        raise
    await _publish(tx)
    return tx.to_schema


@router.post("/adjustments", response_model=LoyaltyTransactionOut, status_code=status.HTTP_201_CREATED)
async def adjust_points(
    payload: AdjustmentRequest,
    db: AsyncSession = Depends(get_async_session),
    user: User = Depends(current_active_superuser),
):
    try:
        tx = await LoyaltyAccrual(db, user_id=user.id).adjust(
            payload.customer_id, payload.points_delta, payload.description
        )
        await db.commit()
    except FulfillmentError as e:
        await db.rollback()
        raise http_error(e)
    except Exception:
        await db.rollback()
        raise
    await _publish(tx)
    return tx.to_schema


@router.get("/settings", response_model=LoyaltySettingsOut)
async def get_settings(
    db: AsyncSession = Depends(get_async_session),
    user: User = Depends(current_active_user),
):
    try:
        conf = await SettingsProvider(db).loyalty()
    except FulfillmentError as e:
        raise http_error(e)
    return conf.to_dict()


@router.put("/settings", response_model=LoyaltySettingsOut)
async def update_settings(
    payload: LoyaltySettingsUpdate,
    db: AsyncSession = Depends(get_async_session),
    user: User = Depends(current_active_superuser),
):
    rate = payload.points_per_unit_currency
    try:
        conf = await SettingsProvider(db).update(
            enabled=payload.loyalty_enabled,
            points_per_unit=Decimal(str(rate)) if rate is not None else None,
            minimum_redemption=payload.minimum_points_redemption,
        )
        await db.commit()
    except FulfillmentError as e:
        await db.rollback()
        raise http_error(e)
    except Exception:
        await db.rollback()
        raise
    logger.info("Loyalty settings updated by %s: %s", user.id, conf.to_dict())
    return conf.to_dict()
