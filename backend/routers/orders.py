import hmac
import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import current_active_superuser, current_active_user
from core.config import settings
from core.errors import FulfillmentError, http_error
from core.events import ORDER_UPDATED, get_event_emitter
from db.database import get_async_session, Order as OrderModel
from db.users import User
from schemas.inventory import InventoryMovementOut
from schemas.orders import (
    CancelRequest,
    FulfillmentCheckRequest,
    FulfillmentCheckResponse,
    LineCustomizationRead,
    OrderCreate,
    OrderItemRead,
    OrderRead,
    OrderStatus,
    PaymentConfirmation,
    PaymentProof,
    PaymentWebhook,
    RefundRequest,
    StatusHistoryRead,
    StatusUpdate,
    TransitionResponse,
)
from services.fulfillment import FulfillmentValidator
from services.ledger import MovementLedger
from services.order_state import OrderStateMachine, TransitionResult
from services.orders import OrderRepository, OrderService

logger = logging.getLogger(__name__)

router = APIRouter()


def _serialize_order(o: OrderModel) -> OrderRead:
    items_out: List[OrderItemRead] = []
    for it in (o.items or []):
        items_out.append(
            OrderItemRead(
                id=it.id,
                menu_item_id=it.menu_item_id,
                name=it.name,
                quantity=it.quantity,
                unit_price=float(it.unit_price),
                customizations=[
                    LineCustomizationRead(
                        ingredient_id=c.ingredient_id,
                        amount=float(c.amount) if c.amount is not None else None,
                        unit=c.unit,
                    )
                    for c in (it.customizations or [])
                ],
            )
        )
    return OrderRead(
        id=o.id,
        customer_id=o.customer_id,
        status=o.status,
        payment_status=o.payment_status,
        payment_method=o.payment_method,
        payment_reference=o.payment_reference,
        total_amount=float(o.total_amount or 0),
        notes=o.notes,
        created_at=o.created_at,
        completed_at=o.completed_at,
        cancelled_at=o.cancelled_at,
        items=items_out,
    )


def _serialize_transition(result: TransitionResult) -> TransitionResponse:
    restocked = []
    if result.compensation is not None:
        restocked = [mv.ingredient_id for mv in result.compensation.movements]
    points = None
    if result.accrual is not None and result.accrual.awarded:
        points = result.accrual.points
    return TransitionResponse(
        order=_serialize_order(result.order),
        from_status=result.from_status,
        to_status=result.to_status,
        deduction=result.deduction.status if result.deduction is not None else None,
        restocked_ingredient_ids=restocked,
        points_awarded=points,
    )


@router.post("/", response_model=OrderRead, status_code=status.HTTP_201_CREATED)
async def place_order(
    payload: OrderCreate,
    db: AsyncSession = Depends(get_async_session),
):
    """Customer checkout. Rejected with 409 when any ingredient is short."""
    try:
        order = await OrderService(db).place_order(
            payload.items,
            customer_id=payload.customer_id,
            payment_method=payload.payment_method,
            notes=payload.notes,
        )
        await db.commit()
    except FulfillmentError as e:
        await db.rollback()
        raise http_error(e)
    except Exception:
        await db.rollback()
        raise

    await get_event_emitter().emit(
        ORDER_UPDATED,
        {"order_id": order.id, "from_status": None, "status": order.status, "payment_status": order.payment_status},
    )
    return _serialize_order(order)


@router.post("/validate", response_model=FulfillmentCheckResponse)
async def validate_order(
    payload: FulfillmentCheckRequest,
    db: AsyncSession = Depends(get_async_session),
):
    """Advisory stock check; reserves nothing."""
    try:
        report = await FulfillmentValidator(db).check(payload.items)
    except FulfillmentError as e:
        raise http_error(e)
    return report.to_dict()


@router.get("/", response_model=List[OrderRead])
async def list_orders(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    customer_id: Optional[UUID] = None,
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_async_session),
    user: User = Depends(current_active_user),
):
    orders = await OrderRepository(db).list(status=status_filter, customer_id=customer_id, limit=limit)
    return [_serialize_order(o) for o in orders]


@router.get("/{order_id}", response_model=OrderRead)
async def get_order(
    order_id: UUID,
    db: AsyncSession = Depends(get_async_session),
):
    try:
        order = await OrderRepository(db).get(order_id)
    except FulfillmentError as e:
        raise http_error(e)
    return _serialize_order(order)


@router.get("/{order_id}/history", response_model=List[StatusHistoryRead])
async def get_order_history(
    order_id: UUID,
    db: AsyncSession = Depends(get_async_session),
    user: User = Depends(current_active_user),
):
    repo = OrderRepository(db)
    try:
        await repo.get(order_id)
    except FulfillmentError as e:
        raise http_error(e)
    return [
        StatusHistoryRead(
            id=h.id,
            from_status=h.from_status,
            to_status=h.to_status,
            payment_status=h.payment_status,
            notes=h.notes,
            created_at=h.created_at,
            changed_by_user_id=h.changed_by_user_id,
        )
        for h in await repo.history(order_id)
    ]


@router.get("/{order_id}/movements", response_model=List[InventoryMovementOut])
async def get_order_movements(
    order_id: UUID,
    db: AsyncSession = Depends(get_async_session),
    user: User = Depends(current_active_user),
):
    movements = await MovementLedger(db).for_order(order_id)
    return [mv.to_schema for mv in movements]


@router.post("/{order_id}/status", response_model=TransitionResponse)
async def update_order_status(
    order_id: UUID,
    payload: StatusUpdate,
    db: AsyncSession = Depends(get_async_session),
    user: User = Depends(current_active_user),
):
    """Staff status change. Stock and loyalty side effects run inside the same transaction."""
    try:
        result = await OrderStateMachine(db, user_id=user.id).transition(order_id, payload.status, notes=payload.notes)
    except FulfillmentError as e:
        raise http_error(e)
    return _serialize_transition(result)


@router.post("/{order_id}/payment-proof", response_model=TransitionResponse)
async def submit_payment_proof(
    order_id: UUID,
    payload: PaymentProof,
    db: AsyncSession = Depends(get_async_session),
):
    try:
        result = await OrderStateMachine(db).submit_payment_proof(
            order_id, reference=payload.reference, notes=payload.notes
        )
    except FulfillmentError as e:
        raise http_error(e)
    return _serialize_transition(result)


@router.post("/{order_id}/confirm-payment", response_model=TransitionResponse)
async def confirm_payment(
    order_id: UUID,
    payload: PaymentConfirmation,
    db: AsyncSession = Depends(get_async_session),
    user: User = Depends(current_active_superuser),
):
    try:
        result = await OrderStateMachine(db, user_id=user.id).confirm_payment(
            order_id, reference=payload.reference, notes=payload.notes
        )
    except FulfillmentError as e:
        raise http_error(e)
    return _serialize_transition(result)


@router.post("/payment-webhook", response_model=TransitionResponse)
async def payment_webhook(
    payload: PaymentWebhook,
    x_webhook_secret: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_async_session),
):
    """Payment provider callback. Needs PAYMENT_WEBHOOK_SECRET to be configured."""
    expected = settings.payment_webhook_secret
    if not expected or not hmac.compare_digest(x_webhook_secret or "", expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid webhook secret")
    try:
        result = await OrderStateMachine(db).confirm_payment(
            payload.order_id, reference=payload.reference, notes="Payment confirmed by provider"
        )
    except FulfillmentError as e:
        raise http_error(e)
    return _serialize_transition(result)


@router.post("/{order_id}/cancel", response_model=TransitionResponse)
async def cancel_order(
    order_id: UUID,
    payload: CancelRequest,
    db: AsyncSession = Depends(get_async_session),
    user: User = Depends(current_active_user),
):
    try:
        result = await OrderStateMachine(db, user_id=user.id).cancel(order_id, reason=payload.reason)
    except FulfillmentError as e:
        raise http_error(e)
    return _serialize_transition(result)


@router.post("/{order_id}/refund", response_model=OrderRead)
async def refund_order(
    order_id: UUID,
    payload: RefundRequest,
    db: AsyncSession = Depends(get_async_session),
    user: User = Depends(current_active_superuser),
):
    """Marks the payment refunded. Ingredients were already used, so nothing is restocked."""
    try:
        order = await OrderStateMachine(db, user_id=user.id).refund(order_id, reason=payload.reason)
    except FulfillmentError as e:
        raise http_error(e)
    return _serialize_order(order)
