from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, field_validator, model_validator


OrderStatus = Literal["pending", "pending_verification", "preparing", "ready", "completed", "cancelled"]
PaymentStatus = Literal["unpaid", "paid", "refunded"]


class LineCustomization(BaseModel):
    """Either selects an optional recipe ingredient, or adds `amount` extra of it (or both)."""
    ingredient_id: UUID
    amount: Optional[Decimal] = None
    unit: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def _amount_positive(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        if v is None:
            return None
        if v <= 0:
            raise ValueError("amount must be > 0")
        return v

    @field_validator("unit")
    @classmethod
    def _strip_unit(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class OrderLineItem(BaseModel):
    menu_item_id: UUID
    quantity: int = 1
    customizations: List[LineCustomization] = []

    @field_validator("quantity")
    @classmethod
    def _quantity_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("quantity must be >= 1")
        return v

    @model_validator(mode="after")
    def _unique_customizations(self):
        ids = [c.ingredient_id for c in self.customizations]
        if len(ids) != len(set(ids)):
            raise ValueError("each ingredient may appear once per line item")
        return self


class OrderCreate(BaseModel):
    customer_id: Optional[UUID] = None
    items: List[OrderLineItem]
    payment_method: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("items")
    @classmethod
    def _non_empty(cls, v: List[OrderLineItem]) -> List[OrderLineItem]:
        if not v:
            raise ValueError("an order needs at least one item")
        return v


class FulfillmentCheckRequest(BaseModel):
    items: List[OrderLineItem]


class ShortfallRead(BaseModel):
    ingredient_id: UUID
    ingredient_name: Optional[str] = None
    required: float
    available: float
    unit: Optional[str] = None


class FulfillmentCheckResponse(BaseModel):
    can_fulfill: bool
    shortfalls: List[ShortfallRead]


class StatusUpdate(BaseModel):
    status: OrderStatus
    notes: Optional[str] = None


class PaymentProof(BaseModel):
    reference: Optional[str] = None
    notes: Optional[str] = None


class PaymentConfirmation(BaseModel):
    reference: Optional[str] = None
    notes: Optional[str] = None


class PaymentWebhook(BaseModel):
    """Callback body from the payment provider."""
    order_id: UUID
    reference: Optional[str] = None


class RefundRequest(BaseModel):
    reason: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class LineCustomizationRead(BaseModel):
    ingredient_id: UUID
    amount: Optional[float] = None
    unit: Optional[str] = None


class OrderItemRead(BaseModel):
    id: UUID
    menu_item_id: UUID
    name: str
    quantity: int
    unit_price: float
    customizations: List[LineCustomizationRead] = []


class OrderRead(BaseModel):
    id: UUID
    customer_id: Optional[UUID] = None
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    total_amount: float
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    items: List[OrderItemRead]


class StatusHistoryRead(BaseModel):
    id: int
    from_status: Optional[str] = None
    to_status: str
    payment_status: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    changed_by_user_id: Optional[UUID] = None


class TransitionResponse(BaseModel):
    order: OrderRead
    from_status: str
    to_status: str
    deduction: Optional[str] = None  # applied | already_applied
    restocked_ingredient_ids: List[UUID] = []
    points_awarded: Optional[int] = None
