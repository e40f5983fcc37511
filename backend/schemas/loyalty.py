from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, field_validator


LoyaltyKind = Literal["earn", "redeem", "refund", "adjustment"]


class LoyaltyTransactionOut(BaseModel):
    id: int
    customer_id: UUID
    order_id: Optional[UUID] = None
    kind: LoyaltyKind
    points_delta: int
    balance_after: int
    reversal_of_id: Optional[int] = None
    description: Optional[str] = None
    created_at: datetime


class LoyaltyBalanceOut(BaseModel):
    customer_id: UUID
    name: str
    loyalty_points: int
    transactions: List[LoyaltyTransactionOut] = []


class RedeemRequest(BaseModel):
    customer_id: UUID
    points: int
    description: Optional[str] = None

    @field_validator("points")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("points must be > 0")
        return v


class AdjustmentRequest(BaseModel):
    customer_id: UUID
    points_delta: int
    description: str

    @field_validator("points_delta")
    @classmethod
    def _non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("points_delta cannot be 0")
        return v


class LoyaltySettingsOut(BaseModel):
    loyalty_enabled: bool
    points_per_unit_currency: float
    minimum_points_redemption: int


class LoyaltySettingsUpdate(BaseModel):
    loyalty_enabled: Optional[bool] = None
    points_per_unit_currency: Optional[float] = None
    minimum_points_redemption: Optional[int] = None

    @field_validator("points_per_unit_currency")
    @classmethod
    def _rate(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            raise ValueError("points_per_unit_currency cannot be negative")
        return v

    @field_validator("minimum_points_redemption")
    @classmethod
    def _minimum(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError("minimum_points_redemption cannot be negative")
        return v
