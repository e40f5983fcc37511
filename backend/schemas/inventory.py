from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, field_validator


MovementKind = Literal["usage", "restock", "manual_adjustment", "status_note"]


def _strip_nullable(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    v = v.strip()
    return v or None


class RestockCreate(BaseModel):
    ingredient_id: UUID
    amount: float
    notes: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def _amount_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("amount must be > 0")
        return v

    @field_validator("notes")
    @classmethod
    def _notes(cls, v: Optional[str]) -> Optional[str]:
        return _strip_nullable(v)


class StockAdjustmentCreate(BaseModel):
    """Set the counted quantity; the ledger row records the signed difference."""
    ingredient_id: UUID
    new_quantity: float
    notes: Optional[str] = None

    @field_validator("new_quantity")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("new_quantity cannot be negative")
        return v

    @field_validator("notes")
    @classmethod
    def _notes(cls, v: Optional[str]) -> Optional[str]:
        return _strip_nullable(v)


class StockNoteCreate(BaseModel):
    ingredient_id: UUID
    notes: str

    @field_validator("notes")
    @classmethod
    def _required(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("notes is required")
        return v


class IngredientStockOut(BaseModel):
    id: UUID
    name: str
    category: Optional[str] = None
    unit: str
    quantity: float
    reorder_level: float
    cost_per_unit: Optional[float] = None
    is_available: bool
    is_low_stock: bool


class InventoryMovementOut(BaseModel):
    id: int
    ingredient_id: UUID
    kind: MovementKind
    amount: float
    quantity_before: float
    quantity_after: float
    order_id: Optional[UUID] = None
    reversal_of_id: Optional[int] = None
    notes: Optional[str] = None
    created_at: datetime
    created_by_user_id: Optional[UUID] = None


class ReconciliationIssueOut(BaseModel):
    ingredient_id: UUID
    ingredient_name: str
    movement_id: Optional[int] = None
    problem: str
    expected: Optional[float] = None
    actual: Optional[float] = None


class ReconciliationReport(BaseModel):
    ingredients_checked: int
    movements_checked: int
    is_consistent: bool
    issues: List[ReconciliationIssueOut]
