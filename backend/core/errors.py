"""
Error taxonomy for order fulfillment and inventory consistency.

Every operation either applies fully or raises one of these; a raised error
means stock, ledgers and order status are exactly as they were before the call.
"""

from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import HTTPException, status


class FulfillmentError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(FulfillmentError):
    """Rejected input: unknown menu item/ingredient, bad customization, bad unit."""


class Shortfall:
    __slots__ = ("ingredient_id", "ingredient_name", "required", "available", "unit")

    def __init__(
        self,
        ingredient_id: UUID,
        required: Decimal,
        available: Decimal,
        ingredient_name: Optional[str] = None,
        unit: Optional[str] = None,
    ):
        self.ingredient_id = ingredient_id
        self.ingredient_name = ingredient_name
        self.required = required
        self.available = available
        self.unit = unit

    def to_dict(self) -> dict:
        return {
            "ingredient_id": str(self.ingredient_id),
            "ingredient_name": self.ingredient_name,
            "required": float(self.required),
            "available": float(self.available),
            "unit": self.unit,
        }

    def __repr__(self) -> str:
        return f"Shortfall({self.ingredient_name or self.ingredient_id}: {self.required} > {self.available})"


class InsufficientStockError(ValidationError):
    def __init__(self, shortfalls: List[Shortfall], order_id: Optional[UUID] = None):
        names = ", ".join(s.ingredient_name or str(s.ingredient_id) for s in shortfalls)
        prefix = f"Order {order_id}: " if order_id else ""
        super().__init__(f"{prefix}insufficient stock for {names}")
        self.shortfalls = shortfalls
        self.order_id = order_id


class InvalidTransitionError(ValidationError):
    def __init__(self, order_id: UUID, current: str, requested: str):
        super().__init__(f"Order {order_id}: cannot go from '{current}' to '{requested}'")
        self.order_id = order_id
        self.current = current
        self.requested = requested


class NotFoundError(FulfillmentError):
    pass


class ConcurrencyConflict(FulfillmentError):
    """State changed underneath the caller. Safe to retry at a higher level."""


class IntegrityError(FulfillmentError):
    """A ledger or stock invariant would have been broken. Always a bug signal."""


_TRANSIENT_PGCODES = {"40001", "40P01", "55P03"}  # serialization failure, deadlock, lock not available


def is_transient_db_error(exc: BaseException) -> bool:
    """True for driver errors that mean "another transaction got there first"."""
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in _TRANSIENT_PGCODES:
        return True
    return "database is locked" in str(orig or exc).lower()


def http_error(exc: FulfillmentError) -> HTTPException:
    """Map an engine error onto the HTTP status the routers answer with."""
    if isinstance(exc, InsufficientStockError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": exc.message, "shortfalls": [s.to_dict() for s in exc.shortfalls]},
        )
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message)
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message)
    if isinstance(exc, ConcurrencyConflict):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.message)
