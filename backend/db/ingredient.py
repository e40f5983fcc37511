import uuid
from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Numeric, String, Uuid
from sqlalchemy.orm import relationship

from .base import Base, utcnow


class Ingredient(Base):
    """Stock-keeping ingredient.

    `quantity` is the authoritative current stock in `unit`. It is written only
    by services.stock_store.StockStore; inventory_movements is its audit trail.
    """
    __tablename__ = "ingredients"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_ingredients_quantity_non_negative"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False, unique=True)
    category = Column(String, nullable=True, index=True)
    unit = Column(String, nullable=False)  # stock unit: 'l', 'kg', 'pcs', ...

    quantity = Column(Numeric(12, 3), nullable=False, default=0)
    reorder_level = Column(Numeric(12, 3), nullable=False, default=0)
    cost_per_unit = Column(Numeric(12, 2), nullable=True)
    is_available = Column(Boolean, nullable=False, default=True)

    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    recipe_ingredients = relationship("RecipeIngredient", back_populates="ingredient")
    movements = relationship("InventoryMovement", back_populates="ingredient")

    @property
    def is_low_stock(self) -> bool:
        return (self.quantity or 0) <= (self.reorder_level or 0)

    @property
    def to_schema(self):
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "unit": self.unit,
            "quantity": float(self.quantity or 0),
            "reorder_level": float(self.reorder_level or 0),
            "cost_per_unit": float(self.cost_per_unit) if self.cost_per_unit is not None else None,
            "is_available": bool(self.is_available),
            "is_low_stock": self.is_low_stock,
        }
