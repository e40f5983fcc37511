from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Numeric, Text, Uuid, text
from sqlalchemy.orm import relationship

from ..base import Base, ID_TYPE, utcnow

MOVEMENT_KINDS = ("usage", "restock", "manual_adjustment", "status_note")


class InventoryMovement(Base):
    """One immutable row per stock change. Corrections are new rows."""
    __tablename__ = "inventory_movements"
    __table_args__ = (
        CheckConstraint(
            "kind IN ('usage', 'restock', 'manual_adjustment', 'status_note')",
            name="ck_inventory_movements_kind",
        ),
        CheckConstraint("amount >= 0", name="ck_inventory_movements_amount_magnitude"),
        # Idempotency anchors: one usage and one compensating restock per (order, ingredient).
        Index(
            "ux_inventory_movements_order_usage",
            "order_id",
            "ingredient_id",
            unique=True,
            postgresql_where=text("kind = 'usage' AND order_id IS NOT NULL"),
            sqlite_where=text("kind = 'usage' AND order_id IS NOT NULL"),
        ),
        Index(
            "ux_inventory_movements_order_restock",
            "order_id",
            "ingredient_id",
            unique=True,
            postgresql_where=text("kind = 'restock' AND order_id IS NOT NULL"),
            sqlite_where=text("kind = 'restock' AND order_id IS NOT NULL"),
        ),
    )

    # Monotonic id gives the replay order.
    id = Column(ID_TYPE, primary_key=True, autoincrement=True)

    ingredient_id = Column(
        Uuid,
        ForeignKey("ingredients.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    kind = Column(Text, nullable=False, index=True)

    amount = Column(Numeric(12, 3), nullable=False)  # magnitude, direction comes from kind
    quantity_before = Column(Numeric(12, 3), nullable=False)
    quantity_after = Column(Numeric(12, 3), nullable=False)

    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="RESTRICT"), nullable=True, index=True)
    reversal_of_id = Column(ID_TYPE, ForeignKey("inventory_movements.id", ondelete="RESTRICT"), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    created_by_user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    ingredient = relationship("Ingredient", back_populates="movements")

    @property
    def signed_change(self):
        return self.quantity_after - self.quantity_before

    @property
    def to_schema(self):
        return {
            "id": self.id,
            "ingredient_id": self.ingredient_id,
            "kind": self.kind,
            "amount": float(self.amount),
            "quantity_before": float(self.quantity_before),
            "quantity_after": float(self.quantity_after),
            "order_id": self.order_id,
            "reversal_of_id": self.reversal_of_id,
            "notes": self.notes,
            "created_at": self.created_at,
            "created_by_user_id": self.created_by_user_id,
        }
