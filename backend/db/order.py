import uuid
from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import relationship

from .base import Base, ID_TYPE, utcnow

ORDER_STATUSES = ("pending", "pending_verification", "preparing", "ready", "completed", "cancelled")
PAYMENT_STATUSES = ("unpaid", "paid", "refunded")


class Order(Base):
    """Customer order. Status and payment_status are changed only by services.order_state."""
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(
            "status IN (" + ", ".join(f"'{s}'" for s in ORDER_STATUSES) + ")",
            name="ck_orders_status",
        ),
        CheckConstraint(
            "payment_status IN (" + ", ".join(f"'{s}'" for s in PAYMENT_STATUSES) + ")",
            name="ck_orders_payment_status",
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    customer_id = Column(Uuid, ForeignKey("customers.id", ondelete="SET NULL"), nullable=True, index=True)

    status = Column(Text, nullable=False, default="pending", index=True)
    payment_status = Column(Text, nullable=False, default="unpaid", index=True)
    payment_method = Column(String, nullable=True)  # cash | gcash | card | ...
    payment_reference = Column(String, nullable=True)

    total_amount = Column(Numeric(10, 2), nullable=False, default=0)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    customer = relationship("Customer", back_populates="orders")
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
    )
    status_history = relationship(
        "OrderStatusHistory",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStatusHistory.id",
    )


class OrderItem(Base):
    """Line item. Immutable once the order is accepted."""
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    menu_item_id = Column(Uuid, ForeignKey("menu_items.id", ondelete="RESTRICT"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(10, 2), nullable=False)
    name = Column(String, nullable=False)  # snapshot of the menu item name

    order = relationship("Order", back_populates="items")
    menu_item = relationship("MenuItem")
    customizations = relationship(
        "OrderItemCustomization",
        back_populates="order_item",
        cascade="all, delete-orphan",
        order_by="OrderItemCustomization.id",
    )


class OrderItemCustomization(Base):
    """Selected optional ingredient and/or extra amount for one line item."""
    __tablename__ = "order_item_customizations"

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    order_item_id = Column(Uuid, ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False, index=True)
    ingredient_id = Column(Uuid, ForeignKey("ingredients.id", ondelete="RESTRICT"), nullable=False)

    amount = Column(Numeric(12, 3), nullable=True)  # extra on top of the recipe, per unit of the item
    unit = Column(String, nullable=True)

    order_item = relationship("OrderItem", back_populates="customizations")
    ingredient = relationship("Ingredient")


class OrderStatusHistory(Base):
    """Append-only log of status and payment-status changes."""
    __tablename__ = "order_status_history"

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status = Column(Text, nullable=True)
    to_status = Column(Text, nullable=False)
    payment_status = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    changed_by_user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    order = relationship("Order", back_populates="status_history")
