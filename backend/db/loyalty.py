from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import relationship

from .base import Base, ID_TYPE, utcnow

LOYALTY_KINDS = ("earn", "redeem", "refund", "adjustment")


class LoyaltyTransaction(Base):
    """Append-only points ledger. Customer.loyalty_points is its running sum."""
    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        CheckConstraint(
            "kind IN (" + ", ".join(f"'{k}'" for k in LOYALTY_KINDS) + ")",
            name="ck_loyalty_transactions_kind",
        ),
        Index(
            "ux_loyalty_transactions_order_earn",
            "order_id",
            unique=True,
            postgresql_where=text("kind = 'earn' AND order_id IS NOT NULL"),
            sqlite_where=text("kind = 'earn' AND order_id IS NOT NULL"),
        ),
        Index(
            "ux_loyalty_transactions_reversal_of",
            "reversal_of_id",
            unique=True,
            postgresql_where=text("reversal_of_id IS NOT NULL"),
            sqlite_where=text("reversal_of_id IS NOT NULL"),
        ),
    )

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    customer_id = Column(Uuid, ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False, index=True)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True)

    kind = Column(Text, nullable=False)
    points_delta = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reversal_of_id = Column(ID_TYPE, ForeignKey("loyalty_transactions.id", ondelete="RESTRICT"), nullable=True)
    description = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    created_by_user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    customer = relationship("Customer", back_populates="loyalty_transactions")

    @property
    def to_schema(self):
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "order_id": self.order_id,
            "kind": self.kind,
            "points_delta": int(self.points_delta),
            "balance_after": int(self.balance_after),
            "reversal_of_id": self.reversal_of_id,
            "description": self.description,
            "created_at": self.created_at,
        }


class LoyaltySetting(Base):
    __tablename__ = "loyalty_settings"

    setting_key = Column(String, primary_key=True)
    setting_value = Column(String, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
