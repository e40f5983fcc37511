import uuid
from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String, Uuid
from sqlalchemy.orm import relationship

from .base import Base, utcnow


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (
        CheckConstraint("loyalty_points >= 0", name="ck_customers_loyalty_points_non_negative"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True, unique=True)

    # Denormalized balance; loyalty_transactions is the audit trail.
    loyalty_points = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    orders = relationship("Order", back_populates="customer")
    loyalty_transactions = relationship("LoyaltyTransaction", back_populates="customer")

    @property
    def to_schema(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "loyalty_points": int(self.loyalty_points or 0),
        }
