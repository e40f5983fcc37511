from fastapi_users.db import SQLAlchemyBaseUserTableUUID
from sqlalchemy import Column, String

from .base import Base


class User(SQLAlchemyBaseUserTableUUID, Base):
    """Staff and admin accounts. Customers are tracked separately in `customers`."""
    __tablename__ = "users"

    display_name = Column(String, nullable=True)

    @property
    def to_schema(self):
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "is_superuser": self.is_superuser,
        }
