import uuid
from sqlalchemy import Boolean, Column, Numeric, String, Uuid
from sqlalchemy.orm import relationship

from .base import Base


class MenuItem(Base):
    __tablename__ = "menu_items"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    category = Column(String, nullable=True, index=True)
    price = Column(Numeric(10, 2), nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)

    recipe_ingredients = relationship(
        "RecipeIngredient",
        back_populates="menu_item",
        cascade="all, delete-orphan",
    )
