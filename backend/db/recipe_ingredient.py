import uuid
from sqlalchemy import Boolean, Column, ForeignKey, Numeric, String, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from .base import Base


class RecipeIngredient(Base):
    """Amount of one ingredient needed for ONE unit of a menu item."""
    __tablename__ = "recipe_ingredients"
    __table_args__ = (
        UniqueConstraint("menu_item_id", "ingredient_id", name="ux_recipe_ingredients_item_ingredient"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    menu_item_id = Column(Uuid, ForeignKey("menu_items.id", ondelete="CASCADE"), nullable=False, index=True)
    ingredient_id = Column(Uuid, ForeignKey("ingredients.id", ondelete="RESTRICT"), nullable=False, index=True)

    required_amount = Column(Numeric(12, 3), nullable=False)
    unit = Column(String, nullable=True)  # defaults to the ingredient's stock unit

    # Only consumed when the customer selects it as a customization.
    is_optional = Column(Boolean, nullable=False, default=False)

    menu_item = relationship("MenuItem", back_populates="recipe_ingredients")
    ingredient = relationship("Ingredient", back_populates="recipe_ingredients")
