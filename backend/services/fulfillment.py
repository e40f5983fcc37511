"""
Ingredient demand for an order and the advisory availability check.

Demand is always aggregated across the whole order per ingredient: two lines
that each fit in stock may not fit together.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Protocol, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from core.errors import Shortfall, ValidationError
from core.units import convert, quantize
from db.ingredient import Ingredient
from db.menu_item import MenuItem
from db.recipe_ingredient import RecipeIngredient
from services.stock_store import StockStore


class CustomizationLike(Protocol):
    ingredient_id: UUID
    amount: Optional[Decimal]
    unit: Optional[str]


class LineItemLike(Protocol):
    """Satisfied by schemas.orders.OrderLineItem and db.order.OrderItem."""
    menu_item_id: UUID
    quantity: int
    customizations: Sequence[CustomizationLike]


@dataclass
class FulfillmentReport:
    can_fulfill: bool
    shortfalls: List[Shortfall] = field(default_factory=list)
    demand: Dict[UUID, Decimal] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "can_fulfill": self.can_fulfill,
            "shortfalls": [s.to_dict() for s in self.shortfalls],
        }


async def _load_menu_items(db: AsyncSession, ids: Iterable[UUID]) -> Dict[UUID, MenuItem]:
    ids = set(ids)
    if not ids:
        return {}
    res = await db.execute(
        select(MenuItem)
        .options(selectinload(MenuItem.recipe_ingredients).selectinload(RecipeIngredient.ingredient))
        .where(MenuItem.id.in_(ids))
        .execution_options(populate_existing=True)
    )
    return {m.id: m for m in res.scalars().all()}


async def _load_ingredients(db: AsyncSession, ids: Iterable[UUID]) -> Dict[UUID, Ingredient]:
    ids = set(ids)
    if not ids:
        return {}
    res = await db.execute(select(Ingredient).where(Ingredient.id.in_(ids)))
    return {i.id: i for i in res.scalars().all()}


async def resolve_demand(
    db: AsyncSession,
    line_items: Sequence[LineItemLike],
    *,
    require_available: bool = False,
) -> Dict[UUID, Decimal]:
    """Sum the ingredient quantities (in each ingredient's stock unit) an order needs.

    Recipes are read fresh on every call. With `require_available`, menu items
    that are switched off are rejected (used at checkout only).
    """
    menu_items = await _load_menu_items(db, (li.menu_item_id for li in line_items))
    extra_ids = {c.ingredient_id for li in line_items for c in (li.customizations or [])}
    extra_ingredients = await _load_ingredients(db, extra_ids)

    demand: Dict[UUID, Decimal] = {}

    def add(ingredient_id: UUID, amount: Decimal) -> None:
        demand[ingredient_id] = demand.get(ingredient_id, Decimal("0")) + amount

    for li in line_items:
        item = menu_items.get(li.menu_item_id)
        if item is None:
            raise ValidationError(f"Unknown menu item {li.menu_item_id}")
        if require_available and not item.is_available:
            raise ValidationError(f"{item.name} is not available")

        qty = int(li.quantity or 0)
        if qty < 1:
            raise ValidationError(f"Quantity for {item.name} must be >= 1")

        recipe = {ri.ingredient_id: ri for ri in item.recipe_ingredients}
        selected = {c.ingredient_id: c for c in (li.customizations or [])}

        for ri in recipe.values():
            if ri.is_optional and ri.ingredient_id not in selected:
                continue
            per_unit = convert(ri.required_amount, ri.unit or ri.ingredient.unit, ri.ingredient.unit)
            add(ri.ingredient_id, per_unit * qty)

        for c in (li.customizations or []):
            ri = recipe.get(c.ingredient_id)
            if c.amount is None:
                if ri is None or not ri.is_optional:
                    raise ValidationError(
                        f"Ingredient {c.ingredient_id} is not an optional ingredient of {item.name}"
                    )
                continue
            ing = extra_ingredients.get(c.ingredient_id)
            if ing is None:
                raise ValidationError(f"Unknown ingredient {c.ingredient_id}")
            extra = convert(Decimal(c.amount), c.unit or ing.unit, ing.unit)
            add(ing.id, extra * qty)

    return {ingredient_id: quantize(amount) for ingredient_id, amount in demand.items()}


class FulfillmentValidator:
    """Advisory stock check, run before an order is accepted.

    Reads stock without locks. The DeductionEngine repeats the comparison under
    row locks, which is what actually protects stock.
    """

    def __init__(self, db: AsyncSession, stock: Optional[StockStore] = None):
        self.db = db
        self.stock = stock or StockStore(db)

    async def check(self, line_items: Sequence[LineItemLike], *, require_available: bool = False) -> FulfillmentReport:
        demand = await resolve_demand(self.db, line_items, require_available=require_available)
        ingredients = await self.stock.read(demand.keys())

        shortfalls: List[Shortfall] = []
        for ingredient_id in sorted(demand):
            required = demand[ingredient_id]
            ing = ingredients.get(ingredient_id)
            available = ing.quantity if ing is not None else Decimal("0")
            if required > available:
                shortfalls.append(
                    Shortfall(
                        ingredient_id=ingredient_id,
                        ingredient_name=ing.name if ing is not None else None,
                        required=required,
                        available=available,
                        unit=ing.unit if ing is not None else None,
                    )
                )
        return FulfillmentReport(can_fulfill=not shortfalls, shortfalls=shortfalls, demand=demand)
