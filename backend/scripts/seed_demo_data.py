import asyncio
import sys
from pathlib import Path
from decimal import Decimal

"""
Seed a demo cafe: an admin user, ingredients with opening stock, the menu
(Latte, Americano, Mocha) with recipes, a customer, and loyalty settings.

This script can be run from either:
- backend/: `python scripts/seed_demo_data.py`
- repo root: `python backend/scripts/seed_demo_data.py`

Running it twice is safe: existing rows are kept and opening stock is only
booked for ingredients that have no ledger history yet.
"""

# Allow running from repo root by ensuring `backend/` is on sys.path
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from sqlalchemy import func, select

from db.database import async_session_maker, create_db_and_tables
from db.users import User
from db.customer import Customer
from db.ingredient import Ingredient
from db.inventory.movement import InventoryMovement
from db.menu_item import MenuItem
from db.recipe_ingredient import RecipeIngredient
from services.settings import SettingsProvider
from services.stock_store import StockStore

from fastapi_users.password import PasswordHelper


password_helper = PasswordHelper()

INGREDIENTS = [
    # name, category, unit, opening stock, reorder level, cost per unit
    ("Milk", "dairy", "l", "10", "2", "1.20"),
    ("Espresso Beans", "coffee", "kg", "5", "1", "18.00"),
    ("Chocolate Syrup", "syrup", "l", "2", "0.5", "6.50"),
    ("Whipped Cream", "dairy", "l", "1", "0.3", "4.00"),
    ("Vanilla Syrup", "syrup", "l", "1.5", "0.3", "6.00"),
    ("Cups 12oz", "packaging", "pcs", "300", "50", "0.08"),
]

MENU = [
    # name, category, price, [(ingredient, amount, unit, optional)]
    (
        "Latte",
        "coffee",
        "4.50",
        [
            ("Milk", "200", "ml", False),
            ("Espresso Beans", "18", "g", False),
            ("Vanilla Syrup", "1", "pump", True),
            ("Cups 12oz", "1", "pcs", False),
        ],
    ),
    (
        "Americano",
        "coffee",
        "3.50",
        [
            ("Espresso Beans", "18", "g", False),
            ("Cups 12oz", "1", "pcs", False),
        ],
    ),
    (
        "Mocha",
        "coffee",
        "5.00",
        [
            ("Milk", "180", "ml", False),
            ("Espresso Beans", "18", "g", False),
            ("Chocolate Syrup", "30", "ml", False),
            ("Whipped Cream", "25", "ml", True),
            ("Cups 12oz", "1", "pcs", False),
        ],
    ),
]


async def get_or_create_user(session, email: str, password: str) -> User:
    result = await session.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(
        email=email,
        hashed_password=password_helper.hash(password),
        is_active=True,
        is_superuser=True,
        is_verified=True,
        display_name="Cafe Admin",
    )
    session.add(user)
    await session.flush()
    return user


async def get_or_create_ingredient(session, name: str, category: str, unit: str, reorder_level: str, cost: str) -> Ingredient:
    result = await session.execute(
        select(Ingredient).where(func.lower(Ingredient.name) == name.strip().lower())
    )
    ingredient = result.scalar_one_or_none()
    if ingredient:
        return ingredient

    ingredient = Ingredient(
        name=name.strip(),
        category=category,
        unit=unit,
        quantity=Decimal("0"),
        reorder_level=Decimal(reorder_level),
        cost_per_unit=Decimal(cost),
    )
    session.add(ingredient)
    await session.flush()
    return ingredient


async def book_opening_stock(session, store: StockStore, ingredient: Ingredient, amount: str, user_id) -> None:
    result = await session.execute(
        select(InventoryMovement.id).where(InventoryMovement.ingredient_id == ingredient.id).limit(1)
    )
    if result.first() is not None:
        return
    await store.restock(ingredient.id, Decimal(amount), notes="Opening stock", user_id=user_id)


async def upsert_menu_item(session, name: str, category: str, price: str, recipe, ingredients) -> MenuItem:
    result = await session.execute(select(MenuItem).where(func.lower(MenuItem.name) == name.lower()))
    item = result.scalar_one_or_none()
    if not item:
        item = MenuItem(name=name, category=category, price=Decimal(price), is_available=True)
        session.add(item)
        await session.flush()

    existing = await session.execute(
        select(RecipeIngredient.ingredient_id).where(RecipeIngredient.menu_item_id == item.id)
    )
    have = set(existing.scalars().all())
    for ing_name, amount, unit, optional in recipe:
        ing = ingredients[ing_name]
        if ing.id in have:
            continue
        session.add(
            RecipeIngredient(
                menu_item_id=item.id,
                ingredient_id=ing.id,
                required_amount=Decimal(amount),
                unit=unit,
                is_optional=optional,
            )
        )
    await session.flush()
    return item


async def get_or_create_customer(session, name: str, email: str) -> Customer:
    result = await session.execute(select(Customer).where(Customer.email == email))
    customer = result.scalar_one_or_none()
    if customer:
        return customer
    customer = Customer(name=name, email=email, loyalty_points=0)
    session.add(customer)
    await session.flush()
    return customer


async def seed():
    await create_db_and_tables()
    async with async_session_maker() as session:
        user = await get_or_create_user(session, "admin@cafe.local", "admin")
        store = StockStore(session)

        ingredients = {}
        for name, category, unit, opening, reorder, cost in INGREDIENTS:
            ing = await get_or_create_ingredient(session, name, category, unit, reorder, cost)
            await book_opening_stock(session, store, ing, opening, user.id)
            ingredients[name] = ing

        for name, category, price, recipe in MENU:
            await upsert_menu_item(session, name, category, price, recipe, ingredients)

        await get_or_create_customer(session, "Demo Customer", "customer@cafe.local")

        await SettingsProvider(session).update(
            enabled=True,
            points_per_unit=Decimal("1"),
            minimum_redemption=50,
        )

        await session.commit()
        print(f"Seeded {len(ingredients)} ingredients and {len(MENU)} menu items")


if __name__ == "__main__":
    asyncio.run(seed())
