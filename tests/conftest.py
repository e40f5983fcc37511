import os

# Must be set before core.config is imported anywhere.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AUTH_SECRET", "test-secret")
os.environ.setdefault("LOYALTY_ENABLED", "true")
os.environ.setdefault("LOYALTY_POINTS_PER_UNIT", "1")
os.environ.setdefault("LOYALTY_MINIMUM_REDEMPTION", "5")

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.events import EventEmitter
from db.database import (
    Customer,
    Ingredient,
    MenuItem,
    RecipeIngredient,
    User,
    create_db_and_tables,
    make_engine,
)
from schemas.orders import OrderLineItem
from services.order_state import OrderStateMachine
from services.orders import OrderService


@dataclass
class Cafe:
    milk: UUID
    espresso: UUID
    chocolate: UUID
    whipped_cream: UUID
    latte: UUID
    mocha: UUID
    carafe: UUID
    seasonal: UUID
    customer: UUID


@pytest.fixture
async def engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'cafe.db'}", echo=False)
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def events():
    received = []
    emitter = EventEmitter()
    emitter.subscribe("*", lambda name, payload: received.append((name, payload)))
    return emitter, received


@pytest.fixture
async def cafe(session_maker) -> Cafe:
    async with session_maker() as s:
        milk = Ingredient(name="Milk", category="dairy", unit="l", quantity=Decimal("10.000"), reorder_level=Decimal("2"))
        espresso = Ingredient(name="Espresso Beans", category="coffee", unit="kg", quantity=Decimal("1.000"), reorder_level=Decimal("0.1"))
        chocolate = Ingredient(name="Chocolate Syrup", category="syrup", unit="l", quantity=Decimal("1.000"), reorder_level=Decimal("0.2"))
        cream = Ingredient(name="Whipped Cream", category="dairy", unit="l", quantity=Decimal("0.500"), reorder_level=Decimal("0.1"))
        s.add_all([milk, espresso, chocolate, cream])
        await s.flush()

        latte = MenuItem(name="Latte", category="coffee", price=Decimal("4.50"))
        latte.recipe_ingredients = [
            RecipeIngredient(ingredient_id=milk.id, required_amount=Decimal("200"), unit="ml"),
            RecipeIngredient(ingredient_id=espresso.id, required_amount=Decimal("18"), unit="g"),
        ]
        mocha = MenuItem(name="Mocha", category="coffee", price=Decimal("5.00"))
        mocha.recipe_ingredients = [
            RecipeIngredient(ingredient_id=milk.id, required_amount=Decimal("0.18")),
            RecipeIngredient(ingredient_id=espresso.id, required_amount=Decimal("18"), unit="g"),
            RecipeIngredient(ingredient_id=chocolate.id, required_amount=Decimal("30"), unit="ml"),
            RecipeIngredient(ingredient_id=cream.id, required_amount=Decimal("25"), unit="ml", is_optional=True),
        ]
        carafe = MenuItem(name="Milk Carafe", category="retail", price=Decimal("2.00"))
        carafe.recipe_ingredients = [
            RecipeIngredient(ingredient_id=milk.id, required_amount=Decimal("1"), unit="l"),
        ]
        seasonal = MenuItem(name="Pumpkin Latte", category="coffee", price=Decimal("6.00"), is_available=False)
        seasonal.recipe_ingredients = [
            RecipeIngredient(ingredient_id=milk.id, required_amount=Decimal("200"), unit="ml"),
        ]
        customer = Customer(name="Alice", email="alice@example.com", loyalty_points=0)
        s.add_all([latte, mocha, carafe, seasonal, customer])
        await s.commit()

        return Cafe(
            milk=milk.id,
            espresso=espresso.id,
            chocolate=chocolate.id,
            whipped_cream=cream.id,
            latte=latte.id,
            mocha=mocha.id,
            carafe=carafe.id,
            seasonal=seasonal.id,
            customer=customer.id,
        )


@pytest.fixture
def place(session_maker):
    """Place an order and, by default, confirm its payment so it is `preparing`."""

    async def _place(lines: List[dict], *, customer_id: Optional[UUID] = None, confirm: bool = True) -> UUID:
        async with session_maker() as s:
            order = await OrderService(s).place_order(
                [OrderLineItem(**line) for line in lines],
                customer_id=customer_id,
            )
            await s.commit()
            order_id = order.id
        if confirm:
            async with session_maker() as s:
                await OrderStateMachine(s, emitter=EventEmitter()).confirm_payment(order_id)
        return order_id

    return _place


@pytest.fixture
def machine(session_maker, events):
    """Run one state machine call in a fresh session, like one request would."""
    emitter, _ = events

    async def _run(method: str, *args, **kwargs):
        async with session_maker() as s:
            return await getattr(OrderStateMachine(s, emitter=emitter), method)(*args, **kwargs)

    return _run


@pytest.fixture
def stock(session_maker):
    async def _stock(ingredient_id: UUID) -> Decimal:
        async with session_maker() as s:
            ing = await s.get(Ingredient, ingredient_id)
            return ing.quantity

    return _stock


@pytest.fixture
async def staff(session_maker) -> User:
    async with session_maker() as s:
        user = User(
            email="barista@example.com",
            hashed_password="not-a-real-hash",
            is_active=True,
            is_superuser=True,
            is_verified=True,
            display_name="Barista",
        )
        s.add(user)
        await s.commit()
        return user


@pytest.fixture
async def client(session_maker, staff):
    from core.auth import current_active_superuser, current_active_user
    from db.database import get_async_session
    from main import app

    async def override_get_async_session():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_async_session] = override_get_async_session
    app.dependency_overrides[current_active_user] = lambda: staff
    app.dependency_overrides[current_active_superuser] = lambda: staff
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
