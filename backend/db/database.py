from collections.abc import AsyncGenerator
from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from core.config import settings

from .base import Base, ID_TYPE, utcnow  # noqa: F401


def _serialize_sqlite_writers(engine: AsyncEngine) -> None:
    # SQLite has no row locks. Take the database write lock at BEGIN so that
    # read-check-write sequences cannot interleave between connections.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    url = url or settings.database_url
    engine = create_async_engine(url, echo=settings.database_echo if echo is None else echo)
    if engine.dialect.name == "sqlite":
        _serialize_sqlite_writers(engine)
    return engine


engine = make_engine()
async_session_maker = async_sessionmaker(engine, expire_on_commit=False)


async def create_db_and_tables(bind: Optional[AsyncEngine] = None):
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        yield session


# Register every mapped class on Base.metadata and re-export for routers.
from .users import User  # noqa: E402,F401
from .customer import Customer  # noqa: E402,F401
from .ingredient import Ingredient  # noqa: E402,F401
from .menu_item import MenuItem  # noqa: E402,F401
from .recipe_ingredient import RecipeIngredient  # noqa: E402,F401
from .order import Order, OrderItem, OrderItemCustomization, OrderStatusHistory  # noqa: E402,F401
from .inventory.movement import InventoryMovement  # noqa: E402,F401
from .loyalty import LoyaltySetting, LoyaltyTransaction  # noqa: E402,F401
