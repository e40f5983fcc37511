import logging
from decimal import Decimal
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from core.errors import InsufficientStockError, NotFoundError, ValidationError
from db.customer import Customer
from db.database import utcnow
from db.menu_item import MenuItem
from db.order import Order, OrderItem, OrderItemCustomization, OrderStatusHistory
from schemas.orders import OrderLineItem
from services.fulfillment import FulfillmentValidator

logger = logging.getLogger(__name__)


class OrderRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, order_id: UUID, *, lock: bool = False) -> Order:
        stmt = (
            select(Order)
            .options(selectinload(Order.items).selectinload(OrderItem.customizations))
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update()
        res = await self.db.execute(stmt)
        order = res.scalar_one_or_none()
        if not order:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    async def list(
        self,
        *,
        status: Optional[str] = None,
        customer_id: Optional[UUID] = None,
        limit: int = 100,
    ) -> List[Order]:
        stmt = select(Order).options(selectinload(Order.items).selectinload(OrderItem.customizations))
        if status:
            stmt = stmt.where(Order.status == status)
        if customer_id:
            stmt = stmt.where(Order.customer_id == customer_id)
        res = await self.db.execute(stmt.order_by(Order.created_at.desc()).limit(limit))
        return list(res.scalars().all())

    async def compare_and_set(self, order_id: UUID, *, expected: dict, values: dict) -> bool:
        """UPDATE orders SET values WHERE id = order_id AND every expected column still matches.

        Returns False when another transaction changed the row first.
        """
        stmt = update(Order).where(Order.id == order_id)
        for column, value in expected.items():
            stmt = stmt.where(getattr(Order, column) == value)
        res = await self.db.execute(
            stmt.values(**values, updated_at=utcnow()).execution_options(synchronize_session="evaluate")
        )
        return res.rowcount == 1

    async def add_history(
        self,
        order: Order,
        *,
        from_status: Optional[str],
        to_status: str,
        notes: Optional[str] = None,
        user_id: Optional[UUID] = None,
    ) -> OrderStatusHistory:
        row = OrderStatusHistory(
            order_id=order.id,
            from_status=from_status,
            to_status=to_status,
            payment_status=order.payment_status,
            notes=notes,
            changed_by_user_id=user_id,
        )
        self.db.add(row)
        await self.db.flush()
        return row

    async def history(self, order_id: UUID) -> List[OrderStatusHistory]:
        res = await self.db.execute(
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.id)
        )
        return list(res.scalars().all())


class OrderService:
    """Checkout: validate, price and persist a new order in `pending`."""

    def __init__(self, db: AsyncSession, *, user_id: Optional[UUID] = None):
        self.db = db
        self.user_id = user_id
        self.repo = OrderRepository(db)

    async def place_order(
        self,
        items: Sequence[OrderLineItem],
        *,
        customer_id: Optional[UUID] = None,
        payment_method: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Order:
        if not items:
            raise ValidationError("An order needs at least one item")

        if customer_id is not None:
            customer = await self.db.get(Customer, customer_id)
            if customer is None:
                raise NotFoundError(f"Customer {customer_id} not found")

        report = await FulfillmentValidator(self.db).check(items, require_available=True)
        if not report.can_fulfill:
            logger.warning("Checkout rejected: %s", report.shortfalls)
            raise InsufficientStockError(report.shortfalls)

        res = await self.db.execute(select(MenuItem).where(MenuItem.id.in_({li.menu_item_id for li in items})))
        menu = {m.id: m for m in res.scalars().all()}

        order = Order(
            customer_id=customer_id,
            status="pending",
            payment_status="unpaid",
            payment_method=payment_method,
            notes=notes,
        )
        total = Decimal("0")
        for position, li in enumerate(items):
            m = menu[li.menu_item_id]
            line = OrderItem(
                menu_item_id=m.id,
                position=position,
                quantity=li.quantity,
                unit_price=m.price,
                name=m.name,
                customizations=[
                    OrderItemCustomization(ingredient_id=c.ingredient_id, amount=c.amount, unit=c.unit)
                    for c in li.customizations
                ],
            )
            order.items.append(line)
            total += Decimal(m.price) * li.quantity
        order.total_amount = total

        self.db.add(order)
        await self.db.flush()
        await self.repo.add_history(order, from_status=None, to_status="pending", notes="Order placed", user_id=self.user_id)
        logger.info("Order %s placed (%d lines, total %s)", order.id, len(order.items), total)
        return order
