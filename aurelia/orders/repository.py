from typing import Any, Dict, List, Optional
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from aurelia.common.utils import now
from aurelia.schema.full_schema import OrderItem, Orders


async def insert_order(session: AsyncSession, values: Dict[str, Any], items: List[Dict[str, Any]]) -> Orders:
    order = Orders(**values)
    order.items = [OrderItem(**it) for it in items]
    session.add(order)
    await session.flush()
    return order


async def get_order_by_id(session: AsyncSession, order_id: int, *, for_update: bool = False) -> Optional[Orders]:
    stmt = select(Orders).where(Orders.id == order_id)
    if for_update:
        stmt = stmt.with_for_update()
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def get_order_status(session: AsyncSession, order_id: int, *, for_update: bool = False) -> Optional[int]:
    stmt = select(Orders.status).where(Orders.id == order_id)
    if for_update:
        stmt = stmt.with_for_update()
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def update_order_fields(session: AsyncSession, order_id: int, *,
                              expected_status: Optional[int] = None, **values) -> bool:
    """Update an order, optionally only while it still has `expected_status`. Returns whether a row changed."""
    stmt = update(Orders).where(Orders.id == order_id)
    if expected_status is not None:
        stmt = stmt.where(Orders.status == expected_status)
    res = await session.execute(stmt.values(updated_at=now(), **values))
    return res.rowcount == 1


async def load_order_items(session: AsyncSession, order_id: int) -> List[OrderItem]:
    stmt = select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
    res = await session.execute(stmt)
    return list(res.scalars().all())
