import asyncio

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.database import get_session, init_db
from storefront.models import StockItem
from storefront.utils.logging import configure_logging

logger = structlog.get_logger(__name__)

DEFAULT_ITEMS = [
    {"id": "item-A", "name": "Margherita Pizza", "price": 10.0, "stock": 10, "min_stock": 3},
    {"id": "item-B", "name": "Caesar Salad", "price": 20.0, "stock": 20, "min_stock": 5},
    # Sold out, for exercising InsufficientStockError.
    {"id": "item-C", "name": "Tiramisu", "price": 6.5, "stock": 0, "min_stock": 2},
    {"id": "item-D", "name": "Seasonal Special", "price": 15.0, "stock": 8, "is_available": False},
]


async def seed_stock_items(session: AsyncSession, items: list[dict] | None = None) -> int:
    """Insert catalog stock rows that do not exist yet. Returns how many were added."""
    if items is None:
        items = DEFAULT_ITEMS
    added = 0
    async with session.begin():
        for data in items:
            if await session.get(StockItem, data["id"]):
                continue
            session.add(StockItem(**data))
            added += 1

    if added:
        logger.info("stock_items_seeded", added=added)
    else:
        logger.info("stock_items_already_seeded")
    return added


async def main():
    configure_logging()
    await init_db()
    async for session in get_session():
        await seed_stock_items(session)


if __name__ == "__main__":
    asyncio.run(main())
