"""Stock ledger: availability reads and optimistic stock adjustments.

``adjust_stock`` is the only code path that changes ``stock`` on its own
(restocks, manual corrections, cancellation restores). It never locks; it reads
the row version and writes with ``UPDATE ... WHERE id = ? AND version = ?``,
retrying under a ``RetryPolicy`` when another writer bumped the version first.
"""

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.database import transaction
from storefront.errors import ConcurrencyExhaustedError, InsufficientStockError, NotFoundError, StaleStockVersion
from storefront.history import record_change
from storefront.models import ChangeType, StockItem, utcnow
from storefront.retry import DEFAULT_RETRY_POLICY, RetryPolicy
from storefront.schemas import StockAdjustment, StockAvailability, StockStatus

logger = structlog.get_logger(__name__)


async def load_stock_item(session: AsyncSession, item_id: str, lock: bool = False) -> StockItem:
    """Fetch a fresh copy of the row, optionally under ``SELECT ... FOR UPDATE``."""
    query = select(StockItem).where(StockItem.id == item_id).execution_options(populate_existing=True)
    if lock:
        query = query.with_for_update()
    item = (await session.execute(query)).scalar_one_or_none()
    if item is None:
        raise NotFoundError("StockItem", item_id)
    return item


def _availability(item: StockItem) -> dict:
    return {
        "item_id": item.id,
        "stock": item.stock,
        "reserved": item.reserved,
        "available": item.stock - item.reserved,
        "min_stock": item.min_stock,
        "is_low_stock": item.stock <= item.min_stock,
    }


async def get_availability(session: AsyncSession, item_id: str) -> StockAvailability:
    async with transaction(session):
        item = await load_stock_item(session, item_id)
        return StockAvailability(**_availability(item))


async def list_stock_status(session: AsyncSession, low_stock_only: bool = False) -> list[StockStatus]:
    query = select(StockItem).order_by(StockItem.name).execution_options(populate_existing=True)
    if low_stock_only:
        query = query.where(StockItem.stock <= StockItem.min_stock)
    async with transaction(session):
        result = await session.execute(query)
        return [
            StockStatus(**_availability(item), name=item.name, is_available=item.is_available)
            for item in result.scalars().all()
        ]


async def _compare_and_set_stock(session: AsyncSession, item_id: str, expected_version: int, new_stock: int) -> bool:
    result = await session.execute(
        update(StockItem)
        .where(StockItem.id == item_id, StockItem.version == expected_version)
        .values(stock=new_stock, version=expected_version + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _adjust_once(session, item_id, quantity, operation, actor_id, order_id, note) -> StockAdjustment:
    row = (
        await session.execute(
            select(StockItem.stock, StockItem.reserved, StockItem.version).where(StockItem.id == item_id)
        )
    ).one_or_none()
    if row is None:
        raise NotFoundError("StockItem", item_id)

    new_stock = row.stock + quantity if operation == ChangeType.ADD else row.stock - quantity
    if new_stock < 0 or new_stock < row.reserved:
        raise InsufficientStockError(quantity, row.stock - row.reserved, item_id=item_id)

    if not await _compare_and_set_stock(session, item_id, row.version, new_stock):
        raise StaleStockVersion(item_id)

    record_change(
        session,
        item_id=item_id,
        change_type=operation,
        quantity=quantity,
        stock_before=row.stock,
        stock_after=new_stock,
        reserved_before=row.reserved,
        reserved_after=row.reserved,
        actor_id=actor_id,
        order_id=order_id,
        note=note,
    )
    return StockAdjustment(item_id=item_id, stock=new_stock, version=row.version + 1)


async def adjust_stock(
    session: AsyncSession,
    item_id: str,
    quantity: int,
    operation: ChangeType,
    actor_id: str,
    order_id: str | None = None,
    note: str | None = None,
    retry_policy: RetryPolicy | None = None,
) -> StockAdjustment:
    """Add or subtract physical stock.

    Raises ``InsufficientStockError`` if the result would go below zero or below
    the units currently reserved, and ``ConcurrencyExhaustedError`` once the
    retry policy gives up on version conflicts.
    """
    operation = ChangeType(operation)
    if operation not in (ChangeType.ADD, ChangeType.SUBTRACT):
        raise ValueError(f"adjust_stock only supports add/subtract, got {operation!r}")
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    policy = retry_policy or DEFAULT_RETRY_POLICY
    try:
        async for attempt in policy.retrying():
            with attempt:
                async with transaction(session, nested=True):
                    adjustment = await _adjust_once(session, item_id, quantity, operation, actor_id, order_id, note)
    except StaleStockVersion:
        logger.warning("stock_update_retries_exhausted", item_id=item_id, attempts=policy.max_attempts)
        raise ConcurrencyExhaustedError(item_id, policy.max_attempts)

    logger.info(
        "stock_adjusted",
        item_id=item_id,
        operation=operation.value,
        quantity=quantity,
        stock=adjustment.stock,
        order_id=order_id,
        actor_id=actor_id,
    )
    return adjustment
