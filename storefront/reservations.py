"""Reservation service: the only writer of ``StockItem.reserved``.

Reserve and release take a row lock (``SELECT ... FOR UPDATE``) for the whole
check-and-write, so two shoppers racing for the last unit of the same item
are serialized, while different items proceed in parallel.
"""

from contextlib import asynccontextmanager

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.database import transaction
from storefront.errors import InsufficientStockError, InvalidReleaseError, ItemUnavailableError, StorefrontError
from storefront.history import record_change
from storefront.ledger import load_stock_item
from storefront.models import ChangeType

logger = structlog.get_logger(__name__)


def _check_quantity(quantity: int) -> None:
    if quantity <= 0:
        raise ValueError("quantity must be positive")


async def reserve(session: AsyncSession, item_id: str, quantity: int, actor_id: str, note: str | None = None) -> int:
    """Hold ``quantity`` units for a cart. Returns the units still available."""
    _check_quantity(quantity)
    async with transaction(session):
        item = await load_stock_item(session, item_id, lock=True)
        if not item.is_available:
            raise ItemUnavailableError(item_id)

        available = item.stock - item.reserved
        if available < quantity:
            raise InsufficientStockError(quantity, available, item_id=item_id)

        reserved_before = item.reserved
        item.reserved = reserved_before + quantity
        item.version += 1
        record_change(
            session,
            item_id=item_id,
            change_type=ChangeType.RESERVE,
            quantity=quantity,
            stock_before=item.stock,
            stock_after=item.stock,
            reserved_before=reserved_before,
            reserved_after=item.reserved,
            actor_id=actor_id,
            note=note,
        )
        await session.flush()

    logger.info("stock_reserved", item_id=item_id, quantity=quantity, available=available - quantity, actor_id=actor_id)
    return available - quantity


async def release(session: AsyncSession, item_id: str, quantity: int, actor_id: str, note: str | None = None) -> int:
    """Give back ``quantity`` held units. Returns the units now available."""
    _check_quantity(quantity)
    async with transaction(session):
        item = await load_stock_item(session, item_id, lock=True)
        if item.reserved < quantity:
            raise InvalidReleaseError(quantity, item.reserved, item_id=item_id)

        reserved_before = item.reserved
        item.reserved = reserved_before - quantity
        item.version += 1
        record_change(
            session,
            item_id=item_id,
            change_type=ChangeType.RELEASE,
            quantity=quantity,
            stock_before=item.stock,
            stock_after=item.stock,
            reserved_before=reserved_before,
            reserved_after=item.reserved,
            actor_id=actor_id,
            note=note,
        )
        await session.flush()
        available = item.stock - item.reserved

    logger.info("reservation_released", item_id=item_id, quantity=quantity, available=available, actor_id=actor_id)
    return available


async def confirm_reservation(
    session: AsyncSession, item_id: str, quantity: int, order_id: str, actor_id: str
) -> int:
    """Turn held units into a sale: ``stock`` and ``reserved`` both drop by ``quantity``.

    Meant to run inside the checkout transaction already open on ``session``;
    nothing is committed here in that case. Returns the new stock.
    """
    _check_quantity(quantity)
    async with transaction(session):
        item = await load_stock_item(session, item_id, lock=True)
        if item.reserved < quantity:
            raise InsufficientStockError(quantity, item.reserved, item_id=item_id)
        if item.stock < quantity:
            raise InsufficientStockError(quantity, item.stock, item_id=item_id)

        stock_before, reserved_before = item.stock, item.reserved
        item.stock = stock_before - quantity
        item.reserved = reserved_before - quantity
        item.version += 1
        record_change(
            session,
            item_id=item_id,
            change_type=ChangeType.SUBTRACT,
            quantity=quantity,
            stock_before=stock_before,
            stock_after=item.stock,
            reserved_before=reserved_before,
            reserved_after=item.reserved,
            actor_id=actor_id,
            order_id=order_id,
            note=f"Stock subtracted for order {order_id}: {quantity} units",
        )
        await session.flush()
        new_stock = item.stock

    logger.info("reservation_confirmed", item_id=item_id, quantity=quantity, order_id=order_id, stock=new_stock)
    return new_stock


@asynccontextmanager
async def reservation_guard(
    session: AsyncSession, item_id: str, quantity: int, actor_id: str, note: str | None = None
):
    """Reserve on entry; release the same units if the block raises.

    Yields the units still available after the reservation.
    """
    available = await reserve(session, item_id, quantity, actor_id, note)
    try:
        yield available
    except Exception:
        try:
            await release(session, item_id, quantity, actor_id, note=f"Reservation rolled back: {quantity} units")
        except (StorefrontError, SQLAlchemyError):
            logger.exception("reservation_compensation_failed", item_id=item_id, quantity=quantity, actor_id=actor_id)
        raise
