"""Append-only inventory audit log.

Rows are written by the ledger and the reservation service inside the same
transaction as the counter change they describe, and never touched again.
Each row keeps before/after values of both counters, so the log can be
replayed to reconcile ``stock`` and ``reserved``.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.database import transaction
from storefront.errors import NotFoundError
from storefront.models import ChangeType, InventoryHistory, StockItem
from storefront.schemas import InventoryHistoryRead, ReconciliationReport

DEFAULT_NOTES = {
    ChangeType.ADD: "Stock added: {quantity} units",
    ChangeType.SUBTRACT: "Stock subtracted: {quantity} units",
    ChangeType.RESERVE: "Stock reserved: {quantity} units",
    ChangeType.RELEASE: "Reservation released: {quantity} units",
}


def record_change(
    session: AsyncSession,
    *,
    item_id: str,
    change_type: ChangeType,
    quantity: int,
    stock_before: int,
    stock_after: int,
    reserved_before: int,
    reserved_after: int,
    actor_id: str,
    order_id: str | None = None,
    note: str | None = None,
) -> InventoryHistory:
    entry = InventoryHistory(
        item_id=item_id,
        change_type=change_type,
        quantity=quantity,
        stock_before=stock_before,
        stock_after=stock_after,
        reserved_before=reserved_before,
        reserved_after=reserved_after,
        order_id=order_id,
        actor_id=actor_id,
        note=note or DEFAULT_NOTES[change_type].format(quantity=quantity),
    )
    session.add(entry)
    return entry


async def get_inventory_history(
    session: AsyncSession,
    item_id: str,
    change_type: ChangeType | None = None,
    order_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[InventoryHistoryRead]:
    """Newest-first history for one item, optionally filtered by type or order."""
    query = select(InventoryHistory).where(InventoryHistory.item_id == item_id)
    if change_type is not None:
        query = query.where(InventoryHistory.change_type == change_type)
    if order_id is not None:
        query = query.where(InventoryHistory.order_id == order_id)
    query = query.order_by(InventoryHistory.id.desc()).limit(limit).offset(offset)

    async with transaction(session):
        result = await session.execute(query)
        return [InventoryHistoryRead.model_validate(row) for row in result.scalars().all()]


async def replay_history(session: AsyncSession, item_id: str) -> tuple[int, int, int, int] | None:
    """Fold the log oldest-first.

    Returns ``(stock, reserved, entries, gaps)`` where ``gaps`` counts rows whose
    before-values do not continue from the previous row, i.e. writes that
    bypassed the log. Returns None when the item has no history.
    """
    result = await session.execute(
        select(InventoryHistory).where(InventoryHistory.item_id == item_id).order_by(InventoryHistory.id)
    )
    entries = result.scalars().all()
    if not entries:
        return None

    stock, reserved = entries[0].stock_before, entries[0].reserved_before
    gaps = 0
    for entry in entries:
        if (entry.stock_before, entry.reserved_before) != (stock, reserved):
            gaps += 1
        stock += entry.stock_after - entry.stock_before
        reserved += entry.reserved_after - entry.reserved_before
    return stock, reserved, len(entries), gaps


async def reconcile(session: AsyncSession, item_id: str) -> ReconciliationReport:
    """Compare the live counters with a replay of the item's history."""
    async with transaction(session):
        result = await session.execute(
            select(StockItem.stock, StockItem.reserved).where(StockItem.id == item_id)
        )
        row = result.one_or_none()
        if row is None:
            raise NotFoundError("StockItem", item_id)
        replayed = await replay_history(session, item_id)

    if replayed is None:
        replayed = (row.stock, row.reserved, 0, 0)
    replayed_stock, replayed_reserved, entries, gaps = replayed
    return ReconciliationReport(
        item_id=item_id,
        stock=row.stock,
        reserved=row.reserved,
        replayed_stock=replayed_stock,
        replayed_reserved=replayed_reserved,
        entries=entries,
        gaps=gaps,
    )
