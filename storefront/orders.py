"""Order orchestrator: checkout, cancellation and admin status changes.

Checkout is one transaction: validate the reserved stock behind every cart
line, create the order, confirm each reservation into a real stock decrement,
empty the cart and log the initial status. Any failure rolls all of it back.

Cancellation commits the status change first and then puts the ordered units
back on the shelf one item at a time. Those restores are best-effort: a failed
restore is logged with the order id and never undoes the cancellation.
"""

from uuid import uuid4

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from storefront.cart import cart_lines, find_cart
from storefront.database import transaction
from storefront.errors import EmptyCartError, NotFoundError, StockShortfall, StockValidationError, StorefrontError
from storefront.ledger import adjust_stock, load_stock_item
from storefront.models import ChangeType, Order, OrderItem, OrderStatus, OrderStatusHistory, utcnow
from storefront.reservations import confirm_reservation
from storefront.retry import RetryPolicy
from storefront.schemas import DeliveryInfo, OrderItemRead, OrderRead, OrderStats, OrderStatusHistoryRead, OrderSummary
from storefront.status import INITIAL_STATUS, ensure_transition

logger = structlog.get_logger(__name__)


def _to_read(order: Order) -> OrderRead:
    items = [OrderItemRead.model_validate(item) for item in order.items]
    return OrderRead(
        id=order.id,
        user_id=order.user_id,
        total_amount=order.total_amount,
        status=order.status,
        delivery_address=order.delivery_address,
        phone=order.phone,
        notes=order.notes,
        order_date=order.order_date,
        updated_at=order.updated_at,
        items=items,
        summary=OrderSummary(
            item_count=len(items),
            total_quantity=sum(item.quantity for item in items),
            total_amount=sum(item.quantity * item.price for item in items),
        ),
    )


def _append_note(notes: str | None, status: OrderStatus, note: str | None) -> str | None:
    if not note:
        return notes
    return f"{notes or ''}\n[{status.value}] {note}".strip()


async def _load_order(
    session: AsyncSession, order_id: str, user_id: str | None = None, lock: bool = False, with_items: bool = False
) -> Order:
    query = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    if lock:
        query = query.with_for_update()
    if with_items:
        query = query.options(selectinload(Order.items))
    order = (await session.execute(query)).scalar_one_or_none()
    # Someone else's order is reported exactly like a missing one.
    if order is None or (user_id is not None and order.user_id != user_id):
        raise NotFoundError("Order", order_id)
    return order


async def get_order(session: AsyncSession, order_id: str, user_id: str | None = None) -> OrderRead:
    async with transaction(session):
        order = await _load_order(session, order_id, user_id, with_items=True)
        return _to_read(order)


async def list_user_orders(session: AsyncSession, user_id: str, status: OrderStatus | None = None) -> list[OrderRead]:
    query = (
        select(Order)
        .where(Order.user_id == user_id)
        .options(selectinload(Order.items))
        .order_by(Order.order_date.desc(), Order.id)
        .execution_options(populate_existing=True)
    )
    if status is not None:
        query = query.where(Order.status == OrderStatus(status))
    async with transaction(session):
        result = await session.execute(query)
        return [_to_read(order) for order in result.scalars().all()]


async def create_order_from_cart(session: AsyncSession, user_id: str, delivery: DeliveryInfo) -> OrderRead:
    async with transaction(session):
        # Held until commit: concurrent cart edits and a second checkout of the
        # same cart wait here, then see the lines this checkout leaves behind.
        cart = await find_cart(session, user_id, lock=True)
        lines = await cart_lines(session, cart.id) if cart is not None else []
        if not lines:
            raise EmptyCartError(user_id)

        # Lock in a stable order so concurrent checkouts sharing items cannot deadlock.
        items = {}
        for item_id in sorted({line.item_id for line in lines}):
            try:
                items[item_id] = await load_stock_item(session, item_id, lock=True)
            except NotFoundError:
                items[item_id] = None

        shortfalls = []
        for line in lines:
            item = items[line.item_id]
            if item is None:
                shortfalls.append(StockShortfall(line.item_id, "item no longer exists", line.quantity, 0))
                continue
            if item.reserved < line.quantity:
                shortfalls.append(StockShortfall(line.item_id, "reserved stock below cart quantity", line.quantity, item.reserved))
            if item.stock < line.quantity:
                shortfalls.append(StockShortfall(line.item_id, "stock below cart quantity", line.quantity, item.stock))
        if shortfalls:
            logger.warning("checkout_stock_validation_failed", user_id=user_id, shortfalls=len(shortfalls))
            raise StockValidationError(shortfalls)

        prices = {line.id: items[line.item_id].price for line in lines}
        order = Order(
            id=str(uuid4()),
            user_id=user_id,
            total_amount=sum(prices[line.id] * line.quantity for line in lines),
            status=INITIAL_STATUS,
            delivery_address=delivery.delivery_address,
            phone=delivery.phone,
            notes=delivery.notes,
        )
        session.add(order)
        await session.flush()

        for line in lines:
            await confirm_reservation(session, line.item_id, line.quantity, order.id, user_id)
            session.add(OrderItem(order_id=order.id, item_id=line.item_id, quantity=line.quantity, price=prices[line.id]))

        for line in lines:
            await session.delete(line)

        session.add(
            OrderStatusHistory(
                order_id=order.id,
                previous_status=None,
                new_status=INITIAL_STATUS,
                updated_by=user_id,
                note="Order created",
            )
        )
        await session.flush()
        result = _to_read(await _load_order(session, order.id, with_items=True))

    logger.info("order_created", order_id=result.id, user_id=user_id, total_amount=result.total_amount, items=len(result.items))
    return result


async def _restore_stock(session, order_id, items, actor_id, retry_policy):
    for item_id, quantity in items:
        try:
            await adjust_stock(
                session,
                item_id,
                quantity,
                ChangeType.ADD,
                actor_id,
                order_id=order_id,
                note=f"Restored from cancelled order {order_id}: {quantity} units",
                retry_policy=retry_policy,
            )
        except (StorefrontError, SQLAlchemyError):
            logger.exception("stock_restore_failed", order_id=order_id, item_id=item_id, quantity=quantity)


async def cancel_order(
    session: AsyncSession,
    order_id: str,
    user_id: str,
    reason: str | None = None,
    *,
    admin: bool = False,
    retry_policy: RetryPolicy | None = None,
) -> OrderRead:
    """Cancel a pending or confirmed order and put its units back in stock.

    ``user_id`` must own the order unless ``admin`` is set; it is recorded as
    the actor either way.

    The status change commits before any stock is restored, the reverse of
    restoring first and flipping the status last. A crash between the two
    leaves a cancelled order whose units are still out of stock (no ``add``
    history rows tagged with the order id), never restored stock on an order
    that is still active. A concurrent second cancel fails the transition
    check instead of restoring twice.
    """
    async with transaction(session):
        order = await _load_order(session, order_id, None if admin else user_id, lock=True, with_items=True)
        previous = order.status
        ensure_transition(previous, OrderStatus.CANCELLED)

        session.add(
            OrderStatusHistory(
                order_id=order_id,
                previous_status=previous,
                new_status=OrderStatus.CANCELLED,
                updated_by=user_id,
                note=f"Cancellation reason: {reason}" if reason else None,
            )
        )
        order.status = OrderStatus.CANCELLED
        order.notes = _append_note(order.notes, OrderStatus.CANCELLED, reason)
        order.updated_at = utcnow()
        items = [(item.item_id, item.quantity) for item in order.items]
        await session.flush()

    logger.info("order_cancelled", order_id=order_id, previous_status=previous.value, actor_id=user_id)
    await _restore_stock(session, order_id, items, user_id, retry_policy)
    return await get_order(session, order_id)


async def update_order_status(
    session: AsyncSession,
    order_id: str,
    new_status: OrderStatus,
    actor_id: str,
    note: str | None = None,
    retry_policy: RetryPolicy | None = None,
) -> OrderRead:
    new_status = OrderStatus(new_status)
    if new_status == OrderStatus.CANCELLED:
        return await cancel_order(session, order_id, actor_id, reason=note, admin=True, retry_policy=retry_policy)

    async with transaction(session):
        order = await _load_order(session, order_id, lock=True)
        previous = order.status
        ensure_transition(previous, new_status)

        session.add(
            OrderStatusHistory(
                order_id=order_id,
                previous_status=previous,
                new_status=new_status,
                updated_by=actor_id,
                note=note,
            )
        )
        order.status = new_status
        order.notes = _append_note(order.notes, new_status, note)
        order.updated_at = utcnow()
        await session.flush()

    logger.info("order_status_updated", order_id=order_id, previous_status=previous.value, new_status=new_status.value, actor_id=actor_id)
    return await get_order(session, order_id)


async def get_order_status_history(
    session: AsyncSession, order_id: str, user_id: str | None = None
) -> list[OrderStatusHistoryRead]:
    async with transaction(session):
        await _load_order(session, order_id, user_id)
        result = await session.execute(
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.updated_at, OrderStatusHistory.id)
        )
        return [OrderStatusHistoryRead.model_validate(row) for row in result.scalars().all()]


async def get_order_stats(session: AsyncSession) -> OrderStats:
    async with transaction(session):
        total_orders = (await session.execute(select(func.count(Order.id)))).scalar_one()
        total_revenue = (
            await session.execute(
                select(func.coalesce(func.sum(Order.total_amount), 0.0)).where(Order.status != OrderStatus.CANCELLED)
            )
        ).scalar_one()
        rows = (await session.execute(select(Order.status, func.count(Order.id)).group_by(Order.status))).all()

    breakdown = {status: 0 for status in OrderStatus}
    for status, count in rows:
        breakdown[OrderStatus(status)] = count
    return OrderStats(total_orders=total_orders, total_revenue=float(total_revenue), status_breakdown=breakdown)
