"""Cart aggregate.

Each cart line is backed by a reservation of exactly its quantity, so every
change here is paired with a ``reserve`` or ``release`` on the same item.
"""

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.database import transaction
from storefront.errors import ItemUnavailableError, NotFoundError, StorefrontError
from storefront.ledger import load_stock_item
from storefront.models import Cart, CartItem, utcnow
from storefront.reservations import release, reservation_guard
from storefront.schemas import CartItemRead, CartLine, CartRead, CartSummary

logger = structlog.get_logger(__name__)


async def find_cart(session: AsyncSession, user_id: str, lock: bool = False) -> Cart | None:
    """Fetch the user's cart; ``lock`` takes ``SELECT ... FOR UPDATE`` on the cart row.

    Every write to a cart's lines holds this lock first, so line reads made
    afterwards in the same transaction cannot go stale.
    """
    query = select(Cart).where(Cart.user_id == user_id).execution_options(populate_existing=True)
    if lock:
        query = query.with_for_update()
    return (await session.execute(query)).scalar_one_or_none()


async def get_or_create_cart(session: AsyncSession, user_id: str, lock: bool = False) -> Cart:
    cart = await find_cart(session, user_id, lock=lock)
    if cart is not None:
        return cart

    cart = Cart(user_id=user_id)
    try:
        async with session.begin_nested():
            session.add(cart)
    except IntegrityError:
        # Another request created it first.
        cart = await find_cart(session, user_id, lock=lock)
    return cart


async def cart_lines(session: AsyncSession, cart_id: int) -> list[CartItem]:
    result = await session.execute(
        select(CartItem)
        .where(CartItem.cart_id == cart_id)
        .order_by(CartItem.id)
        .execution_options(populate_existing=True)
    )
    return list(result.unique().scalars().all())


async def _owned_line(session: AsyncSession, user_id: str, cart_item_id: int) -> CartItem:
    cart = await find_cart(session, user_id, lock=True)
    if cart is None:
        raise NotFoundError("CartItem", cart_item_id)
    result = await session.execute(
        select(CartItem)
        .where(CartItem.id == cart_item_id, CartItem.cart_id == cart.id)
        .execution_options(populate_existing=True)
    )
    line = result.unique().scalar_one_or_none()
    if line is None:
        raise NotFoundError("CartItem", cart_item_id)
    return line


def summarize(lines: list[CartItem]) -> CartSummary:
    return CartSummary(
        item_count=len(lines),
        total_quantity=sum(line.quantity for line in lines),
        total_amount=sum(line.item.price * line.quantity for line in lines),
    )


async def get_cart(session: AsyncSession, user_id: str) -> CartRead:
    async with transaction(session):
        cart = await find_cart(session, user_id)
        if cart is None:
            return CartRead(id=None, user_id=user_id, items=[], summary=summarize([]))
        lines = await cart_lines(session, cart.id)
        return CartRead(
            id=cart.id,
            user_id=cart.user_id,
            items=[
                CartLine(
                    id=line.id,
                    cart_id=line.cart_id,
                    item_id=line.item_id,
                    quantity=line.quantity,
                    name=line.item.name,
                    price=line.item.price,
                    subtotal=line.item.price * line.quantity,
                )
                for line in lines
            ],
            summary=summarize(lines),
        )


async def add_item(session: AsyncSession, user_id: str, item_id: str, quantity: int) -> CartItemRead:
    """Add ``quantity`` units of an item, reserving exactly that many more.

    If the reservation fails the cart is untouched. If writing the cart line
    fails after the reservation succeeded, the reservation is released before
    the error propagates.
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    async with transaction(session):
        item = await load_stock_item(session, item_id)
        if not item.is_available:
            raise ItemUnavailableError(item_id)

        cart = await get_or_create_cart(session, user_id, lock=True)
        existing = (
            await session.execute(
                select(CartItem)
                .where(CartItem.cart_id == cart.id, CartItem.item_id == item_id)
                .execution_options(populate_existing=True)
            )
        ).unique().scalar_one_or_none()

        note = f"Reserved for cart {cart.id}: {quantity} units"
        async with reservation_guard(session, item_id, quantity, user_id, note=note):
            async with session.begin_nested():
                if existing is not None:
                    existing.quantity += quantity
                    line = existing
                else:
                    line = CartItem(cart_id=cart.id, item_id=item_id, quantity=quantity)
                    session.add(line)
                cart.updated_at = utcnow()

        result = CartItemRead.model_validate(line)

    logger.info("cart_item_added", user_id=user_id, item_id=item_id, quantity=quantity, line_quantity=result.quantity)
    return result


async def update_item_quantity(
    session: AsyncSession, user_id: str, cart_item_id: int, new_quantity: int
) -> CartItemRead | None:
    """Set a line's quantity; ``new_quantity <= 0`` removes the line and returns None."""
    async with transaction(session):
        line = await _owned_line(session, user_id, cart_item_id)
        old_quantity = line.quantity

        if new_quantity <= 0:
            await release(session, line.item_id, old_quantity, user_id, note=f"Cart line {line.id} removed")
            await session.delete(line)
            await session.flush()
            result = None
        else:
            delta = new_quantity - old_quantity
            if delta > 0:
                note = f"Cart line {line.id} increased by {delta} units"
                async with reservation_guard(session, line.item_id, delta, user_id, note=note):
                    async with session.begin_nested():
                        line.quantity = new_quantity
            elif delta < 0:
                await release(session, line.item_id, -delta, user_id, note=f"Cart line {line.id} decreased by {-delta} units")
                line.quantity = new_quantity
                await session.flush()
            result = CartItemRead.model_validate(line)

    logger.info("cart_item_updated", user_id=user_id, cart_item_id=cart_item_id, old=old_quantity, new=new_quantity)
    return result


async def remove_item(session: AsyncSession, user_id: str, cart_item_id: int) -> None:
    async with transaction(session):
        line = await _owned_line(session, user_id, cart_item_id)
        await release(session, line.item_id, line.quantity, user_id, note=f"Cart line {line.id} removed")
        await session.delete(line)
        await session.flush()

    logger.info("cart_item_removed", user_id=user_id, cart_item_id=cart_item_id)


async def clear_cart(session: AsyncSession, user_id: str) -> int:
    """Empty the cart, releasing every line's reservation.

    A failed release is logged and skipped; the cart is emptied regardless.
    Returns the number of lines removed.
    """
    async with transaction(session):
        cart = await find_cart(session, user_id, lock=True)
        if cart is None:
            return 0
        lines = await cart_lines(session, cart.id)
        if not lines:
            return 0

        note = f"Cart {cart.id} cleared"
        for item_id, quantity in [(line.item_id, line.quantity) for line in lines]:
            try:
                async with session.begin_nested():
                    await release(session, item_id, quantity, user_id, note=note)
            except (StorefrontError, SQLAlchemyError):
                logger.exception("cart_release_failed", user_id=user_id, item_id=item_id, quantity=quantity)

        for line in lines:
            await session.delete(line)
        await session.flush()

    logger.info("cart_cleared", user_id=user_id, removed=len(lines))
    return len(lines)
