import asyncio

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, patch

from storefront import ledger
from storefront.cart import add_item, get_cart, remove_item
from storefront.errors import (
    EmptyCartError,
    InvalidTransitionError,
    NotFoundError,
    StockValidationError,
)
from storefront.history import get_inventory_history, reconcile
from storefront.models import ChangeType, OrderStatus, StockItem
from storefront.orders import (
    cancel_order,
    create_order_from_cart,
    get_order,
    get_order_stats,
    get_order_status_history,
    list_user_orders,
    update_order_status,
)
from storefront.schemas import DeliveryInfo
from storefront.status import is_valid_walk

DELIVERY = DeliveryInfo(delivery_address="1-2-3 Shibuya, Tokyo", phone="090-1234-5678", notes="Ring twice")


@pytest_asyncio.fixture
async def checked_out(session, make_item):
    """User 1 buys two of A (10.0) and one of B (20.0)."""
    await make_item("item-A", stock=10, price=10.0)
    await make_item("item-B", stock=20, price=20.0)
    await add_item(session, "user-1", "item-A", 2)
    await add_item(session, "user-1", "item-B", 1)
    return await create_order_from_cart(session, "user-1", DELIVERY)


@pytest.mark.asyncio
async def test_checkout_creates_order_and_consumes_reservations(session, checked_out, read_item):
    order = checked_out

    assert order.status == OrderStatus.PENDING
    assert order.total_amount == 40.0
    assert order.summary.total_quantity == 3
    assert sorted((i.item_id, i.quantity, i.price) for i in order.items) == [("item-A", 2, 10.0), ("item-B", 1, 20.0)]
    assert order.delivery_address == DELIVERY.delivery_address
    assert order.notes == "Ring twice"

    item_a, item_b = await read_item("item-A"), await read_item("item-B")
    assert (item_a.stock, item_a.reserved) == (8, 0)
    assert (item_b.stock, item_b.reserved) == (19, 0)
    assert (await get_cart(session, "user-1")).items == []

    subtracts = await get_inventory_history(session, "item-A", order_id=order.id)
    assert [h.change_type for h in subtracts] == [ChangeType.SUBTRACT]
    assert (await reconcile(session, "item-A")).consistent


@pytest.mark.asyncio
async def test_checkout_starts_status_history(session, checked_out):
    history = await get_order_status_history(session, checked_out.id, user_id="user-1")

    assert [(h.previous_status, h.new_status) for h in history] == [(None, OrderStatus.PENDING)]
    assert history[0].updated_by == "user-1"


@pytest.mark.asyncio
async def test_order_prices_are_frozen(session, session_factory, checked_out):
    async with session_factory() as other:
        async with other.begin():
            (await other.get(StockItem, "item-A")).price = 99.0

    order = await get_order(session, checked_out.id)

    assert order.total_amount == 40.0
    assert {i.item_id: i.price for i in order.items}["item-A"] == 10.0


@pytest.mark.asyncio
async def test_checkout_with_empty_cart(session, make_item):
    with pytest.raises(EmptyCartError) as excinfo:
        await create_order_from_cart(session, "user-1", DELIVERY)
    assert excinfo.value.http_status == 422

    await make_item("item-A", stock=10)
    line = await add_item(session, "user-1", "item-A", 1)
    await remove_item(session, "user-1", line.id)
    with pytest.raises(EmptyCartError):
        await create_order_from_cart(session, "user-1", DELIVERY)


@pytest.mark.asyncio
async def test_checkout_reports_every_shortfall_and_changes_nothing(session, session_factory, make_item, read_item):
    await make_item("item-A", stock=10)
    await make_item("item-B", stock=10)
    await add_item(session, "user-1", "item-A", 3)
    await add_item(session, "user-1", "item-B", 2)

    # Reservations drained behind the cart's back.
    async with session_factory() as other:
        async with other.begin():
            (await other.get(StockItem, "item-A")).reserved = 1
            (await other.get(StockItem, "item-B")).reserved = 0

    with pytest.raises(StockValidationError) as excinfo:
        await create_order_from_cart(session, "user-1", DELIVERY)

    shortfalls = excinfo.value.shortfalls
    assert sorted((s.item_id, s.required, s.actual) for s in shortfalls) == [("item-A", 3, 1), ("item-B", 2, 0)]
    assert excinfo.value.to_dict()["code"] == "STOCK_VALIDATION_FAILED"
    assert len((await get_cart(session, "user-1")).items) == 2
    assert (await read_item("item-A")).stock == 10
    assert await list_user_orders(session, "user-1") == []


@pytest.mark.asyncio
async def test_cancel_pending_order_restores_stock(session, checked_out, read_item, fast_retry):
    cancelled = await cancel_order(session, checked_out.id, "user-1", reason="Changed my mind", retry_policy=fast_retry)

    assert cancelled.status == OrderStatus.CANCELLED
    assert "[cancelled] Changed my mind" in cancelled.notes
    assert (await read_item("item-A")).stock == 10
    assert (await read_item("item-B")).stock == 20

    history = await get_order_status_history(session, checked_out.id)
    assert [(h.previous_status, h.new_status) for h in history] == [
        (None, OrderStatus.PENDING),
        (OrderStatus.PENDING, OrderStatus.CANCELLED),
    ]
    assert history[1].note == "Cancellation reason: Changed my mind"

    restores = await get_inventory_history(session, "item-A", change_type=ChangeType.ADD, order_id=checked_out.id)
    assert len(restores) == 1
    assert restores[0].quantity == 2
    assert (await reconcile(session, "item-A")).consistent

    with pytest.raises(InvalidTransitionError):
        await cancel_order(session, checked_out.id, "user-1", retry_policy=fast_retry)
    assert (await read_item("item-A")).stock == 10


@pytest.mark.asyncio
async def test_cancel_someone_elses_order(session, checked_out):
    with pytest.raises(NotFoundError):
        await cancel_order(session, checked_out.id, "user-2")
    assert (await get_order(session, checked_out.id)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_cancel_after_preparing_is_rejected(session, checked_out, read_item):
    await update_order_status(session, checked_out.id, OrderStatus.CONFIRMED, "admin-1")
    await update_order_status(session, checked_out.id, OrderStatus.PREPARING, "admin-1")

    with pytest.raises(InvalidTransitionError):
        await cancel_order(session, checked_out.id, "user-1")
    assert (await read_item("item-A")).stock == 8


@pytest.mark.asyncio
async def test_cancel_keeps_status_when_restore_fails(session, checked_out, read_item, fast_retry):
    with patch("storefront.ledger._compare_and_set_stock", new=AsyncMock(return_value=False)), patch(
        "storefront.orders.logger"
    ) as mock_logger:
        cancelled = await cancel_order(session, checked_out.id, "user-1", retry_policy=fast_retry)

    assert cancelled.status == OrderStatus.CANCELLED
    assert (await read_item("item-A")).stock == 8
    assert mock_logger.exception.call_count == 2
    failed = {call.kwargs["item_id"] for call in mock_logger.exception.call_args_list}
    assert failed == {"item-A", "item-B"}
    assert all(call.kwargs["order_id"] == checked_out.id for call in mock_logger.exception.call_args_list)


@pytest.mark.asyncio
async def test_cancel_in_caller_transaction_isolates_failed_restores(session, checked_out, read_item, fast_retry):
    real_compare_and_set = ledger._compare_and_set_stock

    async def conflict_on_a(db_session, item_id, expected_version, new_stock):
        if item_id == "item-A":
            return False
        return await real_compare_and_set(db_session, item_id, expected_version, new_stock)

    with patch("storefront.ledger._compare_and_set_stock", new=conflict_on_a):
        async with session.begin():
            cancelled = await cancel_order(session, checked_out.id, "user-1", retry_policy=fast_retry)

    assert cancelled.status == OrderStatus.CANCELLED
    assert (await read_item("item-A")).stock == 8
    assert (await read_item("item-B")).stock == 20


@pytest.mark.asyncio
async def test_skipping_a_status_is_rejected(session, checked_out):
    with pytest.raises(InvalidTransitionError) as excinfo:
        await update_order_status(session, checked_out.id, OrderStatus.DELIVERY, "admin-1")

    assert excinfo.value.to_dict()["current"] == "pending"
    assert excinfo.value.to_dict()["requested"] == "delivery"
    assert (await get_order(session, checked_out.id)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_full_lifecycle_history_is_a_valid_walk(session, checked_out):
    for status in (OrderStatus.CONFIRMED, OrderStatus.PREPARING, OrderStatus.DELIVERY):
        await update_order_status(session, checked_out.id, status, "admin-1")
    done = await update_order_status(session, checked_out.id, OrderStatus.COMPLETED, "admin-1", note="Left at door")

    assert done.status == OrderStatus.COMPLETED
    assert done.notes.endswith("[completed] Left at door")

    history = await get_order_status_history(session, checked_out.id)
    assert is_valid_walk([h.new_status for h in history])
    assert [h.new_status for h in history][-1] == OrderStatus.COMPLETED
    assert all(h.previous_status == prev.new_status for prev, h in zip(history, history[1:]))

    with pytest.raises(InvalidTransitionError):
        await update_order_status(session, checked_out.id, OrderStatus.CANCELLED, "admin-1")
    assert len(await get_order_status_history(session, checked_out.id)) == len(history)


@pytest.mark.asyncio
async def test_admin_can_cancel_through_status_update(session, checked_out, read_item, fast_retry):
    await update_order_status(session, checked_out.id, OrderStatus.CONFIRMED, "admin-1")

    cancelled = await update_order_status(
        session, checked_out.id, OrderStatus.CANCELLED, "admin-1", note="Out of dough", retry_policy=fast_retry
    )

    assert cancelled.status == OrderStatus.CANCELLED
    assert (await read_item("item-A")).stock == 10
    history = await get_order_status_history(session, checked_out.id)
    assert (history[-1].previous_status, history[-1].updated_by) == (OrderStatus.CONFIRMED, "admin-1")


@pytest.mark.asyncio
async def test_orders_are_visible_only_to_their_owner(session, checked_out):
    assert (await get_order(session, checked_out.id, user_id="user-1")).id == checked_out.id
    with pytest.raises(NotFoundError):
        await get_order(session, checked_out.id, user_id="user-2")
    with pytest.raises(NotFoundError):
        await get_order_status_history(session, checked_out.id, user_id="user-2")
    with pytest.raises(NotFoundError):
        await get_order(session, "no-such-order")


@pytest.mark.asyncio
async def test_list_user_orders_and_stats(session, checked_out, fast_retry):
    await add_item(session, "user-1", "item-A", 1)
    second = await create_order_from_cart(session, "user-1", DELIVERY)
    await cancel_order(session, second.id, "user-1", retry_policy=fast_retry)

    orders = await list_user_orders(session, "user-1")
    pending = await list_user_orders(session, "user-1", status=OrderStatus.PENDING)

    assert {o.id for o in orders} == {checked_out.id, second.id}
    assert [o.id for o in pending] == [checked_out.id]
    assert await list_user_orders(session, "user-2") == []

    stats = await get_order_stats(session)
    assert stats.total_orders == 2
    assert stats.total_revenue == 40.0
    assert stats.status_breakdown[OrderStatus.PENDING] == 1
    assert stats.status_breakdown[OrderStatus.CANCELLED] == 1
    assert stats.status_breakdown[OrderStatus.COMPLETED] == 0


@pytest.mark.asyncio
async def test_checkout_locks_the_cart_before_reading_lines(session, make_item, statements, cart_locked_first):
    await make_item("item-A", stock=10)
    await add_item(session, "user-1", "item-A", 2)

    statements.clear()
    await create_order_from_cart(session, "user-1", DELIVERY)

    assert cart_locked_first()


@pytest.mark.asyncio
async def test_cart_edit_racing_checkout_keeps_reservations_backed(session_factory, make_item, read_item):
    await make_item("item-A", stock=10)
    async with session_factory() as setup:
        await add_item(setup, "user-1", "item-A", 2)

    async def checkout():
        async with session_factory() as db_session:
            return await create_order_from_cart(db_session, "user-1", DELIVERY)

    async def add_one_more():
        async with session_factory() as db_session:
            return await add_item(db_session, "user-1", "item-A", 1)

    order, _ = await asyncio.gather(checkout(), add_one_more())

    async with session_factory() as db_session:
        cart = await get_cart(db_session, "user-1")
    in_cart = sum(line.quantity for line in cart.items)
    item = await read_item("item-A")
    assert item.reserved == in_cart
    assert item.stock == 10 - order.summary.total_quantity
    assert order.summary.total_quantity + in_cart == 3


@pytest.mark.asyncio
async def test_double_checkout_of_one_cart_creates_one_order(session_factory, make_item, read_item):
    await make_item("item-A", stock=10)
    async with session_factory() as setup:
        await add_item(setup, "user-2", "item-A", 3)
        await add_item(setup, "user-1", "item-A", 2)

    async def checkout():
        async with session_factory() as db_session:
            return await create_order_from_cart(db_session, "user-1", DELIVERY)

    results = await asyncio.gather(checkout(), checkout(), return_exceptions=True)

    assert sum(isinstance(r, EmptyCartError) for r in results) == 1
    assert sum(not isinstance(r, Exception) for r in results) == 1
    item = await read_item("item-A")
    assert (item.stock, item.reserved) == (8, 3)
    async with session_factory() as db_session:
        assert len(await list_user_orders(db_session, "user-1")) == 1
