import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.dialects import postgresql

from storefront.database import create_engine, create_session_factory, init_db
from storefront.ledger import load_stock_item
from storefront.models import StockItem
from storefront.retry import RetryPolicy


async def _no_sleep(seconds):
    return None


@pytest_asyncio.fixture
async def engine(tmp_path):
    """A fresh SQLite file database per test; file-backed so every session gets its own connection."""
    test_engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}", echo=False)
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as db_session:
        yield db_session


@pytest.fixture
def fast_retry():
    return RetryPolicy(max_attempts=3, base_delay=0.001, max_delay=0.002, sleep=_no_sleep)


@pytest.fixture
def make_item(session_factory):
    async def _make_item(item_id="item-A", stock=10, reserved=0, price=10.0, **kwargs):
        kwargs.setdefault("name", f"Item {item_id}")
        async with session_factory() as db_session:
            async with db_session.begin():
                db_session.add(
                    StockItem(
                        id=item_id,
                        price=price,
                        stock=stock,
                        reserved=reserved,
                        **kwargs,
                    )
                )
        return item_id

    return _make_item


@pytest.fixture
def read_item(session_factory):
    """Read an item's committed state through a separate session."""

    async def _read_item(item_id):
        async with session_factory() as db_session:
            async with db_session.begin():
                return await load_stock_item(db_session, item_id)

    return _read_item


@pytest.fixture
def statements(session):
    """ORM selects run on ``session``, rendered as PostgreSQL would receive them."""
    seen = []

    def record(orm_execute_state):
        if orm_execute_state.is_select:
            seen.append(str(orm_execute_state.statement.compile(dialect=postgresql.dialect())))

    event.listen(session.sync_session, "do_orm_execute", record)
    yield seen
    event.remove(session.sync_session, "do_orm_execute", record)


@pytest.fixture
def cart_locked_first(statements):
    """Check that the cart row was selected FOR UPDATE before any cart line was read."""

    def check():
        seen = list(statements)
        statements.clear()
        lock = next((i for i, sql in enumerate(seen) if "FROM carts" in sql and "FOR UPDATE" in sql), None)
        lines = next((i for i, sql in enumerate(seen) if "FROM cart_items" in sql), None)
        return lock is not None and (lines is None or lock < lines)

    return check
