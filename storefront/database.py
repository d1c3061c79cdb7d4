from contextlib import asynccontextmanager
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from storefront import config
from storefront.models import Base

__all__ = ["Base", "create_engine", "engine", "AsyncSessionLocal", "get_session", "init_db", "transaction"]


def _enable_sqlite_transactions(engine):
    """Let SQLAlchemy own BEGIN on SQLite.

    pysqlite/aiosqlite defer BEGIN and break SAVEPOINT handling. Emitting
    ``BEGIN IMMEDIATE`` ourselves also takes the database write lock up front,
    which serializes writers the way ``SELECT ... FOR UPDATE`` does on PostgreSQL.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine(database_url: str = config.DATABASE_URL, **kwargs):
    connect_args = kwargs.pop("connect_args", {})
    if database_url.startswith("postgresql+asyncpg"):
        server_settings = connect_args.setdefault("server_settings", {})
        server_settings.setdefault("lock_timeout", str(config.DB_LOCK_TIMEOUT_MS))
        server_settings.setdefault("statement_timeout", str(config.DB_LOCK_TIMEOUT_MS * 2))
    elif database_url.startswith("sqlite"):
        connect_args.setdefault("timeout", config.DB_LOCK_TIMEOUT_MS / 1000)

    new_engine = create_async_engine(
        database_url,
        echo=kwargs.pop("echo", config.DB_ECHO),
        connect_args=connect_args,
        **kwargs,
    )
    if database_url.startswith("sqlite"):
        _enable_sqlite_transactions(new_engine)
    return new_engine


def create_session_factory(bind) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
    )


engine = create_engine()
AsyncSessionLocal = create_session_factory(engine)


async def get_session():
    async with AsyncSessionLocal() as session:
        yield session


async def init_db(bind=None):
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def transaction(session: AsyncSession, nested: bool = False):
    """Run a block inside a transaction on ``session``.

    With no transaction open, one is started and committed (or rolled back on
    error) here. With the caller's transaction already open, the block joins it
    and the caller keeps control of commit; ``nested=True`` wraps the block in a
    SAVEPOINT so a failure inside it leaves the outer transaction usable.
    """
    if not session.in_transaction():
        async with session.begin():
            yield session
    elif nested:
        async with session.begin_nested():
            yield session
    else:
        yield session
