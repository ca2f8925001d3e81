import logging
import time
from uuid import uuid4

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.config import settings


logger = logging.getLogger(__name__)


def _is_postgres_url(database_url: str) -> bool:
    return database_url.startswith("postgresql") or database_url.startswith("postgres")


def _is_sqlite_url(database_url: str) -> bool:
    return database_url.startswith("sqlite")


db_url = settings.DATABASE_URL
db_url_obj = make_url(db_url)
connect_args: dict = {}
engine_kwargs: dict = {
    "echo": settings.ENVIRONMENT == "development",
    "future": True,
}

if _is_postgres_url(db_url):
    # Prevent prepared statement collisions with asyncpg + PgBouncer transaction mode.
    connect_args["statement_cache_size"] = 0
    connect_args["prepared_statement_cache_size"] = 0
    connect_args["prepared_statement_name_func"] = lambda: f"__asyncpg_{uuid4()}__"

    # Transaction pooler port; avoid SQLAlchemy connection reuse.
    if db_url_obj.port == 6543:
        engine_kwargs["poolclass"] = NullPool

    if settings.ENVIRONMENT == "production":
        connect_args.setdefault("ssl", "require")
elif _is_sqlite_url(db_url):
    # Connections must not outlive the event loop that opened them.
    engine_kwargs["poolclass"] = NullPool

engine = create_async_engine(
    db_url,
    connect_args=connect_args,
    **engine_kwargs,
)

async_session_factory = sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_session() -> AsyncSession:
    start_time = time.time()
    async with async_session_factory() as session:
        yield session

    duration = time.time() - start_time
    if duration > 0.2:
        logger.warning("Slow DB Session: %.4fs", duration)


async def init_db(bind_engine=None):
    from sqlmodel import SQLModel
    from app.models import department
    from app.models import user
    from app.models import travel_request
    from app.models import notification

    async with (bind_engine or engine).begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
