import asyncio
import logging
import os
import sys

# Add project root to sys.path to allow imports from app
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
from sqlalchemy import inspect

from app.db.engine import engine, init_db

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

EXPECTED_TABLES = ("department", "user", "travelrequest", "notification")


async def main() -> int:
    load_dotenv()
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL not found in environment.")
        return 1

    logger.info("Preparing approval tables on %s", database_url.split("@")[-1] if "@" in database_url else "local database")

    try:
        await init_db()
        async with engine.connect() as conn:
            tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
    except Exception as e:
        logger.error("Failed to initialize database: %s", e)
        return 1
    finally:
        await engine.dispose()

    missing = [name for name in EXPECTED_TABLES if name not in tables]
    if missing:
        logger.error("Tables still missing after init: %s", ", ".join(missing))
        return 1

    logger.info("Ready: %s", ", ".join(EXPECTED_TABLES))
    return 0


if __name__ == "__main__":
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Operation cancelled.")
