from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from app.core.config import settings
from app.db.engine import init_db
from app.services.request_events import RequestStateChanged, request_events
import logging
import time

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def _log_state_change(event: RequestStateChanged) -> None:
    logger.info(
        "Request %s moved %s -> %s (%s by user_id=%s)",
        event.request_id,
        event.previous_status,
        event.new_status,
        event.action,
        event.actor_id,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.DB_AUTO_INIT_ON_STARTUP:
        logger.info("Initializing Database...")
        try:
            await init_db()
            logger.info("Database initialized successfully.")
        except Exception:
            logger.exception("Startup Failure")
            raise
    unsubscribe = request_events.subscribe(_log_state_change)
    yield
    unsubscribe()
    logger.info("Shutting down...")

from app.routers import requests, notifications, users

app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)

    if process_time > 0.5:
        logger.warning("Slow Request: %s %s took %.4fs", request.method, request.url.path, process_time)

    return response

app.include_router(users.router, prefix="/users", tags=["users"])
app.include_router(requests.router, prefix=settings.API_V1_STR)
app.include_router(notifications.router, prefix=settings.API_V1_STR)
