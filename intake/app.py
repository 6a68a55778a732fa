import logging
import os
from logging.handlers import TimedRotatingFileHandler

import asyncpg
from fastapi import FastAPI
from redis.asyncio import Redis
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from intake.controller import CSRF_TOKEN_TTL_SECONDS, add_security_headers, router
from intake.preview import HttpPreviewService
from intake.repository import (
    MemoryRateLimiter,
    MemorySessionStore,
    MemorySubmissionStore,
    PostgresRateLimiter,
    RedisSessionStore,
    RedisSubmissionStore,
    ensureSchema,
)
from intake.services import (
    DUPLICATE_WINDOW_SECONDS,
    RATE_LIMIT_WINDOW_SECONDS,
    Gatekeeper,
    SecurityEventLog,
)

DATABASE_URL = os.getenv("DATABASE_URL")
REDIS_URL = os.getenv("REDIS_URL")
PREVIEW_SERVICE_URL = os.getenv("PREVIEW_SERVICE_URL", "http://localhost:8001")
LOG_FILE = os.getenv("LOG_FILE", "logs/app.log")
FORWARDED_ALLOW_IPS = [
    host.strip()
    for host in os.getenv("FORWARDED_ALLOW_IPS", "127.0.0.1").split(",")
    if host.strip()
]

# Logging
os.makedirs(os.path.dirname(LOG_FILE) or ".", exist_ok=True)
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s - %(asctime)s - %(message)s",
    handlers=[
        logging.StreamHandler(),
        TimedRotatingFileHandler(
            filename=LOG_FILE,
            when="W0",
            interval=1,
            backupCount=4,
            encoding="utf-8",
        ),
    ],
)
logger = logging.getLogger(__name__)

# Set up app
app = FastAPI(title="Intake - Video Translation Submissions")
app.middleware("http")(add_security_headers)
# X-Forwarded-For is only honoured when the socket peer is a trusted proxy
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=FORWARDED_ALLOW_IPS)
app.include_router(router)


# App lifecycle
@app.on_event("startup")
async def startup_event():
    app.state.db_pool = None
    app.state.redis = None

    if DATABASE_URL:
        app.state.db_pool = await asyncpg.create_pool(DATABASE_URL, min_size=5, max_size=20)
        async with app.state.db_pool.acquire() as conn:
            await ensureSchema(conn)
        rate_limiter = PostgresRateLimiter(app.state.db_pool, RATE_LIMIT_WINDOW_SECONDS)
    else:
        rate_limiter = MemoryRateLimiter(RATE_LIMIT_WINDOW_SECONDS)

    if REDIS_URL:
        app.state.redis = Redis.from_url(REDIS_URL, encoding="utf-8", decode_responses=True)
        submission_store = RedisSubmissionStore(app.state.redis, DUPLICATE_WINDOW_SECONDS)
        app.state.session_store = RedisSessionStore(app.state.redis, CSRF_TOKEN_TTL_SECONDS)
    else:
        submission_store = MemorySubmissionStore(DUPLICATE_WINDOW_SECONDS)
        app.state.session_store = MemorySessionStore(CSRF_TOKEN_TTL_SECONDS)

    app.state.preview_service = HttpPreviewService(PREVIEW_SERVICE_URL)
    app.state.gatekeeper = Gatekeeper(
        rate_limiter, submission_store, app.state.preview_service, SecurityEventLog()
    )
    logger.info(
        f"Application started, rate limits in {'postgres' if DATABASE_URL else 'memory'}, "
        f"sessions in {'redis' if REDIS_URL else 'memory'}"
    )


@app.on_event("shutdown")
async def shutdown_event():
    if app.state.db_pool is not None:
        await app.state.db_pool.close()
    if app.state.redis is not None:
        await app.state.redis.aclose()
    await app.state.preview_service.aclose()
    logger.info("Application shut down, connections closed")
