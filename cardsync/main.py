# cardsync/main.py

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from cardsync import models  # noqa: F401  (registers tables on Base.metadata)
from cardsync.core.config import get_settings
from cardsync.core.logging_config import configure_logging
from cardsync.core.security import require_auth
from cardsync.routes import health, inventory, scheduler as scheduler_routes, sync, webhooks
from cardsync.scheduler import start_scheduler, stop_scheduler
from cardsync.services.rate_governor import RateGovernor

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    settings = get_settings()

    # One governor per process, shared by the scheduler and the admin routes
    app.state.governor = RateGovernor.from_settings(settings)
    await start_scheduler(app.state.governor)
    logger.info("cardsync started (environment=%s)", settings.ENVIRONMENT)
    try:
        yield
    finally:
        await stop_scheduler()


app = FastAPI(
    title="Card Inventory Sync",
    lifespan=lifespan
)


# Add middleware to handle HTTPS behind proxy
@app.middleware("http")
async def proxy_headers_middleware(request: Request, call_next):
    forwarded_proto = request.headers.get("x-forwarded-proto")
    if forwarded_proto == "https":
        request.scope["scheme"] = "https"
    response = await call_next(request)
    return response


app.include_router(health.router)
app.include_router(webhooks.router)  # Webhooks are verified by HMAC, not basic auth
app.include_router(inventory.router, dependencies=[require_auth()])
app.include_router(sync.router, dependencies=[require_auth()])
app.include_router(scheduler_routes.router, dependencies=[require_auth()])
