from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from stockgate.api.routes import router
from stockgate.config.settings import get_settings
from stockgate.integrations.finnhub_rest import FinnhubRestClient
from stockgate.logging_conf import configure_logging
from stockgate.services.quote_gateway import build_quote_gateway

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.get_settings()
    configure_logging(settings.LOG_LEVEL)
    logger.info(
        "[APP][startup] rate_limit=%s/%ss queue_max=%s",
        settings.MAX_REQUESTS_PER_MINUTE,
        settings.RATE_WINDOW_SEC,
        settings.MAX_QUEUE_SIZE,
    )
    try:
        yield
    finally:
        await app.state.quote_gateway_service.aclose()
        logger.info("[APP][shutdown] dispatch queue closed")


def create_quote_gateway_service(settings=None):
    settings = settings or get_settings()
    provider = FinnhubRestClient(
        settings.FINNHUB_API_KEY,
        base_url=settings.FINNHUB_BASE_URL,
        timeout=settings.UPSTREAM_TIMEOUT_SEC,
    )
    return build_quote_gateway(settings, provider)


app = FastAPI(title="Stock Quote Gateway", version="0.1.0", lifespan=lifespan)
app.include_router(router, prefix="/api")

# NOTE: built at import time; asyncio state (worker task, futures) is created lazily on first use.
app.state.get_settings = get_settings
app.state.quote_gateway_service = create_quote_gateway_service()
