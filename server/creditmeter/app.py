from __future__ import annotations

import logging

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from server.creditmeter.billing.errors import BillingError
from server.creditmeter.billing.service import BillingService
from server.creditmeter.core.config import Settings
from server.creditmeter.core.db import init_db
from server.creditmeter.core.middleware import BodySizeLimitMiddleware
from server.creditmeter.routes import billing, health

logger = logging.getLogger(__name__)


async def _billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(settings: Settings | None = None) -> FastAPI:
    if settings is None:
        load_dotenv()
        settings = Settings.from_env()

    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    init_db(settings)

    app = FastAPI(title="creditmeter", version="0.1.0")
    app.state.settings = settings
    app.state.billing = BillingService(settings)

    app.add_middleware(
        BodySizeLimitMiddleware,
        max_body_bytes=settings.max_body_mb * 1024 * 1024,
        include_paths=("/billing",),
    )
    app.add_exception_handler(BillingError, _billing_error_handler)

    app.include_router(health.router)
    app.include_router(billing.router)
    return app
