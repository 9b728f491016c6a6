from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from payment_recon.api.router import router as api_router
from payment_recon.bootstrap import bootstrap
from payment_recon.core.errors import ReconciliationError
from payment_recon.core.logging import RequestContextMiddleware, get_logger, log_event

logger = get_logger(__name__)


async def _reconciliation_error_handler(request: Request, exc: ReconciliationError) -> Response:
    log_event(
        logger,
        "http.reconciliation_error",
        level=logging.ERROR if exc.status_code >= 500 else logging.INFO,
        method=request.method,
        path=request.url.path,
        status_code=exc.status_code,
        error_code=exc.code,
        error_message=exc.message,
    )
    return await http_exception_handler(request, exc)


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI):
        bootstrap()
        yield

    app = FastAPI(title="Payment Reconciliation", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)
    app.add_exception_handler(ReconciliationError, _reconciliation_error_handler)
    app.include_router(api_router)
    return app


app = create_app()
