# backend/mentr/main.py
"""
FastAPI application for the settlement engine's operator surface.

Domain exceptions raised by services are mapped to JSON errors carrying the
exception's code and details.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .core.config import settings
from .core.exceptions import DomainException
from .routes import admin_payouts, prometheus

logger = logging.getLogger(__name__)

API_TITLE = "Mentr Settlement API"
API_VERSION = "0.1.0"


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
        http_exc = exc.to_http_exception()
        if http_exc.status_code >= 500:
            logger.error(
                f"Unhandled domain error on {request.url.path}: {exc.message}",
                extra={"code": exc.code, "path": request.url.path},
            )
        return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})


def create_app() -> FastAPI:
    app = FastAPI(
        title=API_TITLE,
        version=API_VERSION,
        docs_url=None if settings.environment == "production" else "/docs",
        redoc_url=None,
    )
    register_error_handlers(app)
    app.include_router(admin_payouts.router)
    app.include_router(prometheus.router)

    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "healthy", "environment": settings.environment}

    return app


app = create_app()
