"""FastAPI application factory."""

from __future__ import annotations

from fastapi import FastAPI

from settlement_service.config import get_settings
from settlement_service.core.exceptions import register_exception_handlers
from settlement_service.core.lifespan import lifespan
from settlement_service.core.middleware import RequestValidationMiddleware
from settlement_service.routers import (
    assignments,
    contracts,
    disputes,
    escrows,
    executors,
    health,
    tasks,
)


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    Returns:
        Configured FastAPI instance with all routers registered.
    """
    settings = get_settings()

    app = FastAPI(
        title=f"{settings.service.name} Service",
        version=settings.service.version,
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    app.include_router(health.router, tags=["Operations"])
    app.include_router(tasks.router, tags=["Tasks"])
    app.include_router(assignments.router, tags=["Assignments"])
    app.include_router(contracts.router, tags=["Contracts"])
    app.include_router(escrows.router, tags=["Escrow"])
    app.include_router(disputes.router, tags=["Disputes"])
    app.include_router(executors.router, tags=["Sanctions"])

    app.add_middleware(
        RequestValidationMiddleware,
        max_body_size=settings.request.max_body_size,
    )

    return app
