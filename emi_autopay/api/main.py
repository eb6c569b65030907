"""FastAPI application factory"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from emi_autopay.api.middleware import RequestIDMiddleware, MetricsMiddleware
from emi_autopay.api.v1 import admin, autopay, orders, wallet
from emi_autopay.domain.exceptions import DomainException
from emi_autopay.infrastructure.clients.notifications import NotificationClient
from emi_autopay.infrastructure.database.session import SessionLocal, create_tables
from emi_autopay.infrastructure.observability.logging import setup_logging
from emi_autopay.scheduler.jobs import AutopayScheduler
from emi_autopay.config import settings

# Setup structured logging
setup_logging(settings.log_level)


async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
    if exc.status_code >= 500:
        logging.error(f"{exc.code}: {exc.message}", extra={"request_id": getattr(request.state, "request_id", None)})
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logging.error(f"Unexpected error: {exc}", extra={"request_id": getattr(request.state, "request_id", None)})
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "INTERNAL_ERROR", "message": "Internal server error", "details": {}}},
    )


def create_app(start_scheduler: bool = False) -> FastAPI:
    """Create and configure FastAPI application.

    With ``start_scheduler`` the cron jobs of the active slots run inside this
    process; deployments usually run them in a single dedicated worker.
    """
    app = FastAPI(
        title="EMI Autopay Engine",
        description="Daily installment orders, wallet ledger and scheduled autopay",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.add_exception_handler(DomainException, domain_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    if settings.create_tables_on_startup:

        @app.on_event("startup")
        def bootstrap_schema():
            create_tables()

    app.state.scheduler = None
    if start_scheduler:
        scheduler = AutopayScheduler(SessionLocal, NotificationClient())

        @app.on_event("startup")
        def start_jobs():
            scheduler.start()
            app.state.scheduler = scheduler

        @app.on_event("shutdown")
        def stop_jobs():
            scheduler.shutdown()

    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(orders.router, prefix="/v1", tags=["orders"])
    app.include_router(autopay.router, prefix="/v1", tags=["autopay"])
    app.include_router(wallet.router, prefix="/v1", tags=["wallet"])
    app.include_router(admin.router, prefix="/v1", tags=["admin"])

    return app


app = create_app()
