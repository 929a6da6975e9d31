import os

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .config import settings
from .db import Base, engine
from .logging import setup_logging, RequestIdMiddleware
from .routes.vehicles import router as vehicles_router
from .routes.customers import router as customers_router
from .routes.reservations import router as reservations_router
from .routes.rentals import router as rentals_router
from .routes.commissions import router as commissions_router
from .routes.expenses import router as expenses_router
from .routes.reports import router as reports_router
from .services.errors import (
    ContractAlreadySigned,
    InvalidAmount,
    InvalidDateRange,
    InvalidInput,
    InvalidTransition,
    MixedStatusBatch,
    NotFound,
    PermissionDenied,
    RentalError,
    VehicleUnavailable,
)

logger = structlog.get_logger(__name__)

ERROR_STATUS = {
    NotFound: 404,
    PermissionDenied: 403,
    VehicleUnavailable: 409,
    InvalidTransition: 409,
    ContractAlreadySigned: 409,
    MixedStatusBatch: 409,
    InvalidDateRange: 422,
    InvalidAmount: 422,
    InvalidInput: 422,
}


def status_for(exc: RentalError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 400


async def rental_error_handler(request: Request, exc: RentalError) -> JSONResponse:
    status_code = status_for(exc)
    logger.info(
        "request_rejected",
        path=request.url.path,
        code=exc.code,
        status=status_code,
        error=exc.message,
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.add_exception_handler(RentalError, rental_error_handler)

    # Routers
    app.include_router(vehicles_router)
    app.include_router(customers_router)
    app.include_router(reservations_router)
    app.include_router(rentals_router)
    app.include_router(commissions_router)
    app.include_router(expenses_router)
    app.include_router(reports_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/health")
    def health():
        return {"status": "ok", "environment": settings.environment}

    @app.on_event("startup")
    def _startup():
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            logger.info("database_tables_verified", tables=len(Base.metadata.tables))

    return app


app = create_app()
