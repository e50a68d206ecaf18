"""FastAPI application factory for Custody-Engine."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from custody_engine.common.config import get_settings
from custody_engine.common.exceptions import (
    ConflictError,
    CustodyError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from custody_engine.common.logging import get_logger, setup_logging
from custody_engine.common.schemas import ErrorResponse, HealthResponse

logger = get_logger("app")

STATUS_BY_CATEGORY: list[tuple[type[CustodyError], int]] = [
    (NotFoundError, 404),
    (ConflictError, 409),
    (UnauthorizedError, 403),
    (ValidationError, 422),
]


def status_for(error: CustodyError) -> int:
    for category, status_code in STATUS_BY_CATEGORY:
        if isinstance(error, category):
            return status_code
    return 400


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        from custody_engine.deps import get_db
        db = get_db()
        await db.init()
        await db.create_all()
        yield
        # Shutdown
        await db.close()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CustodyError)
    async def custody_error_handler(request: Request, exc: CustodyError):
        status_code = status_for(exc)
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.code)
        body = ErrorResponse(error=type(exc).__name__, code=exc.code, detail=exc.message)
        return JSONResponse(status_code=status_code, content=body.model_dump())

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(version=settings.api_version)

    # Mount routers
    from custody_engine.vaults.router import router as vault_router
    from custody_engine.policies.router import router as policy_router
    from custody_engine.escrows.router import router as escrow_router
    from custody_engine.audit.router import router as audit_router

    prefix = settings.api_prefix
    app.include_router(vault_router, prefix=prefix, tags=["vaults"])
    app.include_router(policy_router, prefix=prefix, tags=["policies"])
    app.include_router(escrow_router, prefix=prefix, tags=["escrows"])
    app.include_router(audit_router, prefix=prefix, tags=["audit"])

    return app
