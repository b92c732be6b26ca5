"""
LedgerLens HTTP service

Mounts the categorization and rule-governance routers and translates domain
exceptions into HTTP status codes.
"""
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from apps.api.routers import categorization, rules
from ledgerlens.common.config import get_settings
from ledgerlens.common.database import sessionmanager
from ledgerlens.common.log_config import configure_logging
from ledgerlens.domain.categorization.exceptions import (
    EmbeddingError,
    NotFoundError,
    RuleGovernanceError,
    TaxonomyError,
)
from ledgerlens.domain.categorization.taxonomy import taxonomy

settings = get_settings()
configure_logging(settings.log_level, settings.json_logs)

logger = structlog.get_logger()

VERSION = "0.1.0"
SHOW_DOCS = settings.environment != "production"

# Domain error -> (status, log level). Unlisted exceptions become a 500.
ERROR_STATUS = {
    RuleGovernanceError: (status.HTTP_409_CONFLICT, "warning"),
    NotFoundError: (status.HTTP_404_NOT_FOUND, "info"),
    TaxonomyError: (status.HTTP_422_UNPROCESSABLE_ENTITY, "info"),
    EmbeddingError: (status.HTTP_502_BAD_GATEWAY, "error"),
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("api_starting", environment=settings.environment, version=VERSION,
                taxonomy_version=taxonomy.version)
    await sessionmanager.init(settings.database_url)
    try:
        yield
    finally:
        logger.info("api_stopping")
        await sessionmanager.close()


def _domain_handler(code: int, level: str):
    async def handler(request: Request, exc: Exception):
        getattr(logger, level)("request_rejected", path=request.url.path,
                               error_type=type(exc).__name__, error=str(exc), status=code)
        return JSONResponse(status_code=code, content={"detail": str(exc)})
    return handler


async def _invalid_request(request: Request, exc: RequestValidationError):
    logger.warning("request_invalid", path=request.url.path, errors=exc.errors())
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": exc.errors()})


async def _unexpected(request: Request, exc: Exception):
    logger.error("request_crashed", path=request.url.path, error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "request_id": request.headers.get("x-request-id")},
    )


def create_app() -> FastAPI:
    application = FastAPI(
        title="LedgerLens API",
        description="Transaction categorization with rule governance and AI fallback",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs" if SHOW_DOCS else None,
        redoc_url="/redoc" if SHOW_DOCS else None,
    )

    application.add_exception_handler(RequestValidationError, _invalid_request)
    for exc_class, (code, level) in ERROR_STATUS.items():
        application.add_exception_handler(exc_class, _domain_handler(code, level))
    application.add_exception_handler(Exception, _unexpected)

    application.include_router(categorization.router, prefix="/api/v1/categorize", tags=["Categorization"])
    application.include_router(rules.router, prefix="/api/v1", tags=["Rules"])
    return application


app = create_app()


def _feature_state(enabled: bool, key: str) -> str:
    return "enabled" if enabled and key else "disabled"


@app.get("/health", tags=["System"])
async def health_check():
    """Liveness plus a database round-trip"""
    try:
        await sessionmanager.ping()
    except Exception as e:
        logger.error("health_check_failed", error=str(e))
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                            content={"status": "unhealthy", "error": str(e)})

    return {
        "status": "healthy",
        "environment": settings.environment,
        "version": VERSION,
        "taxonomy_version": taxonomy.version,
        "services": {
            "database": "connected",
            "llm": _feature_state(settings.llm_enabled, settings.anthropic_api_key),
            "embeddings": _feature_state(settings.embeddings_enabled, settings.openai_api_key),
        },
    }


@app.get("/metrics", tags=["System"])
async def metrics():
    if not settings.metrics_enabled:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "Metrics disabled"})
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/", tags=["System"])
async def root():
    return {
        "name": "LedgerLens API",
        "version": VERSION,
        "environment": settings.environment,
        "taxonomy_version": taxonomy.version,
        "docs": "/docs" if SHOW_DOCS else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("apps.api.main:app", host="0.0.0.0", port=8000,
                reload=settings.environment == "development", log_level=settings.log_level.lower())
