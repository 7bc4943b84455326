"""
Pothole Map API — Application entry point.

Bootstraps FastAPI, wires up middleware and exception handlers, registers
route groups, and manages the MongoDB connection lifecycle.

Run locally:
    uvicorn pothole_map.main:app --reload

Extension points:
  - Add new route groups with app.include_router() below
  - Map new domain exceptions to HTTP responses in the handler block
  - Change startup behaviour in the lifespan context manager
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from pothole_map.core.config import settings
from pothole_map.core.database import close_mongo_connection, connect_to_mongo
from pothole_map.core.errors import (
    DuplicateReportError,
    InvalidCoordinateError,
    ReportNotFoundError,
    StoreUnavailableError,
)
from pothole_map.core.rate_limit import limiter
from pothole_map.models.report import DuplicateConflict
from pothole_map.routes.health import router as health_router
from pothole_map.routes.map import router as map_router
from pothole_map.routes.reports import router as reports_router

# ─── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


# ─── Lifespan ──────────────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Starting Pothole Map API (env: %s, store: %s)",
        settings.environment,
        settings.report_store,
    )
    await connect_to_mongo()
    yield
    logger.info("Shutting down Pothole Map API")
    await close_mongo_connection()


# ─── App ───────────────────────────────────────────────────────────────────────
app = FastAPI(
    title="Pothole Map API",
    description=(
        "Citizen pothole reports: duplicate-guarded submission and map "
        "aggregation (heatmap, clusters, markers) by zoom level."
    ),
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.environment != "production" else None,
    redoc_url="/redoc" if settings.environment != "production" else None,
)


# ─── Rate limiting ─────────────────────────────────────────────────────────────
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# ─── Domain errors → HTTP ──────────────────────────────────────────────────────
@app.exception_handler(DuplicateReportError)
async def duplicate_report_handler(request: Request, exc: DuplicateReportError):
    body = DuplicateConflict(detail=str(exc), radius_meters=exc.radius_meters, nearby=exc.nearby)
    return JSONResponse(status_code=409, content=body.model_dump(mode="json"))


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
    # Retryable. Clients must not read this as "no duplicates nearby".
    logger.warning("Report store unavailable on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Report store unavailable, please retry", "retryable": True},
        headers={"Retry-After": str(exc.retry_after_seconds)},
    )


@app.exception_handler(ReportNotFoundError)
async def not_found_handler(request: Request, exc: ReportNotFoundError):
    return JSONResponse(status_code=404, content={"detail": "Report not found"})


@app.exception_handler(InvalidCoordinateError)
async def invalid_coordinate_handler(request: Request, exc: InvalidCoordinateError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# ─── Middleware ─────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Routes ────────────────────────────────────────────────────────────────────
app.include_router(health_router, prefix="/health", tags=["health"])
app.include_router(reports_router)
app.include_router(map_router)


@app.get("/", tags=["root"])
async def root():
    """API root — basic metadata."""
    return {
        "name": "Pothole Map API",
        "version": "0.1.0",
        "status": "running",
        "environment": settings.environment,
        "report_store": settings.report_store,
        "docs": "/docs",
    }
