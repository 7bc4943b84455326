"""
Health check endpoint.

Used by:
  - Docker HEALTHCHECK instruction
  - Load balancers / orchestrators
  - The map front-end, to tell "API down" from "API up but DB unreachable"
"""

import logging

from fastapi import APIRouter
from pydantic import BaseModel

from pothole_map.core import database as db_module
from pothole_map.core.config import settings

logger = logging.getLogger(__name__)
router = APIRouter()


class HealthResponse(BaseModel):
    status: str  # Always "ok" if the API process is alive
    version: str
    database: str  # "connected" | "disconnected" | "not_used"
    report_store: str
    environment: str


@router.get("", response_model=HealthResponse, summary="API health check")
async def health_check() -> HealthResponse:
    """
    Liveness of the API plus its database connection.

    Still 200 when the database is down — report endpoints answer 503 in
    that state, and this endpoint says why.
    """
    db_status = "not_used" if settings.report_store != "mongo" else "disconnected"
    try:
        # Access via module reference so tests can patch db_module.db_client
        if db_module.db_client.client is not None:
            await db_module.db_client.client.admin.command("ping")
            db_status = "connected"
    except Exception as exc:
        logger.warning("DB ping failed: %s", exc)

    return HealthResponse(
        status="ok",
        version="0.1.0",
        database=db_status,
        report_store=settings.report_store,
        environment=settings.environment,
    )
