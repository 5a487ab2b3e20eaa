"""Health, readiness and liveness endpoints.

``/health`` reports each check separately: the database must answer and every
billing table must exist. ``/ready`` turns the same checks into a 503 so an
orchestrator holds traffic until migrations have run.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Response, status
from pydantic import BaseModel, Field
from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine import __version__
from billing_engine.api.dependencies import DbSession
from billing_engine.models import Base

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str
    checks: dict[str, str]
    missing_tables: list[str] = Field(default_factory=list)


async def _missing_tables(db: AsyncSession) -> list[str]:
    connection = await db.connection()
    present = await connection.run_sync(
        lambda sync_conn: set(inspect(sync_conn).get_table_names())
    )
    return sorted(set(Base.metadata.tables) - present)


async def run_checks(db: AsyncSession) -> HealthResponse:
    checks = {"database": UNHEALTHY, "schema": UNHEALTHY}
    missing: list[str] = []
    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = HEALTHY
        missing = await _missing_tables(db)
        if not missing:
            checks["schema"] = HEALTHY
    except SQLAlchemyError:
        logger.warning("Database health check failed", exc_info=True)

    if missing:
        logger.warning("Billing schema incomplete, missing: %s", ", ".join(missing))

    return HealthResponse(
        status="healthy" if all(v == HEALTHY for v in checks.values()) else "degraded",
        timestamp=datetime.now(timezone.utc),
        version=__version__,
        checks=checks,
        missing_tables=missing,
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
)
async def health_check(db: DbSession) -> HealthResponse:
    """Report database reachability and schema completeness."""
    return await run_checks(db)


@router.get("/ready", status_code=status.HTTP_200_OK)
async def readiness_check(db: DbSession, response: Response) -> dict[str, str]:
    """503 until the database answers and the schema is in place."""
    report = await run_checks(db)
    if report.status != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not_ready"}
    return {"status": "ready"}


@router.get("/live", status_code=status.HTTP_200_OK)
async def liveness_check() -> dict[str, str]:
    return {"status": "alive"}
