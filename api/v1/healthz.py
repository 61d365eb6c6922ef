from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from api.config.logging import get_logger
from api.config.settings import Settings, SettingsDep
from api.infra.database import get_session
from api.v1.core.exceptions import create_success_response
from api.v1.infra.jobs.models import Job, JobStatus, as_utc

router = APIRouter()
logger = get_logger(__name__)


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class QueueHealth(BaseModel):
    """Sync queue health status."""

    active_workers: int
    pending_jobs: int = 0
    running_jobs: int = 0
    failed_jobs: int = 0
    expired_claims: int = 0
    oldest_due_age_seconds: int | None = None


class HealthResponse(BaseModel):
    """Health response with database and queue status."""

    ok: bool
    version: str
    environment: str
    timestamp: str
    database: DatabaseHealth
    queue: QueueHealth | None = None


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, session: AsyncSession = Depends(get_session)
):
    """Health check endpoint with database and queue status."""

    timestamp = datetime.now(UTC).isoformat()

    db_health = await _check_database_health(session)
    overall_ok = db_health.connected

    # Queue stats are informational; they never fail the probe
    queue_health = None
    if db_health.connected:
        try:
            queue_health = await _check_queue_health(session)
        except Exception as e:
            logger.warning("Queue health check failed", error=str(e))
            queue_health = QueueHealth(active_workers=0)

    health = HealthResponse(
        ok=overall_ok,
        version=settings.version,
        environment=settings.environment,
        timestamp=timestamp,
        database=db_health,
        queue=queue_health,
    )

    return create_success_response(data=health.model_dump())


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_queue_health(session: AsyncSession) -> QueueHealth:
    """Summarize queue depth and claim holders."""
    now = datetime.now(UTC)

    # Workers currently holding a live claim
    active_workers_result = await session.execute(
        select(func.count(func.distinct(Job.locked_by))).where(
            Job.status == JobStatus.RUNNING.value, Job.locked_until > now
        )
    )
    active_workers = active_workers_result.scalar() or 0

    status_result = await session.execute(
        select(Job.status, func.count(Job.id)).group_by(Job.status)
    )
    by_status = dict(status_result.all())

    expired_result = await session.execute(
        select(func.count(Job.id)).where(
            Job.status == JobStatus.RUNNING.value, Job.locked_until <= now
        )
    )
    expired_claims = expired_result.scalar() or 0

    oldest_due_result = await session.execute(
        select(func.min(Job.run_after)).where(
            Job.status == JobStatus.PENDING.value, Job.run_after <= now
        )
    )
    oldest_due = oldest_due_result.scalar()

    oldest_due_age_seconds = None
    if oldest_due is not None:
        oldest_due_age_seconds = int((now - as_utc(oldest_due)).total_seconds())

    return QueueHealth(
        active_workers=active_workers,
        pending_jobs=by_status.get(JobStatus.PENDING.value, 0),
        running_jobs=by_status.get(JobStatus.RUNNING.value, 0),
        failed_jobs=by_status.get(JobStatus.FAILED.value, 0),
        expired_claims=expired_claims,
        oldest_due_age_seconds=oldest_due_age_seconds,
    )
