"""
Sync queue service: idempotent enqueue, claiming and outcome reporting.

All coordination happens in the database. Enqueue is a single
INSERT ... ON CONFLICT DO UPDATE on (org_id, dedupe_key); claiming is a single
UPDATE over a FOR UPDATE SKIP LOCKED sub-select, so concurrent workers never
receive the same job.
"""

import hashlib
import logging
import random
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, delete, desc, func, null, or_, select, true, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from api.config.settings import Settings
from api.infra.database import dialect_name
from api.v1.core.exceptions import ValidationError
from api.v1.core.security import Principal, require_org_admin, resolve_org_id
from api.v1.infra.jobs.models import Job, JobStatus, as_utc
from api.v1.infra.jobs.schemas import (
    JobCreate,
    JobEnqueueResponse,
    JobListFilters,
    JobStatsResponse,
)

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 4000
CLAIM_EXPIRED_ERROR = "Claim expired before the worker reported an outcome"


def _insert_for(session: AsyncSession):
    """Dialect-specific INSERT construct that supports ON CONFLICT."""
    name = dialect_name(session)
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Upsert is not supported on dialect: {name}")


class JobService:
    """Service for enqueueing, claiming and settling sync jobs."""

    def __init__(self, settings: Settings):
        self.settings = settings

    # Producer side

    async def enqueue(
        self,
        session: AsyncSession,
        org_id: UUID,
        dedupe_key: str,
        job_type: str,
        payload: dict[str, Any] | None = None,
        priority: int | None = None,
        run_after: datetime | None = None,
        max_attempts: int | None = None,
    ) -> JobEnqueueResponse:
        """
        Insert a job, or reset the existing job with the same dedupe key.

        Re-enqueueing overwrites type, payload, priority, run_after and
        max_attempts, resets attempts to 0, clears last_error and any claim,
        and puts the job back to pending.

        Raises:
            ValidationError: dedupe_key or job_type is empty, or a numeric
                argument is out of range
        """
        dedupe_key = (dedupe_key or "").strip()
        if not dedupe_key:
            raise ValidationError(
                "dedupe_key must be a non-empty string",
                details={"job_type": job_type},
            )

        job_type = (job_type or "").strip()
        if not job_type:
            raise ValidationError(
                "job_type must be a non-empty string",
                details={"dedupe_key": dedupe_key},
            )

        if payload is None:
            payload = {}
        elif not isinstance(payload, dict):
            raise ValidationError("payload must be a JSON object")

        if priority is None:
            priority = self.settings.job_default_priority
        if not 0 <= priority <= 100:
            raise ValidationError(
                "priority must be between 0 and 100", details={"priority": priority}
            )

        if max_attempts is None:
            max_attempts = self.settings.job_max_attempts
        if max_attempts < 1:
            raise ValidationError(
                "max_attempts must be at least 1",
                details={"max_attempts": max_attempts},
            )

        now = datetime.now(UTC)
        run_after = as_utc(run_after) or now

        insert = _insert_for(session)
        stmt = insert(Job).values(
            org_id=org_id,
            dedupe_key=dedupe_key,
            job_type=job_type,
            payload=payload,
            status=JobStatus.PENDING.value,
            priority=priority,
            run_after=run_after,
            attempts=0,
            max_attempts=max_attempts,
            enqueue_count=1,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["org_id", "dedupe_key"],
            set_={
                "job_type": stmt.excluded.job_type,
                "payload": stmt.excluded.payload,
                "priority": stmt.excluded.priority,
                "run_after": stmt.excluded.run_after,
                "max_attempts": stmt.excluded.max_attempts,
                "status": JobStatus.PENDING.value,
                "attempts": 0,
                "last_error": null(),
                "locked_by": null(),
                "locked_at": null(),
                "locked_until": null(),
                "result": null(),
                "completed_at": null(),
                "enqueue_count": Job.enqueue_count + 1,
                "updated_at": stmt.excluded.updated_at,
            },
        ).returning(Job.id, Job.status, Job.enqueue_count)

        row = (await session.execute(stmt)).one()
        await session.commit()

        deduplicated = row.enqueue_count > 1
        logger.info(
            "Job deduplicated" if deduplicated else "Job enqueued",
            extra={
                "job_id": row.id,
                "org_id": str(org_id),
                "dedupe_key": dedupe_key,
                "type": job_type,
                "priority": priority,
                "run_after": run_after.isoformat(),
                "enqueue_count": row.enqueue_count,
            },
        )

        return JobEnqueueResponse(
            job_id=row.id, status=row.status, deduplicated=deduplicated
        )

    async def enqueue_job(
        self,
        session: AsyncSession,
        job_create: JobCreate,
        principal: Principal,
        org_id: UUID | None = None,
    ) -> JobEnqueueResponse:
        """Enqueue on behalf of a principal; requires admin rights on the org."""
        target_org = resolve_org_id(principal, org_id)
        require_org_admin(principal, target_org)

        return await self.enqueue(
            session,
            org_id=target_org,
            dedupe_key=job_create.dedupe_key,
            job_type=job_create.job_type,
            payload=job_create.payload,
            priority=job_create.priority,
            run_after=job_create.run_after,
            max_attempts=job_create.max_attempts,
        )

    def dedupe_key_for(self, job_type: str, **params: Any) -> str:
        """Generate a deterministic deduplication key for a job."""
        key_data = f"{job_type}:{sorted(params.items())}"
        return f"{job_type}:{hashlib.sha256(key_data.encode()).hexdigest()[:32]}"

    # Consumer side

    async def claim_batch(
        self,
        session: AsyncSession,
        max_n: int,
        now: datetime | None = None,
        worker_id: str | None = None,
        claim_timeout_s: int | None = None,
    ) -> list[Job]:
        """
        Atomically claim up to ``max_n`` due jobs.

        Due means pending, run_after <= now and attempts < max_attempts.
        Order is priority (highest first), then run_after, then insertion
        order. Each claimed job moves to running with attempts + 1 and a claim
        that expires after ``claim_timeout_s``. Expired claims are released
        before selecting.

        With ``job_org_max_per_hour`` set, orgs that have used their hourly
        budget are skipped and a batch never takes an org past it.
        """
        if max_n <= 0:
            return []

        now = as_utc(now) or datetime.now(UTC)
        worker_id = worker_id or "anonymous"
        timeout_s = claim_timeout_s or self.settings.job_claim_timeout_s

        await self._release_expired_claims(session, now)

        org_limit = self.settings.job_org_max_per_hour
        usage = await self._org_usage(session, now) if org_limit else {}
        saturated = [org_id for org_id, used in usage.items() if used >= org_limit]

        conditions = [
            Job.status == JobStatus.PENDING.value,
            Job.run_after <= now,
            Job.attempts < Job.max_attempts,
        ]
        if saturated:
            conditions.append(Job.org_id.not_in(saturated))

        due = (
            select(Job.id)
            .where(and_(*conditions))
            .order_by(desc(Job.priority), Job.run_after, Job.id)
            .limit(max_n)
            .with_for_update(skip_locked=True)
        )

        claim = (
            update(Job)
            .where(and_(Job.id.in_(due), Job.status == JobStatus.PENDING.value))
            .values(
                status=JobStatus.RUNNING.value,
                attempts=Job.attempts + 1,
                locked_by=worker_id,
                locked_at=now,
                locked_until=now + timedelta(seconds=timeout_s),
                updated_at=now,
            )
            .returning(Job)
            .execution_options(synchronize_session=False, populate_existing=True)
        )

        result = await session.execute(claim)
        jobs = list(result.scalars().all())
        jobs.sort(key=lambda job: (-job.priority, as_utc(job.run_after), job.id))
        if org_limit:
            jobs = await self._hand_back_over_limit(session, jobs, usage, org_limit)
        await session.commit()

        if jobs:
            logger.info(
                "Claimed jobs",
                extra={
                    "worker_id": worker_id,
                    "job_count": len(jobs),
                    "job_ids": [job.id for job in jobs],
                },
            )

        return jobs

    async def _org_usage(self, session: AsyncSession, now: datetime) -> dict[UUID, int]:
        """Per-org count of jobs running now or completed in the last hour."""
        window_start = now - timedelta(hours=1)
        result = await session.execute(
            select(Job.org_id, func.count(Job.id))
            .where(
                or_(
                    Job.status == JobStatus.RUNNING.value,
                    and_(
                        Job.status == JobStatus.COMPLETED.value,
                        Job.completed_at >= window_start,
                    ),
                )
            )
            .group_by(Job.org_id)
        )
        return {org_id: count for org_id, count in result.all()}

    async def _hand_back_over_limit(
        self,
        session: AsyncSession,
        jobs: list[Job],
        usage: dict[UUID, int],
        org_limit: int,
    ) -> list[Job]:
        """
        Undo claims that would take an org past its hourly cap.

        Runs in the claim transaction, so handed-back jobs return to pending
        with their attempt count untouched and stay next in line.
        """
        kept = []
        over_limit = []
        for job in jobs:
            used = usage.get(job.org_id, 0)
            if used < org_limit:
                usage[job.org_id] = used + 1
                kept.append(job)
            else:
                over_limit.append(job)

        if over_limit:
            await session.execute(
                update(Job)
                .where(Job.id.in_([job.id for job in over_limit]))
                .values(
                    status=JobStatus.PENDING.value,
                    attempts=Job.attempts - 1,
                    locked_by=None,
                    locked_at=None,
                    locked_until=None,
                )
                .execution_options(synchronize_session=False)
            )
            logger.info(
                "Deferred jobs over the per-org hourly limit",
                extra={
                    "job_ids": [job.id for job in over_limit],
                    "org_ids": sorted({str(job.org_id) for job in over_limit}),
                    "org_limit": org_limit,
                },
            )

        return kept

    async def _release_expired_claims(self, session: AsyncSession, now: datetime) -> int:
        """Return lapsed claims to pending, or fail them when out of attempts."""
        expired = and_(
            Job.status == JobStatus.RUNNING.value,
            Job.locked_until.is_not(None),
            Job.locked_until <= now,
        )
        released_values = {
            "locked_by": None,
            "locked_at": None,
            "locked_until": None,
            "last_error": CLAIM_EXPIRED_ERROR,
            "updated_at": now,
        }

        exhausted = await session.execute(
            update(Job)
            .where(and_(expired, Job.attempts >= Job.max_attempts))
            .values(status=JobStatus.FAILED.value, **released_values)
            .execution_options(synchronize_session=False)
        )
        requeued = await session.execute(
            update(Job)
            .where(and_(expired, Job.attempts < Job.max_attempts))
            .values(status=JobStatus.PENDING.value, **released_values)
            .execution_options(synchronize_session=False)
        )

        released = exhausted.rowcount + requeued.rowcount
        if released:
            logger.warning(
                "Released expired claims",
                extra={
                    "requeued": requeued.rowcount,
                    "failed": exhausted.rowcount,
                },
            )
        return released

    async def extend_claims(
        self,
        session: AsyncSession,
        job_ids: list[int],
        worker_id: str,
        now: datetime | None = None,
        claim_timeout_s: int | None = None,
    ) -> int:
        """Heartbeat: push the claim expiry forward for jobs still held."""
        if not job_ids:
            return 0

        now = as_utc(now) or datetime.now(UTC)
        timeout_s = claim_timeout_s or self.settings.job_claim_timeout_s
        result = await session.execute(
            update(Job)
            .where(
                and_(
                    Job.id.in_(job_ids),
                    Job.status == JobStatus.RUNNING.value,
                    Job.locked_by == worker_id,
                )
            )
            .values(
                locked_until=now + timedelta(seconds=timeout_s),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount

    async def report_success(
        self,
        session: AsyncSession,
        job_id: int,
        worker_id: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> bool:
        """
        Mark a running job completed. Returns False when the job is not
        running, or is running under a different worker's claim.
        """
        now = datetime.now(UTC)
        conditions = [Job.id == job_id, Job.status == JobStatus.RUNNING.value]
        if worker_id is not None:
            conditions.append(Job.locked_by == worker_id)

        outcome = await session.execute(
            update(Job)
            .where(and_(*conditions))
            .values(
                status=JobStatus.COMPLETED.value,
                result=result if result is not None else null(),
                completed_at=now,
                locked_by=None,
                locked_at=None,
                locked_until=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        success = outcome.rowcount > 0
        if success:
            logger.info(
                "Job completed", extra={"job_id": job_id, "worker_id": worker_id}
            )
        else:
            logger.warning(
                "Ignored success report for job not held by caller",
                extra={"job_id": job_id, "worker_id": worker_id},
            )
        return success

    async def report_failure(
        self,
        session: AsyncSession,
        job_id: int,
        error_message: str,
        worker_id: str | None = None,
        permanent: bool = False,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Record a failed attempt on a running job.

        The job fails terminally when its attempts are exhausted or the
        failure is ``permanent``; otherwise it goes back to pending with an
        exponential backoff on run_after. Returns None when the job is not
        running under the caller's claim.
        """
        now = as_utc(now) or datetime.now(UTC)
        error_message = (error_message or "").strip() or "Unknown error"

        query = select(Job).where(
            and_(Job.id == job_id, Job.status == JobStatus.RUNNING.value)
        )
        if worker_id is not None:
            query = query.where(Job.locked_by == worker_id)
        query = query.with_for_update().execution_options(populate_existing=True)

        job = (await session.execute(query)).scalar_one_or_none()
        if job is None:
            await session.rollback()
            logger.warning(
                "Ignored failure report for job not held by caller",
                extra={"job_id": job_id, "worker_id": worker_id},
            )
            return None

        job.last_error = error_message[:MAX_ERROR_LENGTH]
        job.locked_by = None
        job.locked_at = None
        job.locked_until = None
        job.updated_at = now

        if permanent or job.retries_left() == 0:
            job.status = JobStatus.FAILED.value
            log_message = "Job failed terminally"
        else:
            job.status = JobStatus.PENDING.value
            job.run_after = now + timedelta(seconds=self.retry_delay_s(job.attempts))
            log_message = "Job scheduled for retry"

        await session.commit()

        logger.warning(
            log_message,
            extra={
                "job_id": job.id,
                "org_id": str(job.org_id),
                "type": job.job_type,
                "attempts": job.attempts,
                "max_attempts": job.max_attempts,
                "permanent": permanent,
                "error": job.last_error,
            },
        )
        return job

    def retry_delay_s(self, attempt: int) -> float:
        """Exponential backoff with jitter for the retry after ``attempt``."""
        base_delay = self.settings.job_backoff_base_s
        max_delay = self.settings.job_max_backoff_s

        # Exponential backoff: base * 2^(attempt-1)
        delay = min(max_delay, base_delay * (2 ** max(0, attempt - 1)))

        jitter_fraction = self.settings.job_backoff_jitter
        if jitter_fraction:
            delay += delay * jitter_fraction * (2 * random.random() - 1)

        return max(0.0, delay)

    # Operator side

    async def get_job_by_id(
        self, session: AsyncSession, job_id: int, org_id: UUID | None = None
    ) -> Job | None:
        """Get job by ID with optional org scoping."""
        query = select(Job).where(Job.id == job_id)
        if org_id:
            query = query.where(Job.org_id == org_id)

        result = await session.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        session: AsyncSession,
        org_id: UUID | None,
        filters: JobListFilters,
    ) -> tuple[list[Job], int]:
        """List jobs newest first; ``org_id=None`` spans all orgs."""
        base_query = select(Job)
        if org_id is not None:
            base_query = base_query.where(Job.org_id == org_id)
        if filters.status:
            base_query = base_query.where(
                Job.status.in_([status.value for status in filters.status])
            )
        if filters.job_type:
            base_query = base_query.where(Job.job_type == filters.job_type)

        count_query = select(func.count()).select_from(base_query.subquery())
        total = (await session.execute(count_query)).scalar() or 0

        jobs_query = (
            base_query.order_by(desc(Job.updated_at), desc(Job.id))
            .offset(filters.offset)
            .limit(filters.limit)
        )
        jobs = (await session.execute(jobs_query)).scalars().all()
        return list(jobs), total

    async def list_failed_jobs(
        self,
        session: AsyncSession,
        org_id: UUID | None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """Terminally failed jobs awaiting operator review."""
        filters = JobListFilters(status=[JobStatus.FAILED], limit=limit, offset=offset)
        return await self.list_jobs(session, org_id, filters)

    async def get_job_stats(
        self, session: AsyncSession, org_id: UUID | None = None
    ) -> JobStatsResponse:
        """Get job statistics, optionally scoped to organization."""
        base_filter = Job.org_id == org_id if org_id else true()
        now = datetime.now(UTC)

        total_result = await session.execute(
            select(func.count(Job.id)).where(base_filter)
        )
        total_jobs = total_result.scalar() or 0

        status_result = await session.execute(
            select(Job.status, func.count(Job.id))
            .where(base_filter)
            .group_by(Job.status)
        )
        by_status = dict(status_result.all())

        type_result = await session.execute(
            select(Job.job_type, func.count(Job.id))
            .where(base_filter)
            .group_by(Job.job_type)
        )
        by_type = dict(type_result.all())

        queue_depth = by_status.get(JobStatus.PENDING.value, 0) + by_status.get(
            JobStatus.RUNNING.value, 0
        )

        failed_recent_result = await session.execute(
            select(func.count(Job.id)).where(
                and_(
                    base_filter,
                    Job.status == JobStatus.FAILED.value,
                    Job.updated_at >= now - timedelta(hours=1),
                )
            )
        )
        failed_last_hour = failed_recent_result.scalar() or 0

        expired_result = await session.execute(
            select(func.count(Job.id)).where(
                and_(
                    base_filter,
                    Job.status == JobStatus.RUNNING.value,
                    Job.locked_until <= now,
                )
            )
        )
        expired_claims = expired_result.scalar() or 0

        return JobStatsResponse(
            total_jobs=total_jobs,
            by_status=by_status,
            by_type=by_type,
            queue_depth=queue_depth,
            failed_last_hour=failed_last_hour,
            expired_claims=expired_claims,
        )

    async def retry_job(
        self, session: AsyncSession, job_id: int, org_id: UUID | None = None
    ) -> bool:
        """Re-drive a terminally failed job with a fresh retry budget."""
        now = datetime.now(UTC)
        query = (
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.status == JobStatus.FAILED.value,
                    Job.org_id == org_id if org_id else true(),
                )
            )
            .values(
                status=JobStatus.PENDING.value,
                attempts=0,
                run_after=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        result = await session.execute(query)
        await session.commit()

        success = result.rowcount > 0
        if success:
            logger.info(
                "Job retried",
                extra={
                    "job_id": job_id,
                    "org_id": str(org_id) if org_id else None,
                },
            )

        return success

    async def cleanup_old_jobs(self, session: AsyncSession) -> int:
        """Delete completed jobs older than the retention window."""
        retention_days = self.settings.job_cleanup_after_days
        cutoff = datetime.now(UTC) - timedelta(days=retention_days)

        result = await session.execute(
            delete(Job)
            .where(
                and_(
                    Job.status == JobStatus.COMPLETED.value,
                    Job.completed_at < cutoff,
                )
            )
            .execution_options(synchronize_session=False)
        )
        deleted_count = result.rowcount
        await session.commit()

        if deleted_count > 0:
            logger.info(
                "Cleaned up old jobs",
                extra={
                    "deleted_count": deleted_count,
                    "retention_days": retention_days,
                },
            )

        return deleted_count
