"""
Postgres-backed sync queue worker with claim heartbeats.
"""

import asyncio
import os
import socket
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.config.logging import add_worker_context, get_logger, setup_logging
from api.config.settings import Settings, settings
from api.infra.database import get_database
from api.v1.core.registries import JobRegistry, job_registry
from api.v1.core.security import ADMIN_ROLE, Principal
from api.v1.infra.jobs.handlers import PermanentJobError
from api.v1.infra.jobs.models import Job
from api.v1.infra.jobs.registry_init import register_job_handlers
from api.v1.infra.jobs.service import JobService

logger = get_logger(__name__)


class JobWorker:
    """
    Sync queue worker.

    Features:
    - Claims due jobs through JobService.claim_batch (FOR UPDATE SKIP LOCKED)
    - Heartbeats that keep claims alive while handlers run
    - Retry with exponential backoff via report_failure
    - Graceful shutdown that waits for in-flight jobs
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        registry: JobRegistry | None = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.registry = registry or job_registry
        self.job_service = JobService(settings)
        self.worker_id = f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"
        self.running = False
        self.active_jobs: set[int] = set()

    async def start(self) -> None:
        """Start the job worker main loop."""
        if self.running:
            raise RuntimeError("Worker is already running")

        self.running = True
        add_worker_context(self.worker_id)
        logger.info(
            "Starting job worker",
            concurrency=self.settings.job_concurrency,
            poll_interval_ms=self.settings.job_poll_interval_ms,
            handlers=self.registry.list(),
        )

        try:
            await asyncio.gather(self._worker_loop(), self._heartbeat_loop())
        except Exception:
            logger.exception("Worker crashed")
            raise
        finally:
            self.running = False

    async def stop(self, timeout_seconds: int = 30) -> None:
        """Stop the worker gracefully."""
        logger.info("Stopping job worker")
        self.running = False

        waited = 0
        while self.active_jobs and waited < timeout_seconds:
            await asyncio.sleep(1)
            waited += 1

        if self.active_jobs:
            logger.warning(
                "Worker stopped with active jobs", active_jobs=len(self.active_jobs)
            )

    async def run_once(self) -> int:
        """Claim one batch, process it, and return the number of jobs handled."""
        free_slots = self.settings.job_concurrency - len(self.active_jobs)
        batch_size = min(self.settings.job_batch_size, free_slots)
        if batch_size <= 0:
            return 0

        async with self.session_factory() as session:
            jobs = await self.job_service.claim_batch(
                session, batch_size, worker_id=self.worker_id
            )

        if not jobs:
            return 0

        self.active_jobs.update(job.id for job in jobs)
        await asyncio.gather(*(self._process_job(job) for job in jobs))
        return len(jobs)

    async def _worker_loop(self) -> None:
        """Poll for due jobs until stopped."""
        while self.running:
            try:
                processed = await self.run_once()
                if not processed:
                    await asyncio.sleep(self.settings.job_poll_interval_ms / 1000)
            except Exception:
                logger.exception("Error in worker loop")
                await asyncio.sleep(5)  # Back off on errors

    async def _process_job(self, job: Job) -> None:
        """Run the handler for one claimed job and report the outcome."""
        job_logger = logger.bind(
            job_id=job.id, job_type=job.job_type, attempt=job.attempts
        )

        try:
            job_logger.info("Processing job started")

            try:
                handler = self.registry.get(job.job_type)
            except KeyError as e:
                raise PermanentJobError(str(e)) from e

            # Handlers act inside the job's org only
            principal = Principal(
                user_id="system", org_id=str(job.org_id), roles=[ADMIN_ROLE]
            )

            async with self.session_factory() as session:
                result = await handler.handle(session, principal, job.payload)

            await self._report_success(job, result)
            job_logger.info("Processing job completed successfully")

        except asyncio.CancelledError:
            job_logger.warning("Job processing cancelled")
            await self._report_failure(job, "Worker cancelled during processing")
            raise

        except PermanentJobError as e:
            job_logger.error("Job failed permanently", error=str(e))
            await self._report_failure(job, str(e), permanent=True)

        except Exception as e:
            job_logger.exception("Job processing failed", error=str(e))
            await self._report_failure(job, f"{e.__class__.__name__}: {e}")

        finally:
            self.active_jobs.discard(job.id)

    async def _report_success(self, job: Job, result: dict[str, Any] | None) -> None:
        async with self.session_factory() as session:
            await self.job_service.report_success(
                session, job.id, worker_id=self.worker_id, result=result
            )

    async def _report_failure(
        self, job: Job, error: str, permanent: bool = False
    ) -> None:
        async with self.session_factory() as session:
            await self.job_service.report_failure(
                session,
                job.id,
                error,
                worker_id=self.worker_id,
                permanent=permanent,
            )

    async def _heartbeat_loop(self) -> None:
        """Extend claims for jobs that are still being processed."""
        while self.running:
            try:
                if self.active_jobs:
                    async with self.session_factory() as session:
                        await self.job_service.extend_claims(
                            session, list(self.active_jobs), self.worker_id
                        )

                await asyncio.sleep(self.settings.job_heartbeat_interval_s)

            except Exception:
                logger.exception("Error updating heartbeats")
                await asyncio.sleep(self.settings.job_heartbeat_interval_s)


# Worker instance management
_worker_instance: JobWorker | None = None


def get_worker(settings: Settings) -> JobWorker:
    """Get or create the global worker instance."""
    global _worker_instance
    if _worker_instance is None:
        database = get_database(settings)
        _worker_instance = JobWorker(settings, database.SessionLocal)
    return _worker_instance


async def run_worker() -> None:
    setup_logging()
    register_job_handlers()

    worker = get_worker(settings)
    try:
        await worker.start()
    finally:
        await get_database(settings).close()


if __name__ == "__main__":
    asyncio.run(run_worker())
