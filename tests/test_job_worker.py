import asyncio
from typing import Any

import pytest

from api.config.settings import Settings
from api.v1.core.registries import JobRegistry
from api.v1.infra.jobs.handlers import PermanentJobError
from api.v1.infra.jobs.models import JobStatus
from api.v1.infra.jobs.service import JobService
from api.v1.infra.jobs.worker import JobWorker
from tests.conftest import ORG_A


class RecordingHandler:
    def __init__(self, result: dict[str, Any] | None = None):
        self.result = result
        self.calls: list[tuple[Any, dict[str, Any]]] = []

    async def handle(self, session, principal_ctx, payload):
        self.calls.append((principal_ctx, payload))
        return self.result


class FailingHandler:
    def __init__(self, error: Exception):
        self.error = error

    async def handle(self, session, principal_ctx, payload):
        raise self.error


@pytest.fixture
def worker_settings() -> Settings:
    return Settings(
        job_backoff_jitter=0.0,
        job_concurrency=2,
        job_batch_size=10,
        job_poll_interval_ms=10,
        job_heartbeat_interval_s=1,
    )


@pytest.fixture
def registry() -> JobRegistry:
    return JobRegistry()


@pytest.fixture
def worker(worker_settings, session_factory, registry) -> JobWorker:
    return JobWorker(worker_settings, session_factory, registry=registry)


async def _enqueue(session_factory, settings, dedupe_key, job_type="fake", **kwargs):
    async with session_factory() as session:
        result = await JobService(settings).enqueue(
            session,
            org_id=ORG_A,
            dedupe_key=dedupe_key,
            job_type=job_type,
            **kwargs,
        )
    return result.job_id


async def _load(session_factory, settings, job_id):
    async with session_factory() as session:
        return await JobService(settings).get_job_by_id(session, job_id)


async def test_run_once_with_empty_queue(worker):
    assert await worker.run_once() == 0


async def test_successful_job_is_completed(
    worker, registry, session_factory, worker_settings
):
    handler = RecordingHandler(result={"status": "sent"})
    registry.register("fake", handler)
    job_id = await _enqueue(
        session_factory, worker_settings, "meeting_note:42", payload={"meeting_id": 42}
    )

    assert await worker.run_once() == 1

    job = await _load(session_factory, worker_settings, job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.result == {"status": "sent"}
    assert job.locked_by is None
    assert worker.active_jobs == set()

    [(principal, payload)] = handler.calls
    assert payload == {"meeting_id": 42}
    assert principal.org_uuid == ORG_A
    assert "admin" in principal.roles


async def test_handler_error_schedules_retry(
    worker, registry, session_factory, worker_settings
):
    registry.register("fake", FailingHandler(ConnectionError("CRM unreachable")))
    job_id = await _enqueue(session_factory, worker_settings, "k")

    await worker.run_once()

    job = await _load(session_factory, worker_settings, job_id)
    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 1
    assert job.last_error == "ConnectionError: CRM unreachable"


async def test_permanent_error_fails_job_immediately(
    worker, registry, session_factory, worker_settings
):
    registry.register("fake", FailingHandler(PermanentJobError("contact deleted")))
    job_id = await _enqueue(session_factory, worker_settings, "k")

    await worker.run_once()

    job = await _load(session_factory, worker_settings, job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.attempts == 1
    assert job.last_error == "contact deleted"


async def test_unknown_job_type_fails_permanently(
    worker, session_factory, worker_settings
):
    job_id = await _enqueue(session_factory, worker_settings, "k", job_type="mystery")

    await worker.run_once()

    job = await _load(session_factory, worker_settings, job_id)
    assert job.status == JobStatus.FAILED.value
    assert "mystery" in job.last_error


async def test_run_once_respects_concurrency(
    worker, registry, session_factory, worker_settings
):
    handler = RecordingHandler()
    registry.register("fake", handler)
    for i in range(5):
        await _enqueue(session_factory, worker_settings, f"k{i}")

    assert await worker.run_once() == 2
    assert await worker.run_once() == 2
    assert await worker.run_once() == 1
    assert len(handler.calls) == 5


async def test_higher_priority_jobs_run_first(
    worker, registry, session_factory, worker_settings
):
    handler = RecordingHandler()
    registry.register("fake", handler)
    await _enqueue(session_factory, worker_settings, "low", payload={"n": "low"})
    await _enqueue(
        session_factory, worker_settings, "high", payload={"n": "high"}, priority=90
    )
    await _enqueue(
        session_factory, worker_settings, "mid", payload={"n": "mid"}, priority=50
    )

    await worker.run_once()

    assert sorted(payload["n"] for _, payload in handler.calls) == ["high", "mid"]


async def test_start_processes_jobs_until_stopped(
    worker, registry, session_factory, worker_settings
):
    registry.register("fake", RecordingHandler(result={"ok": True}))
    job_id = await _enqueue(session_factory, worker_settings, "k")

    task = asyncio.create_task(worker.start())
    for _ in range(200):
        job = await _load(session_factory, worker_settings, job_id)
        if job.status == JobStatus.COMPLETED.value:
            break
        await asyncio.sleep(0.01)

    await worker.stop(timeout_seconds=1)
    await asyncio.wait_for(task, timeout=5)

    assert job.status == JobStatus.COMPLETED.value
    assert worker.running is False


async def test_start_twice_is_rejected(worker):
    worker.running = True

    with pytest.raises(RuntimeError, match="already running"):
        await worker.start()
