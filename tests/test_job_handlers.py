import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from sqlalchemy import select, update

from api.config.settings import Settings
from api.v1.core.security import Principal
from api.v1.infra.jobs.handlers import (
    MaintenanceCleanupHandler,
    PermanentJobError,
    PushNoteHandler,
    SlackNotificationHandler,
    WebhookDeliveryHandler,
)
from api.v1.infra.jobs.models import Job
from api.v1.infra.jobs.service import JobService
from tests.conftest import ORG_A


@pytest.fixture
def principal() -> Principal:
    return Principal(user_id="system", org_id=str(ORG_A), roles=["admin"])


@pytest.fixture
def handler_settings() -> Settings:
    return Settings(
        slack_webhook_url="https://hooks.slack.test/services/T000",
        crm_note_webhook_url="https://crm.test/notes",
        http_timeout_s=1.0,
    )


class RecordingTransport:
    """Builds an httpx.MockTransport that answers with a fixed status."""

    def __init__(self, status_code: int = 200, text: str = "ok"):
        self.status_code = status_code
        self.text = text
        self.requests: list[httpx.Request] = []

    def transport(self) -> httpx.MockTransport:
        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return httpx.Response(self.status_code, text=self.text)

        return httpx.MockTransport(handler)


class TestWebhookDelivery:
    async def test_delivers_body_and_headers(self, handler_settings, principal):
        recorder = RecordingTransport(status_code=202)
        handler = WebhookDeliveryHandler(handler_settings, recorder.transport())

        result = await handler.handle(
            None,
            principal,
            {
                "url": "https://example.test/hook",
                "body": {"event": "deal.updated"},
                "headers": {"X-Signature": "abc"},
            },
        )

        assert result == {"status": "delivered", "status_code": 202}
        [request] = recorder.requests
        assert request.method == "POST"
        assert request.headers["X-Signature"] == "abc"
        assert json.loads(request.content) == {"event": "deal.updated"}

    async def test_missing_url_is_permanent(self, handler_settings, principal):
        handler = WebhookDeliveryHandler(handler_settings)

        with pytest.raises(PermanentJobError, match="url is required"):
            await handler.handle(None, principal, {"body": {}})

    @pytest.mark.parametrize("status_code", [400, 404, 410, 422])
    async def test_client_errors_are_permanent(
        self, handler_settings, principal, status_code
    ):
        recorder = RecordingTransport(status_code=status_code, text="nope")
        handler = WebhookDeliveryHandler(handler_settings, recorder.transport())

        with pytest.raises(PermanentJobError, match=str(status_code)):
            await handler.handle(None, principal, {"url": "https://example.test/h"})

    @pytest.mark.parametrize("status_code", [408, 429, 500, 503])
    async def test_server_errors_and_throttling_are_retried(
        self, handler_settings, principal, status_code
    ):
        recorder = RecordingTransport(status_code=status_code)
        handler = WebhookDeliveryHandler(handler_settings, recorder.transport())

        with pytest.raises(RuntimeError, match=str(status_code)):
            await handler.handle(None, principal, {"url": "https://example.test/h"})

    async def test_connection_errors_are_retried(self, handler_settings, principal):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        handler = WebhookDeliveryHandler(handler_settings, httpx.MockTransport(refuse))

        with pytest.raises(RuntimeError, match="ConnectError"):
            await handler.handle(None, principal, {"url": "https://example.test/h"})

    async def test_non_object_headers_are_permanent(self, handler_settings, principal):
        handler = WebhookDeliveryHandler(handler_settings)

        with pytest.raises(PermanentJobError, match="headers"):
            await handler.handle(
                None, principal, {"url": "https://example.test/h", "headers": ["x"]}
            )


class TestSlackNotification:
    async def test_posts_text_and_channel(self, handler_settings, principal):
        recorder = RecordingTransport()
        handler = SlackNotificationHandler(handler_settings, recorder.transport())

        result = await handler.handle(
            None, principal, {"text": "Deal *Acme* entered Won", "channel": "#sales"}
        )

        assert result["status"] == "sent"
        [request] = recorder.requests
        assert str(request.url) == "https://hooks.slack.test/services/T000"
        assert json.loads(request.content) == {
            "text": "Deal *Acme* entered Won",
            "channel": "#sales",
        }

    async def test_payload_webhook_overrides_settings(self, handler_settings, principal):
        recorder = RecordingTransport()
        handler = SlackNotificationHandler(handler_settings, recorder.transport())

        await handler.handle(
            None,
            principal,
            {"text": "hi", "webhook_url": "https://hooks.slack.test/other"},
        )

        assert str(recorder.requests[0].url) == "https://hooks.slack.test/other"

    async def test_unconfigured_webhook_is_permanent(self, principal):
        handler = SlackNotificationHandler(Settings(slack_webhook_url=None))

        with pytest.raises(PermanentJobError, match="No Slack webhook URL"):
            await handler.handle(None, principal, {"text": "hi"})


class TestPushNote:
    async def test_pushes_note_for_org(self, handler_settings, principal):
        recorder = RecordingTransport(status_code=201)
        handler = PushNoteHandler(handler_settings, recorder.transport())

        result = await handler.handle(
            None,
            principal,
            {"meeting_id": 42, "summary": "Discussed pricing", "deal_id": "deal-7"},
        )

        assert result == {"status": "pushed", "meeting_id": 42, "status_code": 201}
        body = json.loads(recorder.requests[0].content)
        assert body["org_id"] == str(ORG_A)
        assert body["meeting_id"] == 42
        assert body["summary"] == "Discussed pricing"
        assert body["deal_id"] == "deal-7"
        assert body["contact_email"] is None

    async def test_missing_meeting_id_is_permanent(self, handler_settings, principal):
        handler = PushNoteHandler(handler_settings, RecordingTransport().transport())

        with pytest.raises(PermanentJobError, match="meeting_id"):
            await handler.handle(None, principal, {"summary": "x"})


class TestMaintenanceCleanup:
    async def test_dry_run_reports_retention(self, test_settings, principal):
        handler = MaintenanceCleanupHandler(test_settings)

        result = await handler.handle(None, principal, {"dry_run": True})

        assert result == {"status": "dry_run", "retention_days": 7}

    async def test_deletes_old_completed_jobs(
        self, db_session, test_settings, principal
    ):
        job_service = JobService(test_settings)
        await job_service.enqueue(db_session, org_id=ORG_A, dedupe_key="k", job_type="t")
        [job] = await job_service.claim_batch(db_session, 1, worker_id="w1")
        await job_service.report_success(db_session, job.id, worker_id="w1")
        await db_session.execute(
            update(Job).values(completed_at=datetime.now(UTC) - timedelta(days=8))
        )
        await db_session.commit()

        result = await MaintenanceCleanupHandler(test_settings).handle(
            db_session, principal, {}
        )

        assert result == {"status": "completed", "deleted_count": 1}
        remaining = await db_session.execute(select(Job.id))
        assert remaining.scalars().all() == []
