"""
Job handlers for the sync queue.

Each handler implements the JobHandler protocol and is registered in the job
registry under the job type it executes. Handlers raise PermanentJobError for
failures that retrying cannot fix; any other exception is retried.
"""

import logging
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from api.config.settings import Settings
from api.v1.core.security import Principal
from api.v1.infra.jobs.service import JobService

logger = logging.getLogger(__name__)

# Client errors worth retrying: timeouts and rate limiting
RETRYABLE_CLIENT_STATUSES = frozenset({408, 425, 429})


class PermanentJobError(Exception):
    """A job failure that must not be retried."""


class HttpDeliveryHandler:
    """Base for handlers whose side effect is a JSON POST."""

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.transport = transport

    async def post_json(
        self,
        url: str,
        body: Any,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """POST ``body`` and classify the outcome for the retry policy."""
        async with httpx.AsyncClient(
            timeout=self.settings.http_timeout_s, transport=self.transport
        ) as client:
            try:
                response = await client.post(url, json=body, headers=headers)
            except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
                raise PermanentJobError(f"Invalid URL {url!r}: {e}") from e
            except httpx.HTTPError as e:
                raise RuntimeError(
                    f"POST {url} failed: {e.__class__.__name__}: {e}"
                ) from e

        if response.is_success:
            return {"status_code": response.status_code}

        message = f"POST {url} returned {response.status_code}: {response.text[:500]}"
        if (
            response.is_client_error
            and response.status_code not in RETRYABLE_CLIENT_STATUSES
        ):
            raise PermanentJobError(message)
        raise RuntimeError(message)


class WebhookDeliveryHandler(HttpDeliveryHandler):
    """
    Deliver a webhook.

    Payload expected:
    {
        "url": "https://example.com/hook",
        "body": {...},
        "headers": {"X-Signature": "..."}  # optional
    }
    """

    async def handle(
        self,
        session: AsyncSession,
        principal_ctx: Principal,
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        url = payload.get("url")
        if not url:
            raise PermanentJobError("url is required in payload")

        headers = payload.get("headers") or {}
        if not isinstance(headers, dict):
            raise PermanentJobError("headers must be an object")

        delivery = await self.post_json(url, payload.get("body", {}), headers)

        logger.info(
            "Webhook delivered",
            extra={
                "url": url,
                "org_id": principal_ctx.org_id,
                "status_code": delivery["status_code"],
            },
        )
        return {"status": "delivered", **delivery}


class SlackNotificationHandler(HttpDeliveryHandler):
    """
    Post a message to a Slack incoming webhook.

    Payload expected:
    {
        "text": "Deal moved to Negotiation",
        "channel": "#sales",  # optional
        "webhook_url": "https://hooks.slack.com/..."  # optional, defaults to settings
    }
    """

    async def handle(
        self,
        session: AsyncSession,
        principal_ctx: Principal,
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        webhook_url = payload.get("webhook_url") or self.settings.slack_webhook_url
        if not webhook_url:
            raise PermanentJobError("No Slack webhook URL configured")

        text = payload.get("text")
        if not text:
            raise PermanentJobError("text is required in payload")

        message: dict[str, Any] = {"text": text}
        if payload.get("channel"):
            message["channel"] = payload["channel"]

        delivery = await self.post_json(webhook_url, message)
        return {"status": "sent", **delivery}


class PushNoteHandler(HttpDeliveryHandler):
    """
    Write a meeting note back to the CRM.

    Payload expected:
    {
        "meeting_id": 42,
        "summary": "Discussed pricing",
        "contact_email": "buyer@example.com",  # optional
        "deal_id": "deal-7"  # optional
    }
    """

    async def handle(
        self,
        session: AsyncSession,
        principal_ctx: Principal,
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        endpoint = self.settings.crm_note_webhook_url
        if not endpoint:
            raise PermanentJobError("CRM note endpoint is not configured")

        meeting_id = payload.get("meeting_id")
        if meeting_id is None:
            raise PermanentJobError("meeting_id is required in payload")

        note = {
            "org_id": principal_ctx.org_id,
            "meeting_id": meeting_id,
            "summary": payload.get("summary", ""),
            "contact_email": payload.get("contact_email"),
            "deal_id": payload.get("deal_id"),
        }
        delivery = await self.post_json(endpoint, note)

        logger.info(
            "Meeting note pushed",
            extra={"meeting_id": meeting_id, "org_id": principal_ctx.org_id},
        )
        return {"status": "pushed", "meeting_id": meeting_id, **delivery}


class MaintenanceCleanupHandler:
    """
    Job handler for queue maintenance.

    Payload expected:
    {
        "dry_run": false  # optional
    }
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    async def handle(
        self,
        session: AsyncSession,
        principal_ctx: Principal,
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        dry_run = payload.get("dry_run", False)

        if dry_run:
            return {
                "status": "dry_run",
                "retention_days": self.settings.job_cleanup_after_days,
            }

        job_service = JobService(self.settings)
        deleted_count = await job_service.cleanup_old_jobs(session)

        logger.info(
            "Maintenance cleanup completed", extra={"deleted_count": deleted_count}
        )
        return {"status": "completed", "deleted_count": deleted_count}
