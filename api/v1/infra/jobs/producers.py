"""
Domain event hooks that feed the sync queue.

Handlers for CRM events call these instead of writing to the queue directly.
Each hook derives its dedupe key from the triggering entity, so repeated
events for the same entity collapse into one pending job.
"""

import logging
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from api.config.settings import Settings
from api.v1.infra.jobs.registry_init import PUSH_NOTE, SLACK_NOTIFICATION
from api.v1.infra.jobs.schemas import JobEnqueueResponse
from api.v1.infra.jobs.service import JobService

logger = logging.getLogger(__name__)

MEETING_NOTE_PRIORITY = 50
DEAL_STAGE_PRIORITY = 10


def meeting_note_key(meeting_id: int | str) -> str:
    return f"meeting_note:{meeting_id}"


def deal_stage_key(deal_id: int | str) -> str:
    return f"deal_stage:{deal_id}"


async def on_meeting_summary_updated(
    session: AsyncSession,
    settings: Settings,
    org_id: UUID,
    meeting_id: int | str,
    summary: str,
    contact_email: str | None = None,
    deal_id: str | None = None,
) -> JobEnqueueResponse:
    """Queue a CRM note writeback for a meeting whose summary changed."""
    payload = {"meeting_id": meeting_id, "summary": summary}
    if contact_email:
        payload["contact_email"] = contact_email
    if deal_id:
        payload["deal_id"] = deal_id

    return await JobService(settings).enqueue(
        session,
        org_id=org_id,
        dedupe_key=meeting_note_key(meeting_id),
        job_type=PUSH_NOTE,
        payload=payload,
        priority=MEETING_NOTE_PRIORITY,
    )


async def on_deal_stage_changed(
    session: AsyncSession,
    settings: Settings,
    org_id: UUID,
    deal_id: int | str,
    deal_name: str,
    old_stage: str | None,
    new_stage: str,
    channel: str | None = None,
    delay_s: int = 0,
) -> JobEnqueueResponse:
    """
    Queue a Slack notification for a deal stage change.

    A delay lets rapid back-and-forth stage edits settle into a single
    message about the final stage.
    """
    if old_stage:
        text = f"Deal *{deal_name}* moved from {old_stage} to {new_stage}"
    else:
        text = f"Deal *{deal_name}* entered {new_stage}"

    payload = {"text": text, "deal_id": deal_id, "stage": new_stage}
    if channel:
        payload["channel"] = channel

    run_after = datetime.now(UTC) + timedelta(seconds=delay_s) if delay_s else None

    logger.debug(
        "Deal stage change queued",
        extra={"deal_id": deal_id, "new_stage": new_stage, "delay_s": delay_s},
    )

    return await JobService(settings).enqueue(
        session,
        org_id=org_id,
        dedupe_key=deal_stage_key(deal_id),
        job_type=SLACK_NOTIFICATION,
        payload=payload,
        priority=DEAL_STAGE_PRIORITY,
        run_after=run_after,
    )
