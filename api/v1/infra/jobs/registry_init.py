"""
Job registry initialization.

Registers all job handlers with the global job registry.
"""

import logging

from api.config.settings import Settings, settings
from api.v1.core.registries import job_registry
from api.v1.infra.jobs.handlers import (
    MaintenanceCleanupHandler,
    PushNoteHandler,
    SlackNotificationHandler,
    WebhookDeliveryHandler,
)

logger = logging.getLogger(__name__)

DELIVER_WEBHOOK = "deliver_webhook"
SLACK_NOTIFICATION = "slack_notification"
PUSH_NOTE = "push_note"
MAINTENANCE_CLEANUP = "maintenance_cleanup"


def register_job_handlers(config: Settings | None = None) -> None:
    """Register all job handlers with the job registry."""
    config = config or settings

    if job_registry.is_frozen():
        return

    # Outbound delivery
    job_registry.register(DELIVER_WEBHOOK, WebhookDeliveryHandler(config))
    job_registry.register(SLACK_NOTIFICATION, SlackNotificationHandler(config))
    job_registry.register(PUSH_NOTE, PushNoteHandler(config))

    # Maintenance
    job_registry.register(MAINTENANCE_CLEANUP, MaintenanceCleanupHandler(config))

    logger.info(
        "Job handlers registered", extra={"registered_handlers": job_registry.list()}
    )
