"""create sync_jobs table

Revision ID: 3b7e1c9a4d20
Revises:
Create Date: 2026-10-17 09:12:40.118204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b7e1c9a4d20"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "sync_jobs",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column(
            "org_id",
            sa.UUID(as_uuid=True),
            nullable=False,
            comment="Owning organization",
        ),
        sa.Column(
            "dedupe_key",
            sa.Text,
            nullable=False,
            comment="Collapses repeated events into one job",
        ),
        sa.Column(
            "job_type",
            sa.Text,
            nullable=False,
            comment="Handler name in the job registry",
        ),
        sa.Column(
            "payload",
            sa.JSON,
            nullable=False,
            server_default=sa.text("'{}'"),
            comment="Handler parameters",
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="pending",
            comment="pending|running|completed|failed",
        ),
        sa.Column(
            "priority",
            sa.SmallInteger,
            nullable=False,
            server_default="0",
            comment="0-100, higher runs first",
        ),
        sa.Column(
            "run_after",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            comment="Earliest time to run",
        ),
        sa.Column(
            "attempts",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Claims made since last enqueue",
        ),
        sa.Column(
            "max_attempts",
            sa.Integer,
            nullable=False,
            server_default="10",
            comment="Claims allowed before failing",
        ),
        sa.Column(
            "last_error", sa.Text, nullable=True, comment="Most recent failure reason"
        ),
        # Claim
        sa.Column(
            "locked_by", sa.Text, nullable=True, comment="Worker holding the claim"
        ),
        sa.Column("locked_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "locked_until",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Claim expiry",
        ),
        # Outcome
        sa.Column("result", sa.JSON, nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "enqueue_count",
            sa.Integer,
            nullable=False,
            server_default="1",
            comment="Enqueues collapsed into row",
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "org_id", "dedupe_key", name="uq_sync_jobs_org_dedupe_key"
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name="sync_jobs_status_check",
        ),
        sa.CheckConstraint(
            "priority BETWEEN 0 AND 100", name="sync_jobs_priority_check"
        ),
        sa.CheckConstraint("max_attempts >= 1", name="sync_jobs_max_attempts_check"),
        sa.CheckConstraint("dedupe_key <> ''", name="sync_jobs_dedupe_key_check"),
    )

    # Claim scan: due pending jobs by priority
    op.create_index(
        "ix_sync_jobs_ready", "sync_jobs", ["status", "run_after", "priority"]
    )
    op.create_index("ix_sync_jobs_locked_until", "sync_jobs", ["locked_until"])
    op.create_index("ix_sync_jobs_org_status", "sync_jobs", ["org_id", "status"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_sync_jobs_org_status", table_name="sync_jobs")
    op.drop_index("ix_sync_jobs_locked_until", table_name="sync_jobs")
    op.drop_index("ix_sync_jobs_ready", table_name="sync_jobs")
    op.drop_table("sync_jobs")
