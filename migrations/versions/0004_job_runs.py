"""batch job tracking

Revision ID: 0004_job_runs
Revises: 0003_claim_campaigns
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0004_job_runs"
down_revision = "0003_claim_campaigns"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "job_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("job_name", sa.Text(), nullable=False),
        sa.Column("scope", sa.Text()),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
        sa.Column("processed_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("details", postgresql.JSONB()),
        sa.Column("error", sa.Text()),
    )
    op.create_index("job_runs_name_status_idx", "job_runs", ["job_name", "status"])
    op.create_index("job_runs_started_at_idx", "job_runs", ["started_at"])


def downgrade():
    op.drop_index("job_runs_started_at_idx", table_name="job_runs")
    op.drop_index("job_runs_name_status_idx", table_name="job_runs")
    op.drop_table("job_runs")
