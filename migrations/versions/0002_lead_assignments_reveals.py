"""lead assignments and reveals

Revision ID: 0002_assignments_reveals
Revises: 0001_businesses_quotes
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0002_assignments_reveals"
down_revision = "0001_businesses_quotes"
branch_labels = None
depends_on = None

LEAD_STATUSES = "'new', 'viewed', 'contacted', 'quoted', 'won', 'lost', 'archived'"


def upgrade():
    op.create_table(
        "lead_assignments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("business_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'new'")),
        sa.Column("notes", sa.Text()),
        sa.Column("quoted_price", sa.Numeric(10, 2)),
        sa.Column("viewed_at", sa.DateTime(timezone=True)),
        sa.Column("contacted_at", sa.DateTime(timezone=True)),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(f"status IN ({LEAD_STATUSES})", name="lead_assignments_status_chk"),
    )
    op.create_unique_constraint(
        "lead_assignments_lead_business_uidx",
        "lead_assignments",
        ["lead_id", "business_id"],
    )
    op.create_index("lead_assignments_business_status_idx", "lead_assignments", ["business_id", "status"])

    op.create_table(
        "lead_reveals",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("business_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False),
        sa.Column("credits_used", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("revealed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_unique_constraint(
        "lead_reveals_lead_business_uidx",
        "lead_reveals",
        ["lead_id", "business_id"],
    )
    op.create_index("lead_reveals_business_idx", "lead_reveals", ["business_id"])


def downgrade():
    op.drop_index("lead_reveals_business_idx", table_name="lead_reveals")
    op.drop_constraint("lead_reveals_lead_business_uidx", "lead_reveals", type_="unique")
    op.drop_table("lead_reveals")
    op.drop_index("lead_assignments_business_status_idx", table_name="lead_assignments")
    op.drop_constraint("lead_assignments_lead_business_uidx", "lead_assignments", type_="unique")
    op.drop_table("lead_assignments")
