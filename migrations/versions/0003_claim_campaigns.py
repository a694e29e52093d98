"""claim campaigns, funnel events and contacts

Revision ID: 0003_claim_campaigns
Revises: 0002_assignments_reveals
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0003_claim_campaigns"
down_revision = "0002_assignments_reveals"
branch_labels = None
depends_on = None

CLAIM_STATES = (
    "'created', 'sent', 'opened', 'clicked', 'account_created', "
    "'claimed', 'expired', 'bounced', 'unsubscribed'"
)


def upgrade():
    op.create_table(
        "claim_campaigns",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("business_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False),
        sa.Column("claim_token", sa.Text(), nullable=False, unique=True),
        sa.Column("campaign_name", sa.Text()),
        sa.Column("email_sent_to", sa.Text()),
        sa.Column("state", sa.Text(), nullable=False, server_default=sa.text("'created'")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("email_sent_at", sa.DateTime(timezone=True)),
        sa.Column("email_opened_at", sa.DateTime(timezone=True)),
        sa.Column("link_clicked_at", sa.DateTime(timezone=True)),
        sa.Column("account_created_at", sa.DateTime(timezone=True)),
        sa.Column("claimed_at", sa.DateTime(timezone=True)),
        sa.Column("email_bounced_at", sa.DateTime(timezone=True)),
        sa.Column("email_unsubscribed_at", sa.DateTime(timezone=True)),
        sa.Column("claimed_by_user_id", postgresql.UUID(as_uuid=True)),
        sa.Column("closed_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(f"state IN ({CLAIM_STATES})", name="claim_campaigns_state_chk"),
    )
    op.create_index(
        "claim_campaigns_business_open_uidx",
        "claim_campaigns",
        ["business_id"],
        unique=True,
        postgresql_where=sa.text("closed_at IS NULL"),
    )
    op.create_index("claim_campaigns_business_idx", "claim_campaigns", ["business_id"])
    op.create_index("claim_campaigns_expires_at_idx", "claim_campaigns", ["expires_at"])

    op.create_table(
        "claim_campaign_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "campaign_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("claim_campaigns.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("details", postgresql.JSONB()),
    )
    op.create_unique_constraint(
        "claim_campaign_events_campaign_type_uidx",
        "claim_campaign_events",
        ["campaign_id", "event_type"],
    )

    op.create_table(
        "claim_contacts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "campaign_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("claim_campaigns.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("email", postgresql.CITEXT(), nullable=False),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_selected", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("email_sent_at", sa.DateTime(timezone=True)),
        sa.Column("email_opened_at", sa.DateTime(timezone=True)),
        sa.Column("link_clicked_at", sa.DateTime(timezone=True)),
        sa.Column("email_bounced_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_unique_constraint(
        "claim_contacts_campaign_email_uidx",
        "claim_contacts",
        ["campaign_id", "email"],
    )
    op.create_index("claim_contacts_email_idx", "claim_contacts", ["email"])


def downgrade():
    op.drop_index("claim_contacts_email_idx", table_name="claim_contacts")
    op.drop_constraint("claim_contacts_campaign_email_uidx", "claim_contacts", type_="unique")
    op.drop_table("claim_contacts")
    op.drop_constraint("claim_campaign_events_campaign_type_uidx", "claim_campaign_events", type_="unique")
    op.drop_table("claim_campaign_events")
    op.drop_index("claim_campaigns_expires_at_idx", table_name="claim_campaigns")
    op.drop_index("claim_campaigns_business_idx", table_name="claim_campaigns")
    op.drop_index("claim_campaigns_business_open_uidx", table_name="claim_campaigns")
    op.drop_table("claim_campaigns")
