"""businesses, subscriptions and quotes

Revision ID: 0001_businesses_quotes
Revises: 
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_businesses_quotes"
down_revision = None
branch_labels = None
depends_on = None

LEAD_STATUSES = "'new', 'viewed', 'contacted', 'quoted', 'won', 'lost', 'archived'"


def upgrade():
    op.execute("CREATE EXTENSION IF NOT EXISTS citext")

    op.create_table(
        "businesses",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("category", sa.Text()),
        sa.Column("address", sa.Text()),
        sa.Column("city", sa.Text()),
        sa.Column("state", sa.Text()),
        sa.Column("zipcode", sa.Text()),
        sa.Column("latitude", sa.Float()),
        sa.Column("longitude", sa.Float()),
        sa.Column("phone", sa.Text()),
        sa.Column("email", sa.Text()),
        sa.Column("website", sa.Text()),
        sa.Column("rating", sa.Float()),
        sa.Column("reviews", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_claimed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_featured", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("featured_until", sa.DateTime(timezone=True)),
        sa.Column("service_radius_miles", sa.Integer(), nullable=False, server_default=sa.text("25")),
        sa.Column("service_zipcodes", postgresql.ARRAY(sa.Text()), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("service_areas", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("businesses_name_location_idx", "businesses", ["name", "city", "state", "zipcode"])
    op.create_index("businesses_email_location_idx", "businesses", ["email", "city", "state", "zipcode"])
    op.create_index("businesses_state_city_idx", "businesses", ["state", "city"])
    op.create_index("businesses_claimed_verified_idx", "businesses", ["is_claimed", "is_verified"])

    op.create_table(
        "business_subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "business_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("businesses.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("plan", sa.Text(), nullable=False, server_default=sa.text("'pay_per_lead'")),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'active'")),
        sa.Column("lead_credits", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("leads_received", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("lead_credits >= 0", name="business_subscriptions_credits_nonneg_chk"),
    )

    op.create_table(
        "quotes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("customer_name", sa.Text(), nullable=False),
        sa.Column("customer_email", postgresql.CITEXT(), nullable=False),
        sa.Column("customer_phone", sa.Text()),
        sa.Column("service_type", sa.Text(), nullable=False),
        sa.Column("project_description", sa.Text()),
        sa.Column("service_address", sa.Text()),
        sa.Column("service_city", sa.Text()),
        sa.Column("service_state", sa.Text()),
        sa.Column("service_zipcode", sa.Text()),
        sa.Column("latitude", sa.Float()),
        sa.Column("longitude", sa.Float()),
        sa.Column("business_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("businesses.id", ondelete="SET NULL")),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'new'")),
        sa.Column("source", sa.Text(), nullable=False, server_default=sa.text("'website'")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(f"status IN ({LEAD_STATUSES})", name="quotes_status_chk"),
    )
    op.create_index("quotes_status_idx", "quotes", ["status"])
    op.create_index("quotes_business_idx", "quotes", ["business_id"])
    op.create_index("quotes_created_at_idx", "quotes", ["created_at"])


def downgrade():
    op.drop_index("quotes_created_at_idx", table_name="quotes")
    op.drop_index("quotes_business_idx", table_name="quotes")
    op.drop_index("quotes_status_idx", table_name="quotes")
    op.drop_table("quotes")
    op.drop_table("business_subscriptions")
    op.drop_index("businesses_claimed_verified_idx", table_name="businesses")
    op.drop_index("businesses_state_city_idx", table_name="businesses")
    op.drop_index("businesses_email_location_idx", table_name="businesses")
    op.drop_index("businesses_name_location_idx", table_name="businesses")
    op.drop_table("businesses")
