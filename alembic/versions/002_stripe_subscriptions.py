"""stripe billing - company_stripe_subscriptions.

Revision ID: 002_stripe_subscriptions
Revises: 001_cauntr_billing
Create Date: 2026-10-19 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "002_stripe_subscriptions"
down_revision = "001_cauntr_billing"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "company_stripe_subscriptions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("company_id", sa.UUID(), nullable=False),
        sa.Column("tenant_id", sa.String(length=191), nullable=False),
        sa.Column("stripe_customer_id", sa.String(length=191), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=191), nullable=True),
        sa.Column("stripe_subscription_item_id", sa.String(length=191), nullable=True),
        # Enum types already exist from 001
        sa.Column(
            "tier",
            postgresql.ENUM(
                "free", "personal", "team", "enterprise", name="tier", create_type=False
            ),
            nullable=False,
        ),
        sa.Column(
            "tier_type",
            postgresql.ENUM("monthly", "yearly", name="billingcycle", create_type=False),
            nullable=False,
        ),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last4", sa.String(length=4), nullable=True),
        sa.Column("exp_month", sa.String(length=2), nullable=True),
        sa.Column("exp_year", sa.String(length=4), nullable=True),
        sa.Column("card_type", sa.String(length=40), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["company_id"],
            ["companies.id"],
            name="fk_company_stripe_subscriptions_company_id_companies",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_company_stripe_subscriptions"),
        sa.UniqueConstraint(
            "company_id", name="uq_company_stripe_subscriptions_company_id"
        ),
        sa.UniqueConstraint(
            "stripe_customer_id", name="uq_company_stripe_subscriptions_customer_id"
        ),
        sa.UniqueConstraint(
            "stripe_subscription_id",
            name="uq_company_stripe_subscriptions_subscription_id",
        ),
    )
    op.create_index(
        "ix_company_stripe_subscriptions_tenant_id",
        "company_stripe_subscriptions",
        ["tenant_id"],
    )


def downgrade() -> None:
    op.drop_index(
        "ix_company_stripe_subscriptions_tenant_id",
        table_name="company_stripe_subscriptions",
    )
    op.drop_table("company_stripe_subscriptions")
