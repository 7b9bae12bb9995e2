"""cauntr billing schema - companies, company_subscriptions, webhook_events.

Revision ID: 001_cauntr_billing
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

revision = "001_cauntr_billing"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "companies",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("tenant_id", sa.String(length=191), nullable=False),
        sa.Column("company_name", sa.String(length=191), nullable=False),
        sa.Column("company_email", sa.String(length=191), nullable=False),
        sa.Column("country", sa.String(length=80), nullable=True),
        sa.Column(
            "subscription_status",
            sa.Enum("trial", "active", "cancelled", "expired", name="subscriptionstatus"),
            nullable=False,
        ),
        sa.Column("can_update", sa.Boolean(), nullable=False),
        sa.Column("can_cancel", sa.Boolean(), nullable=False),
        sa.Column("pending_plan_update", sa.String(length=255), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scheduled_deactivation", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_companies"),
        sa.UniqueConstraint("tenant_id", name="uq_companies_tenant_id"),
        sa.UniqueConstraint("company_email", name="uq_companies_company_email"),
    )
    op.create_index("ix_companies_tenant_id", "companies", ["tenant_id"])
    op.create_index("ix_companies_company_email", "companies", ["company_email"])
    # Restart recovery and the sweeps scan these
    op.create_index(
        "ix_companies_next_billing_date", "companies", ["next_billing_date"]
    )
    op.create_index(
        "ix_companies_scheduled_deactivation", "companies", ["scheduled_deactivation"]
    )

    op.create_table(
        "company_subscriptions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("company_id", sa.UUID(), nullable=False),
        sa.Column("tenant_id", sa.String(length=191), nullable=False),
        sa.Column("paystack_customer_id", sa.String(length=191), nullable=True),
        sa.Column("paystack_subscription_code", sa.String(length=191), nullable=True),
        sa.Column("authorization_code", sa.String(length=191), nullable=True),
        sa.Column("transaction_id", sa.String(length=191), nullable=True),
        sa.Column(
            "tier",
            sa.Enum("free", "personal", "team", "enterprise", name="tier"),
            nullable=False,
        ),
        sa.Column(
            "tier_type",
            sa.Enum("monthly", "yearly", name="billingcycle"),
            nullable=False,
        ),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last4", sa.String(length=4), nullable=True),
        sa.Column("exp_month", sa.String(length=2), nullable=True),
        sa.Column("exp_year", sa.String(length=4), nullable=True),
        sa.Column("card_type", sa.String(length=40), nullable=True),
        sa.Column("bank", sa.String(length=120), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["company_id"],
            ["companies.id"],
            name="fk_company_subscriptions_company_id_companies",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_company_subscriptions"),
        sa.UniqueConstraint("company_id", name="uq_company_subscriptions_company_id"),
        sa.UniqueConstraint(
            "paystack_customer_id", name="uq_company_subscriptions_customer_id"
        ),
        sa.UniqueConstraint(
            "paystack_subscription_code",
            name="uq_company_subscriptions_subscription_code",
        ),
    )
    op.create_index(
        "ix_company_subscriptions_tenant_id", "company_subscriptions", ["tenant_id"]
    )

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("provider", sa.String(length=80), nullable=False),
        sa.Column("event_type", sa.String(length=120), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "processing", "processed", "failed", "unhandled",
                name="webhookeventstatus",
            ),
            nullable=True,
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_webhook_events"),
        sa.UniqueConstraint("event_id", name="uq_webhook_events_event_id"),
    )


def downgrade() -> None:
    op.drop_table("webhook_events")

    op.drop_index("ix_company_subscriptions_tenant_id", table_name="company_subscriptions")
    op.drop_table("company_subscriptions")

    op.drop_index("ix_companies_scheduled_deactivation", table_name="companies")
    op.drop_index("ix_companies_next_billing_date", table_name="companies")
    op.drop_index("ix_companies_company_email", table_name="companies")
    op.drop_index("ix_companies_tenant_id", table_name="companies")
    op.drop_table("companies")

    sa.Enum(name="webhookeventstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="billingcycle").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="tier").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="subscriptionstatus").drop(op.get_bind(), checkfirst=True)
