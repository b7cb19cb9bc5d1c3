"""billing pipeline

Revision ID: 0001_billing_pipeline
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from propledger.persistence.ddl import (
    NORMALIZE_DESCRIPTION_SQL,
    NORMALIZE_TRIGGER_FUNCTION_SQL,
    NORMALIZE_TRIGGER_SQL,
)

# revision identifiers, used by Alembic.
revision = "0001_billing_pipeline"
down_revision = None
branch_labels = None
depends_on = None


def _money(name: str, *, nullable: bool = False, default: bool = True) -> sa.Column:
    return sa.Column(
        name,
        sa.Numeric(12, 2),
        nullable=nullable,
        server_default=sa.text("0") if default else None,
    )


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), nullable=True),
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("result", postgresql.JSONB(), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    # Partial index keeps the claim query cheap as completed rows accumulate.
    op.create_index(
        "ix_jobs_claimable",
        "jobs",
        ["priority", "created_at"],
        postgresql_where=sa.text("status IN ('pending', 'retrying')"),
    )
    op.create_index("ix_jobs_org_type", "jobs", ["org_id", "job_type"])

    op.create_table(
        "job_runs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.String(), nullable=False, unique=True),
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("trace_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("property_id", sa.String(), nullable=True),
        sa.Column("unit_id", sa.String(), nullable=True),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("last_name", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        _money("grundmiete"),
        _money("betriebskosten_vorschuss"),
        _money("heizkosten_vorschuss"),
        sa.Column("status", sa.String(), nullable=False, server_default="aktiv"),
        sa.Column("mietbeginn", sa.Date(), nullable=True),
        sa.Column("mietende", sa.Date(), nullable=True),
    )
    op.create_index("ix_tenants_organization_id", "tenants", ["organization_id"])
    op.create_index("ix_tenants_property_id", "tenants", ["property_id"])

    op.create_table(
        "monthly_invoices",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("unit_id", sa.String(), nullable=True),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        _money("grundmiete"),
        _money("betriebskosten"),
        _money("heizungskosten"),
        _money("vortrag_miete"),
        _money("vortrag_bk"),
        _money("vortrag_hk"),
        _money("vortrag_sonstige"),
        _money("gesamtbetrag"),
        _money("paid_amount"),
        sa.Column("status", sa.String(), nullable=False, server_default="offen"),
        sa.Column("faellig_am", sa.Date(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "year", "month", name="uq_monthly_invoices_tenant_period"),
    )
    op.create_index("ix_monthly_invoices_organization_id", "monthly_invoices", ["organization_id"])
    op.create_index("ix_monthly_invoices_tenant_status", "monthly_invoices", ["tenant_id", "status"])

    op.create_table(
        "payments",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("invoice_id", sa.String(), nullable=True),
        _money("amount", default=False),
        sa.Column("booking_date", sa.Date(), nullable=False),
        sa.Column("payment_type", sa.String(), nullable=False, server_default="ueberweisung"),
        sa.Column("reference", sa.Text(), nullable=True),
        sa.Column("allocated_at", sa.DateTime(timezone=True), nullable=True),
        _money("unapplied_amount", nullable=True, default=False),
        sa.Column("ledger_job_id", sa.String(), nullable=True),
        _money("reversed_amount"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_payments_tenant_booking", "payments", ["tenant_id", "booking_date"])

    op.create_table(
        "payment_allocations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("payment_id", sa.String(), nullable=False),
        sa.Column("invoice_id", sa.String(), nullable=False),
        _money("applied_amount", default=False),
        sa.Column("allocation_type", sa.String(), nullable=False, server_default="auto"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("payment_id", "invoice_id", name="uq_payment_allocations_pair"),
    )
    op.create_index("ix_payment_allocations_invoice", "payment_allocations", ["invoice_id"])

    op.create_table(
        "payment_reversals",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("payment_id", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        _money("amount", default=False),
        _money("credit_reversed"),
        sa.Column("invoices", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("booking_date", sa.Date(), nullable=False),
        sa.Column("ledger_job_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_payment_reversals_payment", "payment_reversals", ["payment_id"])

    op.create_table(
        "invoice_lines",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("invoice_id", sa.String(), nullable=False),
        sa.Column("unit_id", sa.String(), nullable=True),
        sa.Column("line_type", sa.String(50), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("normalized_description", sa.Text(), nullable=False, server_default=""),
        _money("amount", default=False),
        sa.Column("tax_rate", sa.Numeric(5, 2), nullable=True),
        sa.Column("meta", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_invoice_lines_invoice_id", "invoice_lines", ["invoice_id"])
    # NULL unit ids must still collide, otherwise unit-less lines never merge (PostgreSQL 15+).
    op.create_index(
        "uq_invoice_lines_key",
        "invoice_lines",
        ["invoice_id", "unit_id", "line_type", "normalized_description"],
        unique=True,
        postgresql_nulls_not_distinct=True,
    )
    op.execute(NORMALIZE_DESCRIPTION_SQL)
    op.execute(NORMALIZE_TRIGGER_FUNCTION_SQL)
    op.execute(NORMALIZE_TRIGGER_SQL)

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("invoice_id", sa.String(), nullable=True),
        sa.Column("payment_id", sa.String(), nullable=True),
        sa.Column("type", sa.String(), nullable=False),
        _money("amount", default=False),
        sa.Column("booking_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_ledger_entries_key",
        "ledger_entries",
        ["tenant_id", "type", "invoice_id", "payment_id"],
    )

    op.create_table(
        "financial_audit_log",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("data", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("previous_hash", sa.String(64), nullable=False),
        sa.Column("hash", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_financial_audit_log_org_created",
        "financial_audit_log",
        ["organization_id", "created_at", "id"],
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("organization_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("trace_id", sa.String(), nullable=True),
        sa.Column("run_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("error_code", sa.String(), nullable=True),
    )
    op.create_index("ix_audit_events_organization_id", "audit_events", ["organization_id"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_run_id", "audit_events", ["run_id"])


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("financial_audit_log")
    op.drop_table("ledger_entries")
    op.execute("DROP TRIGGER IF EXISTS trg_invoice_lines_normalize ON invoice_lines")
    op.execute("DROP FUNCTION IF EXISTS invoice_lines_normalize()")
    op.drop_table("invoice_lines")
    op.execute("DROP FUNCTION IF EXISTS normalize_description(text)")
    op.drop_table("payment_reversals")
    op.drop_table("payment_allocations")
    op.drop_table("payments")
    op.drop_table("monthly_invoices")
    op.drop_table("tenants")
    op.drop_table("job_runs")
    op.drop_table("jobs")
