from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


MONEY = Numeric(12, 2)


class Base(DeclarativeBase):
    pass


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        # Partial index keeps the claim query cheap as completed rows accumulate.
        Index(
            "ix_jobs_claimable",
            "priority",
            "created_at",
            postgresql_where=text("status IN ('pending', 'retrying')"),
        ),
        Index("ix_jobs_org_type", "org_id", "job_type"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str | None] = mapped_column(String, nullable=True)
    job_type: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    # pending | processing | completed | failed | retrying
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class JobRun(Base):
    __tablename__ = "job_runs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    # One lock row per job id, independent of the jobs table bookkeeping.
    job_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    job_type: Mapped[str] = mapped_column(String, nullable=False)
    # running | completed | failed
    status: Mapped[str] = mapped_column(String, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    trace_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Tenant(Base):
    # Owned by the CRUD layer; the pipeline only reads monthly SOLL from it.
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    property_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    unit_id: Mapped[str | None] = mapped_column(String, nullable=True)
    first_name: Mapped[str | None] = mapped_column(String, nullable=True)
    last_name: Mapped[str | None] = mapped_column(String, nullable=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    grundmiete: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    betriebskosten_vorschuss: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    heizkosten_vorschuss: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    # aktiv | beendet
    status: Mapped[str] = mapped_column(String, nullable=False, default="aktiv")
    mietbeginn: Mapped[date | None] = mapped_column(Date, nullable=True)
    mietende: Mapped[date | None] = mapped_column(Date, nullable=True)


class Invoice(Base):
    __tablename__ = "monthly_invoices"
    __table_args__ = (
        UniqueConstraint("tenant_id", "year", "month", name="uq_monthly_invoices_tenant_period"),
        Index("ix_monthly_invoices_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    unit_id: Mapped[str | None] = mapped_column(String, nullable=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    grundmiete: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    betriebskosten: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    heizungskosten: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    vortrag_miete: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    vortrag_bk: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    vortrag_hk: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    vortrag_sonstige: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    gesamtbetrag: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    # Always equals the sum of allocations against this invoice.
    paid_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    # offen | teilbezahlt | bezahlt | ueberfaellig | storniert
    status: Mapped[str] = mapped_column(String, nullable=False, default="offen")
    faellig_am: Mapped[date | None] = mapped_column(Date, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (Index("ix_payments_tenant_booking", "tenant_id", "booking_date"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str | None] = mapped_column(String, nullable=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    invoice_id: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_type: Mapped[str] = mapped_column(String, nullable=False, default="ueberweisung")
    reference: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Set once by FIFO allocation; replays read the stored outcome back.
    allocated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    unapplied_amount: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    ledger_job_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Running total of storno amounts; never exceeds amount.
    reversed_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PaymentAllocation(Base):
    __tablename__ = "payment_allocations"
    __table_args__ = (
        UniqueConstraint("payment_id", "invoice_id", name="uq_payment_allocations_pair"),
        Index("ix_payment_allocations_invoice", "invoice_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    payment_id: Mapped[str] = mapped_column(String, nullable=False)
    invoice_id: Mapped[str] = mapped_column(String, nullable=False)
    applied_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    allocation_type: Mapped[str] = mapped_column(String, nullable=False, default="auto")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PaymentReversal(Base):
    # One row per storno; the id doubles as the idempotency key.
    __tablename__ = "payment_reversals"
    __table_args__ = (Index("ix_payment_reversals_payment", "payment_id"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    payment_id: Mapped[str] = mapped_column(String, nullable=False)
    organization_id: Mapped[str | None] = mapped_column(String, nullable=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    credit_reversed: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    # [{"invoice_id", "reversed", "paid_amount", "status"}] in unwind order.
    invoices: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False, default=list)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    ledger_job_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class InvoiceLine(Base):
    __tablename__ = "invoice_lines"
    __table_args__ = (
        # NULL unit ids must still collide, otherwise unit-less lines never merge.
        Index(
            "uq_invoice_lines_key",
            "invoice_id",
            "unit_id",
            "line_type",
            "normalized_description",
            unique=True,
            postgresql_nulls_not_distinct=True,
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    invoice_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    unit_id: Mapped[str | None] = mapped_column(String, nullable=True)
    line_type: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Also maintained by trg_invoice_lines_normalize; both must agree byte for byte.
    normalized_description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    tax_rate: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    meta: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        Index("ix_ledger_entries_key", "tenant_id", "type", "invoice_id", "payment_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    invoice_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # charge | payment | interest | fee | credit | storno
    type: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class FinancialAuditLog(Base):
    __tablename__ = "financial_audit_log"
    __table_args__ = (
        Index("ix_financial_audit_log_org_created", "organization_id", "created_at", "id"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String, nullable=False)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    organization_id: Mapped[str] = mapped_column(String, nullable=False)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    previous_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)
    # Set by the application so the hashed timestamp and the stored one are identical.
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    organization_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    actor_type: Mapped[str] = mapped_column(String, nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    outcome: Mapped[str] = mapped_column(String, nullable=False)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    trace_id: Mapped[str | None] = mapped_column(String, nullable=True)
    run_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
