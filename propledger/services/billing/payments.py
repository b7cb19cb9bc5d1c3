from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
import logging
from typing import Any, Sequence
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from propledger.core.errors import AllocationError, PaymentNotFoundError
from propledger.domain.models import Invoice, LedgerEntry, Payment, PaymentAllocation, PaymentReversal, Tenant
from propledger.persistence.db import advisory_xact_lock
from propledger.persistence.repos.jobs import insert_job
from propledger.services.audit_chain import append_entry
from propledger.services.billing.allocation import invoice_status
from propledger.services.money import ZERO, money_str, round_money


logger = logging.getLogger(__name__)

LEDGER_SYNC_JOB = "ledger_sync"
OPEN_INVOICE_STATUSES = ("offen", "teilbezahlt", "ueberfaellig")


@dataclass(frozen=True)
class InvoiceApplication:
    invoice_id: str
    year: int
    month: int
    applied: Decimal
    paid_amount: Decimal
    status: str


@dataclass(frozen=True)
class AllocationOutcome:
    payment_id: str
    tenant_id: str
    organization_id: str
    amount: Decimal
    applied: Decimal
    unapplied: Decimal
    applications: list[InvoiceApplication] = field(default_factory=list)
    ledger_job_id: str | None = None
    replayed: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "tenant_id": self.tenant_id,
            "amount": money_str(self.amount),
            "applied": money_str(self.applied),
            "unapplied": money_str(self.unapplied),
            "invoices": [
                {"invoice_id": item.invoice_id, "applied": money_str(item.applied), "status": item.status}
                for item in self.applications
            ],
            "ledger_job_id": self.ledger_job_id,
            "replayed": self.replayed,
        }


@dataclass(frozen=True)
class TenantBalance:
    tenant_id: str
    year: int | None
    total_soll: Decimal
    total_ist: Decimal

    @property
    def saldo(self) -> Decimal:
        return round_money(self.total_soll - self.total_ist)


@dataclass(frozen=True)
class InvoiceMismatch:
    invoice_id: str
    paid_amount: Decimal
    allocated: Decimal


@dataclass(frozen=True)
class PaymentOverallocation:
    payment_id: str
    amount: Decimal
    allocated: Decimal


@dataclass(frozen=True)
class ReconciliationReport:
    tenant_id: str
    invoices_checked: int
    invoice_mismatches: list[InvoiceMismatch] = field(default_factory=list)
    overallocated_payments: list[PaymentOverallocation] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.invoice_mismatches and not self.overallocated_payments


@dataclass(frozen=True)
class OpenInvoice:
    id: str
    year: int
    month: int
    total: Decimal
    paid: Decimal

    @property
    def due(self) -> Decimal:
        return round_money(self.total - self.paid)


@dataclass(frozen=True)
class PlannedApplication:
    invoice: OpenInvoice
    applied: Decimal
    paid_amount: Decimal
    status: str


@dataclass(frozen=True)
class ReversibleAllocation:
    invoice_id: str
    applied: Decimal


@dataclass(frozen=True)
class ReversalStep:
    invoice_id: str
    reversed: Decimal


@dataclass(frozen=True)
class ReversalPlan:
    credit_reversed: Decimal
    steps: list[ReversalStep] = field(default_factory=list)
    # Non-zero only when the allocations cannot cover the storno amount.
    remaining: Decimal = ZERO


@dataclass(frozen=True)
class ReversedInvoice:
    invoice_id: str
    reversed: Decimal
    paid_amount: Decimal
    status: str


@dataclass(frozen=True)
class ReversalOutcome:
    reversal_id: str
    payment_id: str
    tenant_id: str
    amount: Decimal
    credit_reversed: Decimal
    remaining_amount: Decimal
    invoices: list[ReversedInvoice] = field(default_factory=list)
    ledger_job_id: str | None = None
    replayed: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "reversal_id": self.reversal_id,
            "payment_id": self.payment_id,
            "tenant_id": self.tenant_id,
            "amount": money_str(self.amount),
            "credit_reversed": money_str(self.credit_reversed),
            "remaining_amount": money_str(self.remaining_amount),
            "invoices": [
                {"invoice_id": item.invoice_id, "reversed": money_str(item.reversed), "status": item.status}
                for item in self.invoices
            ],
            "ledger_job_id": self.ledger_job_id,
            "replayed": self.replayed,
        }


def plan_fifo(amount: Any, invoices: Sequence[OpenInvoice]) -> tuple[list[PlannedApplication], Decimal]:
    """Apply ``amount`` to invoices oldest-first; returns the plan and the unapplied rest."""
    remaining = round_money(amount)
    planned: list[PlannedApplication] = []
    for invoice in invoices:
        if remaining <= ZERO:
            break
        due = invoice.due
        if due <= ZERO:
            continue
        applied = round_money(min(remaining, due))
        paid_amount = round_money(invoice.paid + applied)
        remaining = round_money(remaining - applied)
        planned.append(
            PlannedApplication(
                invoice=invoice,
                applied=applied,
                paid_amount=paid_amount,
                status=invoice_status(paid_amount, invoice.total),
            )
        )
    return planned, remaining


def plan_reversal(amount: Any, credit: Any, allocations: Sequence[ReversibleAllocation]) -> ReversalPlan:
    """Unwind ``amount`` last-in first-out.

    The unapplied credit was booked last, so it goes first; then
    ``allocations`` in the order given, which callers pass newest first.
    """
    remaining = round_money(amount)
    credit_reversed = round_money(min(remaining, max(ZERO, round_money(credit))))
    remaining = round_money(remaining - credit_reversed)
    steps: list[ReversalStep] = []
    for allocation in allocations:
        if remaining <= ZERO:
            break
        applied = round_money(allocation.applied)
        if applied <= ZERO:
            continue
        reversed_amount = round_money(min(remaining, applied))
        steps.append(ReversalStep(invoice_id=allocation.invoice_id, reversed=reversed_amount))
        remaining = round_money(remaining - reversed_amount)
    return ReversalPlan(credit_reversed=credit_reversed, steps=steps, remaining=remaining)


async def _resolve_organization(session: AsyncSession, tenant_id: str) -> str:
    organization_id = (
        await session.execute(select(Tenant.organization_id).where(Tenant.id == tenant_id))
    ).scalar_one_or_none()
    if organization_id is None:
        raise AllocationError(f"Unknown tenant {tenant_id}")
    return organization_id


async def _lock_payment(
    session: AsyncSession,
    *,
    payment_id: str,
    tenant_id: str,
    organization_id: str,
    amount: Decimal,
    booking_date: date,
    payment_type: str,
    reference: str | None,
) -> Payment:
    # Upsert by id, then lock the row so concurrent allocations of one payment serialize.
    await session.execute(
        insert(Payment)
        .values(
            id=payment_id,
            organization_id=organization_id,
            tenant_id=tenant_id,
            amount=amount,
            booking_date=booking_date,
            payment_type=payment_type,
            reference=reference,
        )
        .on_conflict_do_nothing(index_elements=[Payment.id])
    )
    payment = (
        await session.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one()
    if payment.tenant_id != tenant_id:
        raise AllocationError(f"Payment {payment_id} belongs to another tenant")
    return payment


async def _stored_outcome(session: AsyncSession, payment: Payment) -> AllocationOutcome:
    rows = (
        await session.execute(
            select(PaymentAllocation, Invoice)
            .join(Invoice, Invoice.id == PaymentAllocation.invoice_id)
            .where(PaymentAllocation.payment_id == payment.id)
            .order_by(Invoice.year, Invoice.month)
        )
    ).all()
    applications = [
        InvoiceApplication(
            invoice_id=invoice.id,
            year=invoice.year,
            month=invoice.month,
            applied=round_money(allocation.applied_amount),
            paid_amount=round_money(invoice.paid_amount),
            status=invoice.status,
        )
        for allocation, invoice in rows
    ]
    applied = round_money(sum((item.applied for item in applications), ZERO))
    return AllocationOutcome(
        payment_id=payment.id,
        tenant_id=payment.tenant_id,
        organization_id=payment.organization_id or "",
        amount=round_money(payment.amount),
        applied=applied,
        unapplied=round_money(payment.unapplied_amount or ZERO),
        applications=applications,
        ledger_job_id=payment.ledger_job_id,
        replayed=True,
    )


async def allocate_payment(
    session: AsyncSession,
    *,
    payment_id: str,
    tenant_id: str,
    amount: Any,
    booking_date: date | None = None,
    payment_type: str = "ueberweisung",
    reference: str | None = None,
    user_id: str | None = None,
    max_retries: int = 3,
) -> AllocationOutcome:
    """FIFO-apply a payment to the tenant's open invoices.

    Runs inside the caller's transaction: invoice updates, allocation rows,
    audit-chain entries and the ledger_sync job commit together. The caller
    sends the job notification after commit. A payment that was already
    allocated returns its stored outcome and changes nothing.
    """
    amount = round_money(amount)
    if amount <= ZERO:
        raise AllocationError(f"Payment amount must be positive, got {money_str(amount)}")
    booking_date = booking_date or date.today()
    organization_id = await _resolve_organization(session, tenant_id)
    payment = await _lock_payment(
        session,
        payment_id=payment_id,
        tenant_id=tenant_id,
        organization_id=organization_id,
        amount=amount,
        booking_date=booking_date,
        payment_type=payment_type,
        reference=reference,
    )
    if payment.allocated_at is not None:
        logger.info("payment_allocation_replayed payment_id=%s tenant_id=%s", payment_id, tenant_id)
        return await _stored_outcome(session, payment)

    # Oldest due first; the row locks hold until the caller commits.
    rows = (
        await session.execute(
            select(Invoice)
            .where(Invoice.tenant_id == tenant_id, Invoice.status.in_(OPEN_INVOICE_STATUSES))
            .order_by(Invoice.faellig_am.asc().nulls_last(), Invoice.year.asc(), Invoice.month.asc())
            .with_for_update()
        )
    ).scalars().all()
    by_id = {row.id: row for row in rows}
    open_invoices = [
        OpenInvoice(
            id=row.id,
            year=row.year,
            month=row.month,
            total=round_money(row.gesamtbetrag),
            paid=round_money(row.paid_amount),
        )
        for row in rows
    ]
    planned, unapplied = plan_fifo(payment.amount, open_invoices)
    payment_amount = round_money(payment.amount)

    now = datetime.now(timezone.utc)
    applications: list[InvoiceApplication] = []
    for item in planned:
        row = by_id[item.invoice.id]
        previous_status = row.status
        row.paid_amount = item.paid_amount
        row.status = item.status
        row.version = (row.version or 1) + 1
        row.updated_at = now
        session.add(
            PaymentAllocation(
                id=str(uuid4()),
                payment_id=payment_id,
                invoice_id=row.id,
                applied_amount=item.applied,
                allocation_type="auto",
            )
        )
        await append_entry(
            session,
            action="payment_allocated",
            entity_type="monthly_invoices",
            entity_id=row.id,
            organization_id=organization_id,
            user_id=user_id,
            data={
                "payment_id": payment_id,
                "applied": money_str(item.applied),
                "old": {"paid_amount": money_str(item.invoice.paid), "status": previous_status},
                "new": {"paid_amount": money_str(item.paid_amount), "status": item.status},
            },
        )
        applications.append(
            InvoiceApplication(
                invoice_id=row.id,
                year=row.year,
                month=row.month,
                applied=item.applied,
                paid_amount=item.paid_amount,
                status=item.status,
            )
        )

    applied = round_money(payment_amount - unapplied)
    job = await insert_job(
        session,
        org_id=organization_id,
        job_type=LEDGER_SYNC_JOB,
        payload={
            "payment_id": payment_id,
            "tenant_id": tenant_id,
            "amount": money_str(payment_amount),
            "applied": money_str(applied),
            "unapplied": money_str(unapplied),
        },
        max_retries=max_retries,
    )
    await append_entry(
        session,
        action="allocated",
        entity_type="payments",
        entity_id=payment_id,
        organization_id=organization_id,
        user_id=user_id,
        data={
            "tenant_id": tenant_id,
            "amount": money_str(payment_amount),
            "applied": money_str(applied),
            "unapplied": money_str(unapplied),
            "invoices": [item.invoice_id for item in applications],
        },
    )
    payment.allocated_at = now
    payment.unapplied_amount = unapplied
    payment.ledger_job_id = job.id
    await session.flush()

    logger.info(
        "payment_allocated payment_id=%s tenant_id=%s applied=%s unapplied=%s invoices=%s",
        payment_id,
        tenant_id,
        money_str(applied),
        money_str(unapplied),
        len(applications),
    )
    return AllocationOutcome(
        payment_id=payment_id,
        tenant_id=tenant_id,
        organization_id=organization_id,
        amount=payment_amount,
        applied=applied,
        unapplied=unapplied,
        applications=applications,
        ledger_job_id=job.id,
    )


def _stored_reversal(reversal: PaymentReversal, payment: Payment) -> ReversalOutcome:
    return ReversalOutcome(
        reversal_id=reversal.id,
        payment_id=reversal.payment_id,
        tenant_id=reversal.tenant_id,
        amount=round_money(reversal.amount),
        credit_reversed=round_money(reversal.credit_reversed),
        remaining_amount=round_money(payment.amount - (payment.reversed_amount or ZERO)),
        invoices=[
            ReversedInvoice(
                invoice_id=item["invoice_id"],
                reversed=round_money(item["reversed"]),
                paid_amount=round_money(item["paid_amount"]),
                status=item["status"],
            )
            for item in reversal.invoices or []
        ],
        ledger_job_id=reversal.ledger_job_id,
        replayed=True,
    )


async def reverse_payment(
    session: AsyncSession,
    *,
    payment_id: str,
    amount: Any = None,
    reversal_id: str | None = None,
    reason: str | None = None,
    user_id: str | None = None,
    booking_date: date | None = None,
    max_retries: int = 3,
) -> ReversalOutcome:
    """Storno all of an allocated payment, or ``amount`` of it.

    Allocations are unwound newest first and each touched invoice gets its
    paid amount and status rolled back. The negative ``storno`` ledger entry,
    the audit-chain entries and a ledger_sync job commit with the caller's
    transaction. A ``reversal_id`` that was already applied returns its
    stored outcome and changes nothing.
    """
    reversal_id = reversal_id or str(uuid4())
    payment = (
        await session.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if payment is None:
        raise PaymentNotFoundError(f"Payment {payment_id} not found")

    stored = await session.get(PaymentReversal, reversal_id)
    if stored is not None:
        if stored.payment_id != payment_id:
            raise AllocationError(f"Reversal {reversal_id} belongs to another payment")
        logger.info("payment_reversal_replayed reversal_id=%s payment_id=%s", reversal_id, payment_id)
        return _stored_reversal(stored, payment)

    if payment.allocated_at is None:
        raise AllocationError(f"Payment {payment_id} has not been allocated")
    payment_amount = round_money(payment.amount)
    already_reversed = round_money(payment.reversed_amount or ZERO)
    available = round_money(payment_amount - already_reversed)
    if available <= ZERO:
        raise AllocationError(f"Payment {payment_id} is already fully reversed")
    amount = available if amount is None else round_money(amount)
    if amount <= ZERO:
        raise AllocationError(f"Storno amount must be positive, got {money_str(amount)}")
    if amount > available:
        raise AllocationError(
            f"Storno amount {money_str(amount)} exceeds the {money_str(available)} available on payment {payment_id}"
        )
    tenant_id = payment.tenant_id
    organization_id = payment.organization_id or tenant_id
    booking_date = booking_date or date.today()

    # Taken before any audit append so the lock order matches sync_ledger.
    await advisory_xact_lock(session, f"ledger:{tenant_id}")

    # Reverse FIFO order: the invoice allocated last comes first.
    rows = (
        await session.execute(
            select(PaymentAllocation, Invoice)
            .join(Invoice, Invoice.id == PaymentAllocation.invoice_id)
            .where(PaymentAllocation.payment_id == payment_id)
            .order_by(Invoice.faellig_am.desc().nulls_first(), Invoice.year.desc(), Invoice.month.desc())
            .with_for_update()
        )
    ).all()
    by_invoice = {invoice.id: (allocation, invoice) for allocation, invoice in rows}
    plan = plan_reversal(
        amount,
        payment.unapplied_amount or ZERO,
        [
            ReversibleAllocation(invoice_id=invoice.id, applied=round_money(allocation.applied_amount))
            for allocation, invoice in rows
        ],
    )
    if plan.remaining > ZERO:
        raise AllocationError(
            f"Allocations of payment {payment_id} cover {money_str(amount - plan.remaining)} "
            f"of the {money_str(amount)} storno"
        )

    now = datetime.now(timezone.utc)
    reversed_invoices: list[ReversedInvoice] = []
    for step in plan.steps:
        allocation, invoice = by_invoice[step.invoice_id]
        previous_paid = round_money(invoice.paid_amount)
        previous_status = invoice.status
        left = round_money(allocation.applied_amount - step.reversed)
        if left > ZERO:
            allocation.applied_amount = left
        else:
            await session.delete(allocation)
        paid_amount = round_money(previous_paid - step.reversed)
        invoice.paid_amount = paid_amount
        invoice.status = invoice_status(paid_amount, invoice.gesamtbetrag)
        invoice.version = (invoice.version or 1) + 1
        invoice.updated_at = now
        await append_entry(
            session,
            action="payment_reversed",
            entity_type="monthly_invoices",
            entity_id=invoice.id,
            organization_id=organization_id,
            user_id=user_id,
            data={
                "payment_id": payment_id,
                "reversal_id": reversal_id,
                "reversed": money_str(step.reversed),
                "old": {"paid_amount": money_str(previous_paid), "status": previous_status},
                "new": {"paid_amount": money_str(paid_amount), "status": invoice.status},
            },
        )
        reversed_invoices.append(
            ReversedInvoice(
                invoice_id=invoice.id,
                reversed=step.reversed,
                paid_amount=paid_amount,
                status=invoice.status,
            )
        )

    # Corrections are new entries; the original payment entry stays untouched.
    session.add(
        LedgerEntry(
            id=str(uuid4()),
            tenant_id=tenant_id,
            invoice_id=None,
            payment_id=payment_id,
            type="storno",
            amount=-amount,
            booking_date=booking_date,
        )
    )
    unapplied = round_money((payment.unapplied_amount or ZERO) - plan.credit_reversed)
    reversed_total = round_money(already_reversed + amount)
    remaining_amount = round_money(payment_amount - reversed_total)
    applied = round_money(remaining_amount - unapplied)
    payment.unapplied_amount = unapplied
    payment.reversed_amount = reversed_total

    job = await insert_job(
        session,
        org_id=organization_id,
        job_type=LEDGER_SYNC_JOB,
        payload={
            "payment_id": payment_id,
            "tenant_id": tenant_id,
            "amount": money_str(payment_amount),
            "applied": money_str(applied),
            "unapplied": money_str(unapplied),
        },
        max_retries=max_retries,
    )
    session.add(
        PaymentReversal(
            id=reversal_id,
            payment_id=payment_id,
            organization_id=payment.organization_id,
            tenant_id=tenant_id,
            amount=amount,
            credit_reversed=plan.credit_reversed,
            invoices=[
                {
                    "invoice_id": item.invoice_id,
                    "reversed": money_str(item.reversed),
                    "paid_amount": money_str(item.paid_amount),
                    "status": item.status,
                }
                for item in reversed_invoices
            ],
            reason=reason,
            user_id=user_id,
            booking_date=booking_date,
            ledger_job_id=job.id,
        )
    )
    await append_entry(
        session,
        action="reversed",
        entity_type="payments",
        entity_id=payment_id,
        organization_id=organization_id,
        user_id=user_id,
        data={
            "reversal_id": reversal_id,
            "tenant_id": tenant_id,
            "amount": money_str(amount),
            "credit_reversed": money_str(plan.credit_reversed),
            "remaining_amount": money_str(remaining_amount),
            "invoices": [item.invoice_id for item in reversed_invoices],
            "reason": reason,
        },
    )
    await session.flush()

    logger.info(
        "payment_reversed reversal_id=%s payment_id=%s amount=%s credit_reversed=%s invoices=%s",
        reversal_id,
        payment_id,
        money_str(amount),
        money_str(plan.credit_reversed),
        len(reversed_invoices),
    )
    return ReversalOutcome(
        reversal_id=reversal_id,
        payment_id=payment_id,
        tenant_id=tenant_id,
        amount=amount,
        credit_reversed=plan.credit_reversed,
        remaining_amount=remaining_amount,
        invoices=reversed_invoices,
        ledger_job_id=job.id,
    )


async def get_payment(session: AsyncSession, payment_id: str) -> Payment:
    payment = await session.get(Payment, payment_id)
    if payment is None:
        raise PaymentNotFoundError(f"Payment {payment_id} not found")
    return payment


async def get_tenant_balance(session: AsyncSession, tenant_id: str, year: int | None = None) -> TenantBalance:
    # SOLL is what was invoiced, IST what was allocated against it; cancelled invoices count for neither.
    stmt = select(
        func.coalesce(func.sum(Invoice.gesamtbetrag), 0),
        func.coalesce(func.sum(Invoice.paid_amount), 0),
    ).where(Invoice.tenant_id == tenant_id, Invoice.status != "storniert")
    if year is not None:
        stmt = stmt.where(Invoice.year == year)
    total_soll, total_ist = (await session.execute(stmt)).one()
    return TenantBalance(
        tenant_id=tenant_id,
        year=year,
        total_soll=round_money(total_soll),
        total_ist=round_money(total_ist),
    )


async def reconcile_allocations(session: AsyncSession, tenant_id: str) -> ReconciliationReport:
    """Compare stored invoice/payment figures with the allocation rows behind them."""
    allocated_by_invoice = (
        select(
            PaymentAllocation.invoice_id.label("invoice_id"),
            func.sum(PaymentAllocation.applied_amount).label("allocated"),
        )
        .group_by(PaymentAllocation.invoice_id)
        .subquery()
    )
    invoice_rows = (
        await session.execute(
            select(Invoice.id, Invoice.paid_amount, func.coalesce(allocated_by_invoice.c.allocated, 0))
            .outerjoin(allocated_by_invoice, allocated_by_invoice.c.invoice_id == Invoice.id)
            .where(Invoice.tenant_id == tenant_id)
            .order_by(Invoice.year, Invoice.month)
        )
    ).all()
    mismatches = [
        InvoiceMismatch(invoice_id=invoice_id, paid_amount=round_money(paid), allocated=round_money(allocated))
        for invoice_id, paid, allocated in invoice_rows
        if round_money(paid) != round_money(allocated)
    ]

    payment_rows = (
        await session.execute(
            select(Payment.id, Payment.amount, func.coalesce(func.sum(PaymentAllocation.applied_amount), 0))
            .outerjoin(PaymentAllocation, PaymentAllocation.payment_id == Payment.id)
            .where(Payment.tenant_id == tenant_id)
            .group_by(Payment.id, Payment.amount)
        )
    ).all()
    overallocated = [
        PaymentOverallocation(payment_id=payment_id, amount=round_money(amount), allocated=round_money(allocated))
        for payment_id, amount, allocated in payment_rows
        if round_money(allocated) > round_money(amount)
    ]

    report = ReconciliationReport(
        tenant_id=tenant_id,
        invoices_checked=len(invoice_rows),
        invoice_mismatches=mismatches,
        overallocated_payments=overallocated,
    )
    if not report.consistent:
        logger.warning(
            "allocation_reconciliation_failed tenant_id=%s invoice_mismatches=%s overallocated_payments=%s",
            tenant_id,
            len(mismatches),
            len(overallocated),
        )
    return report
