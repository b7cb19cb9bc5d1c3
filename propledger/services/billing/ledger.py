"""Append-only ledger posting for an allocated payment.

A sync plans every entry the payment implies (payment, charges, interest,
dunning fees, credit) and inserts only those whose ``(type, invoice_id,
payment_id)`` key is not already present for the tenant. Re-running a sync is
therefore a no-op, and entries are never updated or deleted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
import logging
from typing import Any, Iterable, Literal, Sequence
from uuid import uuid4

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from propledger.domain.models import Invoice, LedgerEntry, PaymentAllocation
from propledger.persistence.db import advisory_xact_lock
from propledger.services.audit_chain import append_entry
from propledger.services.billing.dunning import DEFAULT_TIERS, DunningTier, calculate_interest, dunning_tier
from propledger.services.billing.payments import OPEN_INVOICE_STATUSES, get_payment
from propledger.services.money import ZERO, money_str, round_money


logger = logging.getLogger(__name__)

EntryType = Literal["charge", "payment", "interest", "fee", "credit", "storno"]


@dataclass(frozen=True)
class LedgerKey:
    type: str
    invoice_id: str | None
    payment_id: str | None


@dataclass(frozen=True)
class LedgerInvoice:
    id: str
    year: int
    month: int
    total: Decimal
    paid_amount: Decimal
    applied_by_payment: Decimal
    faellig_am: date | None

    @property
    def outstanding_before_payment(self) -> Decimal:
        # What was owed on the day the payment arrived.
        return round_money(self.total - (self.paid_amount - self.applied_by_payment))

    def charge_date(self) -> date:
        return self.faellig_am or date(self.year, self.month, 1)


@dataclass(frozen=True)
class PlannedEntry:
    key: LedgerKey
    amount: Decimal
    booking_date: date


@dataclass(frozen=True)
class LedgerSyncResult:
    payment_id: str
    tenant_id: str
    created: list[PlannedEntry] = field(default_factory=list)
    skipped: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "tenant_id": self.tenant_id,
            "created": [
                {
                    "type": entry.key.type,
                    "invoice_id": entry.key.invoice_id,
                    "amount": money_str(entry.amount),
                }
                for entry in self.created
            ],
            "skipped": self.skipped,
        }


def plan_ledger_entries(
    *,
    payment_id: str,
    payment_amount: Any,
    unapplied: Any,
    invoices: Sequence[LedgerInvoice],
    as_of: date,
    annual_rate_pct: Any = 4,
    tiers: Sequence[DunningTier] = DEFAULT_TIERS,
) -> list[PlannedEntry]:
    """Every entry a payment implies, before de-duplication against existing keys."""
    planned = [
        PlannedEntry(
            key=LedgerKey(type="payment", invoice_id=None, payment_id=payment_id),
            amount=round_money(payment_amount),
            booking_date=as_of,
        )
    ]
    for invoice in invoices:
        planned.append(
            PlannedEntry(
                key=LedgerKey(type="charge", invoice_id=invoice.id, payment_id=None),
                amount=round_money(invoice.total),
                booking_date=invoice.charge_date(),
            )
        )
        if invoice.faellig_am is None:
            continue
        days = (as_of - invoice.faellig_am).days
        outstanding = invoice.outstanding_before_payment
        # Invoices settled before this payment accrue nothing; ones it settles still do.
        if days <= 0 or outstanding <= ZERO:
            continue
        interest = round_money(calculate_interest(outstanding, days, annual_rate_pct))
        if interest > ZERO:
            planned.append(
                PlannedEntry(
                    key=LedgerKey(type="interest", invoice_id=invoice.id, payment_id=payment_id),
                    amount=interest,
                    booking_date=as_of,
                )
            )
        tier = dunning_tier(days, tiers)
        # Reminder tiers carry no fee and post nothing.
        if tier is not None and tier.fee > ZERO:
            planned.append(
                PlannedEntry(
                    key=LedgerKey(type="fee", invoice_id=invoice.id, payment_id=payment_id),
                    amount=round_money(tier.fee),
                    booking_date=as_of,
                )
            )
    credit = round_money(unapplied)
    if credit > ZERO:
        planned.append(
            PlannedEntry(
                key=LedgerKey(type="credit", invoice_id=None, payment_id=payment_id),
                amount=credit,
                booking_date=as_of,
            )
        )
    return planned


def missing_entries(planned: Iterable[PlannedEntry], existing: set[LedgerKey]) -> list[PlannedEntry]:
    # First planned entry per key wins; keys already in the ledger are dropped.
    seen = set(existing)
    missing: list[PlannedEntry] = []
    for entry in planned:
        if entry.key in seen:
            continue
        seen.add(entry.key)
        missing.append(entry)
    return missing


async def _existing_keys(session: AsyncSession, tenant_id: str) -> set[LedgerKey]:
    rows = (
        await session.execute(
            select(LedgerEntry.type, LedgerEntry.invoice_id, LedgerEntry.payment_id).where(
                LedgerEntry.tenant_id == tenant_id
            )
        )
    ).all()
    return {LedgerKey(type=row[0], invoice_id=row[1], payment_id=row[2]) for row in rows}


async def _ledger_invoices(session: AsyncSession, *, tenant_id: str, payment_id: str) -> list[LedgerInvoice]:
    # Open invoices plus anything this payment touched (which may be settled by now).
    applied = (
        select(
            PaymentAllocation.invoice_id.label("invoice_id"),
            func.sum(PaymentAllocation.applied_amount).label("applied"),
        )
        .where(PaymentAllocation.payment_id == payment_id)
        .group_by(PaymentAllocation.invoice_id)
        .subquery()
    )
    rows = (
        await session.execute(
            select(Invoice, func.coalesce(applied.c.applied, 0))
            .outerjoin(applied, applied.c.invoice_id == Invoice.id)
            .where(
                Invoice.tenant_id == tenant_id,
                or_(Invoice.status.in_(OPEN_INVOICE_STATUSES), applied.c.invoice_id.is_not(None)),
            )
            .order_by(Invoice.year, Invoice.month)
        )
    ).all()
    return [
        LedgerInvoice(
            id=invoice.id,
            year=invoice.year,
            month=invoice.month,
            total=round_money(invoice.gesamtbetrag),
            paid_amount=round_money(invoice.paid_amount),
            applied_by_payment=round_money(applied_amount),
            faellig_am=invoice.faellig_am,
        )
        for invoice, applied_amount in rows
    ]


async def sync_ledger(
    session: AsyncSession,
    *,
    payment_id: str,
    tenant_id: str,
    applied: Any,
    unapplied: Any,
    as_of: date | None = None,
    annual_rate_pct: Any = 4,
    tiers: Sequence[DunningTier] = DEFAULT_TIERS,
    user_id: str | None = None,
) -> LedgerSyncResult:
    """Post the ledger entries for an allocated payment inside the caller's transaction.

    Syncs for one tenant are serialized by an advisory lock held until the
    caller commits; a failure anywhere leaves the ledger untouched once the
    caller rolls back.
    """
    await advisory_xact_lock(session, f"ledger:{tenant_id}")
    payment = await get_payment(session, payment_id)
    as_of = as_of or payment.booking_date

    existing = await _existing_keys(session, tenant_id)
    invoices = await _ledger_invoices(session, tenant_id=tenant_id, payment_id=payment_id)
    planned = plan_ledger_entries(
        payment_id=payment_id,
        payment_amount=payment.amount,
        unapplied=unapplied,
        invoices=invoices,
        as_of=as_of,
        annual_rate_pct=annual_rate_pct,
        tiers=tiers,
    )
    created = missing_entries(planned, existing)
    for entry in created:
        session.add(
            LedgerEntry(
                id=str(uuid4()),
                tenant_id=tenant_id,
                invoice_id=entry.key.invoice_id,
                payment_id=entry.key.payment_id,
                type=entry.key.type,
                amount=entry.amount,
                booking_date=entry.booking_date,
            )
        )
    if created:
        await session.flush()
        await append_entry(
            session,
            action="ledger_synced",
            entity_type="payments",
            entity_id=payment_id,
            organization_id=payment.organization_id or tenant_id,
            user_id=user_id,
            data={
                "tenant_id": tenant_id,
                "applied": money_str(applied),
                "unapplied": money_str(unapplied),
                "entries": [
                    {"type": entry.key.type, "invoice_id": entry.key.invoice_id, "amount": money_str(entry.amount)}
                    for entry in created
                ],
            },
        )

    skipped = len(planned) - len(created)
    logger.info(
        "ledger_synced payment_id=%s tenant_id=%s created=%s skipped=%s",
        payment_id,
        tenant_id,
        len(created),
        skipped,
    )
    return LedgerSyncResult(payment_id=payment_id, tenant_id=tenant_id, created=created, skipped=skipped)
