from __future__ import annotations

import calendar
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
import logging
from typing import Iterable, Sequence
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from propledger.domain.models import Invoice, Payment, Tenant
from propledger.services.billing.allocation import (
    CarryForward,
    InvoiceDraft,
    Mahnstatus,
    PaymentStatus,
    allocate,
    build_invoice_draft,
    carry_forward,
    classify_mahnstatus,
    classify_status,
    days_overdue_since_fifth,
)
from propledger.services.money import ZERO, round_money


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantSoll:
    # Monthly SOLL parsed from a tenant row.
    tenant_id: str
    organization_id: str
    unit_id: str | None
    first_name: str
    last_name: str
    grundmiete: Decimal
    betriebskosten: Decimal
    heizungskosten: Decimal
    status: str
    mietbeginn: date | None
    mietende: date | None


@dataclass(frozen=True)
class TenantAllocation:
    tenant_id: str
    first_name: str
    last_name: str
    unit_id: str | None
    active_months: int
    soll_bk: Decimal
    soll_hk: Decimal
    soll_miete: Decimal
    total_soll: Decimal
    ist_bk: Decimal
    ist_hk: Decimal
    ist_miete: Decimal
    total_ist: Decimal
    diff_bk: Decimal
    diff_hk: Decimal
    diff_miete: Decimal
    ueberzahlung: Decimal
    unterzahlung: Decimal
    saldo: Decimal
    oldest_overdue_days: int
    mahnstatus: Mahnstatus
    status: PaymentStatus


@dataclass(frozen=True)
class AllocationTotals:
    soll_bk: Decimal = ZERO
    soll_hk: Decimal = ZERO
    soll_miete: Decimal = ZERO
    total_soll: Decimal = ZERO
    ist_bk: Decimal = ZERO
    ist_hk: Decimal = ZERO
    ist_miete: Decimal = ZERO
    total_ist: Decimal = ZERO
    total_unterzahlung: Decimal = ZERO
    total_ueberzahlung: Decimal = ZERO
    saldo: Decimal = ZERO
    payment_count: int = 0


@dataclass(frozen=True)
class AllocationReport:
    allocations: list[TenantAllocation] = field(default_factory=list)
    totals: AllocationTotals = field(default_factory=AllocationTotals)


def _to_soll(row: Tenant) -> TenantSoll:
    return TenantSoll(
        tenant_id=row.id,
        organization_id=row.organization_id,
        unit_id=row.unit_id,
        first_name=row.first_name or "",
        last_name=row.last_name or "",
        grundmiete=round_money(row.grundmiete),
        betriebskosten=round_money(row.betriebskosten_vorschuss),
        heizungskosten=round_money(row.heizkosten_vorschuss),
        status=row.status or "aktiv",
        mietbeginn=row.mietbeginn,
        mietende=row.mietende,
    )


def period_bounds(year: int, month: int) -> tuple[date, date]:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def is_active_in_month(tenant: TenantSoll, year: int, month: int) -> bool:
    start, end = period_bounds(year, month)
    if tenant.mietende is not None and tenant.mietende < start:
        return False
    if tenant.mietbeginn is not None and tenant.mietbeginn > end:
        return False
    return True


def active_months(tenant: TenantSoll, year: int, month_count: int = 12) -> list[int]:
    return [month for month in range(1, month_count + 1) if is_active_in_month(tenant, year, month)]


def oldest_uncovered_month(tenant: TenantSoll, months: Sequence[int], total_ist: Decimal) -> int | None:
    # First month whose cumulative SOLL exceeds what has been paid so far.
    monthly = round_money(tenant.betriebskosten + tenant.heizungskosten + tenant.grundmiete)
    cumulative = ZERO
    for month in months:
        cumulative = round_money(cumulative + monthly)
        if cumulative > total_ist + Decimal("0.01"):
            return month
    return None


def build_tenant_allocation(
    tenant: TenantSoll,
    *,
    months: int,
    total_ist: Decimal,
    days_overdue: int,
) -> TenantAllocation:
    soll_bk = round_money(tenant.betriebskosten * months)
    soll_hk = round_money(tenant.heizungskosten * months)
    soll_miete = round_money(tenant.grundmiete * months)
    total_soll = round_money(soll_bk + soll_hk + soll_miete)
    total_ist = round_money(total_ist)
    split = allocate(soll_bk, soll_hk, soll_miete, total_ist)
    saldo = round_money(total_soll - total_ist)
    return TenantAllocation(
        tenant_id=tenant.tenant_id,
        first_name=tenant.first_name,
        last_name=tenant.last_name,
        unit_id=tenant.unit_id,
        active_months=months,
        soll_bk=soll_bk,
        soll_hk=soll_hk,
        soll_miete=soll_miete,
        total_soll=total_soll,
        ist_bk=split.ist_bk,
        ist_hk=split.ist_hk,
        ist_miete=split.ist_miete,
        total_ist=total_ist,
        diff_bk=round_money(soll_bk - split.ist_bk),
        diff_hk=round_money(soll_hk - split.ist_hk),
        diff_miete=round_money(soll_miete - split.ist_miete),
        ueberzahlung=split.ueberzahlung,
        unterzahlung=split.unterzahlung,
        saldo=saldo,
        oldest_overdue_days=days_overdue,
        mahnstatus=classify_mahnstatus(days_overdue),
        status=classify_status(saldo, total_ist),
    )


def compute_totals(allocations: Iterable[TenantAllocation], payment_count: int) -> AllocationTotals:
    sums: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for item in allocations:
        for name in ("soll_bk", "soll_hk", "soll_miete", "total_soll", "ist_bk", "ist_hk", "ist_miete", "total_ist", "saldo"):
            sums[name] = round_money(sums[name] + getattr(item, name))
        sums["total_unterzahlung"] = round_money(sums["total_unterzahlung"] + item.unterzahlung)
        sums["total_ueberzahlung"] = round_money(sums["total_ueberzahlung"] + item.ueberzahlung)
    return AllocationTotals(payment_count=payment_count, **sums)


async def _load_tenants(
    session: AsyncSession,
    *,
    organization_id: str,
    property_id: str | None,
) -> list[TenantSoll]:
    stmt = select(Tenant).where(Tenant.organization_id == organization_id)
    if property_id:
        stmt = stmt.where(Tenant.property_id == property_id)
    rows = (await session.execute(stmt.order_by(Tenant.id))).scalars().all()
    return [_to_soll(row) for row in rows]


async def _sum_payments(
    session: AsyncSession,
    *,
    tenant_ids: Sequence[str],
    start: date,
    end: date,
) -> tuple[dict[str, Decimal], int]:
    if not tenant_ids:
        return {}, 0
    rows = (
        await session.execute(
            select(Payment.tenant_id, Payment.amount).where(
                Payment.tenant_id.in_(list(tenant_ids)),
                Payment.booking_date >= start,
                Payment.booking_date <= end,
            )
        )
    ).all()
    totals: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for tenant_id, amount in rows:
        totals[tenant_id] = round_money(totals[tenant_id] + round_money(amount))
    return dict(totals), len(rows)


async def calculate_monthly(
    session: AsyncSession,
    *,
    organization_id: str,
    year: int,
    month: int,
    property_id: str | None = None,
    today: date | None = None,
    due_day: int = 5,
) -> AllocationReport:
    today = today or date.today()
    tenants = [
        tenant
        for tenant in await _load_tenants(session, organization_id=organization_id, property_id=property_id)
        if is_active_in_month(tenant, year, month)
    ]
    if not tenants:
        return AllocationReport()
    start, end = period_bounds(year, month)
    ist_by_tenant, payment_count = await _sum_payments(
        session, tenant_ids=[t.tenant_id for t in tenants], start=start, end=end
    )

    allocations: list[TenantAllocation] = []
    for tenant in tenants:
        total_ist = ist_by_tenant.get(tenant.tenant_id, ZERO)
        monthly_soll = round_money(tenant.betriebskosten + tenant.heizungskosten + tenant.grundmiete)
        saldo = round_money(monthly_soll - total_ist)
        days = days_overdue_since_fifth(year, month, today, due_day=due_day) if saldo > Decimal("0.01") else 0
        allocations.append(build_tenant_allocation(tenant, months=1, total_ist=total_ist, days_overdue=days))

    allocations.sort(key=lambda item: item.saldo)
    return AllocationReport(allocations=allocations, totals=compute_totals(allocations, payment_count))


async def calculate_yearly(
    session: AsyncSession,
    *,
    organization_id: str,
    year: int,
    month_count: int = 12,
    property_id: str | None = None,
    today: date | None = None,
    due_day: int = 5,
) -> AllocationReport:
    """Cumulative SOLL/IST over the first ``month_count`` months of ``year``.

    A tenant active for ``k`` of those months owes ``k`` times the monthly
    SOLL. Overdue days count from the 5th of the earliest month the tenant's
    payments do not cover.
    """
    today = today or date.today()
    candidates = await _load_tenants(session, organization_id=organization_id, property_id=property_id)
    months_by_tenant = {tenant.tenant_id: active_months(tenant, year, month_count) for tenant in candidates}
    tenants = [tenant for tenant in candidates if months_by_tenant[tenant.tenant_id]]
    if not tenants:
        return AllocationReport()
    start = date(year, 1, 1)
    end = period_bounds(year, month_count)[1]
    ist_by_tenant, payment_count = await _sum_payments(
        session, tenant_ids=[t.tenant_id for t in tenants], start=start, end=end
    )

    allocations: list[TenantAllocation] = []
    for tenant in tenants:
        months = months_by_tenant[tenant.tenant_id]
        total_ist = ist_by_tenant.get(tenant.tenant_id, ZERO)
        uncovered = oldest_uncovered_month(tenant, months, total_ist)
        days = days_overdue_since_fifth(year, uncovered, today, due_day=due_day) if uncovered else 0
        allocations.append(build_tenant_allocation(tenant, months=len(months), total_ist=total_ist, days_overdue=days))

    allocations.sort(key=lambda item: item.saldo, reverse=True)
    return AllocationReport(allocations=allocations, totals=compute_totals(allocations, payment_count))


async def calculate_carry_forward(session: AsyncSession, *, tenant_id: str, year: int) -> CarryForward:
    # Prior-year SOLL from issued invoices, IST from payments booked in that year.
    previous = year - 1
    invoices = (
        await session.execute(
            select(Invoice.grundmiete, Invoice.betriebskosten, Invoice.heizungskosten).where(
                Invoice.tenant_id == tenant_id,
                Invoice.year == previous,
                Invoice.status != "storniert",
            )
        )
    ).all()
    soll_miete = round_money(sum((round_money(row[0]) for row in invoices), ZERO))
    soll_bk = round_money(sum((round_money(row[1]) for row in invoices), ZERO))
    soll_hk = round_money(sum((round_money(row[2]) for row in invoices), ZERO))
    ist_by_tenant, _count = await _sum_payments(
        session, tenant_ids=[tenant_id], start=date(previous, 1, 1), end=date(previous, 12, 31)
    )
    return carry_forward(soll_bk, soll_hk, soll_miete, ist_by_tenant.get(tenant_id, ZERO))


async def generate_invoice(
    session: AsyncSession,
    *,
    tenant_id: str,
    year: int,
    month: int,
    due_day: int = 5,
) -> Invoice | None:
    """Create the tenant's invoice for a period; None when it already exists."""
    tenant_row = await session.get(Tenant, tenant_id)
    if tenant_row is None:
        raise ValueError(f"Unknown tenant {tenant_id}")
    tenant = _to_soll(tenant_row)
    carry = await calculate_carry_forward(session, tenant_id=tenant_id, year=year) if month == 1 else None
    draft = build_invoice_draft(
        tenant_id=tenant.tenant_id,
        organization_id=tenant.organization_id,
        unit_id=tenant.unit_id,
        year=year,
        month=month,
        grundmiete=tenant.grundmiete,
        betriebskosten=tenant.betriebskosten,
        heizungskosten=tenant.heizungskosten,
        carry=carry,
        due_day=due_day,
    )
    invoice_id = str(uuid4())
    stmt = (
        insert(Invoice)
        .values(**_draft_values(draft), id=invoice_id)
        .on_conflict_do_nothing(index_elements=[Invoice.tenant_id, Invoice.year, Invoice.month])
        .returning(Invoice.id)
    )
    created = (await session.execute(stmt)).scalar_one_or_none()
    if created is None:
        logger.info("invoice_exists tenant_id=%s year=%s month=%s", tenant_id, year, month)
        return None
    return (
        await session.execute(
            select(Invoice).where(Invoice.id == created).execution_options(populate_existing=True)
        )
    ).scalar_one()


def _draft_values(draft: InvoiceDraft) -> dict[str, object]:
    carry = draft.carry_forward
    return {
        "organization_id": draft.organization_id,
        "tenant_id": draft.tenant_id,
        "unit_id": draft.unit_id,
        "year": draft.year,
        "month": draft.month,
        "grundmiete": draft.grundmiete,
        "betriebskosten": draft.betriebskosten,
        "heizungskosten": draft.heizungskosten,
        "vortrag_miete": carry.vortrag_miete,
        "vortrag_bk": carry.vortrag_bk,
        "vortrag_hk": carry.vortrag_hk,
        "vortrag_sonstige": carry.vortrag_sonstige,
        "gesamtbetrag": draft.gesamtbetrag,
        "paid_amount": ZERO,
        "status": "offen",
        "faellig_am": draft.faellig_am,
    }
