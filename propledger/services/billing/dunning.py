from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
import logging
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from propledger.core.config import Settings
from propledger.domain.models import FinancialAuditLog, Invoice, Tenant
from propledger.services.audit_chain import append_entry
from propledger.services.billing.payments import OPEN_INVOICE_STATUSES
from propledger.services.money import ZERO, money_str, round_money, to_decimal


logger = logging.getLogger(__name__)

DUNNING_RUN_JOB = "dunning_run"

_DAYS_PER_YEAR = Decimal(365)
_HUNDRED = Decimal(100)


@dataclass(frozen=True)
class DunningTier:
    level: int
    name: str
    min_days: int
    fee: Decimal


DEFAULT_TIERS: tuple[DunningTier, ...] = (
    DunningTier(level=1, name="Zahlungserinnerung", min_days=14, fee=Decimal("0.00")),
    DunningTier(level=2, name="1. Mahnung", min_days=30, fee=Decimal("5.00")),
    DunningTier(level=3, name="2. Mahnung", min_days=45, fee=Decimal("10.00")),
)


def tiers_from_settings(settings: Settings) -> tuple[DunningTier, ...]:
    fees = (settings.dunning_fee_tier1, settings.dunning_fee_tier2, settings.dunning_fee_tier3)
    return tuple(
        DunningTier(level=tier.level, name=tier.name, min_days=tier.min_days, fee=round_money(fee))
        for tier, fee in zip(DEFAULT_TIERS, fees)
    )


def dunning_tier(days_overdue: int, tiers: Sequence[DunningTier] = DEFAULT_TIERS) -> DunningTier | None:
    # Highest tier whose threshold is reached; thresholds are inclusive.
    reached = [tier for tier in tiers if days_overdue >= tier.min_days]
    if not reached:
        return None
    return max(reached, key=lambda tier: tier.min_days)


def calculate_interest(principal: Any, days_overdue: int, annual_rate_pct: Any = 4) -> Decimal:
    """Simple statutory interest, unrounded; round to cents when posting."""
    if days_overdue <= 0:
        return ZERO
    principal = to_decimal(principal)
    if principal <= ZERO:
        return ZERO
    daily_rate = to_decimal(annual_rate_pct) / _DAYS_PER_YEAR / _HUNDRED
    return principal * daily_rate * days_overdue


@dataclass(frozen=True)
class OverdueInvoice:
    invoice_id: str
    year: int
    month: int
    outstanding: Decimal
    faellig_am: date
    days_overdue: int


@dataclass(frozen=True)
class DunningCandidate:
    tenant_id: str
    tenant_name: str
    email: str | None
    outstanding_amount: Decimal
    max_days_overdue: int
    tier: DunningTier
    overdue_invoices: list[OverdueInvoice] = field(default_factory=list)


async def list_dunning_candidates(
    session: AsyncSession,
    *,
    organization_id: str,
    today: date | None = None,
    min_days_overdue: int = 14,
    tiers: Sequence[DunningTier] = DEFAULT_TIERS,
) -> list[DunningCandidate]:
    """Tenants with open invoices past ``min_days_overdue``, largest debt first."""
    today = today or date.today()
    rows = (
        await session.execute(
            select(Tenant, Invoice)
            .join(Invoice, Invoice.tenant_id == Tenant.id)
            .where(
                Tenant.organization_id == organization_id,
                Invoice.status.in_(OPEN_INVOICE_STATUSES),
                Invoice.faellig_am.is_not(None),
            )
            .order_by(Tenant.id, Invoice.year, Invoice.month)
        )
    ).all()

    grouped: dict[str, tuple[Tenant, list[OverdueInvoice]]] = {}
    for tenant, invoice in rows:
        days = (today - invoice.faellig_am).days
        if days < min_days_overdue:
            continue
        outstanding = round_money(round_money(invoice.gesamtbetrag) - round_money(invoice.paid_amount))
        if outstanding <= ZERO:
            continue
        _, overdue = grouped.setdefault(tenant.id, (tenant, []))
        overdue.append(
            OverdueInvoice(
                invoice_id=invoice.id,
                year=invoice.year,
                month=invoice.month,
                outstanding=outstanding,
                faellig_am=invoice.faellig_am,
                days_overdue=days,
            )
        )

    candidates: list[DunningCandidate] = []
    for tenant, overdue in grouped.values():
        max_days = max(item.days_overdue for item in overdue)
        tier = dunning_tier(max_days, tiers) or min(tiers, key=lambda item: item.min_days)
        candidates.append(
            DunningCandidate(
                tenant_id=tenant.id,
                tenant_name=f"{tenant.first_name or ''} {tenant.last_name or ''}".strip(),
                email=tenant.email,
                outstanding_amount=round_money(sum((item.outstanding for item in overdue), ZERO)),
                max_days_overdue=max_days,
                tier=tier,
                overdue_invoices=overdue,
            )
        )
    candidates.sort(key=lambda item: item.outstanding_amount, reverse=True)
    return candidates




@dataclass(frozen=True)
class DunningRunResult:
    run_id: str
    organization_id: str
    recorded: list[DunningCandidate] = field(default_factory=list)
    skipped: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "organization_id": self.organization_id,
            "recorded": [
                {
                    "tenant_id": item.tenant_id,
                    "level": item.tier.level,
                    "outstanding": money_str(item.outstanding_amount),
                }
                for item in self.recorded
            ],
            "skipped": self.skipped,
        }


async def record_dunning_action(
    session: AsyncSession,
    *,
    organization_id: str,
    candidate: DunningCandidate,
    run_id: str | None = None,
    user_id: str | None = None,
    note: str | None = None,
) -> None:
    tier = candidate.tier
    await append_entry(
        session,
        action="dunning_sent",
        entity_type="tenants",
        entity_id=candidate.tenant_id,
        organization_id=organization_id,
        user_id=user_id,
        data={
            "run_id": run_id,
            "level": tier.level,
            "name": tier.name,
            "fee": money_str(tier.fee),
            "outstanding": money_str(candidate.outstanding_amount),
            "invoices": [item.invoice_id for item in candidate.overdue_invoices],
            "note": note,
        },
    )
    logger.info("dunning_recorded tenant_id=%s level=%s run_id=%s", candidate.tenant_id, tier.level, run_id)


async def _recorded_in_run(session: AsyncSession, *, organization_id: str, run_id: str) -> set[str]:
    rows = (
        await session.execute(
            select(FinancialAuditLog.entity_id).where(
                FinancialAuditLog.organization_id == organization_id,
                FinancialAuditLog.action == "dunning_sent",
                FinancialAuditLog.data["run_id"].astext == run_id,
            )
        )
    ).scalars().all()
    return {row for row in rows if row is not None}


async def run_dunning(
    session: AsyncSession,
    *,
    organization_id: str,
    run_id: str,
    today: date | None = None,
    min_days_overdue: int = 14,
    tiers: Sequence[DunningTier] = DEFAULT_TIERS,
    user_id: str | None = None,
) -> DunningRunResult:
    """Record one dunning action per overdue tenant, at most once per ``run_id``."""
    candidates = await list_dunning_candidates(
        session,
        organization_id=organization_id,
        today=today,
        min_days_overdue=min_days_overdue,
        tiers=tiers,
    )
    done = await _recorded_in_run(session, organization_id=organization_id, run_id=run_id)
    recorded: list[DunningCandidate] = []
    for candidate in candidates:
        if candidate.tenant_id in done:
            continue
        await record_dunning_action(
            session,
            organization_id=organization_id,
            candidate=candidate,
            run_id=run_id,
            user_id=user_id,
        )
        recorded.append(candidate)
    logger.info(
        "dunning_run_completed run_id=%s organization_id=%s recorded=%s skipped=%s",
        run_id,
        organization_id,
        len(recorded),
        len(candidates) - len(recorded),
    )
    return DunningRunResult(
        run_id=run_id,
        organization_id=organization_id,
        recorded=recorded,
        skipped=len(candidates) - len(recorded),
    )
