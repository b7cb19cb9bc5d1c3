from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from propledger.core.errors import AllocationError, PaymentNotFoundError
from propledger.domain.models import FinancialAuditLog, Invoice, Job, LedgerEntry, Payment, PaymentAllocation, Tenant
from propledger.services.audit_chain import HASH_MISMATCH, verify_chain
from propledger.services.billing.ledger import sync_ledger
from propledger.services.billing.payments import (
    LEDGER_SYNC_JOB,
    allocate_payment,
    get_tenant_balance,
    reconcile_allocations,
    reverse_payment,
)
from propledger.services.billing.soll_ist import calculate_monthly, generate_invoice


async def _seed_tenant(
    sessionmaker: async_sessionmaker[AsyncSession],
    invoice_totals: list[str],
) -> tuple[str, str, list[str]]:
    # Unique ids per test keep runs isolated without truncating shared tables.
    organization_id = f"org-{uuid4().hex}"
    tenant_id = f"t-{uuid4().hex}"
    invoice_ids: list[str] = []
    async with sessionmaker() as session:
        session.add(
            Tenant(
                id=tenant_id,
                organization_id=organization_id,
                first_name="Erika",
                last_name="Muster",
                grundmiete=Decimal("800.00"),
            )
        )
        for month, total in enumerate(invoice_totals, start=1):
            invoice_id = f"inv-{uuid4().hex}"
            invoice_ids.append(invoice_id)
            session.add(
                Invoice(
                    id=invoice_id,
                    organization_id=organization_id,
                    tenant_id=tenant_id,
                    year=2026,
                    month=month,
                    grundmiete=Decimal(total),
                    gesamtbetrag=Decimal(total),
                    faellig_am=date(2026, month, 5),
                )
            )
        await session.commit()
    return organization_id, tenant_id, invoice_ids


async def _invoice_state(sessionmaker: async_sessionmaker[AsyncSession], invoice_id: str) -> tuple[str, Decimal]:
    async with sessionmaker() as session:
        invoice = await session.get(Invoice, invoice_id)
        assert invoice is not None
        return invoice.status, invoice.paid_amount


@pytest.mark.asyncio
async def test_payment_settles_oldest_invoice_first(db_sessionmaker: async_sessionmaker[AsyncSession]) -> None:
    organization_id, tenant_id, (first, second) = await _seed_tenant(db_sessionmaker, ["800.00", "800.00"])
    payment_id = f"pay-{uuid4().hex}"

    async with db_sessionmaker() as session:
        async with session.begin():
            outcome = await allocate_payment(
                session,
                payment_id=payment_id,
                tenant_id=tenant_id,
                amount=Decimal("800.00"),
                booking_date=date(2026, 1, 5),
            )

    assert outcome.applied == Decimal("800.00")
    assert outcome.unapplied == Decimal("0.00")
    assert await _invoice_state(db_sessionmaker, first) == ("bezahlt", Decimal("800.00"))
    assert await _invoice_state(db_sessionmaker, second) == ("offen", Decimal("0.00"))

    async with db_sessionmaker() as session:
        job = await session.get(Job, outcome.ledger_job_id)
        assert job is not None
        assert job.job_type == LEDGER_SYNC_JOB
        assert job.payload["applied"] == "800.00"
        balance = await get_tenant_balance(session, tenant_id, 2026)
        assert balance.saldo == Decimal("800.00")
        assert (await reconcile_allocations(session, tenant_id)).consistent
        verification = await verify_chain(session, organization_id)
        assert verification.valid
        assert verification.total_entries == 2


@pytest.mark.asyncio
async def test_replayed_payment_changes_nothing(db_sessionmaker: async_sessionmaker[AsyncSession]) -> None:
    organization_id, tenant_id, (invoice_id,) = await _seed_tenant(db_sessionmaker, ["500.00"])
    payment_id = f"pay-{uuid4().hex}"

    outcomes = []
    for _ in range(2):
        async with db_sessionmaker() as session:
            async with session.begin():
                outcomes.append(
                    await allocate_payment(
                        session,
                        payment_id=payment_id,
                        tenant_id=tenant_id,
                        amount=Decimal("700.00"),
                        booking_date=date(2026, 1, 5),
                    )
                )

    first, replay = outcomes
    assert not first.replayed
    assert replay.replayed
    assert replay.applied == first.applied == Decimal("500.00")
    assert replay.unapplied == first.unapplied == Decimal("200.00")
    assert replay.ledger_job_id == first.ledger_job_id
    assert await _invoice_state(db_sessionmaker, invoice_id) == ("bezahlt", Decimal("500.00"))

    async with db_sessionmaker() as session:
        allocations = (
            await session.execute(
                select(func.count()).select_from(PaymentAllocation).where(PaymentAllocation.payment_id == payment_id)
            )
        ).scalar_one()
        jobs = (
            await session.execute(
                select(func.count()).select_from(Job).where(Job.payload["payment_id"].astext == payment_id)
            )
        ).scalar_one()
        audit_rows = (
            await session.execute(
                select(func.count())
                .select_from(FinancialAuditLog)
                .where(FinancialAuditLog.organization_id == organization_id)
            )
        ).scalar_one()
    assert allocations == 1
    assert jobs == 1
    assert audit_rows == 2


@pytest.mark.asyncio
async def test_overpayment_posts_credit_and_sync_is_idempotent(
    db_sessionmaker: async_sessionmaker[AsyncSession],
) -> None:
    organization_id, tenant_id, (invoice_id,) = await _seed_tenant(db_sessionmaker, ["500.00"])
    payment_id = f"pay-{uuid4().hex}"

    async with db_sessionmaker() as session:
        async with session.begin():
            outcome = await allocate_payment(
                session,
                payment_id=payment_id,
                tenant_id=tenant_id,
                amount=Decimal("700.00"),
                booking_date=date(2026, 1, 5),
            )

    results = []
    for _ in range(2):
        async with db_sessionmaker() as session:
            async with session.begin():
                results.append(
                    await sync_ledger(
                        session,
                        payment_id=payment_id,
                        tenant_id=tenant_id,
                        applied=outcome.applied,
                        unapplied=outcome.unapplied,
                    )
                )

    first, second = results
    assert sorted((entry.key.type, entry.amount) for entry in first.created) == [
        ("charge", Decimal("500.00")),
        ("credit", Decimal("200.00")),
        ("payment", Decimal("700.00")),
    ]
    assert second.created == []
    assert second.skipped == 3

    async with db_sessionmaker() as session:
        entries = (
            await session.execute(select(LedgerEntry.type).where(LedgerEntry.tenant_id == tenant_id))
        ).scalars().all()
        verification = await verify_chain(session, organization_id)
    assert sorted(entries) == ["charge", "credit", "payment"]
    # payment_allocated + allocated + one ledger_synced (the no-op rerun appends nothing).
    assert verification.valid
    assert verification.total_entries == 3
    assert await _invoice_state(db_sessionmaker, invoice_id) == ("bezahlt", Decimal("500.00"))


@pytest.mark.asyncio
async def test_tampered_audit_row_is_detected(db_sessionmaker: async_sessionmaker[AsyncSession]) -> None:
    organization_id, tenant_id, _ = await _seed_tenant(db_sessionmaker, ["800.00"])

    async with db_sessionmaker() as session:
        async with session.begin():
            await allocate_payment(
                session,
                payment_id=f"pay-{uuid4().hex}",
                tenant_id=tenant_id,
                amount=Decimal("300.00"),
                booking_date=date(2026, 1, 5),
            )

    async with db_sessionmaker() as session:
        first_id = (
            await session.execute(
                select(func.min(FinancialAuditLog.id)).where(FinancialAuditLog.organization_id == organization_id)
            )
        ).scalar_one()
        await session.execute(
            update(FinancialAuditLog)
            .where(FinancialAuditLog.id == first_id)
            .values(data={"payment_id": "forged", "applied": "800.00"})
        )
        await session.commit()

    async with db_sessionmaker() as session:
        verification = await verify_chain(session, organization_id)
    assert not verification.valid
    assert verification.broken_at == 0
    assert verification.reason == HASH_MISMATCH
    assert verification.entry_id == first_id


@pytest.mark.asyncio
async def test_invoice_generation_and_monthly_report(db_sessionmaker: async_sessionmaker[AsyncSession]) -> None:
    organization_id, tenant_id, _ = await _seed_tenant(db_sessionmaker, [])

    async with db_sessionmaker() as session:
        async with session.begin():
            created = await generate_invoice(session, tenant_id=tenant_id, year=2026, month=3)
            duplicate = await generate_invoice(session, tenant_id=tenant_id, year=2026, month=3)
    assert created is not None
    assert created.gesamtbetrag == Decimal("800.00")
    assert created.faellig_am == date(2026, 3, 5)
    assert duplicate is None

    async with db_sessionmaker() as session:
        async with session.begin():
            await allocate_payment(
                session,
                payment_id=f"pay-{uuid4().hex}",
                tenant_id=tenant_id,
                amount=Decimal("300.00"),
                booking_date=date(2026, 3, 10),
            )
        report = await calculate_monthly(
            session,
            organization_id=organization_id,
            year=2026,
            month=3,
            today=date(2026, 3, 25),
        )

    (row,) = report.allocations
    assert row.total_soll == Decimal("800.00")
    assert row.total_ist == Decimal("300.00")
    assert row.status == "teilbezahlt"
    assert row.mahnstatus == "1. Mahnung"
    assert report.totals.payment_count == 1


@pytest.mark.asyncio
async def test_storno_unwinds_credit_then_newest_invoice(db_sessionmaker: async_sessionmaker[AsyncSession]) -> None:
    organization_id, tenant_id, (first, second, third) = await _seed_tenant(
        db_sessionmaker, ["300.00", "300.00", "300.00"]
    )
    payment_id = f"pay-{uuid4().hex}"
    reversal_id = f"rev-{uuid4().hex}"

    async with db_sessionmaker() as session:
        async with session.begin():
            await allocate_payment(
                session,
                payment_id=payment_id,
                tenant_id=tenant_id,
                amount=Decimal("925.00"),
                booking_date=date(2026, 1, 5),
            )

    outcomes = []
    for _ in range(2):
        async with db_sessionmaker() as session:
            async with session.begin():
                outcomes.append(
                    await reverse_payment(
                        session,
                        payment_id=payment_id,
                        amount=Decimal("325.00"),
                        reversal_id=reversal_id,
                        reason="R\u00fccklastschrift",
                        booking_date=date(2026, 3, 20),
                    )
                )

    outcome, replay = outcomes
    assert not outcome.replayed
    assert outcome.credit_reversed == Decimal("25.00")
    assert [(item.invoice_id, item.reversed, item.status) for item in outcome.invoices] == [
        (third, Decimal("300.00"), "offen")
    ]
    assert outcome.remaining_amount == Decimal("600.00")
    assert replay.replayed
    assert replay.invoices == outcome.invoices
    assert replay.ledger_job_id == outcome.ledger_job_id
    assert await _invoice_state(db_sessionmaker, first) == ("bezahlt", Decimal("300.00"))
    assert await _invoice_state(db_sessionmaker, second) == ("bezahlt", Decimal("300.00"))
    assert await _invoice_state(db_sessionmaker, third) == ("offen", Decimal("0.00"))

    async with db_sessionmaker() as session:
        payment = await session.get(Payment, payment_id)
        assert payment is not None
        assert payment.reversed_amount == Decimal("325.00")
        assert payment.unapplied_amount == Decimal("0.00")
        stornos = (
            await session.execute(
                select(LedgerEntry.amount).where(LedgerEntry.payment_id == payment_id, LedgerEntry.type == "storno")
            )
        ).scalars().all()
        job = await session.get(Job, outcome.ledger_job_id)
        assert job is not None
        assert job.job_type == LEDGER_SYNC_JOB
        assert job.payload["applied"] == "600.00"
        assert job.payload["unapplied"] == "0.00"
        assert (await reconcile_allocations(session, tenant_id)).consistent
        verification = await verify_chain(session, organization_id)
    assert stornos == [Decimal("-325.00")]
    # 3 payment_allocated + allocated, then payment_reversed + reversed; the replay appends nothing.
    assert verification.valid
    assert verification.total_entries == 6


@pytest.mark.asyncio
async def test_storno_cannot_exceed_what_is_left(db_sessionmaker: async_sessionmaker[AsyncSession]) -> None:
    _organization_id, tenant_id, invoice_ids = await _seed_tenant(db_sessionmaker, ["500.00", "500.00"])
    payment_id = f"pay-{uuid4().hex}"

    async with db_sessionmaker() as session:
        async with session.begin():
            await allocate_payment(
                session,
                payment_id=payment_id,
                tenant_id=tenant_id,
                amount=Decimal("1000.00"),
                booking_date=date(2026, 2, 5),
            )
        async with session.begin():
            await reverse_payment(session, payment_id=payment_id, amount=Decimal("600.00"))

    async with db_sessionmaker() as session:
        with pytest.raises(AllocationError, match="exceeds"):
            async with session.begin():
                await reverse_payment(session, payment_id=payment_id, amount=Decimal("400.01"))

    async with db_sessionmaker() as session:
        async with session.begin():
            rest = await reverse_payment(session, payment_id=payment_id)
    assert rest.amount == Decimal("400.00")
    assert rest.remaining_amount == Decimal("0.00")
    for invoice_id in invoice_ids:
        assert await _invoice_state(db_sessionmaker, invoice_id) == ("offen", Decimal("0.00"))

    async with db_sessionmaker() as session:
        with pytest.raises(AllocationError, match="fully reversed"):
            async with session.begin():
                await reverse_payment(session, payment_id=payment_id)
        stornos = (
            await session.execute(
                select(func.sum(LedgerEntry.amount)).where(
                    LedgerEntry.payment_id == payment_id, LedgerEntry.type == "storno"
                )
            )
        ).scalar_one()
        allocations = (
            await session.execute(
                select(func.count()).select_from(PaymentAllocation).where(PaymentAllocation.payment_id == payment_id)
            )
        ).scalar_one()
    assert stornos == Decimal("-1000.00")
    assert allocations == 0


@pytest.mark.asyncio
async def test_storno_of_unknown_payment_is_rejected(db_sessionmaker: async_sessionmaker[AsyncSession]) -> None:
    async with db_sessionmaker() as session:
        with pytest.raises(PaymentNotFoundError):
            async with session.begin():
                await reverse_payment(session, payment_id=f"pay-{uuid4().hex}")
