from __future__ import annotations

from datetime import date
from decimal import Decimal

from propledger.services.billing.dunning import DunningTier
from propledger.services.billing.ledger import (
    LedgerInvoice,
    LedgerKey,
    missing_entries,
    plan_ledger_entries,
)
from propledger.services.billing.payments import OpenInvoice, plan_fifo


def _invoice(invoice_id: str, month: int, total: str, *, paid: str = "0", applied: str = "0") -> LedgerInvoice:
    return LedgerInvoice(
        id=invoice_id,
        year=2026,
        month=month,
        total=Decimal(total),
        paid_amount=Decimal(paid),
        applied_by_payment=Decimal(applied),
        faellig_am=date(2026, month, 5),
    )


def test_fifo_pays_oldest_invoice_first_and_leaves_the_next_untouched() -> None:
    invoices = [
        OpenInvoice(id="inv-1", year=2026, month=1, total=Decimal("800.00"), paid=Decimal("0.00")),
        OpenInvoice(id="inv-2", year=2026, month=2, total=Decimal("800.00"), paid=Decimal("0.00")),
    ]

    planned, unapplied = plan_fifo(Decimal("800.00"), invoices)

    assert [(item.invoice.id, item.applied, item.status) for item in planned] == [
        ("inv-1", Decimal("800.00"), "bezahlt")
    ]
    assert unapplied == Decimal("0.00")


def test_fifo_overpayment_leaves_unapplied_remainder() -> None:
    invoices = [OpenInvoice(id="inv-1", year=2026, month=1, total=Decimal("500.00"), paid=Decimal("0.00"))]

    planned, unapplied = plan_fifo(Decimal("700.00"), invoices)

    assert planned[0].applied == Decimal("500.00")
    assert planned[0].status == "bezahlt"
    assert unapplied == Decimal("200.00")


def test_fifo_tops_up_partially_paid_invoice() -> None:
    invoices = [
        OpenInvoice(id="inv-1", year=2026, month=1, total=Decimal("800.00"), paid=Decimal("300.00")),
        OpenInvoice(id="inv-2", year=2026, month=2, total=Decimal("800.00"), paid=Decimal("0.00")),
    ]

    planned, unapplied = plan_fifo(Decimal("600.00"), invoices)

    assert [(item.invoice.id, item.applied, item.paid_amount, item.status) for item in planned] == [
        ("inv-1", Decimal("500.00"), Decimal("800.00"), "bezahlt"),
        ("inv-2", Decimal("100.00"), Decimal("100.00"), "teilbezahlt"),
    ]
    assert unapplied == Decimal("0.00")


def test_overpayment_plans_a_credit_for_the_unapplied_amount() -> None:
    planned = plan_ledger_entries(
        payment_id="pay-1",
        payment_amount=Decimal("700.00"),
        unapplied=Decimal("200.00"),
        invoices=[_invoice("inv-1", 1, "500.00", paid="500.00", applied="500.00")],
        as_of=date(2026, 1, 5),
    )

    by_type = {entry.key.type: entry for entry in planned}
    assert set(by_type) == {"payment", "charge", "credit"}
    assert by_type["payment"].amount == Decimal("700.00")
    assert by_type["charge"].amount == Decimal("500.00")
    assert by_type["credit"].amount == Decimal("200.00")
    assert by_type["credit"].key == LedgerKey(type="credit", invoice_id=None, payment_id="pay-1")


def test_late_payment_plans_interest_and_tier_fee() -> None:
    planned = plan_ledger_entries(
        payment_id="pay-1",
        payment_amount=Decimal("800.00"),
        unapplied=Decimal("0.00"),
        invoices=[_invoice("inv-1", 1, "800.00", paid="800.00", applied="800.00")],
        as_of=date(2026, 2, 15),
    )

    by_type = {entry.key.type: entry for entry in planned}
    # 41 days overdue: tier 2 fee, interest on the 800 owed before this payment.
    assert by_type["fee"].amount == Decimal("5.00")
    assert by_type["interest"].amount == Decimal("3.59")
    assert by_type["interest"].key == LedgerKey(type="interest", invoice_id="inv-1", payment_id="pay-1")


def test_invoice_settled_before_the_payment_accrues_nothing() -> None:
    planned = plan_ledger_entries(
        payment_id="pay-2",
        payment_amount=Decimal("800.00"),
        unapplied=Decimal("0.00"),
        invoices=[
            _invoice("inv-1", 1, "800.00", paid="800.00", applied="0.00"),
            _invoice("inv-2", 2, "800.00", paid="800.00", applied="800.00"),
        ],
        as_of=date(2026, 3, 20),
    )

    accrued = {(entry.key.type, entry.key.invoice_id) for entry in planned if entry.key.type in ("interest", "fee")}
    # inv-1 was already paid by an earlier payment; inv-2 was open until this one settled it.
    assert accrued == {("interest", "inv-2"), ("fee", "inv-2")}


def test_reminder_tier_without_fee_posts_no_fee_entry() -> None:
    planned = plan_ledger_entries(
        payment_id="pay-1",
        payment_amount=Decimal("100.00"),
        unapplied=Decimal("0.00"),
        invoices=[_invoice("inv-1", 1, "800.00", paid="100.00", applied="100.00")],
        as_of=date(2026, 1, 25),
    )

    assert "fee" not in {entry.key.type for entry in planned}
    assert "interest" in {entry.key.type for entry in planned}


def test_custom_tiers_override_fees() -> None:
    tiers = (DunningTier(level=1, name="Erinnerung", min_days=1, fee=Decimal("2.50")),)
    planned = plan_ledger_entries(
        payment_id="pay-1",
        payment_amount=Decimal("10.00"),
        unapplied=Decimal("0.00"),
        invoices=[_invoice("inv-1", 1, "800.00")],
        as_of=date(2026, 1, 7),
        tiers=tiers,
    )

    fees = [entry for entry in planned if entry.key.type == "fee"]
    assert [entry.amount for entry in fees] == [Decimal("2.50")]


def test_invoice_not_yet_due_plans_only_the_charge() -> None:
    planned = plan_ledger_entries(
        payment_id="pay-1",
        payment_amount=Decimal("800.00"),
        unapplied=Decimal("0.00"),
        invoices=[_invoice("inv-1", 3, "800.00", paid="800.00", applied="800.00")],
        as_of=date(2026, 3, 1),
    )

    assert sorted(entry.key.type for entry in planned) == ["charge", "payment"]


def test_rerunning_a_sync_creates_nothing_new() -> None:
    planned = plan_ledger_entries(
        payment_id="pay-1",
        payment_amount=Decimal("800.00"),
        unapplied=Decimal("0.00"),
        invoices=[_invoice("inv-1", 1, "800.00", paid="800.00", applied="800.00")],
        as_of=date(2026, 2, 15),
    )

    first = missing_entries(planned, set())
    second = missing_entries(planned, {entry.key for entry in first})

    assert len(first) == len(planned)
    assert second == []


def test_charge_is_posted_once_across_payments() -> None:
    invoice = _invoice("inv-1", 1, "800.00", paid="400.00", applied="400.00")
    first = plan_ledger_entries(
        payment_id="pay-1",
        payment_amount=Decimal("400.00"),
        unapplied=Decimal("0.00"),
        invoices=[invoice],
        as_of=date(2026, 1, 5),
    )
    second = plan_ledger_entries(
        payment_id="pay-2",
        payment_amount=Decimal("400.00"),
        unapplied=Decimal("0.00"),
        invoices=[invoice],
        as_of=date(2026, 1, 5),
    )

    existing = {entry.key for entry in first}
    created = missing_entries(second, existing)

    assert [entry.key.type for entry in created] == ["payment"]
    assert created[0].key.payment_id == "pay-2"
