"""Pure SOLL/IST arithmetic: waterfall split, classification, carry-forward.

Payments are applied to the buckets in a fixed order, operating costs (BK)
first, then heating (HK), then base rent (Miete). Every intermediate value is
rounded to cents; tests pin the resulting figures, so keep it that way.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Literal

from propledger.services.money import ZERO, money_str, round_money, to_decimal


PaymentStatus = Literal["vollstaendig", "teilbezahlt", "offen", "ueberzahlt"]
SplitStatus = Literal["vollstaendig", "teilbezahlt", "ueberzahlt"]
Mahnstatus = Literal["aktuell", "Zahlungserinnerung", "1. Mahnung", "2. Mahnung"]

_TOLERANCE = Decimal("0.01")

# Austrian VAT on operating costs and heating; base rent is booked without VAT.
VAT_RATE_BK = Decimal("10")
VAT_RATE_HK = Decimal("20")


@dataclass(frozen=True)
class WaterfallResult:
    ist_bk: Decimal
    ist_hk: Decimal
    ist_miete: Decimal
    ueberzahlung: Decimal
    unterzahlung: Decimal
    # VAT contained in ist_bk + ist_hk; zero unless rates are passed to allocate().
    ust_anteil: Decimal = ZERO


@dataclass(frozen=True)
class PaymentSplit:
    betriebskosten_anteil: Decimal
    heizung_anteil: Decimal
    miete_anteil: Decimal
    ust_anteil: Decimal
    ueberzahlung: Decimal
    unterzahlung: Decimal
    vollstaendig_bezahlt: bool
    status: SplitStatus
    beschreibung: str


@dataclass(frozen=True)
class CarryForward:
    vortrag_miete: Decimal = ZERO
    vortrag_bk: Decimal = ZERO
    vortrag_hk: Decimal = ZERO
    vortrag_sonstige: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return round_money(self.vortrag_miete + self.vortrag_bk + self.vortrag_hk + self.vortrag_sonstige)


NO_CARRY_FORWARD = CarryForward()


@dataclass(frozen=True)
class InvoiceDraft:
    tenant_id: str
    organization_id: str
    unit_id: str | None
    year: int
    month: int
    grundmiete: Decimal
    betriebskosten: Decimal
    heizungskosten: Decimal
    carry_forward: CarryForward
    gesamtbetrag: Decimal
    faellig_am: date


def _contained_vat(gross: Decimal, rate_pct: Any) -> Decimal:
    # Unrounded on purpose: the per-bucket shares are summed before rounding.
    if rate_pct is None or gross <= ZERO:
        return ZERO
    return gross - gross / (1 + to_decimal(rate_pct) / 100)


def allocate(
    soll_bk: Any,
    soll_hk: Any,
    soll_miete: Any,
    total_ist: Any,
    *,
    vat_rate_bk: Any = None,
    vat_rate_hk: Any = None,
) -> WaterfallResult:
    soll_bk = round_money(soll_bk)
    soll_hk = round_money(soll_hk)
    soll_miete = round_money(soll_miete)
    remaining = round_money(total_ist)

    ist_bk = round_money(max(ZERO, min(remaining, soll_bk)))
    remaining = round_money(remaining - ist_bk)

    ist_hk = round_money(max(ZERO, min(remaining, soll_hk)))
    remaining = round_money(remaining - ist_hk)

    ist_miete = round_money(max(ZERO, min(remaining, soll_miete)))
    remaining = round_money(remaining - ist_miete)

    ueberzahlung = remaining if remaining > ZERO else ZERO
    unterzahlung = round_money((soll_bk - ist_bk) + (soll_hk - ist_hk) + (soll_miete - ist_miete))
    return WaterfallResult(
        ist_bk=ist_bk,
        ist_hk=ist_hk,
        ist_miete=ist_miete,
        ueberzahlung=ueberzahlung,
        unterzahlung=unterzahlung,
        ust_anteil=round_money(_contained_vat(ist_bk, vat_rate_bk) + _contained_vat(ist_hk, vat_rate_hk)),
    )


def split_payment(
    zahlungsbetrag: Any,
    *,
    grundmiete: Any,
    betriebskosten: Any,
    heizungskosten: Any,
    mit_ust: bool = True,
) -> PaymentSplit:
    """Split one payment against net monthly charges.

    BK and HK are grossed up with VAT (10 % / 20 %) before the waterfall runs;
    ``ust_anteil`` is the VAT contained in what the payment covered.
    """
    zahlungsbetrag = round_money(zahlungsbetrag)
    bk_brutto = round_money(to_decimal(betriebskosten) * (1 + VAT_RATE_BK / 100)) if mit_ust else betriebskosten
    hk_brutto = round_money(to_decimal(heizungskosten) * (1 + VAT_RATE_HK / 100)) if mit_ust else heizungskosten
    result = allocate(
        bk_brutto,
        hk_brutto,
        grundmiete,
        zahlungsbetrag,
        vat_rate_bk=VAT_RATE_BK if mit_ust else None,
        vat_rate_hk=VAT_RATE_HK if mit_ust else None,
    )
    gesamt_soll = round_money(round_money(bk_brutto) + round_money(hk_brutto) + round_money(grundmiete))

    status: SplitStatus
    vollstaendig = abs(zahlungsbetrag - gesamt_soll) < _TOLERANCE
    if vollstaendig:
        status = "vollstaendig"
        beschreibung = "Rechnung vollständig bezahlt"
    elif result.ueberzahlung > ZERO:
        status = "ueberzahlt"
        beschreibung = f"Überzahlung: {money_str(result.ueberzahlung)} €"
    else:
        status = "teilbezahlt"
        beschreibung = f"Teilzahlung - Offen: {money_str(gesamt_soll - zahlungsbetrag)} €"

    return PaymentSplit(
        betriebskosten_anteil=result.ist_bk,
        heizung_anteil=result.ist_hk,
        miete_anteil=result.ist_miete,
        ust_anteil=result.ust_anteil,
        ueberzahlung=result.ueberzahlung,
        unterzahlung=round_money(max(ZERO, gesamt_soll - zahlungsbetrag)),
        vollstaendig_bezahlt=vollstaendig,
        status=status,
        beschreibung=beschreibung,
    )


def classify_status(saldo: Any, total_ist: Any) -> PaymentStatus:
    saldo = round_money(saldo)
    total_ist = round_money(total_ist)
    if saldo < -_TOLERANCE:
        return "ueberzahlt"
    if abs(saldo) < _TOLERANCE and total_ist > ZERO:
        return "vollstaendig"
    if total_ist > ZERO and saldo > _TOLERANCE:
        return "teilbezahlt"
    return "offen"


def classify_mahnstatus(days_overdue: int) -> Mahnstatus:
    if days_overdue > 30:
        return "2. Mahnung"
    if days_overdue > 14:
        return "1. Mahnung"
    if days_overdue > 0:
        return "Zahlungserinnerung"
    return "aktuell"


def due_date(year: int, month: int, due_day: int = 5) -> date:
    return date(year, month, due_day)


def days_overdue_since_fifth(year: int, month: int, today: date, *, due_day: int = 5) -> int:
    # Rent for a month falls due on its 5th; nothing is overdue before that.
    return max(0, (today - due_date(year, month, due_day)).days)


def carry_forward(soll_bk: Any, soll_hk: Any, soll_miete: Any, total_ist: Any) -> CarryForward:
    """Unpaid prior-period buckets, or a negative rent carry-forward for overpayment."""
    soll_bk = round_money(soll_bk)
    soll_hk = round_money(soll_hk)
    soll_miete = round_money(soll_miete)
    total_ist = round_money(total_ist)
    differenz = round_money(soll_bk + soll_hk + soll_miete - total_ist)
    if differenz <= ZERO:
        # Prior overpayment is credited against next year's rent.
        return CarryForward(vortrag_miete=differenz if differenz < ZERO else ZERO)

    split = allocate(soll_bk, soll_hk, soll_miete, total_ist)
    return CarryForward(
        vortrag_miete=round_money(max(ZERO, soll_miete - split.ist_miete)),
        vortrag_bk=round_money(max(ZERO, soll_bk - split.ist_bk)),
        vortrag_hk=round_money(max(ZERO, soll_hk - split.ist_hk)),
    )


def build_invoice_draft(
    *,
    tenant_id: str,
    organization_id: str,
    unit_id: str | None,
    year: int,
    month: int,
    grundmiete: Any,
    betriebskosten: Any,
    heizungskosten: Any,
    carry: CarryForward | None = None,
    due_day: int = 5,
) -> InvoiceDraft:
    # Carry-forward only ever lands on the January invoice.
    applied = carry if (carry is not None and month == 1) else NO_CARRY_FORWARD
    grundmiete = round_money(grundmiete)
    betriebskosten = round_money(betriebskosten)
    heizungskosten = round_money(heizungskosten)
    gesamtbetrag = round_money(grundmiete + betriebskosten + heizungskosten + applied.total)
    return InvoiceDraft(
        tenant_id=tenant_id,
        organization_id=organization_id,
        unit_id=unit_id,
        year=year,
        month=month,
        grundmiete=grundmiete,
        betriebskosten=betriebskosten,
        heizungskosten=heizungskosten,
        carry_forward=applied,
        gesamtbetrag=gesamtbetrag,
        faellig_am=due_date(year, month, due_day),
    )


def invoice_status(paid_amount: Any, total: Any) -> str:
    # Invoice lifecycle after an allocation; storniert/ueberfaellig are set elsewhere.
    paid = round_money(paid_amount)
    if paid >= round_money(total):
        return "bezahlt"
    if paid > ZERO:
        return "teilbezahlt"
    return "offen"
