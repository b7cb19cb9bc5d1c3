from __future__ import annotations

from decimal import Decimal

import pytest

from propledger.services.billing.bulk_upsert import (
    PATH_BULK,
    PATH_LEGACY,
    InvoiceLineInput,
    chunked,
    dedupe_lines,
    normalize_description,
    select_path,
    upsert_invoice_lines,
)
from propledger.services.telemetry import Telemetry


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Betriebskosten", "betriebskosten"),
        ("  Heizung \t  Januar\n", "heizung januar"),
        ("Wasser\u200bgeld", "wassergeld"),
        ("\ufeffM\u00fcll\u2060abfuhr", "m\u00fcllabfuhr"),
        # Decomposed u + combining diaeresis composes to the single code point.
        ("Mu\u0308llabfuhr", "m\u00fcllabfuhr"),
        ("", ""),
        (None, ""),
    ],
)
def test_normalize_description(raw: str | None, expected: str) -> None:
    assert normalize_description(raw) == expected


def test_non_breaking_space_is_not_collapsed() -> None:
    # Only ASCII whitespace is folded; the database function uses the same class.
    assert normalize_description("a\u00a0b") == "a\u00a0b"


def test_case_folding_is_ascii_only() -> None:
    # Non-ASCII letters keep their case so the database function agrees under any locale.
    assert normalize_description("\u039f\u0394\u039f\u03a3") == "\u039f\u0394\u039f\u03a3"
    assert normalize_description("\u03bf\u03b4\u03bf\u03c3") == "\u03bf\u03b4\u03bf\u03c3"
    assert normalize_description("\u0130") == "\u0130"
    assert len(normalize_description("\u0130BAN")) == 4
    assert normalize_description("M\u00dcLL") == "m\u00dcll"


def test_greek_spellings_stay_distinct_lines() -> None:
    upper, lower = (
        InvoiceLineInput(invoice_id="inv-1", line_type="bk", amount=Decimal(index + 1), description=text)
        for index, text in enumerate(["\u039f\u0394\u039f\u03a3", "\u03bf\u03b4\u03bf\u03c3"])
    )

    assert upper.key != lower.key
    assert len(dedupe_lines([upper, lower])) == 2


def test_line_key_uses_normalized_description() -> None:
    first = InvoiceLineInput(invoice_id="inv-1", line_type="bk", amount=Decimal("10"), description="Wasser ")
    second = InvoiceLineInput(invoice_id="inv-1", line_type="bk", amount=Decimal("12"), description=" WASSER")

    assert first.key == second.key == ("inv-1", None, "bk", "wasser")


def test_dedupe_keeps_the_last_line_per_key() -> None:
    lines = [
        InvoiceLineInput(invoice_id="inv-1", line_type="bk", amount=Decimal("10"), description="Wasser"),
        InvoiceLineInput(invoice_id="inv-1", line_type="hk", amount=Decimal("50"), description="Gas"),
        InvoiceLineInput(invoice_id="inv-1", line_type="bk", amount=Decimal("12"), description="wasser "),
    ]

    deduped = dedupe_lines(lines)

    assert [(line.line_type, line.amount) for line in deduped] == [("bk", Decimal("12")), ("hk", Decimal("50"))]


def test_path_selection_threshold_is_inclusive() -> None:
    assert select_path(4999) == PATH_LEGACY
    assert select_path(5000) == PATH_BULK
    assert select_path(3, threshold=3) == PATH_BULK


def test_chunked_splits_into_bounded_slices() -> None:
    assert [list(chunk) for chunk in chunked([1, 2, 3, 4, 5], 2)] == [[1, 2], [3, 4], [5]]
    assert [list(chunk) for chunk in chunked([1, 2], 0)] == [[1], [2]]


@pytest.mark.asyncio
async def test_empty_batch_touches_nothing() -> None:
    class _UnusedSession:
        async def execute(self, *args: object, **kwargs: object) -> None:
            raise AssertionError("no statements expected")

    telemetry = Telemetry()
    result = await upsert_invoice_lines(
        _UnusedSession(),  # type: ignore[arg-type]
        [],
        user_id="user-1",
        run_id="run-1",
        telemetry=telemetry,
    )

    assert result.as_dict()["upserted_count"] == 0
    assert result.conflict_count == 0
    assert result.path == PATH_LEGACY
    assert result.trace["trace_id"]
