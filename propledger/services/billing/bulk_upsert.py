"""Invoice-line upsert with a threshold-selected bulk path.

Small batches go through chunked ``INSERT ... ON CONFLICT`` statements. Large
batches are staged in a transaction-scoped temp table and merged with one
statement that also writes the per-line audit rows. Both paths key lines by
``(invoice_id, unit_id, line_type, normalized_description)``, so the Python
normalizer below must stay byte-identical to the ``invoice_lines`` trigger.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
import logging
import re
import string
from typing import Any, Iterator, Sequence
import unicodedata
from uuid import uuid4

from sqlalchemy import (
    Column,
    DateTime,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    func,
    insert as core_insert,
    literal_column,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, insert
from sqlalchemy.ext.asyncio import AsyncSession

from propledger.domain.models import AuditEvent, InvoiceLine
from propledger.services.audit import record_event
from propledger.services.money import money_str, round_money, to_decimal
from propledger.services.telemetry import Telemetry, Trace


logger = logging.getLogger(__name__)

DEFAULT_BULK_THRESHOLD = 5000
DEFAULT_BULK_CHUNK_SIZE = 5000
DEFAULT_LEGACY_CHUNK_SIZE = 500

PATH_BULK = "bulk"
PATH_LEGACY = "legacy"

LINE_UPSERT_EVENT = "invoice_lines.upsert"
BULK_SUMMARY_EVENT = "invoice_lines.bulk_upsert"

# Mirrored by the normalize_description() SQL function in propledger.persistence.ddl.
_INVISIBLE_RE = re.compile("[\u200b-\u200d\u2060\ufeff]")
_WHITESPACE_RE = re.compile("[ \t\n\r\f\v]+")
# Case folding is ASCII-only on both sides; Unicode lower() differs between Python and the
# database locale (final sigma, dotted I, C collation).
_ASCII_LOWER = str.maketrans(string.ascii_uppercase, string.ascii_lowercase)

STAGING_TABLE = "_tmp_invoice_lines"
_staging = Table(
    STAGING_TABLE,
    MetaData(),
    Column("id", String),
    Column("invoice_id", String),
    Column("unit_id", String),
    Column("line_type", String),
    Column("description", Text),
    Column("normalized_description", Text),
    Column("amount", Numeric(12, 2)),
    Column("tax_rate", Numeric(5, 2)),
    Column("meta", JSONB),
    Column("created_at", DateTime(timezone=True)),
)

_CREATE_STAGING_SQL = text(
    f"""
    CREATE TEMP TABLE IF NOT EXISTS {STAGING_TABLE} (
        id TEXT NOT NULL,
        invoice_id TEXT NOT NULL,
        unit_id TEXT,
        line_type VARCHAR(50) NOT NULL,
        description TEXT,
        normalized_description TEXT NOT NULL,
        amount NUMERIC(12, 2) NOT NULL,
        tax_rate NUMERIC(5, 2),
        meta JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL
    ) ON COMMIT DROP
    """
)

# One round trip: merge staged lines and write one audit row per affected line.
_MERGE_SQL = text(
    f"""
    WITH upserted AS (
        INSERT INTO invoice_lines (
            id, invoice_id, unit_id, line_type, description,
            normalized_description, amount, tax_rate, meta, created_at
        )
        SELECT
            id, invoice_id, unit_id, line_type, description,
            normalized_description, amount, tax_rate, meta, created_at
        FROM {STAGING_TABLE}
        ON CONFLICT (invoice_id, unit_id, line_type, normalized_description)
        DO UPDATE SET
            amount = EXCLUDED.amount,
            tax_rate = EXCLUDED.tax_rate,
            meta = COALESCE(invoice_lines.meta, '{{}}'::jsonb) || EXCLUDED.meta,
            created_at = LEAST(invoice_lines.created_at, EXCLUDED.created_at)
        RETURNING
            id, invoice_id, unit_id, line_type, normalized_description, amount,
            (xmax = 0) AS inserted
    ),
    audit AS (
        INSERT INTO audit_events (
            occurred_at, organization_id, actor_type, actor_id, event_type, outcome,
            resource_type, resource_id, trace_id, run_id, metadata_json
        )
        SELECT
            now(), :organization_id, 'user', :user_id, '{LINE_UPSERT_EVENT}', 'success',
            'invoice_line', u.id, :trace_id, :run_id,
            jsonb_build_object(
                'operation', CASE WHEN u.inserted THEN 'insert' ELSE 'update' END,
                'invoice_id', u.invoice_id,
                'unit_id', u.unit_id,
                'line_type', u.line_type,
                'normalized_description', u.normalized_description,
                'new_amount', u.amount
            )
        FROM upserted u
        RETURNING id
    )
    SELECT
        (SELECT count(*) FROM upserted) AS upserted_count,
        (SELECT count(*) FROM upserted WHERE inserted) AS inserted_count,
        (SELECT count(*) FROM audit) AS audit_count
    """
)


def normalize_description(value: str | None) -> str:
    """Canonical form used to decide whether two lines are the same line."""
    if value is None:
        return ""
    normalized = unicodedata.normalize("NFC", value)
    normalized = _INVISIBLE_RE.sub("", normalized)
    normalized = _WHITESPACE_RE.sub(" ", normalized)
    return normalized.strip(" ").translate(_ASCII_LOWER)


@dataclass(frozen=True)
class InvoiceLineInput:
    invoice_id: str
    line_type: str
    amount: Decimal
    unit_id: str | None = None
    description: str | None = None
    tax_rate: Decimal | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str | None, str, str]:
        return (self.invoice_id, self.unit_id, self.line_type, normalize_description(self.description))


@dataclass(frozen=True)
class BulkUpsertResult:
    path: str
    total_lines: int
    upserted_count: int
    conflict_count: int
    trace: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "total_lines": self.total_lines,
            "upserted_count": self.upserted_count,
            "conflict_count": self.conflict_count,
            "trace_id": self.trace.get("trace_id"),
        }


def select_path(total_lines: int, threshold: int = DEFAULT_BULK_THRESHOLD) -> str:
    return PATH_BULK if total_lines >= threshold else PATH_LEGACY


def chunked(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    step = max(1, size)
    for start in range(0, len(items), step):
        yield items[start : start + step]


def dedupe_lines(lines: Sequence[InvoiceLineInput]) -> list[InvoiceLineInput]:
    # One row per key, last occurrence wins but keeps the first one's position.
    by_key: dict[tuple[str, str | None, str, str], InvoiceLineInput] = {}
    for line in lines:
        by_key[line.key] = line
    return list(by_key.values())


def _row(line: InvoiceLineInput, created_at: datetime) -> dict[str, Any]:
    return {
        "id": str(uuid4()),
        "invoice_id": line.invoice_id,
        "unit_id": line.unit_id,
        "line_type": line.line_type,
        "description": line.description,
        "normalized_description": normalize_description(line.description),
        "amount": round_money(line.amount),
        "tax_rate": to_decimal(line.tax_rate) if line.tax_rate is not None else None,
        "meta": dict(line.meta or {}),
        "created_at": created_at,
    }


async def _bulk_path(
    session: AsyncSession,
    rows: list[dict[str, Any]],
    *,
    trace: Trace,
    telemetry: Telemetry,
    organization_id: str | None,
    user_id: str | None,
    run_id: str,
    chunk_size: int,
) -> tuple[int, int]:
    with trace.span("temp_table_create") as span:
        await session.execute(_CREATE_STAGING_SQL)
        # A second bulk run in the same transaction reuses the table.
        await session.execute(text(f"TRUNCATE {STAGING_TABLE}"))
        span.set_attribute("table", STAGING_TABLE)

    with trace.span("copy_to_temp") as span:
        chunks = list(chunked(rows, chunk_size))
        span.set_attribute("chunk_count", len(chunks))
        span.set_attribute("total_lines", len(rows))
        for chunk in chunks:
            telemetry.histogram("billing.batch_size", len(chunk))
            await session.execute(core_insert(_staging), list(chunk))
            span.add_event("chunk_inserted", {"rows": len(chunk)})

    with trace.span("upsert_cte") as span:
        result = await session.execute(
            _MERGE_SQL,
            {
                "organization_id": organization_id,
                "user_id": user_id,
                "trace_id": trace.trace_id,
                "run_id": run_id,
            },
        )
        counts = result.mappings().one()
        upserted = int(counts["upserted_count"])
        inserted = int(counts["inserted_count"])
        span.set_attribute("upserted", upserted)
        span.set_attribute("inserted", inserted)
        span.set_attribute("audit_rows", int(counts["audit_count"]))
    return upserted, inserted


async def _legacy_path(
    session: AsyncSession,
    rows: list[dict[str, Any]],
    *,
    trace: Trace,
    organization_id: str | None,
    user_id: str | None,
    run_id: str,
    chunk_size: int,
) -> tuple[int, int]:
    upserted = 0
    inserted = 0
    with trace.span("legacy_upsert") as span:
        for chunk in chunked(rows, chunk_size):
            stmt = insert(InvoiceLine).values(list(chunk))
            stmt = stmt.on_conflict_do_update(
                index_elements=[
                    InvoiceLine.invoice_id,
                    InvoiceLine.unit_id,
                    InvoiceLine.line_type,
                    InvoiceLine.normalized_description,
                ],
                set_={
                    "amount": stmt.excluded.amount,
                    "tax_rate": stmt.excluded.tax_rate,
                    "meta": func.coalesce(InvoiceLine.meta, literal_column("'{}'::jsonb")).op("||")(stmt.excluded.meta),
                    "created_at": func.least(InvoiceLine.created_at, stmt.excluded.created_at),
                },
            ).returning(
                InvoiceLine.id,
                InvoiceLine.invoice_id,
                InvoiceLine.unit_id,
                InvoiceLine.line_type,
                InvoiceLine.normalized_description,
                InvoiceLine.amount,
                literal_column("(xmax = 0)").label("inserted"),
            )
            returned = (await session.execute(stmt)).mappings().all()
            upserted += len(returned)
            inserted += sum(1 for item in returned if item["inserted"])
            if returned:
                now = datetime.now(timezone.utc)
                await session.execute(
                    core_insert(AuditEvent),
                    [
                        {
                            "occurred_at": now,
                            "organization_id": organization_id,
                            "actor_type": "user",
                            "actor_id": user_id,
                            "event_type": LINE_UPSERT_EVENT,
                            "outcome": "success",
                            "resource_type": "invoice_line",
                            "resource_id": item["id"],
                            "trace_id": trace.trace_id,
                            "run_id": run_id,
                            "metadata_json": {
                                "operation": "insert" if item["inserted"] else "update",
                                "invoice_id": item["invoice_id"],
                                "unit_id": item["unit_id"],
                                "line_type": item["line_type"],
                                "normalized_description": item["normalized_description"],
                                "new_amount": money_str(item["amount"]),
                            },
                        }
                        for item in returned
                    ],
                )
            span.add_event("chunk_upserted", {"rows": len(chunk)})
        span.set_attribute("upserted", upserted)
        span.set_attribute("inserted", inserted)
    return upserted, inserted


def _summarize(trace: Trace, owns_trace: bool) -> dict[str, Any]:
    # A borrowed trace belongs to the job wrapper, which finishes it.
    if owns_trace:
        return trace.finish()
    return {"trace_id": trace.trace_id, "name": trace.name}


async def upsert_invoice_lines(
    session: AsyncSession,
    lines: Sequence[InvoiceLineInput],
    *,
    user_id: str | None,
    run_id: str,
    telemetry: Telemetry,
    organization_id: str | None = None,
    threshold: int = DEFAULT_BULK_THRESHOLD,
    bulk_chunk_size: int = DEFAULT_BULK_CHUNK_SIZE,
    legacy_chunk_size: int = DEFAULT_LEGACY_CHUNK_SIZE,
    trace: Trace | None = None,
) -> BulkUpsertResult:
    """Upsert invoice lines inside the caller's transaction.

    ``conflict_count`` is the number of submitted lines that merged into an
    existing row (including duplicates within the batch); resubmitting N
    unchanged lines yields ``upserted_count == conflict_count == N``.
    """
    total = len(lines)
    path = select_path(total, threshold)
    owns_trace = trace is None
    trace = trace or telemetry.start_trace(f"billing.{path}_upsert")
    if total == 0:
        return BulkUpsertResult(
            path=path, total_lines=0, upserted_count=0, conflict_count=0, trace=_summarize(trace, owns_trace)
        )

    created_at = datetime.now(timezone.utc)
    rows = [_row(line, created_at) for line in dedupe_lines(lines)]
    telemetry.increment(f"billing.{path}_path_used")
    if path == PATH_BULK:
        upserted, inserted = await _bulk_path(
            session,
            rows,
            trace=trace,
            telemetry=telemetry,
            organization_id=organization_id,
            user_id=user_id,
            run_id=run_id,
            chunk_size=bulk_chunk_size,
        )
    else:
        upserted, inserted = await _legacy_path(
            session,
            rows,
            trace=trace,
            organization_id=organization_id,
            user_id=user_id,
            run_id=run_id,
            chunk_size=legacy_chunk_size,
        )
    conflicts = total - inserted

    await record_event(
        session=session,
        organization_id=organization_id,
        actor_type="user",
        actor_id=user_id,
        event_type=BULK_SUMMARY_EVENT,
        outcome="success",
        resource_type="invoice_lines",
        trace_id=trace.trace_id,
        run_id=run_id,
        metadata={"path": path, "upserted_count": upserted, "conflict_count": conflicts, "total_lines": total},
    )
    summary = _summarize(trace, owns_trace)
    logger.info(
        "invoice_lines_upserted path=%s run_id=%s total=%s upserted=%s conflicts=%s",
        path,
        run_id,
        total,
        upserted,
        conflicts,
    )
    return BulkUpsertResult(
        path=path,
        total_lines=total,
        upserted_count=upserted,
        conflict_count=conflicts,
        trace=summary,
    )
