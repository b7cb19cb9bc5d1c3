"""Tamper-evident financial audit log.

Every organization owns one singly-linked chain: each row stores the hash of
its predecessor (``GENESIS`` for the first row) and a SHA-256 over its own
fields. Verification replays the chain and reports the first break; it never
repairs anything.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import json
import logging
from typing import Any, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from propledger.core.config import AUDIT_GENESIS_HASH
from propledger.domain.models import FinancialAuditLog
from propledger.persistence.db import advisory_xact_lock


logger = logging.getLogger(__name__)

PREVIOUS_HASH_MISMATCH = "previous_hash mismatch"
HASH_MISMATCH = "hash mismatch"


@dataclass(frozen=True)
class AuditChainEntry:
    action: str
    entity_type: str
    entity_id: str | None
    organization_id: str
    user_id: str | None
    data: dict[str, Any]
    previous_hash: str
    hash: str
    created_at: datetime
    id: int | None = None


@dataclass(frozen=True)
class ChainVerification:
    valid: bool
    total_entries: int
    broken_at: int | None = None
    reason: str | None = None
    entry_id: int | None = None


def _json_default(value: Any) -> str:
    # Decimals, dates and UUIDs are hashed by their string form.
    return str(value)


def normalize_data(data: dict[str, Any] | None) -> dict[str, Any]:
    # Store exactly what gets hashed: a JSON round trip fixes Decimal/date rendering up front.
    return json.loads(json.dumps(data or {}, default=_json_default))


def canonical_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def compute_entry_hash(
    *,
    action: str,
    entity_type: str,
    entity_id: str | None,
    organization_id: str,
    user_id: str | None,
    data: dict[str, Any],
    previous_hash: str,
    created_at: datetime,
) -> str:
    payload = {
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "organization_id": organization_id,
        "user_id": user_id,
        "data": data,
        "previous_hash": previous_hash,
        "timestamp": canonical_timestamp(created_at),
    }
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=_json_default)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def verify_entries(entries: Iterable[AuditChainEntry]) -> ChainVerification:
    # Entries must already be in chain order (created_at, id).
    expected_previous = AUDIT_GENESIS_HASH
    count = 0
    for index, entry in enumerate(entries):
        count += 1
        if entry.previous_hash != expected_previous:
            return ChainVerification(
                valid=False,
                total_entries=_remaining_count(entries, count),
                broken_at=index,
                reason=PREVIOUS_HASH_MISMATCH,
                entry_id=entry.id,
            )
        recomputed = compute_entry_hash(
            action=entry.action,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            organization_id=entry.organization_id,
            user_id=entry.user_id,
            data=entry.data,
            previous_hash=entry.previous_hash,
            created_at=entry.created_at,
        )
        if recomputed != entry.hash:
            return ChainVerification(
                valid=False,
                total_entries=_remaining_count(entries, count),
                broken_at=index,
                reason=HASH_MISMATCH,
                entry_id=entry.id,
            )
        expected_previous = entry.hash
    return ChainVerification(valid=True, total_entries=count)


def _remaining_count(entries: Iterable[AuditChainEntry], seen: int) -> int:
    # Report the full chain length even when verification stops early.
    if isinstance(entries, Sequence):
        return len(entries)
    return seen


def _to_entry(row: FinancialAuditLog) -> AuditChainEntry:
    return AuditChainEntry(
        id=row.id,
        action=row.action,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        organization_id=row.organization_id,
        user_id=row.user_id,
        data=dict(row.data or {}),
        previous_hash=row.previous_hash,
        hash=row.hash,
        created_at=row.created_at,
    )


async def _lock_organization_chain(session: AsyncSession, organization_id: str) -> None:
    # Concurrent appends for one organization would otherwise fork the chain.
    await advisory_xact_lock(session, f"audit:{organization_id}")


async def latest_link(session: AsyncSession, organization_id: str) -> tuple[str, datetime | None]:
    # Hash and timestamp of the chain head, or GENESIS for an empty chain.
    row = (
        await session.execute(
            select(FinancialAuditLog.hash, FinancialAuditLog.created_at)
            .where(FinancialAuditLog.organization_id == organization_id)
            .order_by(FinancialAuditLog.created_at.desc(), FinancialAuditLog.id.desc())
            .limit(1)
        )
    ).one_or_none()
    if row is None:
        return AUDIT_GENESIS_HASH, None
    return row[0], row[1]


async def append_entry(
    session: AsyncSession,
    *,
    action: str,
    entity_type: str,
    entity_id: str | None,
    organization_id: str,
    user_id: str | None = None,
    data: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
) -> AuditChainEntry:
    """Append one entry inside the caller's transaction.

    The row becomes visible (and the organization lock is released) when the
    caller commits, so the entry shares the fate of the mutation it records.
    """
    await _lock_organization_chain(session, organization_id)
    previous_hash, head_created_at = await latest_link(session, organization_id)
    created_at = occurred_at or datetime.now(timezone.utc)
    # Chain order is (created_at, id); never sort a new entry before the head.
    if head_created_at is not None and created_at < head_created_at:
        created_at = head_created_at
    normalized = normalize_data(data)
    digest = compute_entry_hash(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        organization_id=organization_id,
        user_id=user_id,
        data=normalized,
        previous_hash=previous_hash,
        created_at=created_at,
    )
    row = FinancialAuditLog(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        organization_id=organization_id,
        user_id=user_id,
        data=normalized,
        previous_hash=previous_hash,
        hash=digest,
        created_at=created_at,
    )
    session.add(row)
    await session.flush()
    return _to_entry(row)


async def list_entries(session: AsyncSession, organization_id: str) -> list[AuditChainEntry]:
    result = await session.execute(
        select(FinancialAuditLog)
        .where(FinancialAuditLog.organization_id == organization_id)
        .order_by(FinancialAuditLog.created_at.asc(), FinancialAuditLog.id.asc())
    )
    return [_to_entry(row) for row in result.scalars().all()]


async def verify_chain(session: AsyncSession, organization_id: str) -> ChainVerification:
    # Read-only replay; a break is reported, never corrected.
    entries = await list_entries(session, organization_id)
    verification = verify_entries(entries)
    if not verification.valid:
        logger.warning(
            "audit_chain_broken organization_id=%s index=%s reason=%s entry_id=%s",
            organization_id,
            verification.broken_at,
            verification.reason,
            verification.entry_id,
        )
    return verification
