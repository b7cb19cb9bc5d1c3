from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from propledger.domain.models import AuditEvent


logger = logging.getLogger(__name__)

# Bank details and credentials never reach operational audit rows.
_SENSITIVE_MARKERS = ("iban", "bic", "api_key", "authorization", "token", "secret", "password")
_REDACTED = "[REDACTED]"


def sanitize_metadata(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(key): _REDACTED
            if any(marker in str(key).lower() for marker in _SENSITIVE_MARKERS)
            else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def build_event(
    *,
    organization_id: str | None,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    metadata: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
    **columns: str | None,
) -> AuditEvent:
    """Build an ``audit_events`` row.

    ``columns`` carries the optional string columns: resource_type,
    resource_id, trace_id, run_id and error_code.
    """
    return AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        organization_id=organization_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        metadata_json=sanitize_metadata(metadata or {}),
        **columns,
    )


async def record_event(
    *,
    session: AsyncSession | None = None,
    sessionmaker: async_sessionmaker[AsyncSession] | None = None,
    best_effort: bool = True,
    **fields: Any,
) -> None:
    event = build_event(**fields)
    if session is not None:
        # Joins the caller's transaction.
        session.add(event)
        return

    if sessionmaker is None:
        raise ValueError("record_event needs either a session or a sessionmaker")
    async with sessionmaker() as audit_session:
        try:
            audit_session.add(event)
            await audit_session.commit()
        except SQLAlchemyError as exc:
            await audit_session.rollback()
            if not best_effort:
                raise
            logger.warning(
                "audit_event_write_failed event_type=%s trace_id=%s",
                event.event_type,
                event.trace_id,
                exc_info=exc,
            )
