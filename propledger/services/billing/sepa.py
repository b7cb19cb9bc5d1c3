from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import time
from typing import Any, Protocol

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from propledger.core.config import Settings
from propledger.core.errors import PspRejectedError, PspTransientError
from propledger.services.audit_chain import append_entry
from propledger.services.telemetry import Telemetry


logger = logging.getLogger(__name__)

SEPA_SUBMIT_JOB = "sepa_submit"


@dataclass(frozen=True)
class PspResponse:
    # Opaque PSP contract: ok flag, HTTP-like status and a JSON body.
    ok: bool
    status: int
    body: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SepaSubmission:
    batch_id: str
    organization_id: str
    psp_batch_id: str | None
    status: int

    def as_dict(self) -> dict[str, Any]:
        return {"batch_id": self.batch_id, "psp_batch_id": self.psp_batch_id, "status": self.status}


class PspTransport(Protocol):
    async def submit(self, batch: dict[str, Any]) -> PspResponse: ...


class HttpxPspTransport:
    """POSTs SEPA batches to the PSP over ``httpx``."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        timeout_ms: int = 8000,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_ms / 1000.0
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> HttpxPspTransport:
        return cls(base_url=settings.psp_base_url, api_key=settings.psp_api_key, timeout_ms=settings.psp_timeout_ms)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def submit(self, batch: dict[str, Any]) -> PspResponse:
        body = json.dumps(batch, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")
        url = f"{self._base_url}/sepa/batches"
        if self._client is not None:
            response = await self._client.post(url, content=body, headers=self._headers(), timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, content=body, headers=self._headers())
        try:
            parsed = response.json()
        except ValueError:
            parsed = {"error": response.text[:500]}
        if not isinstance(parsed, dict):
            parsed = {"data": parsed}
        return PspResponse(ok=response.is_success, status=response.status_code, body=parsed)


async def submit_sepa_batch(
    session: AsyncSession,
    transport: PspTransport,
    *,
    batch_id: str,
    organization_id: str,
    batch: dict[str, Any],
    telemetry: Telemetry,
    user_id: str | None = None,
) -> SepaSubmission:
    """Hand a prepared batch to the PSP and record the acceptance in the audit chain.

    Server-side and transport failures raise ``PspTransientError``; any other
    refusal raises ``PspRejectedError``. Both propagate to the job queue.
    """
    start = time.monotonic()
    try:
        response = await transport.submit(batch)
    except httpx.HTTPError as exc:
        telemetry.increment("sepa.transport_error")
        raise PspTransientError(f"PSP transport failed for batch {batch_id}: {exc}") from exc
    finally:
        telemetry.histogram("sepa.submit.ms", (time.monotonic() - start) * 1000.0)

    if not response.ok:
        error = str(response.body.get("error") or f"status {response.status}")
        if response.status >= 500:
            telemetry.increment("sepa.transient_failure")
            raise PspTransientError(f"PSP unavailable for batch {batch_id}: {error}")
        telemetry.increment("sepa.rejected")
        logger.warning("sepa_batch_rejected batch_id=%s status=%s", batch_id, response.status)
        raise PspRejectedError(f"PSP rejected batch {batch_id}: {error}")

    psp_batch_id = response.body.get("pspBatchId") or response.body.get("psp_batch_id")
    await append_entry(
        session,
        action="sepa_batch.submitted",
        entity_type="sepa_batches",
        entity_id=batch_id,
        organization_id=organization_id,
        user_id=user_id,
        data={"psp_batch_id": psp_batch_id, "status": response.status},
    )
    telemetry.increment("sepa.submitted")
    logger.info("sepa_batch_submitted batch_id=%s psp_batch_id=%s", batch_id, psp_batch_id)
    return SepaSubmission(
        batch_id=batch_id,
        organization_id=organization_id,
        psp_batch_id=psp_batch_id,
        status=response.status,
    )
