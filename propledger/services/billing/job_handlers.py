from __future__ import annotations

from datetime import date
from decimal import Decimal
import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError

from propledger.core.errors import JobPayloadError
from propledger.services.billing.bulk_upsert import InvoiceLineInput, upsert_invoice_lines
from propledger.services.billing.dunning import DUNNING_RUN_JOB, run_dunning, tiers_from_settings
from propledger.services.billing.ledger import sync_ledger
from propledger.services.billing.payments import LEDGER_SYNC_JOB, allocate_payment, reverse_payment
from propledger.services.billing.sepa import SEPA_SUBMIT_JOB, submit_sepa_batch
from propledger.services.jobs.handlers import HandlerRegistry, JobContext

if TYPE_CHECKING:
    from propledger.services.context import PipelineContext


logger = logging.getLogger(__name__)

PAYMENT_ALLOCATION_JOB = "payment_allocation"
INVOICE_LINES_UPSERT_JOB = "invoice_lines_bulk_upsert"
PAYMENT_REVERSAL_JOB = "payment_reversal"


class PaymentAllocationPayload(BaseModel):
    payment_id: str
    tenant_id: str
    amount: Decimal
    booking_date: date | None = None
    payment_type: str = "ueberweisung"
    reference: str | None = None
    user_id: str | None = None


class PaymentReversalPayload(BaseModel):
    payment_id: str
    # Omitted: reverse whatever is still available on the payment.
    amount: Decimal | None = None
    reversal_id: str | None = None
    reason: str | None = None
    booking_date: date | None = None
    user_id: str | None = None


class LedgerSyncPayload(BaseModel):
    # Written by allocate_payment; money travels as decimal strings.
    payment_id: str
    tenant_id: str
    amount: Decimal
    applied: Decimal
    unapplied: Decimal
    as_of: date | None = None


class InvoiceLinePayload(BaseModel):
    invoice_id: str
    line_type: str = Field(max_length=50)
    amount: Decimal
    unit_id: str | None = None
    description: str | None = None
    tax_rate: Decimal | None = None
    meta: dict[str, Any] = Field(default_factory=dict)


class InvoiceLinesUpsertPayload(BaseModel):
    run_id: str
    organization_id: str | None = None
    user_id: str | None = None
    lines: list[InvoiceLinePayload]


class DunningRunPayload(BaseModel):
    # Defaults to the job's organization and id.
    organization_id: str | None = None
    run_id: str | None = None
    as_of: date | None = None
    min_days_overdue: int = Field(default=14, ge=0)
    user_id: str | None = None


class SepaSubmitPayload(BaseModel):
    batch_id: str
    organization_id: str
    batch: dict[str, Any]
    user_id: str | None = None


def _parse(model: type[BaseModel], ctx: JobContext) -> Any:
    # Validate in the worker so malformed producers surface as job errors.
    try:
        return model.model_validate(ctx.payload)
    except ValidationError as exc:
        raise JobPayloadError(f"Invalid {ctx.job.job_type} payload for job {ctx.job.id}: {exc}") from exc


def _pipeline(ctx: JobContext) -> PipelineContext:
    if ctx.pipeline is None:
        raise RuntimeError(f"Job {ctx.job.id} dispatched without a pipeline context")
    return ctx.pipeline


async def handle_payment_allocation(ctx: JobContext) -> dict[str, Any]:
    payload: PaymentAllocationPayload = _parse(PaymentAllocationPayload, ctx)
    pipeline = _pipeline(ctx)
    with ctx.trace.span("allocate_payment") as span:
        span.set_attribute("payment_id", payload.payment_id)
        async with pipeline.sessionmaker() as session:
            async with session.begin():
                outcome = await allocate_payment(
                    session,
                    payment_id=payload.payment_id,
                    tenant_id=payload.tenant_id,
                    amount=payload.amount,
                    booking_date=payload.booking_date,
                    payment_type=payload.payment_type,
                    reference=payload.reference,
                    user_id=payload.user_id,
                    max_retries=pipeline.settings.job_default_max_retries,
                )
        span.set_attribute("invoices", len(outcome.applications))
    # The ledger job is only visible once the allocation has committed.
    if not outcome.replayed and outcome.ledger_job_id:
        await pipeline.queue.notify(outcome.ledger_job_id)
    return outcome.as_dict()


async def handle_payment_reversal(ctx: JobContext) -> dict[str, Any]:
    payload: PaymentReversalPayload = _parse(PaymentReversalPayload, ctx)
    pipeline = _pipeline(ctx)
    with ctx.trace.span("reverse_payment") as span:
        span.set_attribute("payment_id", payload.payment_id)
        async with pipeline.sessionmaker() as session:
            async with session.begin():
                # The job id keys the storno so a redelivered job replays instead of reversing twice.
                outcome = await reverse_payment(
                    session,
                    payment_id=payload.payment_id,
                    amount=payload.amount,
                    reversal_id=payload.reversal_id or ctx.job.id,
                    reason=payload.reason,
                    user_id=payload.user_id,
                    booking_date=payload.booking_date,
                    max_retries=pipeline.settings.job_default_max_retries,
                )
        span.set_attribute("invoices", len(outcome.invoices))
    if not outcome.replayed and outcome.ledger_job_id:
        await pipeline.queue.notify(outcome.ledger_job_id)
    return outcome.as_dict()


async def handle_ledger_sync(ctx: JobContext) -> dict[str, Any]:
    payload: LedgerSyncPayload = _parse(LedgerSyncPayload, ctx)
    pipeline = _pipeline(ctx)
    with ctx.trace.span("ledger_sync") as span:
        span.set_attribute("payment_id", payload.payment_id)
        async with pipeline.sessionmaker() as session:
            async with session.begin():
                result = await sync_ledger(
                    session,
                    payment_id=payload.payment_id,
                    tenant_id=payload.tenant_id,
                    applied=payload.applied,
                    unapplied=payload.unapplied,
                    as_of=payload.as_of,
                    annual_rate_pct=pipeline.settings.interest_annual_rate_pct,
                    tiers=tiers_from_settings(pipeline.settings),
                )
        span.set_attribute("created", len(result.created))
    return result.as_dict()


async def handle_invoice_lines_upsert(ctx: JobContext) -> dict[str, Any]:
    payload: InvoiceLinesUpsertPayload = _parse(InvoiceLinesUpsertPayload, ctx)
    pipeline = _pipeline(ctx)
    settings = pipeline.settings
    lines = [InvoiceLineInput(**line.model_dump()) for line in payload.lines]
    async with pipeline.sessionmaker() as session:
        async with session.begin():
            result = await upsert_invoice_lines(
                session,
                lines,
                user_id=payload.user_id,
                run_id=payload.run_id,
                organization_id=payload.organization_id or ctx.job.org_id,
                telemetry=pipeline.telemetry,
                threshold=settings.billing_bulk_threshold,
                bulk_chunk_size=settings.billing_bulk_chunk_size,
                legacy_chunk_size=settings.billing_legacy_chunk_size,
                trace=ctx.trace,
            )
    return result.as_dict()


async def handle_sepa_submit(ctx: JobContext) -> dict[str, Any]:
    payload: SepaSubmitPayload = _parse(SepaSubmitPayload, ctx)
    pipeline = _pipeline(ctx)
    with ctx.trace.span("psp_submit") as span:
        span.set_attribute("batch_id", payload.batch_id)
        async with pipeline.sessionmaker() as session:
            async with session.begin():
                submission = await submit_sepa_batch(
                    session,
                    pipeline.psp_transport,
                    batch_id=payload.batch_id,
                    organization_id=payload.organization_id,
                    batch=payload.batch,
                    telemetry=pipeline.telemetry,
                    user_id=payload.user_id,
                )
    return submission.as_dict()


async def handle_dunning_run(ctx: JobContext) -> dict[str, Any]:
    payload: DunningRunPayload = _parse(DunningRunPayload, ctx)
    pipeline = _pipeline(ctx)
    organization_id = payload.organization_id or ctx.job.org_id
    if not organization_id:
        raise JobPayloadError(f"dunning_run job {ctx.job.id} has no organization")
    with ctx.trace.span("dunning_run") as span:
        span.set_attribute("organization_id", organization_id)
        async with pipeline.sessionmaker() as session:
            async with session.begin():
                result = await run_dunning(
                    session,
                    organization_id=organization_id,
                    run_id=payload.run_id or ctx.job.id,
                    today=payload.as_of,
                    min_days_overdue=payload.min_days_overdue,
                    tiers=tiers_from_settings(pipeline.settings),
                    user_id=payload.user_id,
                )
        span.set_attribute("recorded", len(result.recorded))
    return result.as_dict()


def register_billing_handlers(registry: HandlerRegistry) -> None:
    registry.register(PAYMENT_ALLOCATION_JOB, handle_payment_allocation)
    registry.register(PAYMENT_REVERSAL_JOB, handle_payment_reversal)
    registry.register(LEDGER_SYNC_JOB, handle_ledger_sync)
    registry.register(INVOICE_LINES_UPSERT_JOB, handle_invoice_lines_upsert)
    registry.register(SEPA_SUBMIT_JOB, handle_sepa_submit)
    registry.register(DUNNING_RUN_JOB, handle_dunning_run)
    logger.debug("billing_handlers_registered job_types=%s", ",".join(registry.job_types()))
