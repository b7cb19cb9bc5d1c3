from __future__ import annotations

# Re-export billing services for centralized imports.

from propledger.services.billing.allocation import (
    PaymentSplit,
    allocate,
    carry_forward,
    classify_mahnstatus,
    classify_status,
    split_payment,
)
from propledger.services.billing.bulk_upsert import BulkUpsertResult, InvoiceLineInput, upsert_invoice_lines
from propledger.services.billing.dunning import (
    DunningRunResult,
    DunningTier,
    calculate_interest,
    dunning_tier,
    list_dunning_candidates,
    run_dunning,
)
from propledger.services.billing.ledger import LedgerSyncResult, sync_ledger
from propledger.services.billing.payments import (
    AllocationOutcome,
    ReversalOutcome,
    allocate_payment,
    reconcile_allocations,
    reverse_payment,
)
from propledger.services.billing.sepa import HttpxPspTransport, SepaSubmission, submit_sepa_batch

__all__ = [
    "PaymentSplit",
    "allocate",
    "carry_forward",
    "classify_mahnstatus",
    "classify_status",
    "split_payment",
    "BulkUpsertResult",
    "InvoiceLineInput",
    "upsert_invoice_lines",
    "DunningRunResult",
    "DunningTier",
    "calculate_interest",
    "dunning_tier",
    "list_dunning_candidates",
    "run_dunning",
    "LedgerSyncResult",
    "sync_ledger",
    "AllocationOutcome",
    "ReversalOutcome",
    "allocate_payment",
    "reconcile_allocations",
    "reverse_payment",
    "HttpxPspTransport",
    "SepaSubmission",
    "submit_sepa_batch",
]
