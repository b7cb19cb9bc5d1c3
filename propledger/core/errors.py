from __future__ import annotations


class PropLedgerError(Exception):
    """Base error for the billing pipeline."""


class JobHandlerNotFoundError(PropLedgerError):
    """No handler registered for a job type; never retried."""


class JobPayloadError(PropLedgerError):
    """Job payload failed validation."""


class PaymentNotFoundError(PropLedgerError):
    """Referenced payment does not exist."""


class AllocationError(PropLedgerError):
    """Payment could not be allocated (e.g. conflicting replay)."""


class PspTransportError(PropLedgerError):
    """PSP transport failure."""


class PspTransientError(PspTransportError):
    """PSP unavailable or returned 5xx; safe to retry."""


class PspRejectedError(PspTransportError):
    """PSP rejected the batch."""
