from __future__ import annotations


class EsgFlowError(Exception):
    """Base error for ESGFlow."""

    code = "ESGFLOW_ERROR"


class ConfigurationError(EsgFlowError):
    """Missing credentials, invalid connector type, malformed config or an empty mapping.

    Never retried; surfaced to the caller immediately.
    """

    code = "CONFIGURATION_ERROR"


class TransientError(EsgFlowError):
    """Timeout, non-2xx response or rate limiting from a source system.

    Retryable by the scheduler with backoff.
    """

    code = "TRANSIENT_ERROR"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SyncInProgressError(TransientError):
    """Another sync for the same connector is still running."""

    code = "SYNC_IN_PROGRESS"


class ValidationError(EsgFlowError):
    """A value fails a domain sanity check (data-quality finding, not a crash)."""

    code = "VALIDATION_ERROR"


class IntegrityError(EsgFlowError):
    """Audit chain verification found a broken link."""

    code = "AUDIT_CHAIN_BROKEN"

    def __init__(self, message: str, *, broken_at: int | None = None, entry_id: int | None = None) -> None:
        super().__init__(message)
        self.broken_at = broken_at
        self.entry_id = entry_id


class NotFoundError(EsgFlowError):
    """Requested resource does not exist for the organization."""

    code = "NOT_FOUND"


class ConflictError(EsgFlowError):
    """Request conflicts with current state (e.g. deleting a referenced connector)."""

    code = "CONFLICT"
