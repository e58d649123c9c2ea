"""Exception hierarchy for the reconciliation engine.

Errors fall into four groups that the orchestrator handles differently:
- Transient HTTP/network failures (retried in place by the CRM client)
- Authentication failures (one-way legacy fallback, then fatal)
- Storage failures, including the distinguished uniqueness violation used
  by the insert-then-reconcile path
- Job-level failures raised after the sync job row has been marked as error
"""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base class for all reconciliation engine errors."""


# -- External CRM -------------------------------------------------------------


class RDStationHTTPError(SyncError):
    """Raised when the RD Station CRM API returns a non-success response.

    Attributes:
        status_code: HTTP status code returned (or synthesized for network
            failures: 504 for timeouts, 500 for transport errors).
        detail: Short message extracted from the response body.
    """

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        message = f"rd_http_{status_code}"
        if detail:
            message = f"{message}:{detail}"
        super().__init__(message)

    @property
    def is_client_error(self) -> bool:
        """True for the 400/401/403 family surfaced to callers as a 200 body."""
        return self.status_code in (400, 401, 403)


class RDStationTransientError(RDStationHTTPError):
    """Retriable HTTP status (408, 425, 429, 5xx gateway family)."""


class RDStationAuthError(RDStationHTTPError):
    """401 that cannot be recovered by switching to the legacy auth mode."""

    def __init__(self, detail: str) -> None:
        super().__init__(401, detail)


# -- Storage ------------------------------------------------------------------


class StoreError(SyncError):
    """Raised when a storage operation fails."""


class UniqueViolationError(StoreError):
    """Raised when an insert collides with a uniqueness constraint.

    Attributes:
        constraint: Name of the violated constraint, when known.
    """

    def __init__(self, constraint: str = "", message: str = "") -> None:
        self.constraint = constraint
        super().__init__(message or f"unique constraint violated: {constraint or 'unknown'}")


# -- Company registry ---------------------------------------------------------


class RegistryLookupError(SyncError):
    """Raised when the company registry lookup is unavailable."""

    def __init__(self, tax_id: str, status_code: int | None = None) -> None:
        self.tax_id = tax_id
        self.status_code = status_code
        suffix = f" ({status_code})" if status_code is not None else ""
        super().__init__(f"Company registry unavailable for {tax_id}{suffix}")


# -- Job level ----------------------------------------------------------------


class SyncJobFailed(SyncError):
    """Raised by the orchestrator after the job row has been marked as error.

    Attributes:
        sync_job_id: The job row that recorded the failure.
        original_error: The exception that aborted the invocation.
        partial_result: Summary counters accumulated before the failure.
    """

    def __init__(
        self,
        sync_job_id: str,
        original_error: Exception,
        partial_result: dict[str, Any] | None = None,
    ) -> None:
        self.sync_job_id = sync_job_id
        self.original_error = original_error
        self.partial_result = partial_result or {}
        super().__init__(str(original_error) or "Unexpected RD Station sync failure")

    @property
    def is_client_error(self) -> bool:
        return isinstance(self.original_error, RDStationHTTPError) and (
            self.original_error.is_client_error
        )
