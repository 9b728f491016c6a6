from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status


class ReconciliationError(HTTPException):
    """Base for the structured errors returned by the reconciliation surface.

    ``detail`` is always a dict with a stable ``code`` so callers can tell
    "already done" from "not allowed" from "broken" without parsing messages.
    """

    http_status: int = status.HTTP_400_BAD_REQUEST
    code: str = "reconciliation_error"
    retryable: bool = False

    def __init__(self, message: str, **extra: Any) -> None:
        detail: dict[str, Any] = {"code": self.code, "message": message}
        if self.retryable:
            detail["retryable"] = True
        detail.update({k: v for k, v in extra.items() if v is not None})
        super().__init__(status_code=self.http_status, detail=detail)
        self.message = message


class ExtractionFailure(ReconciliationError):
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "extraction_failure"


class NotFound(ReconciliationError):
    http_status = status.HTTP_404_NOT_FOUND
    code = "not_found"


class AlreadyTerminal(ReconciliationError):
    http_status = status.HTTP_409_CONFLICT
    code = "already_terminal"


class EvidenceNotReady(ReconciliationError):
    http_status = status.HTTP_409_CONFLICT
    code = "evidence_not_ready"


class LedgerInvariantViolation(ReconciliationError):
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "ledger_invariant_violation"


class UpstreamUnavailable(ReconciliationError):
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "upstream_unavailable"
    retryable = True
