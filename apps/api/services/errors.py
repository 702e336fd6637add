"""Domain errors raised by the analysis lifecycle and the credit ledger.

Each error carries the HTTP status the API layer renders it with, so services
stay free of FastAPI imports.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class AnalysisError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code = 500
    error_code = "analysis_error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"detail": self.message, "error_code": self.error_code}
        if self.details:
            payload["details"] = self.details
        return payload


class BadRequest(AnalysisError):
    status_code = 400
    error_code = "bad_request"


class AssetMissing(AnalysisError):
    status_code = 422
    error_code = "asset_missing"


class InvalidAsset(AnalysisError):
    status_code = 422
    error_code = "invalid_asset"


class InsufficientFunds(AnalysisError):
    status_code = 402
    error_code = "insufficient_funds"

    def __init__(self, required: Any, available: Any):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}. Top up credits to continue.",
            details={"required": str(required), "available": str(available)},
        )


class ReportNotFound(AnalysisError):
    status_code = 404
    error_code = "report_not_found"


class NotReportOwner(AnalysisError):
    status_code = 403
    error_code = "not_report_owner"


class IllegalTransition(AnalysisError):
    status_code = 409
    error_code = "illegal_transition"


class RateLimited(AnalysisError):
    status_code = 429
    error_code = "rate_limited"


class LedgerError(AnalysisError):
    """Storage-level failure while applying a ledger mutation."""

    status_code = 500
    error_code = "ledger_error"


class ProviderUnavailable(AnalysisError):
    """Every configured provider failed with transient errors."""

    status_code = 503
    error_code = "provider_unavailable"


class IncompleteAIResponse(AnalysisError):
    """A provider answered but the payload broke the result contract."""

    status_code = 500
    error_code = "incomplete_ai_response"
