"""Error taxonomy for the billing engine.

Services return a ``Rejection`` for expected business refusals; these
exceptions are for the transport edge and for failures that must abort the
current operation. ``server.py`` maps each class to an HTTP response.
"""
from typing import Optional, Dict, Any

from models import Rejection, RejectionReason


class BillingError(Exception):
    status_code = 400
    code = "BILLING_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(BillingError):
    """Malformed input, rejected before any state is touched."""
    status_code = 422
    code = "VALIDATION_ERROR"


class RejectionError(BillingError):
    """Business-rule refusal; the reason code is safe to show to the end user."""
    status_code = 400

    def __init__(self, reason: RejectionReason, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=reason.value, details=details)
        self.reason = reason

    @classmethod
    def from_rejection(cls, rejection: Rejection) -> "RejectionError":
        return cls(rejection.reason, rejection.message, rejection.details)


class ConflictError(BillingError):
    """Lost a concurrent race for a scarce resource. Re-fetch and retry once."""
    status_code = 409
    code = "CONFLICT"


class UpstreamError(BillingError):
    """Payment provider or email provider call failed."""
    status_code = 502
    code = "UPSTREAM_ERROR"


class SignatureError(BillingError):
    """Webhook envelope failed authenticity verification."""
    status_code = 400
    code = "INVALID_SIGNATURE"
