"""
Error taxonomy for the x402 payment gate.

Each error knows the HTTP status it maps to, so the middleware can turn it
into a response without re-deciding the policy. Payment problems map to
402/400; problems with the gate's own dependencies map to 5xx, so that a
client never answers an outage by signing a brand-new payment.
"""
from typing import Any, Dict, Optional


class X402Error(Exception):
    """Base error for the x402 payment gate."""
    status_code = 500
    error_code = "x402_error"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.reason:
            body["reason"] = self.reason
        return body


class PaymentRequired(X402Error):
    """No payment was attached to a request for a priced route."""
    status_code = 402
    error_code = "payment_required"


class MalformedPayload(X402Error):
    """The X-PAYMENT header could not be decoded into a PaymentPayload."""
    status_code = 400
    error_code = "malformed_payload"


class RequirementMismatch(X402Error):
    """The payment does not satisfy the current payment requirements."""
    status_code = 402
    error_code = "requirement_mismatch"


class VerificationFailed(X402Error):
    """The facilitator (or the replay guard) rejected the payment."""
    status_code = 402
    error_code = "verification_failed"


class SettlementFailed(X402Error):
    """
    Settlement did not complete.

    402 when the failure is attributable to the payer (e.g. insufficient
    funds), 502 when the settlement infrastructure failed.
    """
    error_code = "settlement_failed"

    def __init__(self, message: str, reason: Optional[str] = None, infrastructure: bool = False):
        super().__init__(message, reason)
        self.infrastructure = infrastructure
        if infrastructure:
            self.status_code = 502
            self.error_code = "settlement_unavailable"
        else:
            self.status_code = 402


class RecipientUnavailable(X402Error):
    """The payable address for this service could not be resolved."""
    status_code = 503
    error_code = "recipient_unavailable"


class FacilitatorUnavailable(X402Error):
    """The facilitator could not be reached or answered with a server error."""
    status_code = 502
    error_code = "facilitator_unavailable"


class DownstreamPaymentError(X402Error):
    """
    A chained call to a second priced service failed.

    ``stage`` names the leg step that failed: discovery, selection,
    signing, payment or request.
    """
    status_code = 502
    error_code = "downstream_payment_failed"

    def __init__(
        self,
        message: str,
        service_id: str,
        stage: str,
        reason: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, reason)
        self.service_id = service_id
        self.stage = stage
        self.downstream_status = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service_id,
            "stage": self.stage,
            "reason": self.reason or self.message,
            "status_code": self.downstream_status,
        }
