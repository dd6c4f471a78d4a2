"""
Encoding and decoding of x402 transport headers.

X-PAYMENT carries a base64-encoded JSON PaymentPayload from the client;
X-PAYMENT-RESPONSE carries a base64-encoded JSON SettleResult back.
"""
import binascii
import json
import logging
import re
from typing import Iterable, Optional

from pydantic import ValidationError
from x402.encoding import safe_base64_decode, safe_base64_encode

from app.x402.errors import MalformedPayload
from app.x402.types import EXACT_SCHEME, X402_VERSION, PaymentPayload, SettleResult

logger = logging.getLogger(__name__)

X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"


# Standard alphabet with optional padding; the SDK decoder skips stray characters
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")


def _b64_json(data: dict) -> str:
    return safe_base64_encode(json.dumps(data, separators=(",", ":")).encode("utf-8"))


def decode_payment_header(
    header_value: Optional[str],
    allowed_schemes: Iterable[str] = (EXACT_SCHEME,),
    allowed_networks: Optional[Iterable[str]] = None,
) -> PaymentPayload:
    """
    Decode the X-PAYMENT header into a PaymentPayload.

    Args:
        header_value: Base64-encoded JSON payment payload
        allowed_schemes: Schemes the server accepts
        allowed_networks: Networks the server accepts (None accepts any)

    Returns:
        The validated PaymentPayload

    Raises:
        MalformedPayload: If the header is not valid base64, not valid JSON,
            misses required fields, carries the wrong x402Version, or names a
            scheme/network outside the allow-lists
    """
    if not header_value or not header_value.strip():
        raise MalformedPayload("X-PAYMENT header is empty", reason="empty_header")

    header_value = header_value.strip()
    if not _BASE64_RE.match(header_value):
        raise MalformedPayload("X-PAYMENT header is not valid base64", reason="invalid_base64")

    try:
        # safe_base64_decode returns str, not bytes
        decoded_str = safe_base64_decode(header_value)
    except UnicodeDecodeError as e:
        raise MalformedPayload("X-PAYMENT header is not valid JSON", reason="invalid_json") from e
    except (binascii.Error, ValueError) as e:
        raise MalformedPayload("X-PAYMENT header is not valid base64", reason="invalid_base64") from e
    if decoded_str is None:
        raise MalformedPayload("X-PAYMENT header is not valid base64", reason="invalid_base64")

    try:
        data = json.loads(decoded_str)
    except json.JSONDecodeError as e:
        raise MalformedPayload("X-PAYMENT header is not valid JSON", reason="invalid_json") from e

    if not isinstance(data, dict):
        raise MalformedPayload("X-PAYMENT header must encode a JSON object", reason="invalid_json")

    try:
        payload = PaymentPayload.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise MalformedPayload(f"X-PAYMENT payload has invalid fields: {fields}", reason="invalid_fields") from e

    if payload.x402_version != X402_VERSION:
        raise MalformedPayload(
            f"Unsupported x402Version {payload.x402_version}, expected {X402_VERSION}",
            reason="unsupported_version",
        )

    if payload.scheme not in set(allowed_schemes):
        raise MalformedPayload(f"Unsupported payment scheme: {payload.scheme}", reason="unsupported_scheme")

    if allowed_networks is not None and payload.network not in set(allowed_networks):
        raise MalformedPayload(f"Unsupported payment network: {payload.network}", reason="unsupported_network")

    return payload


def encode_payment_header(payload: PaymentPayload) -> str:
    """Encode a PaymentPayload for the X-PAYMENT header."""
    return _b64_json(payload.to_wire())


def encode_payment_response(settle_result: SettleResult) -> str:
    """Encode a settlement result for the X-PAYMENT-RESPONSE header."""
    return _b64_json(settle_result.model_dump(by_alias=True, exclude_none=True))


def decode_payment_response(header_value: Optional[str]) -> Optional[SettleResult]:
    """
    Decode an X-PAYMENT-RESPONSE header.

    The receipt is informational for the payer, so an unreadable header
    yields None instead of an error.
    """
    if not header_value:
        return None
    try:
        data = json.loads(safe_base64_decode(header_value))
        return SettleResult.model_validate(data)
    except (binascii.Error, TypeError, ValueError, ValidationError) as e:
        logger.warning(f"x402: Could not decode X-PAYMENT-RESPONSE header: {e}")
        return None
