"""
Wire models for the x402 protocol.

The models extend the x402 SDK types (camelCase on the wire through
aliases, snake_case attributes in Python) with the stricter rules this
gate enforces on untrusted input:
- Amounts and timestamps are uint256 decimal strings, never JSON numbers,
  so large integers never pass through floating point
- Nonces are 32 bytes of hex
- x402Version must be a real integer (true is not 1)
"""
import re
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, ConfigDict, Field, StrictInt, field_validator
from x402.common import x402_VERSION
from x402.types import (
    EIP3009Authorization,
    ExactPaymentPayload as SDKExactPaymentPayload,
    PaymentPayload as SDKPaymentPayload,
    PaymentRequirements as SDKPaymentRequirements,
    SettleResponse,
    VerifyResponse,
    x402PaymentRequiredResponse,
)

X402_VERSION = x402_VERSION
EXACT_SCHEME = "exact"

UINT256_MAX = 2 ** 256 - 1
# len(str(UINT256_MAX)); longer strings are rejected before any int() conversion
UINT256_MAX_DIGITS = 78

_UINT_RE = re.compile(r"^[0-9]+$")
_HEX_RE = re.compile(r"^0x[0-9a-fA-F]*$")
_NONCE_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def _check_uint_string(value: str) -> str:
    if len(value) > UINT256_MAX_DIGITS or not _UINT_RE.match(value):
        raise ValueError(f"must be a uint256 decimal string, got {value[:80]!r}")
    if int(value) > UINT256_MAX:
        raise ValueError("must be below 2**256")
    return value


class PaymentRequirements(SDKPaymentRequirements):
    """What the server accepts as payment for one resource."""
    model_config = ConfigDict(populate_by_name=True)

    scheme: str = EXACT_SCHEME
    # Any registered network, not only the SDK's built-in list
    network: str
    max_amount_required: str = Field(..., alias="maxAmountRequired")
    resource: str = ""
    description: str = ""
    mime_type: str = Field("application/json", alias="mimeType")
    pay_to: str = Field(..., alias="payTo")
    max_timeout_seconds: int = Field(300, alias="maxTimeoutSeconds")
    asset: str
    extra: Optional[Dict[str, Any]] = None

    @field_validator("max_amount_required")
    @classmethod
    def validate_amount(cls, value: str) -> str:
        return _check_uint_string(value)

    @property
    def amount(self) -> int:
        return int(self.max_amount_required)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Authorization(EIP3009Authorization):
    """EIP-3009 TransferWithAuthorization parameters signed by the payer."""
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(..., alias="from")
    to: str
    value: str
    valid_after: str = Field(..., alias="validAfter")
    valid_before: str = Field(..., alias="validBefore")
    nonce: str

    @field_validator("value", "valid_after", "valid_before")
    @classmethod
    def validate_uint(cls, value: str) -> str:
        return _check_uint_string(value)

    @field_validator("nonce")
    @classmethod
    def validate_nonce(cls, value: str) -> str:
        if not _NONCE_RE.match(value):
            raise ValueError("nonce must be 0x followed by 32 bytes of hex")
        return value


class ExactPaymentPayload(SDKExactPaymentPayload):
    """Scheme-specific payload for the 'exact' scheme."""
    signature: str
    authorization: Authorization

    @field_validator("signature")
    @classmethod
    def validate_signature(cls, value: str) -> str:
        if not _HEX_RE.match(value) or len(value) <= 2:
            raise ValueError("signature must be a 0x-prefixed hex string")
        return value


class PaymentPayload(SDKPaymentPayload):
    """Payment carried by the client in the X-PAYMENT header."""
    model_config = ConfigDict(populate_by_name=True)

    x402_version: StrictInt = Field(..., alias="x402Version")
    scheme: str
    network: str
    payload: ExactPaymentPayload

    @property
    def authorization(self) -> Authorization:
        return self.payload.authorization

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PaymentRequiredResponse(x402PaymentRequiredResponse):
    """Body of an HTTP 402 challenge."""
    model_config = ConfigDict(populate_by_name=True)

    x402_version: int = Field(X402_VERSION, alias="x402Version")
    error: str = ""
    accepts: List[PaymentRequirements] = Field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class VerifyResult(VerifyResponse):
    """Facilitator answer to a verify call."""
    model_config = ConfigDict(populate_by_name=True)

    is_valid: bool = Field(
        ...,
        validation_alias=AliasChoices("isValid", "valid", "is_valid"),
        serialization_alias="isValid",
    )
    invalid_reason: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("invalidReason", "reason", "invalid_reason"),
        serialization_alias="invalidReason",
    )
    payer: Optional[str] = None


class SettleResult(SettleResponse):
    """Facilitator answer to a settle call, also carried in X-PAYMENT-RESPONSE."""
    model_config = ConfigDict(populate_by_name=True)

    success: bool = Field(
        ...,
        validation_alias=AliasChoices("success", "settled"),
        serialization_alias="success",
    )
    transaction: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("transaction", "txRef", "transactionHash"),
        serialization_alias="transaction",
    )
    network: Optional[str] = None
    error_reason: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("errorReason", "reason", "error_reason"),
        serialization_alias="errorReason",
    )
    payer: Optional[str] = None
