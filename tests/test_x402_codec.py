# tests/test_x402_codec.py
"""
Unit tests for X-PAYMENT / X-PAYMENT-RESPONSE header encoding.
"""
import json
import pytest
from base64 import b64decode, b64encode

from app.x402.codec import (
    decode_payment_header,
    decode_payment_response,
    encode_payment_header,
    encode_payment_response,
)
from app.x402.errors import MalformedPayload
from app.x402.types import Authorization, ExactPaymentPayload, PaymentPayload, SettleResult


NONCE = "0x" + "ab" * 32
SIGNATURE = "0x" + "cd" * 65


def make_wire_payload(**overrides):
    payload = {
        "x402Version": 1,
        "scheme": "exact",
        "network": "polygon-amoy",
        "payload": {
            "signature": SIGNATURE,
            "authorization": {
                "from": "0x1234567890123456789012345678901234567890",
                "to": "0x209693Bc6afc0C5328bA36FaF03C514EF312287C",
                "value": "10000",
                "validAfter": "0",
                "validBefore": "1700000300",
                "nonce": NONCE,
            },
        },
    }
    payload.update(overrides)
    return payload


def encode(data) -> str:
    return b64encode(json.dumps(data).encode()).decode()


class TestDecodePaymentHeader:
    """Test decoding of the X-PAYMENT header."""

    def test_decode_valid_header(self):
        """A well-formed header decodes into a PaymentPayload."""
        payload = decode_payment_header(encode(make_wire_payload()))

        assert payload.x402_version == 1
        assert payload.scheme == "exact"
        assert payload.network == "polygon-amoy"
        assert payload.authorization.from_ == "0x1234567890123456789012345678901234567890"
        assert payload.authorization.value == "10000"
        assert payload.authorization.nonce == NONCE
        assert payload.payload.signature == SIGNATURE

    def test_empty_header(self):
        """An empty header is malformed."""
        with pytest.raises(MalformedPayload) as exc_info:
            decode_payment_header("   ")
        assert exc_info.value.reason == "empty_header"

    def test_invalid_base64(self):
        """Non-base64 input is malformed."""
        with pytest.raises(MalformedPayload) as exc_info:
            decode_payment_header("not-valid-base64!!!")
        assert exc_info.value.reason == "invalid_base64"
        assert exc_info.value.status_code == 400

    def test_invalid_json(self):
        """Base64 of something that is not JSON is malformed."""
        with pytest.raises(MalformedPayload) as exc_info:
            decode_payment_header(b64encode(b"not json").decode())
        assert exc_info.value.reason == "invalid_json"

    def test_json_array_rejected(self):
        """The header must encode a JSON object."""
        with pytest.raises(MalformedPayload) as exc_info:
            decode_payment_header(encode([1, 2, 3]))
        assert exc_info.value.reason == "invalid_json"

    def test_missing_fields(self):
        """A payload without an authorization is malformed."""
        data = make_wire_payload()
        del data["payload"]["authorization"]

        with pytest.raises(MalformedPayload) as exc_info:
            decode_payment_header(encode(data))
        assert exc_info.value.reason == "invalid_fields"
        assert "authorization" in exc_info.value.message

    def test_numeric_value_rejected(self):
        """Amounts must travel as decimal strings, never JSON numbers."""
        data = make_wire_payload()
        data["payload"]["authorization"]["value"] = 10000

        with pytest.raises(MalformedPayload) as exc_info:
            decode_payment_header(encode(data))
        assert exc_info.value.reason == "invalid_fields"

    def test_non_decimal_value_rejected(self):
        """Hex or negative amounts are rejected."""
        for bad in ("0x2710", "-1", "1.5", ""):
            data = make_wire_payload()
            data["payload"]["authorization"]["value"] = bad
            with pytest.raises(MalformedPayload):
                decode_payment_header(encode(data))

    def test_value_above_uint256_rejected(self):
        """Amounts must fit in a uint256."""
        data = make_wire_payload()
        data["payload"]["authorization"]["value"] = str(2 ** 256)

        with pytest.raises(MalformedPayload) as exc_info:
            decode_payment_header(encode(data))
        assert exc_info.value.reason == "invalid_fields"

    def test_overlong_digit_strings_rejected(self):
        """Digit strings longer than any uint256 are rejected without conversion."""
        for bad in ("1" * 79, "9" * 5000):
            for field in ("value", "validAfter", "validBefore"):
                data = make_wire_payload()
                data["payload"]["authorization"][field] = bad
                with pytest.raises(MalformedPayload) as exc_info:
                    decode_payment_header(encode(data))
                assert exc_info.value.reason == "invalid_fields"

    def test_uint256_max_accepted(self):
        """The largest uint256 is still a valid amount."""
        data = make_wire_payload()
        data["payload"]["authorization"]["value"] = str(2 ** 256 - 1)

        payload = decode_payment_header(encode(data))
        assert payload.authorization.value == str(2 ** 256 - 1)

    def test_boolean_version_rejected(self):
        """x402Version true is not version 1."""
        with pytest.raises(MalformedPayload) as exc_info:
            decode_payment_header(encode(make_wire_payload(x402Version=True)))
        assert exc_info.value.reason == "invalid_fields"

    def test_string_version_rejected(self):
        """x402Version "1" is not version 1."""
        with pytest.raises(MalformedPayload) as exc_info:
            decode_payment_header(encode(make_wire_payload(x402Version="1")))
        assert exc_info.value.reason == "invalid_fields"

    def test_short_nonce_rejected(self):
        """The nonce must be 32 bytes of hex."""
        data = make_wire_payload()
        data["payload"]["authorization"]["nonce"] = "0x1234"

        with pytest.raises(MalformedPayload) as exc_info:
            decode_payment_header(encode(data))
        assert exc_info.value.reason == "invalid_fields"

    def test_wrong_version(self):
        """Only x402Version 1 is accepted."""
        with pytest.raises(MalformedPayload) as exc_info:
            decode_payment_header(encode(make_wire_payload(x402Version=2)))
        assert exc_info.value.reason == "unsupported_version"

    def test_unsupported_scheme(self):
        """Schemes outside the allow-list are rejected."""
        with pytest.raises(MalformedPayload) as exc_info:
            decode_payment_header(encode(make_wire_payload(scheme="upto")))
        assert exc_info.value.reason == "unsupported_scheme"

    def test_unsupported_network(self):
        """Networks outside the allow-list are rejected."""
        with pytest.raises(MalformedPayload) as exc_info:
            decode_payment_header(
                encode(make_wire_payload(network="base")),
                allowed_networks={"polygon-amoy"},
            )
        assert exc_info.value.reason == "unsupported_network"

    def test_any_network_without_allow_list(self):
        """Without an allow-list any network name decodes."""
        payload = decode_payment_header(encode(make_wire_payload(network="base")))
        assert payload.network == "base"


class TestEncodePaymentHeader:
    """Test encoding of the X-PAYMENT header."""

    def test_round_trip_preserves_large_integers(self):
        """Decoding an encoded payload yields the same payload, digits intact."""
        huge = str(2 ** 256 - 1)
        payload = PaymentPayload(
            x402_version=1,
            scheme="exact",
            network="polygon-amoy",
            payload=ExactPaymentPayload(
                signature=SIGNATURE,
                authorization=Authorization(
                    from_="0x1234567890123456789012345678901234567890",
                    to="0x209693Bc6afc0C5328bA36FaF03C514EF312287C",
                    value=huge,
                    valid_after="0",
                    valid_before=huge,
                    nonce=NONCE,
                ),
            ),
        )

        decoded = decode_payment_header(encode_payment_header(payload))

        assert decoded == payload
        assert decoded.authorization.value == huge

    def test_uses_wire_field_names(self):
        """The encoded JSON uses camelCase wire names."""
        payload = decode_payment_header(encode(make_wire_payload()))
        raw = json.loads(b64decode(encode_payment_header(payload)))

        assert raw["x402Version"] == 1
        assert raw["payload"]["authorization"]["from"] == "0x1234567890123456789012345678901234567890"
        assert "validBefore" in raw["payload"]["authorization"]


class TestPaymentResponseHeader:
    """Test the X-PAYMENT-RESPONSE settlement receipt."""

    def test_round_trip(self):
        """A settlement result survives encoding."""
        result = SettleResult(success=True, transaction="0xdeadbeef", network="polygon-amoy")

        decoded = decode_payment_response(encode_payment_response(result))

        assert decoded.success is True
        assert decoded.transaction == "0xdeadbeef"
        assert decoded.network == "polygon-amoy"

    def test_missing_header(self):
        """No header means no receipt."""
        assert decode_payment_response(None) is None
        assert decode_payment_response("") is None

    def test_garbage_header(self):
        """An unreadable receipt yields None instead of raising."""
        assert decode_payment_response("%%%") is None
        assert decode_payment_response(b64encode(b"[]").decode()) is None

    def test_short_spelling(self):
        """A receipt in the short {settled, txRef} spelling is understood."""
        header = encode({"settled": True, "txRef": "0xfeed"})

        decoded = decode_payment_response(header)

        assert decoded.success is True
        assert decoded.transaction == "0xfeed"
