# tests/test_x402_facilitator.py
"""
Unit tests for the facilitator client.
"""
import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
from x402.types import SettleResponse, VerifyResponse

from app.x402.errors import FacilitatorUnavailable
from app.x402.facilitator import FacilitatorClient
from app.x402.types import Authorization, ExactPaymentPayload, PaymentPayload, PaymentRequirements

PAY_TO = "0x209693Bc6afc0C5328bA36FaF03C514EF312287C"
AMOY_USDC = "0x41E94Eb019C0762f9Bfcf9Fb1E58725BfB0e7582"


@pytest.fixture
def requirements():
    return PaymentRequirements(
        network="polygon-amoy",
        max_amount_required="10000",
        pay_to=PAY_TO,
        asset=AMOY_USDC,
        resource="http://testserver/weather",
        extra={"name": "USDC", "version": "2"},
    )


@pytest.fixture
def payload():
    return PaymentPayload(
        x402_version=1,
        scheme="exact",
        network="polygon-amoy",
        payload=ExactPaymentPayload(
            signature="0x" + "cd" * 65,
            authorization=Authorization(
                from_="0x1234567890123456789012345678901234567890",
                to=PAY_TO,
                value="10000",
                valid_after="0",
                valid_before="1700000300",
                nonce="0x" + "ab" * 32,
            ),
        ),
    )


def make_client(sdk_client, timeout=3.0):
    return FacilitatorClient("https://facilitator.example.com/", timeout=timeout, client=sdk_client)


class TestClientSetup:
    """Test construction of the SDK client."""

    def test_sdk_client_configured_with_url(self):
        """Without an injected client the SDK client gets the base URL."""
        with patch("app.x402.facilitator.SDKFacilitatorClient") as mock_sdk:
            client = FacilitatorClient("https://example.com/x402/", timeout=7.0)

        mock_sdk.assert_called_once_with({"url": "https://example.com/x402"})
        assert client.base_url == "https://example.com/x402"
        assert client.timeout == 7.0


class TestVerify:
    """Test verify calls."""

    @pytest.mark.asyncio
    async def test_arguments_passed_to_sdk(self, requirements, payload):
        """The SDK receives the payload first, then the requirements."""
        sdk_client = MagicMock()
        sdk_client.verify = AsyncMock(return_value=VerifyResponse(**{"isValid": True}))

        await make_client(sdk_client).verify(requirements, payload)

        sdk_client.verify.assert_awaited_once_with(payload, requirements)

    @pytest.mark.asyncio
    async def test_valid(self, requirements, payload):
        """A positive verdict is returned."""
        sdk_client = MagicMock()
        sdk_client.verify = AsyncMock(return_value=VerifyResponse(**{"isValid": True, "payer": "0xabc"}))

        result = await make_client(sdk_client).verify(requirements, payload)

        assert result.is_valid is True
        assert result.payer == "0xabc"

    @pytest.mark.asyncio
    async def test_invalid_is_returned_not_raised(self, requirements, payload):
        """A negative verdict is a result, with its reason."""
        sdk_client = MagicMock()
        sdk_client.verify = AsyncMock(
            return_value=VerifyResponse(
                **{"isValid": False, "invalidReason": "invalid_exact_evm_payload_signature"}
            )
        )

        result = await make_client(sdk_client).verify(requirements, payload)

        assert result.is_valid is False
        assert result.invalid_reason == "invalid_exact_evm_payload_signature"

    @pytest.mark.asyncio
    async def test_unreachable(self, requirements, payload):
        """Transport errors raise FacilitatorUnavailable."""
        sdk_client = MagicMock()
        sdk_client.verify = AsyncMock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(FacilitatorUnavailable) as exc_info:
            await make_client(sdk_client).verify(requirements, payload)
        assert exc_info.value.reason == "unreachable"
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_timeout(self, requirements, payload):
        """A facilitator slower than the timeout raises FacilitatorUnavailable."""
        async def slow_verify(payment, payment_requirements):
            await asyncio.sleep(1)

        sdk_client = MagicMock()
        sdk_client.verify = slow_verify

        with pytest.raises(FacilitatorUnavailable) as exc_info:
            await make_client(sdk_client, timeout=0.01).verify(requirements, payload)
        assert exc_info.value.reason == "timeout"

    @pytest.mark.asyncio
    async def test_unreadable_response(self, requirements, payload):
        """A body without a verdict raises FacilitatorUnavailable."""
        def unreadable(payment, payment_requirements):
            # What the SDK raises for an error body such as {"error": "internal"}
            return VerifyResponse(**{"error": "internal"})

        for side_effect in (ValueError("no json"), unreadable):
            sdk_client = MagicMock()
            sdk_client.verify = AsyncMock(side_effect=side_effect)

            with pytest.raises(FacilitatorUnavailable) as exc_info:
                await make_client(sdk_client).verify(requirements, payload)
            assert exc_info.value.reason == "invalid_response"


class TestSettle:
    """Test settle calls."""

    @pytest.mark.asyncio
    async def test_success(self, requirements, payload):
        """A successful settlement carries the transaction."""
        sdk_client = MagicMock()
        sdk_client.settle = AsyncMock(
            return_value=SettleResponse(
                **{"success": True, "transaction": "0xdeadbeef", "network": "polygon-amoy"}
            )
        )

        result = await make_client(sdk_client).settle(requirements, payload)

        sdk_client.settle.assert_awaited_once_with(payload, requirements)
        assert result.success is True
        assert result.transaction == "0xdeadbeef"
        assert result.network == "polygon-amoy"

    @pytest.mark.asyncio
    async def test_failure_is_returned_not_raised(self, requirements, payload):
        """A refused settlement is a result, with its reason."""
        sdk_client = MagicMock()
        sdk_client.settle = AsyncMock(
            return_value=SettleResponse(**{"success": False, "errorReason": "insufficient_funds"})
        )

        result = await make_client(sdk_client).settle(requirements, payload)

        assert result.success is False
        assert result.error_reason == "insufficient_funds"

    @pytest.mark.asyncio
    async def test_unreachable(self, requirements, payload):
        """A settle transport failure raises FacilitatorUnavailable."""
        sdk_client = MagicMock()
        sdk_client.settle = AsyncMock(side_effect=httpx.ReadTimeout("slow"))

        with pytest.raises(FacilitatorUnavailable) as exc_info:
            await make_client(sdk_client).settle(requirements, payload)
        assert exc_info.value.reason == "unreachable"
