"""
Client for an x402 facilitator.

The facilitator verifies signed payment authorizations and settles them
on chain. The HTTP calls are made by the x402 SDK FacilitatorClient:
- /verify answers {isValid, invalidReason?, payer?}
- /settle answers {success, transaction?, network?, errorReason?}

Transport failures, timeouts and answers without a readable verdict raise
FacilitatorUnavailable; a well-formed negative answer is returned as a
result, never raised.
"""
import asyncio
import logging
from typing import Any, Awaitable, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError
from x402.facilitator import FacilitatorClient as SDKFacilitatorClient, FacilitatorConfig

from app.x402.errors import FacilitatorUnavailable
from app.x402.types import PaymentPayload, PaymentRequirements, SettleResult, VerifyResult

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT", bound=BaseModel)


class FacilitatorClient:
    """Facilitator client over the x402 SDK, with bounded timeouts."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        client: Optional[Any] = None,
    ):
        self.base_url = str(base_url).rstrip("/")
        self.timeout = timeout
        self._client = client or SDKFacilitatorClient(FacilitatorConfig(url=self.base_url))

    async def _call(self, operation: str, call: Awaitable[Any], result_type: Type[ResultT]) -> ResultT:
        try:
            response = await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"x402: Facilitator {operation} timed out after {self.timeout}s ({self.base_url})")
            raise FacilitatorUnavailable(f"Facilitator {operation} timed out", reason="timeout") from e
        except httpx.HTTPError as e:
            logger.error(f"x402: Facilitator {operation} request failed ({self.base_url}): {e}")
            raise FacilitatorUnavailable(f"Facilitator {operation} request failed: {e}", reason="unreachable") from e
        except (ValueError, TypeError) as e:
            # Non-JSON bodies and error bodies without a verdict land here
            logger.error(f"x402: Facilitator {operation} returned an unreadable response: {e}")
            raise FacilitatorUnavailable(
                f"Facilitator {operation} returned an invalid response",
                reason="invalid_response",
            ) from e

        try:
            return result_type.model_validate(response.model_dump(by_alias=True))
        except (AttributeError, ValidationError) as e:
            logger.error(f"x402: Facilitator {operation} returned an unexpected result: {e}")
            raise FacilitatorUnavailable(
                f"Facilitator {operation} returned an invalid response",
                reason="invalid_response",
            ) from e

    async def verify(self, requirements: PaymentRequirements, payload: PaymentPayload) -> VerifyResult:
        """
        Ask the facilitator whether a payment is valid for the requirements.

        Raises:
            FacilitatorUnavailable: If no verdict could be obtained
        """
        result = await self._call("verify", self._client.verify(payload, requirements), VerifyResult)
        logger.info(f"x402: Facilitator verify -> valid={result.is_valid} reason={result.invalid_reason}")
        return result

    async def settle(self, requirements: PaymentRequirements, payload: PaymentPayload) -> SettleResult:
        """
        Ask the facilitator to settle a verified payment on chain.

        Raises:
            FacilitatorUnavailable: If no settlement answer could be obtained
        """
        result = await self._call("settle", self._client.settle(payload, requirements), SettleResult)
        logger.info(f"x402: Facilitator settle -> success={result.success} tx={result.transaction}")
        return result
