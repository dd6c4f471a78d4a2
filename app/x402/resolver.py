"""
Recipient resolution for x402 payment requirements.

The payable address of this service can rotate from one payment to the
next (stealth/Safe addresses issued per unit of value received), so it is
resolved fresh for every challenge and every verification. Nothing here
caches an address.

Retries are the caller's business: a failed lookup raises
RecipientUnavailable immediately.
"""
import logging
import re
from typing import Any, Optional, Protocol
from urllib.parse import quote, urljoin

import requests
from requests.exceptions import RequestException

from app.x402.errors import RecipientUnavailable

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_usable_address(address: Any) -> bool:
    """True for a 0x-prefixed 20-byte hex address."""
    return isinstance(address, str) and bool(_ADDRESS_RE.match(address))


class RecipientResolver(Protocol):
    def resolve(self, service_identity: str) -> str:
        ...


class StaticRecipientResolver:
    """Always resolves to a single configured address."""

    def __init__(self, address: Optional[str]):
        self._address = address

    def resolve(self, service_identity: str) -> str:
        if not is_usable_address(self._address):
            raise RecipientUnavailable(
                f"No payable address configured for {service_identity}",
                reason="not_configured",
            )
        return self._address


class StealthRecipientResolver:
    """
    Resolves the current payable address from the stealth address service.

    POST {base_url}/api/user/{username}/stealth with
    {chainId, tokenAddress, tokenAmount} answers
    {success, data: {safeAddress: {address}, address}, error}.
    The Safe address is preferred; the bare stealth address is only
    accepted when ``allow_stealth_fallback`` is set.
    """

    def __init__(
        self,
        base_url: str,
        chain_id: int,
        token_address: str,
        token_amount: str = "50",
        timeout: float = 10.0,
        allow_stealth_fallback: bool = True,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/") + "/"
        self.chain_id = chain_id
        self.token_address = token_address
        self.token_amount = token_amount
        self.timeout = timeout
        self.allow_stealth_fallback = allow_stealth_fallback
        self._http = session or requests

    def resolve(self, service_identity: str) -> str:
        """
        Look up the payable address for a username.

        Raises:
            RecipientUnavailable: On network failure, timeout, non-2xx status,
                an unsuccessful response or a response without a usable address
        """
        api_url = urljoin(self.base_url, f"api/user/{quote(service_identity, safe='')}/stealth")
        body = {
            "chainId": self.chain_id,
            "tokenAddress": self.token_address,
            "tokenAmount": self.token_amount,
        }

        try:
            response = self._http.post(api_url, json=body, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except RequestException as e:
            logger.error(f"x402: Recipient resolution failed for {service_identity} ({api_url}): {e}")
            raise RecipientUnavailable(
                f"Recipient resolution service unreachable: {e}",
                reason="resolver_unreachable",
            ) from e
        except ValueError as e:
            logger.error(f"x402: Recipient resolution returned invalid JSON for {service_identity}: {e}")
            raise RecipientUnavailable(
                "Recipient resolution service returned invalid JSON",
                reason="invalid_response",
            ) from e

        if not isinstance(data, dict) or not data.get("success"):
            error = data.get("error") if isinstance(data, dict) else None
            logger.error(f"x402: Recipient resolution unsuccessful for {service_identity}: {error or 'Unknown error'}")
            raise RecipientUnavailable(
                f"Recipient resolution failed: {error or 'Unknown error'}",
                reason="resolution_failed",
            )

        result = data.get("data")
        if not isinstance(result, dict):
            result = {}
        safe = result.get("safeAddress")
        safe_address = safe.get("address") if isinstance(safe, dict) else None
        if is_usable_address(safe_address):
            logger.info(f"x402: Using Safe address {safe_address} for {service_identity}")
            return safe_address

        stealth_address = result.get("address")
        if self.allow_stealth_fallback and is_usable_address(stealth_address):
            logger.info(f"x402: Using stealth address {stealth_address} for {service_identity} (no Safe address)")
            return stealth_address

        logger.error(f"x402: No usable address in resolution response for {service_identity}")
        raise RecipientUnavailable(
            "No valid address found in resolution response",
            reason="no_address",
        )
