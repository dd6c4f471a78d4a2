"""
Client side of x402: pay a second priced service on behalf of this one.

A chained call runs the full payment handshake against a downstream
service:
1. Discovery: unauthenticated GET; 200 means the route is free, 402 carries
   the payment requirements
2. Selection: pick the first acceptable requirement (scheme, network,
   spending cap)
3. Signing: build and sign a fresh TransferWithAuthorization
4. Payment: repeat the GET with the X-PAYMENT header

Every failure raises DownstreamPaymentError naming the stage, so the
caller can answer with a partial result instead of an error. A failed
payment is never retried with a new nonce.
"""
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import requests
from pydantic import ValidationError
from requests.exceptions import RequestException

from app.core.config import Settings
from app.x402 import audit
from app.x402.codec import (
    X_PAYMENT_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    decode_payment_response,
    encode_payment_header,
)
from app.x402.errors import DownstreamPaymentError
from app.x402.networks import get_network
from app.x402.signing import TypedDataSigner, domain_for_requirements
from app.x402.types import (
    EXACT_SCHEME,
    X402_VERSION,
    ExactPaymentPayload,
    PaymentPayload,
    PaymentRequiredResponse,
    PaymentRequirements,
)

logger = logging.getLogger(__name__)


@dataclass
class FreeResponse:
    """Discovery answered 200: the downstream route costs nothing."""
    data: Any


@dataclass
class ChainPayment:
    """One payment this service made to a downstream service."""
    payer: str
    pay_to: str
    amount: str
    network: str
    transaction: Optional[str] = None


@dataclass
class DownstreamResult:
    service_id: str
    data: Any
    paid: bool
    payment: Optional[ChainPayment] = None


@dataclass
class FlowLeg:
    """One hop of a payment flow; amount is in atomic units, None when free."""
    service_id: str
    amount: Optional[int] = None
    failed: bool = False


def format_usd(atomic: Union[int, str], decimals: int = 6) -> str:
    """Format an atomic token amount as dollars: 10000 -> '$0.01', 1000 -> '$0.001'."""
    amount = Decimal(int(atomic)).scaleb(-decimals)
    whole, _, fraction = format(amount.normalize(), "f").partition(".")
    return f"${whole}.{fraction.ljust(2, '0')}"


def describe_payment_flow(legs: Iterable[FlowLeg], decimals: int = 6) -> str:
    """
    Describe who paid whom, e.g. 'User → agent1 ($0.01) → agent2 ($0.001)'.

    A free leg reads ' - agent2 (free)', a failed one ' - agent2 payment failed'.
    """
    flow = "User"
    for leg in legs:
        if leg.failed:
            flow += f" - {leg.service_id} payment failed"
        elif leg.amount is None:
            flow += f" - {leg.service_id} (free)"
        else:
            flow += f" → {leg.service_id} ({format_usd(leg.amount, decimals)})"
    return flow


def _response_data(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_reason(response: requests.Response) -> str:
    """Best-effort machine-readable reason from an error response."""
    body = _response_data(response)
    if isinstance(body, dict):
        for key in ("reason", "error", "message"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return f"http_{response.status_code}"


class ChainedClient:
    """
    Pays downstream x402 services with this service's own key.

    Args:
        signer: Signs authorizations; its address is the payer
        allowed_networks: Networks this service is willing to pay on
        max_amount: Spending cap per call, in atomic units
        timeout: Timeout for each outbound request, in seconds
        service_id: Name of this service in payment flows and audit logs
    """

    def __init__(
        self,
        signer: TypedDataSigner,
        allowed_networks: Iterable[str],
        max_amount: int,
        timeout: float = 60.0,
        service_id: str = "agent1",
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.signer = signer
        self.allowed_networks = set(allowed_networks)
        self.max_amount = max_amount
        self.timeout = timeout
        self.service_id = service_id
        self._http = session or requests
        self._clock = clock

    def fetch_requirements(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        service_id: str = "downstream",
    ) -> Union[FreeResponse, PaymentRequiredResponse]:
        """Unauthenticated GET: either the free answer or the 402 challenge."""
        try:
            response = self._http.get(url, params=params, timeout=self.timeout)
        except RequestException as e:
            logger.error(f"x402: Discovery request to {service_id} failed: {e}")
            raise DownstreamPaymentError(
                f"Could not reach {service_id}: {e}",
                service_id=service_id,
                stage="discovery",
                reason="unreachable",
            ) from e

        if response.status_code == 200:
            return FreeResponse(data=_response_data(response))

        if response.status_code != 402:
            raise DownstreamPaymentError(
                f"{service_id} answered discovery with HTTP {response.status_code}",
                service_id=service_id,
                stage="discovery",
                reason=_error_reason(response),
                status_code=response.status_code,
            )

        try:
            return PaymentRequiredResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise DownstreamPaymentError(
                f"{service_id} sent an unreadable 402 challenge",
                service_id=service_id,
                stage="discovery",
                reason="invalid_payment_required",
                status_code=402,
            ) from e

    def select_requirements(
        self,
        accepts: List[PaymentRequirements],
        service_id: str = "downstream",
    ) -> PaymentRequirements:
        """First requirement with the exact scheme, an allowed network and an amount within the cap."""
        for requirements in accepts:
            if requirements.scheme != EXACT_SCHEME:
                continue
            if requirements.network not in self.allowed_networks:
                continue
            if requirements.amount > self.max_amount:
                logger.info(
                    f"x402: {service_id} asks {requirements.max_amount_required} on {requirements.network}, "
                    f"above cap {self.max_amount}"
                )
                continue
            try:
                network = get_network(requirements.network)
            except ValueError:
                continue
            # Only sign for the network's known token contract
            if requirements.asset.lower() != network.asset.lower():
                continue
            return requirements

        raise DownstreamPaymentError(
            f"No acceptable payment option offered by {service_id}",
            service_id=service_id,
            stage="selection",
            reason="no_acceptable_requirements",
            status_code=402,
        )

    def build_payment(self, requirements: PaymentRequirements, service_id: str = "downstream") -> str:
        """Sign a fresh authorization for the requirements and encode it as an X-PAYMENT header."""
        try:
            authorization = self.signer.build_authorization(
                pay_to=requirements.pay_to,
                value=requirements.amount,
                valid_before=int(self._clock()) + requirements.max_timeout_seconds,
            )
            signature = self.signer.sign_authorization(domain_for_requirements(requirements), authorization)
            payload = PaymentPayload(
                x402_version=X402_VERSION,
                scheme=requirements.scheme,
                network=requirements.network,
                payload=ExactPaymentPayload(signature=signature, authorization=authorization),
            )
        except (ValueError, TypeError) as e:
            logger.error(f"x402: Could not sign payment for {service_id}: {e}")
            raise DownstreamPaymentError(
                f"Could not sign payment for {service_id}",
                service_id=service_id,
                stage="signing",
                reason="signing_failed",
            ) from e

        return encode_payment_header(payload)

    def call(
        self,
        service_id: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> DownstreamResult:
        """
        Call a downstream service, paying for it when it asks.

        Raises:
            DownstreamPaymentError: At whichever stage the call failed
        """
        requirements: Optional[PaymentRequirements] = None
        try:
            discovery = self.fetch_requirements(url, params, service_id)
            if isinstance(discovery, FreeResponse):
                logger.info(f"x402: {service_id} served {url} without payment")
                return DownstreamResult(service_id=service_id, data=discovery.data, paid=False)

            requirements = self.select_requirements(discovery.accepts, service_id)
            logger.info(
                f"x402: Paying {service_id} {requirements.max_amount_required} units "
                f"on {requirements.network} to {requirements.pay_to}"
            )
            header = self.build_payment(requirements, service_id)
            response = self._paid_request(service_id, url, params, header)
        except DownstreamPaymentError as e:
            audit.log_downstream_payment(
                payer=self.signer.address,
                service_id=service_id,
                pay_to=requirements.pay_to if requirements else None,
                amount=requirements.max_amount_required if requirements else None,
                network=requirements.network if requirements else None,
                success=False,
                stage=e.stage,
                reason=e.reason,
                request_id=request_id,
            )
            raise

        receipt = decode_payment_response(response.headers.get(X_PAYMENT_RESPONSE_HEADER))
        payment = ChainPayment(
            payer=self.signer.address,
            pay_to=requirements.pay_to,
            amount=requirements.max_amount_required,
            network=requirements.network,
            transaction=receipt.transaction if receipt else None,
        )
        audit.log_downstream_payment(
            payer=payment.payer,
            service_id=service_id,
            pay_to=payment.pay_to,
            amount=payment.amount,
            network=payment.network,
            success=True,
            transaction=payment.transaction,
            request_id=request_id,
        )
        logger.info(f"x402: Paid {service_id}, transaction {payment.transaction}")

        return DownstreamResult(
            service_id=service_id,
            data=_response_data(response),
            paid=True,
            payment=payment,
        )

    def _paid_request(
        self,
        service_id: str,
        url: str,
        params: Optional[Dict[str, Any]],
        header: str,
    ) -> requests.Response:
        try:
            response = self._http.get(
                url,
                params=params,
                headers={X_PAYMENT_HEADER: header},
                timeout=self.timeout,
            )
        except RequestException as e:
            logger.error(f"x402: Paid request to {service_id} failed: {e}")
            raise DownstreamPaymentError(
                f"Paid request to {service_id} failed: {e}",
                service_id=service_id,
                stage="request",
                reason="unreachable",
            ) from e

        if response.status_code == 402:
            reason = _error_reason(response)
            logger.warning(f"x402: {service_id} rejected our payment: {reason}")
            raise DownstreamPaymentError(
                f"{service_id} rejected the payment: {reason}",
                service_id=service_id,
                stage="payment",
                reason=reason,
                status_code=402,
            )

        if not 200 <= response.status_code < 300:
            raise DownstreamPaymentError(
                f"{service_id} answered the paid request with HTTP {response.status_code}",
                service_id=service_id,
                stage="request",
                reason=_error_reason(response),
                status_code=response.status_code,
            )

        return response


def get_chained_client(config: Settings) -> Optional[ChainedClient]:
    """Chained client for the configured downstream agent, or None when chaining is not configured."""
    if not (config.DOWNSTREAM_AGENT_URL and config.AGENT_PRIVATE_KEY):
        return None

    return ChainedClient(
        signer=TypedDataSigner(config.AGENT_PRIVATE_KEY),
        allowed_networks={config.X402_NETWORK},
        max_amount=config.DOWNSTREAM_MAX_AMOUNT,
        timeout=config.DOWNSTREAM_TIMEOUT_SECONDS,
        service_id=config.SERVICE_ID,
    )
