"""
FastAPI middleware for x402 payment verification.

This module provides HTTP middleware that:
1. Intercepts requests to priced routes (everything else passes through)
2. Builds fresh payment requirements (the recipient may rotate per request)
3. Returns 402 Payment Required when no X-PAYMENT header is attached
4. Decodes and checks the payment against the requirements
5. Verifies, then settles, the payment via the facilitator
6. Only then lets the request reach the route handler

The resource is never served before the facilitator has answered, and
never before settlement succeeded when settlement is enabled.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from app.core.config import Settings, settings
from app.x402 import audit
from app.x402.codec import (
    X_PAYMENT_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    decode_payment_header,
    encode_payment_response,
)
from app.x402.errors import (
    FacilitatorUnavailable,
    MalformedPayload,
    PaymentRequired,
    RecipientUnavailable,
    RequirementMismatch,
    SettlementFailed,
    VerificationFailed,
    X402Error,
)
from app.x402.facilitator import FacilitatorClient
from app.x402.networks import get_network
from app.x402.pricing import PaymentRequirementCatalog, load_route_prices, route_key_for
from app.x402.replay import ReplayGuard, get_replay_guard, replay_key
from app.x402.resolver import RecipientResolver, StaticRecipientResolver, StealthRecipientResolver
from app.x402.types import EXACT_SCHEME, X402_VERSION, PaymentPayload, PaymentRequirements, SettleResult, VerifyResult

logger = logging.getLogger(__name__)

# nginx convention for "client closed request"; never reaches the client
CLIENT_CLOSED_REQUEST = 499


class Facilitator(Protocol):
    async def verify(self, requirements: PaymentRequirements, payload: PaymentPayload) -> VerifyResult:
        ...

    async def settle(self, requirements: PaymentRequirements, payload: PaymentPayload) -> SettleResult:
        ...


@dataclass
class GateConfig:
    """Everything the payment gate needs, injected explicitly."""
    catalog: PaymentRequirementCatalog
    facilitator: Facilitator
    enabled: bool = True
    settle_payments: bool = True
    replay_guard: Optional[ReplayGuard] = None
    allowed_networks: Optional[set] = None
    clock: Callable[[], float] = field(default=time.time)

    @property
    def networks(self) -> set:
        if self.allowed_networks is not None:
            return set(self.allowed_networks)
        return self.catalog.networks


def build_recipient_resolver(config: Settings) -> RecipientResolver:
    """Stealth resolver when a resolution service is configured, else the static address."""
    if config.RECIPIENT_RESOLVER_URL:
        network = get_network(config.X402_NETWORK)
        return StealthRecipientResolver(
            base_url=str(config.RECIPIENT_RESOLVER_URL),
            chain_id=network.chain_id,
            token_address=network.asset,
            token_amount=config.RECIPIENT_TOKEN_AMOUNT,
            timeout=config.RECIPIENT_RESOLVER_TIMEOUT_SECONDS,
            allow_stealth_fallback=config.RECIPIENT_ALLOW_STEALTH_FALLBACK,
        )
    return StaticRecipientResolver(config.X402_PAY_TO_ADDRESS)


def build_gate_config(config: Settings) -> GateConfig:
    """Build the gate configuration from application settings."""
    catalog = PaymentRequirementCatalog(
        route_prices=load_route_prices(config.X402_NETWORK, config.X402_ROUTE_PRICES),
        resolver=build_recipient_resolver(config),
        service_identity=config.RECIPIENT_USERNAME or config.SERVICE_ID,
        max_timeout_seconds=config.X402_MAX_TIMEOUT_SECONDS,
    )
    facilitator = FacilitatorClient(
        base_url=str(config.X402_FACILITATOR_URL),
        timeout=config.X402_FACILITATOR_TIMEOUT_SECONDS,
    )
    return GateConfig(
        catalog=catalog,
        facilitator=facilitator,
        enabled=config.X402_ENABLED,
        settle_payments=config.X402_SETTLE_PAYMENTS,
        replay_guard=get_replay_guard() if config.X402_REPLAY_GUARD_ENABLED else None,
    )


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


async def client_disconnected(request: Request) -> bool:
    """
    Check whether the client has gone away.

    The body is cached first so the disconnect check can never swallow it
    before the route handler reads it.
    """
    await request.body()
    return await request.is_disconnected()


def validate_payment_against_requirements(
    payload: PaymentPayload,
    requirements: PaymentRequirements,
    now: int,
) -> None:
    """
    Check a decoded payment against freshly built requirements.

    Checks run in order: scheme, network, asset, recipient, amount,
    time window (validAfter <= now < validBefore).

    Raises:
        RequirementMismatch: On the first violated requirement
    """
    authorization = payload.authorization

    if payload.scheme != requirements.scheme:
        raise RequirementMismatch(
            f"Payment scheme '{payload.scheme}' does not match required '{requirements.scheme}'",
            reason="scheme_mismatch",
        )

    if payload.network != requirements.network:
        raise RequirementMismatch(
            f"Payment network '{payload.network}' does not match required '{requirements.network}'",
            reason="network_mismatch",
        )

    # The signed domain's verifyingContract is the network's asset
    if get_network(payload.network).asset.lower() != requirements.asset.lower():
        raise RequirementMismatch(
            f"Payment asset on '{payload.network}' does not match required asset '{requirements.asset}'",
            reason="asset_mismatch",
        )

    if authorization.to.lower() != requirements.pay_to.lower():
        raise RequirementMismatch(
            f"Payment recipient '{authorization.to}' does not match required recipient '{requirements.pay_to}'",
            reason="recipient_mismatch",
        )

    if int(authorization.value) < requirements.amount:
        raise RequirementMismatch(
            f"Payment value {authorization.value} is below required {requirements.max_amount_required}",
            reason="insufficient_amount",
        )

    if now < int(authorization.valid_after):
        raise RequirementMismatch("Payment authorization is not yet valid", reason="not_yet_valid")

    if now >= int(authorization.valid_before):
        raise RequirementMismatch("Payment authorization has expired", reason="expired")


def create_402_response(
    payment_requirements: PaymentRequirements,
    error_message: str = "Payment required",
    error: Optional[X402Error] = None,
) -> JSONResponse:
    """
    Create an HTTP 402 Payment Required response.

    Args:
        payment_requirements: The payment requirements to include
        error_message: Human-readable message for the response
        error: The rejection that caused this 402, if any

    Returns:
        JSONResponse with 402 status and payment details
    """
    response_body = {
        "x402Version": X402_VERSION,
        "error": error.error_code if error else "payment_required",
        "message": error_message,
        "accepts": [payment_requirements.to_wire()],
    }
    if error is not None and error.reason:
        response_body["reason"] = error.reason

    return JSONResponse(status_code=402, content=response_body)


def create_error_response(error: X402Error) -> JSONResponse:
    """Create a non-402 error response (400 malformed payload, 5xx infrastructure)."""
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


class _ClientGone(Exception):
    pass


class PaymentGateMiddleware(BaseHTTPMiddleware):
    """
    x402 payment gate for FastAPI.

    For a priced route this middleware:
    - Returns HTTP 402 with payment requirements if no payment is attached
    - Rejects malformed payments (400) and mismatching payments (402)
      without contacting the facilitator
    - Verifies and settles the payment through the facilitator
    - Serves the route only after a successful verification/settlement

    Unpriced routes, and every route when the gate is disabled, pass through.
    """

    def __init__(self, app, config: Optional[GateConfig] = None):
        super().__init__(app)
        self._config = config

    @property
    def config(self) -> GateConfig:
        """Lazy initialization from settings when no config was injected."""
        if self._config is None:
            self._config = build_gate_config(settings)
        return self._config

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        config = self.config

        if not config.enabled:
            return await call_next(request)

        route_key = route_key_for(request.url.path, request.query_params)
        if not config.catalog.is_priced(route_key):
            return await call_next(request)

        client_ip = get_client_ip(request)
        request_id = audit.generate_request_id()
        logger.info(f"x402: Priced request from {client_ip}: {request.method} {request.url.path} (route {route_key})")
        audit.log_request_received(client_ip, request.method, request.url.path, route_key, request_id=request_id)

        try:
            requirements = await run_in_threadpool(
                config.catalog.requirements_for, route_key, str(request.url)
            )
        except RecipientUnavailable as e:
            logger.error(f"x402: Recipient unavailable for {route_key}: {e}")
            audit.log_recipient_unavailable(client_ip, route_key, e.reason or e.message, request_id=request_id)
            return create_error_response(e)

        payment_header = request.headers.get(X_PAYMENT_HEADER)
        if not payment_header:
            logger.info(f"x402: No X-PAYMENT header, returning 402 for {requirements.max_amount_required} units")
            audit.log_payment_required_sent(
                client_ip,
                requirements.max_amount_required,
                requirements.network,
                requirements.pay_to,
                requirements.resource,
                request_id=request_id,
            )
            e = PaymentRequired("X-PAYMENT header is required")
            return create_402_response(requirements, e.message, error=e)

        try:
            payload = decode_payment_header(
                payment_header,
                allowed_schemes=(EXACT_SCHEME,),
                allowed_networks=config.networks,
            )
        except MalformedPayload as e:
            logger.warning(f"x402: Malformed X-PAYMENT header from {client_ip}: {e}")
            audit.log_payment_rejected(client_ip, e.error_code, e.reason, request_id=request_id)
            return create_error_response(e)

        authorization = payload.authorization
        payer = authorization.from_
        audit.log_payment_received(client_ip, payer, authorization.value, payload.network, request_id=request_id)

        try:
            validate_payment_against_requirements(payload, requirements, now=int(config.clock()))
        except RequirementMismatch as e:
            logger.warning(f"x402: Payment from {payer} does not meet requirements: {e.reason}")
            audit.log_payment_rejected(client_ip, e.error_code, e.reason, payer=payer, request_id=request_id)
            return create_402_response(requirements, e.message, error=e)

        key = replay_key(payer, requirements.asset, authorization.nonce)
        guard = config.replay_guard
        if guard is not None and not guard.reserve(key, int(authorization.valid_before)):
            e = VerificationFailed("Payment nonce has already been used", reason="nonce_already_used")
            audit.log_payment_rejected(client_ip, e.error_code, e.reason, payer=payer, request_id=request_id)
            return create_402_response(requirements, e.message, error=e)

        try:
            settle_result = await self._verify_and_settle(
                request, config, requirements, payload, client_ip, request_id
            )
        except _ClientGone:
            logger.info(f"x402: Client {client_ip} disconnected before a decision, payment not applied")
            if guard is not None:
                guard.release(key)
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        except FacilitatorUnavailable as e:
            audit.log_payment_failed(client_ip, e.message, "verify", wallet_address=payer, request_id=request_id)
            audit.log_error(
                client_ip,
                type(e).__name__,
                e.message,
                context={"stage": "verify", "reason": e.reason, "route": route_key},
                wallet_address=payer,
                request_id=request_id,
            )
            if guard is not None:
                guard.release(key)
            return create_error_response(e)
        except SettlementFailed as e:
            audit.log_payment_failed(client_ip, e.reason or e.message, "settle", wallet_address=payer, request_id=request_id)
            if guard is not None:
                if e.infrastructure:
                    guard.release(key)
                else:
                    guard.consume(key)
            if e.infrastructure:
                audit.log_error(
                    client_ip,
                    type(e).__name__,
                    e.message,
                    context={"stage": "settle", "reason": e.reason, "route": route_key},
                    wallet_address=payer,
                    request_id=request_id,
                )
                return create_error_response(e)
            return create_402_response(requirements, e.message, error=e)
        except VerificationFailed as e:
            if guard is not None:
                guard.consume(key)
            return create_402_response(requirements, e.message, error=e)
        except Exception as e:
            logger.exception(f"x402: Unexpected error while processing payment from {payer}")
            audit.log_error(
                client_ip,
                type(e).__name__,
                str(e),
                context={"stage": "verify_settle", "route": route_key},
                wallet_address=payer,
                request_id=request_id,
            )
            if guard is not None:
                guard.release(key)
            raise

        if guard is not None:
            guard.consume(key)

        # Lets handlers tie their own audit events (e.g. chained payments) to this one
        request.state.x402_request_id = request_id
        response = await call_next(request)

        if not 200 <= response.status_code < 300:
            logger.warning(f"x402: Paid request from {payer} produced status {response.status_code}")

        if settle_result is not None:
            response.headers[X_PAYMENT_RESPONSE_HEADER] = encode_payment_response(settle_result)

        return response

    async def _verify_and_settle(
        self,
        request: Request,
        config: GateConfig,
        requirements: PaymentRequirements,
        payload: PaymentPayload,
        client_ip: str,
        request_id: str,
    ) -> Optional[SettleResult]:
        """
        Verify, then (if enabled) settle a payment.

        Returns:
            The settlement result, or None when settlement is disabled

        Raises:
            VerificationFailed: Facilitator rejected the payment
            FacilitatorUnavailable: No verdict could be obtained
            SettlementFailed: Settlement was refused or could not be performed
        """
        payer = payload.authorization.from_

        verify_result = await config.facilitator.verify(requirements, payload)
        audit.log_payment_verified(
            client_ip, payer, verify_result.is_valid, verify_result.invalid_reason, request_id=request_id
        )

        if not verify_result.is_valid:
            reason = verify_result.invalid_reason or "unknown"
            logger.warning(f"x402: Payment verification failed for {payer}: {reason}")
            raise VerificationFailed(f"Payment verification failed: {reason}", reason=reason)

        logger.info(f"x402: Payment verified for payer {verify_result.payer or payer}")

        if await client_disconnected(request):
            raise _ClientGone()

        if not config.settle_payments:
            return None

        try:
            settle_result = await config.facilitator.settle(requirements, payload)
        except FacilitatorUnavailable as e:
            raise SettlementFailed(
                "Settlement service unavailable",
                reason=e.reason,
                infrastructure=True,
            ) from e

        audit.log_payment_settled(
            client_ip,
            payer,
            settle_result.transaction,
            settle_result.network or requirements.network,
            settle_result.success,
            settle_result.error_reason,
            request_id=request_id,
        )

        if not settle_result.success:
            reason = settle_result.error_reason or "unknown"
            logger.warning(f"x402: Payment settlement failed for {payer}: {reason}")
            raise SettlementFailed(f"Payment settlement failed: {reason}", reason=reason)

        logger.info(f"x402: Payment settled, transaction {settle_result.transaction}")
        return settle_result
