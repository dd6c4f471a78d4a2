# app/api/endpoints/chat.py
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import urljoin
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from requests.exceptions import RequestException
import logging

from app.core.config import settings
from app.services.answer_service import generate_answer
from app.api.models.chat import ChatResponse
from app.x402.chained import FlowLeg, describe_payment_flow, get_chained_client
from app.x402.errors import DownstreamPaymentError
from app.x402.networks import get_network
from app.x402.pricing import load_route_prices, price_to_atomic_units, route_key_for

router = APIRouter()
logger = logging.getLogger(__name__)

PRO_ROUTE = "/chat/pro"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _missing_question() -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "error": "Question parameter is required",
            "message": "Please provide a question using ?question=your_question",
        },
    )


def _answer(question: str, mode: str) -> Dict[str, Any]:
    try:
        answer = generate_answer(question, mode=mode)
    except RequestException as e:
        logger.error(f"Answer backend request failed: {e}")
        raise HTTPException(
            status_code=502,
            detail="Could not reach the answer backend"
        )
    except ValueError as e:
        logger.error(f"Answer backend returned an unusable response: {e}")
        raise HTTPException(
            status_code=502,
            detail="Answer backend returned an unusable response"
        )

    return ChatResponse(
        question=question,
        answer=answer,
        timestamp=_now(),
        mode=mode,
        agent=settings.SERVICE_ID if mode == "pro" else None,
    ).model_dump(exclude_none=True)


def _own_price(route_key: str) -> Optional[int]:
    """What this service charges for a route, in atomic units; None if free."""
    route = load_route_prices(settings.X402_NETWORK, settings.X402_ROUTE_PRICES).get(route_key)
    if route is None:
        return None
    return price_to_atomic_units(route.price, get_network(route.network).decimals)


def _answer_length(response: Dict[str, Any]) -> int:
    return len(str(response.get("answer", "")))


def _pro_chat(question: str, request: Request) -> Dict[str, Any]:
    local_response = _answer(question, mode="pro")

    client = get_chained_client(settings)
    if client is None:
        return local_response

    service_id = settings.SERVICE_ID
    downstream_id = settings.DOWNSTREAM_SERVICE_ID
    own_leg = FlowLeg(service_id, amount=_own_price(PRO_ROUTE))
    downstream_url = urljoin(str(settings.DOWNSTREAM_AGENT_URL).rstrip("/") + "/", "chat/pro")
    request_id = getattr(request.state, "x402_request_id", None)

    logger.info(f"Coordinating with {downstream_id} for pro chat")
    try:
        result = client.call(downstream_id, downstream_url, params={"question": question}, request_id=request_id)
    except DownstreamPaymentError as e:
        logger.warning(f"Downstream call to {downstream_id} failed at {e.stage}: {e.reason}")
        return {
            "question": question,
            "timestamp": _now(),
            "type": "partial_multi_agent_response",
            "mode": "pro",
            "responses": {service_id: local_response},
            "note": f"{downstream_id} call failed, returning only {service_id} response",
            "downstream_error": e.to_dict(),
            "payment_flow": describe_payment_flow([own_leg, FlowLeg(downstream_id, failed=True)]),
        }

    if isinstance(result.data, dict):
        downstream_response = {**result.data, "agent": downstream_id}
    else:
        downstream_response = {"answer": str(result.data), "agent": downstream_id}

    downstream_leg = FlowLeg(downstream_id, amount=int(result.payment.amount) if result.paid else None)

    aggregate = {
        "question": question,
        "timestamp": _now(),
        "type": "multi_agent_response",
        "mode": "pro",
        "responses": {
            service_id: local_response,
            downstream_id: downstream_response,
        },
        "summary": (
            f"Multi-agent response: {service_id} provided {_answer_length(local_response)} characters, "
            f"{downstream_id} provided {_answer_length(downstream_response)} characters."
        ),
        "payment_flow": describe_payment_flow([own_leg, downstream_leg]),
    }
    if result.payment is not None:
        aggregate["downstream_payment"] = asdict(result.payment)

    return aggregate


@router.get("/chat")
def chat(request: Request, question: Optional[str] = None):
    """
    Answers a question for free.

    With ``pro=true`` the request was gated and paid as the pro route, and
    is answered by the pro handler.
    """
    if not question:
        return _missing_question()

    if route_key_for(request.url.path, request.query_params) == PRO_ROUTE:
        logger.info(f"Chat request received in pro mode: {question!r}")
        return _pro_chat(question, request)

    logger.info(f"Chat request received: {question!r}")
    return _answer(question, mode="free")


@router.get(PRO_ROUTE)
def chat_pro(request: Request, question: Optional[str] = None):
    """
    Paid multi-agent chat.

    Answers locally and, when a downstream agent is configured, pays it
    for a second answer and aggregates both. A failed downstream leg never
    fails the request: the local answer is returned with the error.
    """
    if not question:
        return _missing_question()

    logger.info(f"Pro chat request received: {question!r}")
    return _pro_chat(question, request)
