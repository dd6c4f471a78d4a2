"""
Route pricing for x402 payment requirements.

Priced routes live in a static table keyed by path. Routes missing from the
table are free and never reach the payment gate. For a priced route the
catalog builds fresh PaymentRequirements on every call:
1. Look up the route's USD price and network
2. Convert the price to the asset's smallest unit (USDC has 6 decimals)
3. Resolve the current payable address (may rotate between requests)

Configuration is loaded from app/core/config.py:
- X402_NETWORK: Default network for the built-in price table
- X402_ROUTE_PRICES: JSON object overriding/adding route prices
- X402_MAX_TIMEOUT_SECONDS: Validity window advertised to payers
"""
import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Mapping, Optional

from app.x402.networks import get_network
from app.x402.resolver import RecipientResolver
from app.x402.types import EXACT_SCHEME, PaymentRequirements

logger = logging.getLogger(__name__)

# Query flags that ask for pro mode on the free chat route
PRO_MODE_ROUTES = {
    "/chat": "/chat/pro",
}


@dataclass(frozen=True)
class RoutePrice:
    """Price configuration for one route."""
    price: str
    network: str
    description: str = ""
    mime_type: str = "application/json"


DEFAULT_ROUTE_PRICES: Dict[str, RoutePrice] = {
    "/weather": RoutePrice(
        price="$0.01",
        network="polygon-amoy",
        description="Weather data access",
    ),
    "/chat/pro": RoutePrice(
        price="$0.01",
        network="polygon-amoy",
        description="Multi-agent chat (coordinates with a downstream agent)",
    ),
}


def normalize_route(path: str) -> str:
    """Normalize a request path to a route key ('/weather/' -> '/weather')."""
    return path.rstrip("/") or "/"


def route_key_for(path: str, query_params: Mapping[str, str]) -> str:
    """
    Map a request to the route key used for pricing.

    A request to the free chat route with ``pro=true`` is a request for the
    priced pro route. The reverse never happens: free-mode flags on a
    priced route do not make it free.
    """
    route = normalize_route(path)
    if route in PRO_MODE_ROUTES and str(query_params.get("pro", "")).lower() == "true":
        return PRO_MODE_ROUTES[route]
    return route


def price_to_atomic_units(price: str, decimals: int = 6) -> int:
    """
    Convert a USD price string to the asset's smallest unit.

    Args:
        price: Price such as "$0.01" or "0.01"
        decimals: Token decimals (USDC uses 6)

    Returns:
        Integer amount, e.g. "$0.01" -> 10000

    Raises:
        ValueError: If the price is malformed, not positive, or finer than
            the token's smallest unit
    """
    text = str(price).strip().lstrip("$").replace(",", "")
    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"Invalid price: {price!r}") from None

    if not amount.is_finite() or amount <= 0:
        raise ValueError(f"Price must be positive: {price!r}")

    atomic = amount.scaleb(decimals)
    if atomic != atomic.to_integral_value():
        raise ValueError(f"Price {price!r} is finer than 10^-{decimals}")

    return int(atomic)


def parse_route_prices(raw: Optional[str], default_network: str) -> Dict[str, RoutePrice]:
    """
    Parse the X402_ROUTE_PRICES JSON object.

    Each entry is either a price string or an object with ``price`` and
    optional ``network``, ``description`` and ``mimeType``.
    """
    if not raw or not raw.strip():
        return {}

    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("X402_ROUTE_PRICES must be a JSON object")

    routes: Dict[str, RoutePrice] = {}
    for path, entry in data.items():
        if isinstance(entry, str):
            entry = {"price": entry}
        if not isinstance(entry, dict) or "price" not in entry:
            raise ValueError(f"Invalid price entry for route {path}")

        # Bad prices and networks fail here, at startup
        price_to_atomic_units(entry["price"])
        network = entry.get("network", default_network)
        get_network(network)

        routes[normalize_route(path)] = RoutePrice(
            price=entry["price"],
            network=network,
            description=entry.get("description", ""),
            mime_type=entry.get("mimeType", "application/json"),
        )

    return routes


def load_route_prices(default_network: str, overrides: Optional[str] = None) -> Dict[str, RoutePrice]:
    """Built-in price table on ``default_network``, with configured overrides applied."""
    routes = {
        path: RoutePrice(
            price=entry.price,
            network=default_network,
            description=entry.description,
            mime_type=entry.mime_type,
        )
        for path, entry in DEFAULT_ROUTE_PRICES.items()
    }
    routes.update(parse_route_prices(overrides, default_network))
    return routes


class PaymentRequirementCatalog:
    """
    Builds PaymentRequirements for priced routes.

    The recipient address is resolved on every call and never cached.
    """

    def __init__(
        self,
        route_prices: Mapping[str, RoutePrice],
        resolver: RecipientResolver,
        service_identity: str,
        max_timeout_seconds: int = 300,
    ):
        self._routes = {normalize_route(path): entry for path, entry in route_prices.items()}
        self._resolver = resolver
        self.service_identity = service_identity
        self.max_timeout_seconds = max_timeout_seconds

    @property
    def routes(self) -> Dict[str, RoutePrice]:
        return dict(self._routes)

    @property
    def networks(self) -> set:
        return {entry.network for entry in self._routes.values()}

    def get_route_price(self, route_key: str) -> Optional[RoutePrice]:
        return self._routes.get(normalize_route(route_key))

    def is_priced(self, route_key: str) -> bool:
        return self.get_route_price(route_key) is not None

    def requirements_for(self, route_key: str, resource: str = "") -> PaymentRequirements:
        """
        Build the payment requirements for a priced route.

        Args:
            route_key: Priced route path
            resource: Full URL of the requested resource

        Raises:
            KeyError: If the route is not priced
            RecipientUnavailable: If the payable address cannot be resolved
        """
        route = self.get_route_price(route_key)
        if route is None:
            raise KeyError(f"Route is not priced: {route_key}")

        network = get_network(route.network)
        pay_to = self._resolver.resolve(self.service_identity)
        amount = price_to_atomic_units(route.price, network.decimals)

        logger.debug(f"x402: Requirements for {route_key}: {amount} units on {network.name} to {pay_to}")

        return PaymentRequirements(
            scheme=EXACT_SCHEME,
            network=network.name,
            max_amount_required=str(amount),
            resource=resource,
            description=route.description,
            mime_type=route.mime_type,
            pay_to=pay_to,
            max_timeout_seconds=self.max_timeout_seconds,
            asset=network.asset,
            extra={"name": network.token_name, "version": network.token_version},
        )
