from datetime import datetime, timezone
from fastapi import FastAPI
from app.core.config import settings
from app.core.version import VERSION
from app.api.endpoints import chat, weather
from app.api.models.chat import HealthResponse
from app.x402.middleware import PaymentGateMiddleware, build_gate_config
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=VERSION,
)

# Payment gate: priced routes need a verified x402 payment, everything else passes through
gate_config = build_gate_config(settings)
app.add_middleware(PaymentGateMiddleware, config=gate_config)

if gate_config.enabled:
    logger.info(
        f"x402: Payment gate enabled on {settings.X402_NETWORK} for routes: "
        f"{', '.join(sorted(gate_config.catalog.routes))}"
    )
else:
    logger.info("x402: Payment gate disabled, all routes are free")

app.include_router(weather.router, tags=["weather"])
app.include_router(chat.router, tags=["chat"])


@app.get("/", summary="Health Check", tags=["default"])
def read_root():
    """ Basic health check endpoint. """
    logger.info("Root endpoint '/' accessed.")
    return {
        "status": "ok",
        "message": f"Welcome to {settings.PROJECT_NAME}",
        "service": settings.SERVICE_ID,
        "version": VERSION,
    }


@app.get("/health", response_model=HealthResponse, tags=["default"])
def health() -> HealthResponse:
    return HealthResponse(status="ok", timestamp=datetime.now(timezone.utc).isoformat())
