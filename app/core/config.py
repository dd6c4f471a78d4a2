from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl
from typing import Optional
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Agent Gateway"
    SERVICE_ID: str = "agent1"

    # x402 payment gate
    X402_ENABLED: bool = True
    X402_NETWORK: str = "polygon-amoy"
    X402_FACILITATOR_URL: AnyHttpUrl = "https://facilitator.x402.rs"
    X402_FACILITATOR_TIMEOUT_SECONDS: float = 15.0
    X402_SETTLE_PAYMENTS: bool = True
    X402_MAX_TIMEOUT_SECONDS: int = 300
    # JSON object of route -> price config, overrides the built-in table
    X402_ROUTE_PRICES: Optional[str] = None
    X402_REPLAY_GUARD_ENABLED: bool = True

    # Static recipient, used when no resolver URL is configured
    X402_PAY_TO_ADDRESS: Optional[str] = None

    # Stealth/Safe address resolution service
    RECIPIENT_RESOLVER_URL: Optional[AnyHttpUrl] = None
    RECIPIENT_USERNAME: Optional[str] = None
    RECIPIENT_RESOLVER_TIMEOUT_SECONDS: float = 10.0
    RECIPIENT_TOKEN_AMOUNT: str = "50"
    RECIPIENT_ALLOW_STEALTH_FALLBACK: bool = True

    # Audit trail
    X402_AUDIT_ENABLED: bool = True
    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"

    # Chained (agent-to-agent) payments
    AGENT_PRIVATE_KEY: Optional[str] = None
    DOWNSTREAM_AGENT_URL: Optional[AnyHttpUrl] = None
    DOWNSTREAM_SERVICE_ID: str = "agent2"
    DOWNSTREAM_MAX_AMOUNT: int = 100_000  # $0.10 in USDC smallest units
    DOWNSTREAM_TIMEOUT_SECONDS: float = 60.0

    # Answer generation backend
    ANSWER_API_URL: Optional[AnyHttpUrl] = None
    ANSWER_TIMEOUT_SECONDS: float = 30.0

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
