# tests/conftest.py
"""
Shared fixtures for the test suite.

The audit trail is switched off before the application is imported so the
suite never writes logs/x402_audit.jsonl; audit tests patch settings to
write into a temporary directory instead.
"""
import os

os.environ.setdefault("X402_AUDIT_ENABLED", "false")

import pytest

from app.x402.replay import reset_replay_guard
from app.x402.signing import TypedDataSigner

# Well-known development key (never holds funds)
TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TEST_PAY_TO = "0x209693Bc6afc0C5328bA36FaF03C514EF312287C"


@pytest.fixture(autouse=True)
def fresh_replay_guard():
    """Every test starts with an empty process-wide replay guard."""
    reset_replay_guard()
    yield
    reset_replay_guard()


@pytest.fixture
def signer():
    return TypedDataSigner(TEST_PRIVATE_KEY)


@pytest.fixture
def private_key():
    return TEST_PRIVATE_KEY


@pytest.fixture
def pay_to():
    return TEST_PAY_TO
