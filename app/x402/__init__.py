# app/x402/__init__.py
"""
x402 Payment Protocol Module.

This module gates HTTP routes behind x402 micropayments (HTTP 402 +
signed EIP-3009 USDC authorizations) and lets this service pay other
x402 services in turn.

Key components:
- middleware: FastAPI middleware that challenges, verifies and settles payments
- pricing: Route price table and per-request payment requirements
- resolver: Payable address resolution (static or rotating stealth/Safe addresses)
- codec: X-PAYMENT / X-PAYMENT-RESPONSE header encoding
- signing: EIP-712 TransferWithAuthorization signing
- facilitator: Client for the facilitator's /verify and /settle
- replay: In-memory guard against replayed payment nonces
- chained: Client that pays a downstream x402 service
- audit: Transaction audit logging

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
