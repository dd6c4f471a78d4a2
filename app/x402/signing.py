"""
EIP-712 signing of EIP-3009 TransferWithAuthorization messages.

The typed message shape (field names, order and types) is part of the wire
contract with the token contract and the facilitator: changing it changes
the signature.
"""
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data

from app.x402.networks import get_network
from app.x402.types import Authorization, PaymentRequirements

logger = logging.getLogger(__name__)

EIP712_DOMAIN_FIELDS = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

TRANSFER_WITH_AUTHORIZATION_FIELDS = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "validAfter", "type": "uint256"},
    {"name": "validBefore", "type": "uint256"},
    {"name": "nonce", "type": "bytes32"},
]


@dataclass(frozen=True)
class SigningDomain:
    """EIP-712 domain of the token contract."""
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract,
        }


def generate_nonce() -> str:
    """Fresh 32-byte random nonce, hex encoded. Never derived from a counter."""
    return "0x" + secrets.token_bytes(32).hex()


def domain_for_requirements(requirements: PaymentRequirements) -> SigningDomain:
    """
    Build the signing domain for a set of payment requirements.

    Token name/version come from ``requirements.extra`` when the server
    advertises them, otherwise from the network registry.
    """
    network = get_network(requirements.network)
    extra = requirements.extra or {}
    return SigningDomain(
        name=extra.get("name", network.token_name),
        version=extra.get("version", network.token_version),
        chain_id=network.chain_id,
        verifying_contract=requirements.asset,
    )


def build_typed_data(domain: SigningDomain, authorization: Authorization) -> Dict[str, Any]:
    """Build the full EIP-712 typed data structure for an authorization."""
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_FIELDS,
            "TransferWithAuthorization": TRANSFER_WITH_AUTHORIZATION_FIELDS,
        },
        "primaryType": "TransferWithAuthorization",
        "domain": domain.to_dict(),
        "message": {
            "from": authorization.from_,
            "to": authorization.to,
            "value": int(authorization.value),
            "validAfter": int(authorization.valid_after),
            "validBefore": int(authorization.valid_before),
            "nonce": bytes.fromhex(authorization.nonce[2:]),
        },
    }


def recover_authorization_signer(
    domain: SigningDomain,
    authorization: Authorization,
    signature: str,
) -> str:
    """Recover the address that signed an authorization."""
    signable = encode_typed_data(full_message=build_typed_data(domain, authorization))
    return Account.recover_message(signable, signature=signature)


class TypedDataSigner:
    """
    Signs TransferWithAuthorization messages with a local private key.

    The key never leaves this object and is never logged.
    """

    def __init__(self, private_key: str):
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    def sign_authorization(self, domain: SigningDomain, authorization: Authorization) -> str:
        """
        Sign an authorization.

        Returns:
            The 65-byte signature as a 0x-prefixed hex string
        """
        signable = encode_typed_data(full_message=build_typed_data(domain, authorization))
        signed = self._account.sign_message(signable)
        signature = signed.signature.hex()
        if not signature.startswith("0x"):
            signature = "0x" + signature
        return signature

    def build_authorization(
        self,
        pay_to: str,
        value: int,
        valid_before: int,
        valid_after: int = 0,
        nonce: Optional[str] = None,
    ) -> Authorization:
        """Build an authorization from this signer to ``pay_to``."""
        return Authorization(
            from_=self.address,
            to=pay_to,
            value=str(value),
            valid_after=str(valid_after),
            valid_before=str(valid_before),
            nonce=nonce or generate_nonce(),
        )
