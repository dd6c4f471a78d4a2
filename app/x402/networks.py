"""
Network registry for x402 payments.

Maps an x402 network name to the chain id and the USDC token contract
used as the payment asset on that chain, together with the EIP-712
domain name/version the token contract expects for
TransferWithAuthorization signatures.
"""
from dataclasses import dataclass
from typing import Dict


@dataclass(frozen=True)
class NetworkInfo:
    """Chain and asset parameters for one supported network."""
    name: str
    chain_id: int
    asset: str
    token_name: str
    token_version: str
    decimals: int = 6


NETWORKS: Dict[str, NetworkInfo] = {
    "polygon-amoy": NetworkInfo(
        name="polygon-amoy",
        chain_id=80002,
        asset="0x41E94Eb019C0762f9Bfcf9Fb1E58725BfB0e7582",
        token_name="USDC",
        token_version="2",
    ),
    "polygon": NetworkInfo(
        name="polygon",
        chain_id=137,
        asset="0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359",
        token_name="USD Coin",
        token_version="2",
    ),
    "base": NetworkInfo(
        name="base",
        chain_id=8453,
        asset="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        token_name="USD Coin",
        token_version="2",
    ),
    "base-sepolia": NetworkInfo(
        name="base-sepolia",
        chain_id=84532,
        asset="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        token_name="USDC",
        token_version="2",
    ),
}


def get_network(name: str) -> NetworkInfo:
    """
    Look up a supported network by its x402 name.

    Raises:
        ValueError: If the network is not supported
    """
    try:
        return NETWORKS[name]
    except KeyError:
        raise ValueError(f"Unsupported network: {name}") from None


def supported_networks() -> list:
    """Names of all networks the gateway can price and verify on."""
    return sorted(NETWORKS.keys())
