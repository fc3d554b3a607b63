# app/x402/balance.py
"""
USDC balance reads for session wallets.

Balances are read with an eth_call to the token's balanceOf over the
configured JSON-RPC endpoint. Results are cached per address for 60 seconds
to avoid hammering the RPC endpoint.
"""
import logging
import time
import requests
from decimal import Decimal
from typing import Dict, Optional, Tuple

from app.core.config import settings

logger = logging.getLogger(__name__)

# USDC contract addresses by network
USDC_ADDRESSES = {
    "base": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    "base-sepolia": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
}

USDC_DECIMALS = 6

# keccak256("balanceOf(address)")[:4]
BALANCE_OF_SELECTOR = "0x70a08231"

# Cache for balance checks, keyed by lower-cased address
_balance_cache: Dict[str, Tuple[int, float]] = {}
CACHE_TTL_SECONDS = 60  # Cache balance for 60 seconds


def format_usdc(atomic: int) -> str:
    """Format smallest USDC units as a decimal string (6 decimals)."""
    value = Decimal(atomic) / (Decimal(10) ** USDC_DECIMALS)
    return format(value.normalize(), "f") if atomic else "0"


def encode_balance_of(address: str) -> str:
    """ABI-encode a balanceOf(address) call."""
    return BALANCE_OF_SELECTOR + address.lower().replace("0x", "").rjust(64, "0")


def _get_usdc_balance_from_rpc(address: str, token: str) -> int:
    """
    Fetch the token balance from RPC.

    Raises:
        Exception: If RPC call fails
    """
    response = requests.post(
        str(settings.BASE_RPC_URL),
        json={
            "jsonrpc": "2.0",
            "method": "eth_call",
            "params": [{"to": token, "data": encode_balance_of(address)}, "latest"],
            "id": 1
        },
        timeout=10
    )
    response.raise_for_status()

    result = response.json()
    if "error" in result:
        raise Exception(f"RPC error: {result['error']}")

    if "result" not in result:
        raise Exception(f"Invalid RPC response: missing 'result' field")

    # Convert hex to int ("0x" means zero)
    return int(result["result"], 16) if result["result"] not in ("0x", "") else 0


def clear_balance_cache() -> None:
    """Clear the balance cache (useful for testing)."""
    _balance_cache.clear()


def get_usdc_balance(address: str, network: Optional[str] = None) -> Optional[int]:
    """
    Read the USDC balance of an address.

    Returns:
        Balance in smallest units, or None if it could not be read
    """
    network = network or settings.X402_NETWORK
    token = USDC_ADDRESSES.get(network)
    if token is None:
        logger.error(f"No USDC contract known for network {network}")
        return None

    key = address.lower()
    cached = _balance_cache.get(key)
    if cached is not None and time.time() - cached[1] <= CACHE_TTL_SECONDS:
        return cached[0]

    try:
        balance = _get_usdc_balance_from_rpc(address, token)
    except Exception as e:
        logger.error(f"Failed to read USDC balance for {address}: {e}")
        return None

    _balance_cache[key] = (balance, time.time())
    logger.debug(f"Fetched USDC balance for {address}: {format_usdc(balance)}")
    return balance
