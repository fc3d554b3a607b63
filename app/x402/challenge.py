# app/x402/challenge.py
"""
Client side of the x402 payment challenge.

Pure functions, no network access:
1. parse_payment_challenge: 402 body -> x402PaymentRequiredResponse
2. select_payment_requirements: pick the requirement we can pay
3. build_payment_authorization: bind payer, recipient, amount and a nonce
4. sign_payment_authorization: EIP-712 TransferWithAuthorization signature
5. encode_payment_header: base64 JSON for the X-PAYMENT header
6. extract_payment_details: settlement metadata from the paid response
"""
import json
import logging
import re
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount
from pydantic import ValidationError
from x402.chains import get_chain_id
from x402.clients.base import decode_x_payment_response
from x402.exact import encode_payment, prepare_payment_header
from x402.types import PaymentRequirements, SettleResponse, x402PaymentRequiredResponse

from app.core.errors import PaymentChallengeError

logger = logging.getLogger(__name__)

# x402 protocol constants
X402_VERSION = 1
X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

# Settlement headers echoed by some resource servers
X_PAYMENT_TX_HEADER = "X-PAYMENT-TX"
X_PAYMENT_AMOUNT_HEADER = "X-PAYMENT-AMOUNT"
X_PAYMENT_TO_HEADER = "X-PAYMENT-TO"

EXACT_SCHEME = "exact"

NONCE_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")

TRANSFER_WITH_AUTHORIZATION_TYPES = {
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ]
}


@dataclass(frozen=True)
class PaymentAuthorization:
    """One signed-to-be transfer authorization. Never reused."""
    scheme: str
    network: str
    asset: str
    amount: str
    pay_to: str
    from_address: str
    nonce: str
    valid_after: int
    valid_before: int

    def to_message(self) -> Dict[str, str]:
        """The wire form of the authorization (all values as strings)."""
        return {
            "from": self.from_address,
            "to": self.pay_to,
            "value": self.amount,
            "validAfter": str(self.valid_after),
            "validBefore": str(self.valid_before),
            "nonce": self.nonce,
        }


@dataclass(frozen=True)
class PaymentDetails:
    tx_hash: str
    amount: str
    to: str

    def to_dict(self) -> Dict[str, str]:
        return {"txHash": self.tx_hash, "amount": self.amount, "to": self.to}


def create_nonce() -> str:
    """Fresh 32-byte nonce as 0x-prefixed hex."""
    return "0x" + secrets.token_hex(32)


def parse_payment_challenge(body: Any) -> x402PaymentRequiredResponse:
    """
    Parse a 402 response body.

    Args:
        body: Decoded JSON body (dict) or raw text

    Raises:
        PaymentChallengeError: If the body is not a usable challenge
    """
    if isinstance(body, (str, bytes)):
        try:
            body = json.loads(body)
        except json.JSONDecodeError as e:
            raise PaymentChallengeError(f"Malformed payment challenge: invalid JSON ({e})") from e

    if not isinstance(body, dict):
        raise PaymentChallengeError("Malformed payment challenge: expected a JSON object")

    # Some servers omit the error message on the challenge
    body = {**body}
    body.setdefault("error", "")

    try:
        challenge = x402PaymentRequiredResponse.model_validate(body)
    except ValidationError as e:
        raise PaymentChallengeError(f"Malformed payment challenge: {e.error_count()} invalid field(s)") from e

    if not challenge.accepts:
        raise PaymentChallengeError("Malformed payment challenge: no accepted payment requirements")

    return challenge


def select_payment_requirements(
    challenge: x402PaymentRequiredResponse,
    network: str,
    scheme: str = EXACT_SCHEME
) -> PaymentRequirements:
    """
    Choose the requirement to pay: matching scheme and network first, then
    any requirement with a matching scheme.
    """
    for candidate in challenge.accepts:
        if candidate.scheme == scheme and candidate.network == network:
            return candidate
    for candidate in challenge.accepts:
        if candidate.scheme == scheme:
            logger.warning(f"x402: No {scheme} requirement on {network}, paying on {candidate.network}")
            return candidate
    raise PaymentChallengeError(f"Malformed payment challenge: no '{scheme}' payment scheme offered")


def build_payment_authorization(
    from_address: str,
    requirements: PaymentRequirements,
    nonce: Optional[str] = None,
    max_amount: Optional[int] = None
) -> PaymentAuthorization:
    """
    Bind the payer to the server's stated requirements.

    The unsigned header comes from x402.exact.prepare_payment_header, which
    sets the validity window. The nonce is taken from
    requirements.extra["nonce"] when the server dictates one, else the
    explicit nonce argument, else a fresh one.

    Raises:
        PaymentChallengeError: Missing recipient, bad amount or nonce, or an
            amount above max_amount
    """
    if not requirements.pay_to:
        raise PaymentChallengeError("Malformed payment challenge: no payTo address")

    try:
        amount = int(requirements.max_amount_required)
    except (TypeError, ValueError) as e:
        raise PaymentChallengeError(
            f"Malformed payment challenge: invalid amount {requirements.max_amount_required!r}"
        ) from e
    if amount < 0:
        raise PaymentChallengeError(f"Malformed payment challenge: negative amount {amount}")

    if max_amount is not None and amount > max_amount:
        raise PaymentChallengeError(
            f"Payment requirement exceeds allowed maximum: required {amount}, max {max_amount}"
        )

    extra = requirements.extra or {}
    chosen_nonce = extra.get("nonce") or nonce or create_nonce()
    if not NONCE_PATTERN.match(str(chosen_nonce)):
        raise PaymentChallengeError("Malformed payment challenge: nonce must be 32 bytes of hex")

    unsigned_header = prepare_payment_header(from_address, X402_VERSION, requirements)
    authorization = unsigned_header["payload"]["authorization"]

    return PaymentAuthorization(
        scheme=unsigned_header["scheme"],
        network=unsigned_header["network"],
        asset=requirements.asset,
        amount=str(amount),
        pay_to=authorization["to"],
        from_address=authorization["from"],
        nonce=str(chosen_nonce).lower(),
        valid_after=int(authorization["validAfter"]),
        valid_before=int(authorization["validBefore"]),
    )


def sign_payment_authorization(
    account: LocalAccount,
    requirements: PaymentRequirements,
    authorization: PaymentAuthorization
) -> str:
    """
    Sign the authorization as EIP-3009 TransferWithAuthorization typed data.

    This is an off-chain signature; settlement is done by the resource
    server or its facilitator.
    """
    extra = requirements.extra or {}
    try:
        chain_id = int(get_chain_id(requirements.network))
    except (ValueError, KeyError) as e:
        raise PaymentChallengeError(f"Unsupported payment network: {requirements.network}") from e

    domain = {
        "name": extra.get("name") or "USD Coin",
        "version": extra.get("version") or "2",
        "chainId": chain_id,
        "verifyingContract": authorization.asset,
    }
    message = {
        "from": authorization.from_address,
        "to": authorization.pay_to,
        "value": int(authorization.amount),
        "validAfter": authorization.valid_after,
        "validBefore": authorization.valid_before,
        "nonce": bytes.fromhex(authorization.nonce[2:]),
    }

    signable = encode_typed_data(domain, TRANSFER_WITH_AUTHORIZATION_TYPES, message)
    signature = account.sign_message(signable).signature.hex()
    return signature if signature.startswith("0x") else f"0x{signature}"


def encode_payment_header(authorization: PaymentAuthorization, signature: str) -> str:
    """Base64-encoded JSON payment payload for the X-PAYMENT header."""
    payload = {
        "x402Version": X402_VERSION,
        "scheme": authorization.scheme,
        "network": authorization.network,
        "payload": {
            "signature": signature,
            "authorization": authorization.to_message(),
        },
    }
    return encode_payment(payload)


def decode_payment_response(header_value: str) -> Optional[SettleResponse]:
    """
    Decode an X-PAYMENT-RESPONSE header.

    Returns:
        SettleResponse if decodable, None otherwise
    """
    try:
        return SettleResponse.model_validate(decode_x_payment_response(header_value))
    except Exception as e:
        logger.warning(f"x402: Failed to decode X-PAYMENT-RESPONSE header: {e}")
        return None


def extract_payment_details(
    headers: Mapping[str, str],
    authorization: Optional[PaymentAuthorization] = None
) -> Optional[PaymentDetails]:
    """
    Extract settlement metadata from a paid response.

    Explicit X-PAYMENT-TX/-AMOUNT/-TO headers win; otherwise a successful
    X-PAYMENT-RESPONSE settlement supplies the transaction hash and the
    signed authorization supplies amount and recipient. Returns None when
    the server echoes no settlement; that is not an error.
    """
    tx_hash = headers.get(X_PAYMENT_TX_HEADER)
    if tx_hash:
        amount = headers.get(X_PAYMENT_AMOUNT_HEADER) or (authorization.amount if authorization else None)
        to = headers.get(X_PAYMENT_TO_HEADER) or (authorization.pay_to if authorization else None)
        if amount and to:
            return PaymentDetails(tx_hash=tx_hash, amount=amount, to=to)
        return None

    settlement_header = headers.get(X_PAYMENT_RESPONSE_HEADER)
    if settlement_header and authorization is not None:
        settlement = decode_payment_response(settlement_header)
        if settlement is not None and settlement.success and settlement.transaction:
            return PaymentDetails(
                tx_hash=settlement.transaction,
                amount=authorization.amount,
                to=authorization.pay_to,
            )

    return None
