# app/x402/client.py
"""
x402 payment challenge client.

Flow:
1. Send the request unmodified
2. If the server answers 402, parse its payment requirements
3. Sign a transfer authorization with the session wallet
4. Resend the request once with the X-PAYMENT header
5. Return the payload plus any settlement metadata

The timeout covers the whole sequence, including reading response bodies.
All failures come back as PaymentResult(success=False, error=...); callers
tell causes apart by the error string. There is no second challenge round.
"""
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import requests
from requests.exceptions import RequestException, Timeout
from eth_account.signers.local import LocalAccount

from app.core.config import settings
from app.core.errors import PaymentChallengeError
from app.x402.challenge import (
    X_PAYMENT_HEADER,
    PaymentAuthorization,
    PaymentDetails,
    build_payment_authorization,
    encode_payment_header,
    extract_payment_details,
    parse_payment_challenge,
    select_payment_requirements,
    sign_payment_authorization,
)

logger = logging.getLogger(__name__)

PAYMENT_REQUIRED_STATUS = 402

TIMEOUT_MESSAGE = "Payment request timed out"

# A signed authorization is always submitted, even past the deadline
SUBMIT_GRACE_SECONDS = 5.0

# Response bodies are streamed so the deadline is checked between chunks
READ_CHUNK_SIZE = 1024

# Cap on upstream error bodies copied into failure messages
MAX_ERROR_BODY_CHARS = 500


@dataclass
class PaymentResult:
    success: bool
    data: Any = None
    payment_details: Optional[PaymentDetails] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    nonce: Optional[str] = None


def _is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


def _body_text(response: requests.Response, body: bytes) -> str:
    return body.decode(response.encoding or "utf-8", errors="replace")


def _response_body(response: requests.Response, body: bytes) -> Any:
    """JSON body when possible, raw text otherwise."""
    try:
        return json.loads(body)
    except ValueError:
        return _body_text(response, body)


def _error_text(response: requests.Response, body: bytes) -> str:
    return _body_text(response, body)[:MAX_ERROR_BODY_CHARS]


class PaymentChallengeClient:
    """
    Executes requests against x402-protected resources.

    Args:
        session: requests.Session used for transport (injectable for tests)
        network: Preferred payment network
        max_payment_atomic: Refuse requirements above this amount
            (asset smallest units); None disables the check
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        network: Optional[str] = None,
        max_payment_atomic: Optional[int] = None
    ):
        self.session = session or requests.Session()
        self.network = network or settings.X402_NETWORK
        self.max_payment_atomic = (
            max_payment_atomic if max_payment_atomic is not None else settings.X402_MAX_PAYMENT_ATOMIC
        )
        # nonce -> validBefore (unix seconds); expired entries are pruned
        self._used_nonces: Dict[str, int] = {}
        self._nonce_lock = threading.Lock()

    def _claim_nonce(self, nonce: str, valid_before: int) -> None:
        """
        Record a nonce as signed, refusing one already signed.

        Entries are dropped once their authorization has expired, since an
        expired authorization can no longer be settled.
        """
        now = int(time.time())
        with self._nonce_lock:
            expired = [used for used, expiry in self._used_nonces.items() if expiry < now]
            for used in expired:
                del self._used_nonces[used]

            if nonce in self._used_nonces:
                raise PaymentChallengeError(f"Payment nonce already used: {nonce}")
            self._used_nonces[nonce] = valid_before

    def execute(
        self,
        url: str,
        account: LocalAccount,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        timeout: Optional[float] = None
    ) -> PaymentResult:
        """
        Perform the request, paying once if challenged.

        Args:
            url: Target URL
            account: Signing identity of the session wallet
            method: HTTP method
            headers: Extra request headers
            json_body: Optional JSON request body
            timeout: Budget in seconds for the whole challenge-and-retry
                sequence; defaults to X402_REQUEST_TIMEOUT_SECONDS

        Returns:
            PaymentResult
        """
        budget = timeout if timeout is not None else settings.X402_REQUEST_TIMEOUT_SECONDS
        deadline = time.monotonic() + budget
        request_headers = dict(headers or {})

        logger.info(f"x402: Making request to {url} with wallet {account.address}")

        try:
            response, body = self._send(method, url, request_headers, json_body, deadline)
        except Timeout as e:
            logger.error(f"x402: Request to {url} timed out: {e}")
            return PaymentResult(success=False, error=TIMEOUT_MESSAGE)
        except RequestException as e:
            logger.error(f"x402: Request to {url} failed: {e}")
            return PaymentResult(success=False, error=f"Network error: {e}")

        if _is_success(response.status_code):
            logger.info(f"x402: {url} served without payment")
            return PaymentResult(
                success=True, data=_response_body(response, body), status_code=response.status_code
            )

        if response.status_code != PAYMENT_REQUIRED_STATUS:
            logger.error(f"x402: Request failed: {response.status_code} {_error_text(response, body)}")
            return PaymentResult(
                success=False,
                error=f"Request failed with status {response.status_code}: {_error_text(response, body)}",
                status_code=response.status_code,
            )

        try:
            authorization, payment_header = self._authorize(account, _response_body(response, body), deadline)
        except PaymentChallengeError as e:
            logger.error(f"x402: Cannot pay challenge from {url}: {e}")
            return PaymentResult(success=False, error=str(e), status_code=response.status_code)

        logger.info(
            f"x402: Paying {authorization.amount} of {authorization.asset} to {authorization.pay_to} "
            f"on {authorization.network} (nonce {authorization.nonce})"
        )

        retry_headers = {**request_headers, X_PAYMENT_HEADER: payment_header}
        retry_deadline = max(deadline, time.monotonic() + SUBMIT_GRACE_SECONDS)
        try:
            paid_response, paid_body = self._send(method, url, retry_headers, json_body, retry_deadline)
        except Timeout as e:
            logger.error(f"x402: Paid request to {url} timed out: {e}")
            return PaymentResult(success=False, error=TIMEOUT_MESSAGE, nonce=authorization.nonce)
        except RequestException as e:
            logger.error(f"x402: Paid request to {url} failed: {e}")
            return PaymentResult(success=False, error=f"Network error: {e}", nonce=authorization.nonce)

        if not _is_success(paid_response.status_code):
            logger.error(
                f"x402: Payment rejected: {paid_response.status_code} {_error_text(paid_response, paid_body)}"
            )
            return PaymentResult(
                success=False,
                error=(
                    f"Payment rejected with status {paid_response.status_code}: "
                    f"{_error_text(paid_response, paid_body)}"
                ),
                status_code=paid_response.status_code,
                nonce=authorization.nonce,
            )

        details = extract_payment_details(paid_response.headers, authorization)
        if details:
            logger.info(f"x402: Payment settled in transaction {details.tx_hash}")
        else:
            logger.info("x402: Request successful, no settlement metadata returned")

        return PaymentResult(
            success=True,
            data=_response_body(paid_response, paid_body),
            payment_details=details,
            status_code=paid_response.status_code,
            nonce=authorization.nonce,
        )

    def _authorize(self, account: LocalAccount, challenge_body: Any, deadline: float):
        """Parse the challenge and produce (authorization, X-PAYMENT value)."""
        challenge = parse_payment_challenge(challenge_body)
        requirements = select_payment_requirements(challenge, self.network)
        authorization: PaymentAuthorization = build_payment_authorization(
            from_address=account.address,
            requirements=requirements,
            max_amount=self.max_payment_atomic,
        )

        if self._remaining(deadline) <= 0:
            raise PaymentChallengeError(TIMEOUT_MESSAGE)

        self._claim_nonce(authorization.nonce, authorization.valid_before)
        signature = sign_payment_authorization(account, requirements, authorization)
        return authorization, encode_payment_header(authorization, signature)

    def _send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        json_body: Any,
        deadline: float
    ) -> Tuple[requests.Response, bytes]:
        """
        Send one request and read its body before the deadline.

        Raises:
            Timeout: If the deadline passes before the body is fully read
            RequestException: On transport errors
        """
        self._check_deadline(deadline)
        kwargs: Dict[str, Any] = {"headers": headers, "timeout": self._remaining(deadline), "stream": True}
        if json_body is not None:
            kwargs["data"] = json.dumps(json_body)
            kwargs["headers"] = {"Content-Type": "application/json", **headers}

        response = self.session.request(method, url, **kwargs)
        try:
            chunks = []
            try:
                for chunk in response.iter_content(chunk_size=READ_CHUNK_SIZE):
                    chunks.append(chunk)
                    self._check_deadline(deadline)
            except requests.exceptions.ConnectionError as e:
                # requests reports a socket read timeout mid-body as ConnectionError
                if self._remaining(deadline) <= 0:
                    raise Timeout(TIMEOUT_MESSAGE) from e
                raise
            self._check_deadline(deadline)
        finally:
            response.close()
        return response, b"".join(chunks)

    @classmethod
    def _check_deadline(cls, deadline: float) -> None:
        if cls._remaining(deadline) <= 0:
            raise Timeout(TIMEOUT_MESSAGE)

    @staticmethod
    def _remaining(deadline: float) -> float:
        return deadline - time.monotonic()
