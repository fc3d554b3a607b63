# app/services/proxy.py
"""
Resource proxy: pays for a metered resource on behalf of a session.

For each call:
1. Validate fields and params shape (400, nothing recorded)
2. Resolve the resource (404, nothing recorded)
3. Get or create the session wallet
4. Build the target URL
5. Run the x402 challenge client
6. Write exactly one audit record, completed or failed

This is the only writer of audit records. The decrypted key is used to
build the signing account and is never copied into records or logs.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union
from urllib.parse import urlencode, urljoin, urlsplit, urlunsplit

from app.core.config import settings
from app.core.errors import (
    GatewayError,
    InputValidationError,
    PersistenceError,
    ResourceNotFound,
    WalletDecryptionError,
)
from app.services.catalog import ResourceCatalog
from app.wallet.manager import WalletManager
from app.x402.audit import AuditLedger, completed_record, failed_record
from app.x402.client import PaymentChallengeClient, PaymentResult

logger = logging.getLogger(__name__)

QueryParams = Union[Mapping[str, Any], Iterable[Tuple[str, Any]]]

MISSING_FIELDS_MESSAGE = "Missing required fields: resourceId, path, sessionId"
NOT_FOUND_MESSAGE = "Resource not found"
INVALID_PARAMS_MESSAGE = "Invalid params: expected an object or a list of [key, value] pairs"
INTERNAL_ERROR_MESSAGE = "Internal server error"


@dataclass
class ProxyResult:
    success: bool
    status_code: int
    data: Any = None
    payment_details: Optional[Dict[str, str]] = None
    wallet_address: Optional[str] = None
    error: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        """External JSON shape."""
        if not self.success:
            return {"success": False, "error": self.error}
        body: Dict[str, Any] = {"success": True, "data": self.data}
        if self.payment_details:
            body["paymentDetails"] = self.payment_details
        body["walletAddress"] = self.wallet_address
        return body


def _param_pairs(params: Optional[QueryParams]) -> List[Tuple[str, str]]:
    """
    Flatten params into ordered (key, value) pairs.

    Mapping values that are lists become repeated keys, as do repeated keys
    in a sequence of pairs.
    """
    if not params:
        return []

    items = params.items() if isinstance(params, Mapping) else params
    pairs = []
    for key, value in items:
        if isinstance(value, (list, tuple)):
            pairs.extend((str(key), str(v)) for v in value)
        else:
            pairs.append((str(key), str(value)))
    return pairs


def build_target_url(base_url: str, path: str, params: Optional[QueryParams] = None) -> str:
    """
    Join path onto base_url and append params as query parameters.

    Existing query parameters are kept; new ones are appended in order.
    """
    url = urljoin(base_url, path)
    pairs = _param_pairs(params)
    if not pairs:
        return url

    parts = urlsplit(url)
    extra = urlencode(pairs)
    query = f"{parts.query}&{extra}" if parts.query else extra
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def _valid_params(params: Any) -> bool:
    if params is None or isinstance(params, Mapping):
        return True
    if not isinstance(params, (list, tuple)):
        return False
    return all(isinstance(pair, (list, tuple)) and len(pair) == 2 for pair in params)


def _audit_params(params: Any) -> Optional[Any]:
    """Params as recorded; never raises, whatever the shape."""
    if not params:
        return None
    if isinstance(params, Mapping):
        return dict(params)
    if isinstance(params, (list, tuple)):
        return [list(item) if isinstance(item, (list, tuple)) else item for item in params]
    return str(params)


class ResourceProxy:
    def __init__(
        self,
        catalog: ResourceCatalog,
        wallet_manager: WalletManager,
        ledger: AuditLedger,
        client: Optional[PaymentChallengeClient] = None,
        timeout: Optional[float] = None
    ):
        self.catalog = catalog
        self.wallet_manager = wallet_manager
        self.ledger = ledger
        self.client = client or PaymentChallengeClient()
        self.timeout = timeout if timeout is not None else settings.X402_REQUEST_TIMEOUT_SECONDS

    def proxy(
        self,
        resource_id: Optional[str],
        path: Optional[str],
        params: Optional[QueryParams],
        session_id: Optional[str]
    ) -> ProxyResult:
        try:
            self._validate(resource_id, path, session_id, params)
            resource = self.catalog.resolve(resource_id)
            if resource is None:
                raise ResourceNotFound(resource_id)
        except InputValidationError as e:
            return ProxyResult(success=False, status_code=400, error=str(e))
        except ResourceNotFound:
            logger.warning(f"Proxy: resource {resource_id} not found")
            return ProxyResult(success=False, status_code=404, error=NOT_FOUND_MESSAGE)

        wallet_address = None
        try:
            wallet = self.wallet_manager.get_or_create(session_id)
            wallet_address = wallet.address
            url = build_target_url(resource.base_url, path, params)

            logger.info(f"Proxy: Making x402 request to {url}")
            logger.info(f"Proxy: Using server wallet: {wallet_address}")

            result = self.client.execute(url, wallet.to_account(), timeout=self.timeout)
        except WalletDecryptionError as e:
            logger.error(f"Proxy: wallet for session {session_id} is unreadable: {e}")
            return self._record_failure(resource_id, path, params, session_id, wallet_address,
                                        "Wallet decryption failed", internal=True)
        except PersistenceError as e:
            logger.error(f"Proxy: wallet store error for session {session_id}: {e}")
            return self._record_failure(resource_id, path, params, session_id, wallet_address,
                                        "Wallet store unavailable", internal=True)
        except GatewayError as e:
            logger.error(f"Proxy: request for session {session_id} failed: {e}")
            return self._record_failure(resource_id, path, params, session_id, wallet_address,
                                        str(e), internal=True)
        except Exception as e:
            logger.exception(f"Proxy: unexpected error for session {session_id}: {e}")
            return self._record_failure(resource_id, path, params, session_id, wallet_address,
                                        f"Unexpected error: {type(e).__name__}", internal=True)

        if not result.success:
            logger.error(f"Proxy: Request failed: {result.error}")
            return self._record_failure(resource_id, path, params, session_id, wallet_address,
                                        result.error or "Unknown error", response_status=result.status_code)

        return self._record_success(resource_id, path, params, session_id, wallet_address, result)

    @staticmethod
    def _validate(resource_id, path, session_id, params) -> None:
        if not resource_id or not path or not session_id:
            raise InputValidationError(MISSING_FIELDS_MESSAGE)
        if not _valid_params(params):
            raise InputValidationError(INVALID_PARAMS_MESSAGE)

    def _record_success(self, resource_id, path, params, session_id, wallet_address,
                        result: PaymentResult) -> ProxyResult:
        details = result.payment_details
        logger.info("Proxy: Request successful")
        if details:
            logger.info(f"Proxy: Payment made: {details.amount} to {details.to}")
            logger.info(f"Proxy: Transaction: {details.tx_hash}")

        record = completed_record(
            resource_id=resource_id,
            actor_id=session_id,
            path=path,
            params=_audit_params(params),
            response_status=result.status_code or 200,
            response_data=result.data,
            wallet_address=wallet_address,
            tx_hash=details.tx_hash if details else None,
            payment_amount=details.amount if details else None,
            payment_to_address=details.to if details else None,
            nonce=result.nonce,
        )
        if not self._append(record):
            return ProxyResult(success=False, status_code=500, error=INTERNAL_ERROR_MESSAGE)

        return ProxyResult(
            success=True,
            status_code=200,
            data=result.data,
            payment_details=details.to_dict() if details else None,
            wallet_address=wallet_address,
        )

    def _record_failure(self, resource_id, path, params, session_id, wallet_address,
                        error_message: str, response_status: Optional[int] = None,
                        internal: bool = False) -> ProxyResult:
        record = failed_record(
            resource_id=resource_id,
            actor_id=session_id,
            path=path,
            params=_audit_params(params),
            error_message=error_message,
            response_status=response_status,
            wallet_address=wallet_address,
        )
        # Internal details stay in the ledger; callers get a generic message
        error = INTERNAL_ERROR_MESSAGE if internal else error_message
        if not self._append(record):
            error = INTERNAL_ERROR_MESSAGE
        return ProxyResult(success=False, status_code=500, error=error)

    def _append(self, record) -> bool:
        try:
            self.ledger.append(record)
            return True
        except PersistenceError as e:
            logger.error(f"Proxy: failed to write audit record {record.id}: {e}")
            return False
