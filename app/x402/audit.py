# app/x402/audit.py
"""
Audit ledger for proxied resource requests.

Every proxied request that reaches a real target produces exactly one
AuditRecord, whether it completed or failed. The ledger is append-only and
is read later by the dispute-arbitration process, so records carry enough
detail to adjudicate a payment: the paying wallet, the settlement
transaction, the amount and recipient, and the authorization nonce.

Log format: JSON lines (one record per line)
Log location: Configured via AUDIT_LOG_PATH
"""
import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from app.core.config import settings
from app.core.errors import PersistenceError

logger = logging.getLogger(__name__)


class RequestStatus(str, Enum):
    """Lifecycle states of a resource request."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


def generate_record_id() -> str:
    """Generate a unique record ID."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AuditRecord(BaseModel):
    """One resource access attempt."""
    id: str = Field(default_factory=generate_record_id)
    resource_id: str
    actor_id: str
    wallet_address: Optional[str] = None
    path: str
    params: Optional[Any] = None
    response_status: Optional[int] = None
    response_data: Optional[Any] = None
    status: RequestStatus = RequestStatus.PENDING
    tx_hash: Optional[str] = None
    payment_amount: Optional[str] = None
    payment_to_address: Optional[str] = None
    nonce: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_status_fields(self) -> "AuditRecord":
        finished = self.status in (RequestStatus.COMPLETED, RequestStatus.FAILED)
        if finished and self.completed_at is None:
            raise ValueError(f"{self.status.value} record requires completed_at")
        if not finished and self.completed_at is not None:
            raise ValueError("pending record must not have completed_at")

        settlement = (self.tx_hash, self.payment_amount, self.payment_to_address)
        if self.status == RequestStatus.FAILED:
            if not self.error_message:
                raise ValueError("failed record requires error_message")
            if any(settlement) or self.nonce:
                raise ValueError("failed record must not carry payment fields")
        if self.status == RequestStatus.COMPLETED and any(settlement) and not all(settlement):
            raise ValueError("completed record needs tx_hash, payment_amount and payment_to_address together")
        return self


def completed_record(
    resource_id: str,
    actor_id: str,
    path: str,
    params: Optional[Any],
    response_status: int,
    response_data: Any,
    wallet_address: Optional[str] = None,
    tx_hash: Optional[str] = None,
    payment_amount: Optional[str] = None,
    payment_to_address: Optional[str] = None,
    nonce: Optional[str] = None
) -> AuditRecord:
    """Create a completed audit record."""
    return AuditRecord(
        resource_id=resource_id,
        actor_id=actor_id,
        wallet_address=wallet_address,
        path=path,
        params=params,
        response_status=response_status,
        response_data=response_data,
        status=RequestStatus.COMPLETED,
        tx_hash=tx_hash,
        payment_amount=payment_amount,
        payment_to_address=payment_to_address,
        nonce=nonce,
        completed_at=utc_now(),
    )


def failed_record(
    resource_id: str,
    actor_id: str,
    path: str,
    params: Optional[Any],
    error_message: str,
    response_status: Optional[int] = None,
    wallet_address: Optional[str] = None
) -> AuditRecord:
    """Create a failed audit record. Status defaults to 500 when unknown."""
    return AuditRecord(
        resource_id=resource_id,
        actor_id=actor_id,
        wallet_address=wallet_address,
        path=path,
        params=params,
        response_status=response_status or 500,
        status=RequestStatus.FAILED,
        error_message=error_message,
        completed_at=utc_now(),
    )


class AuditLedger(ABC):
    """Append-only store of AuditRecords."""

    @abstractmethod
    def append(self, record: AuditRecord) -> AuditRecord:
        """
        Persist a record.

        Raises:
            PersistenceError: If the record could not be written
        """

    @abstractmethod
    def records(self) -> List[AuditRecord]:
        """All records in write order."""

    def list_records(
        self,
        max_entries: int = 100,
        actor_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        status: Optional[RequestStatus] = None
    ) -> List[AuditRecord]:
        """
        Read records, most recent first.

        Args:
            max_entries: Maximum number of records to return
            actor_id: Filter by session (optional)
            resource_id: Filter by resource (optional)
            status: Filter by status (optional)
        """
        matched = []
        for record in self.records():
            # Apply filters
            if actor_id and record.actor_id != actor_id:
                continue
            if resource_id and record.resource_id != resource_id:
                continue
            if status and record.status != status:
                continue
            matched.append(record)

        return list(reversed(matched))[:max_entries]

    def stats(self) -> Dict[str, Any]:
        """Record counts by status, settled payment count, and date range."""
        by_status: Dict[str, int] = {}
        total = 0
        paid = 0
        first_timestamp = None
        last_timestamp = None

        for record in self.records():
            total += 1
            by_status[record.status.value] = by_status.get(record.status.value, 0) + 1
            if record.tx_hash:
                paid += 1
            if first_timestamp is None:
                first_timestamp = record.created_at.isoformat()
            last_timestamp = record.created_at.isoformat()

        return {
            "total_requests": total,
            "requests_by_status": by_status,
            "settled_payments": paid,
            "first_request": first_timestamp,
            "last_request": last_timestamp,
        }


class InMemoryAuditLedger(AuditLedger):
    def __init__(self):
        self._records: List[AuditRecord] = []
        self._lock = threading.Lock()

    def append(self, record: AuditRecord) -> AuditRecord:
        with self._lock:
            self._records.append(record)
        return record

    def records(self) -> List[AuditRecord]:
        with self._lock:
            return list(self._records)


class JsonlAuditLedger(AuditLedger):
    """Ledger persisted as a JSON lines file."""

    def __init__(self, log_path: Optional[str] = None):
        self._log_path = log_path
        self._write_lock = threading.Lock()

    @property
    def log_path(self) -> Path:
        """Get the path to the ledger file."""
        return Path(self._log_path or settings.AUDIT_LOG_PATH)

    def ensure_log_directory(self) -> None:
        """Create the ledger directory if needed."""
        log_dir = self.log_path.parent
        if not log_dir.exists():
            log_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created audit log directory: {log_dir}")

    def append(self, record: AuditRecord) -> AuditRecord:
        line = record.model_dump_json() + "\n"
        try:
            with self._write_lock:
                self.ensure_log_directory()
                with open(self.log_path, "a") as f:
                    f.write(line)
        except OSError as e:
            logger.error(f"Failed to write audit record {record.id}: {e}")
            raise PersistenceError("Audit ledger unavailable") from e

        logger.debug(f"Audit record written: {record.status.value} [{record.id}]")
        return record

    def records(self) -> List[AuditRecord]:
        log_path = self.log_path
        if not log_path.exists():
            return []

        result = []
        try:
            with open(log_path, "r") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        result.append(AuditRecord.model_validate(json.loads(line)))
                    except (json.JSONDecodeError, ValidationError):
                        logger.warning(f"Skipping malformed audit line in {log_path}")
                        continue
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")
            raise PersistenceError("Audit ledger unavailable") from e

        return result

    def stats(self) -> Dict[str, Any]:
        result = super().stats()
        result["log_path"] = str(self.log_path)
        result["log_exists"] = self.log_path.exists()
        return result
