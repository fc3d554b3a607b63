# app/wallet/store.py
"""
Wallet persistence.

WalletStore is the read/write interface to the keyed record store holding
one WalletRecord per session. The store, not the caller, enforces session
uniqueness: inserting a second record for a session raises
WalletConflictError.

Implementations:
- InMemoryWalletStore: process-local, used in tests and single-node setups
- SqlWalletStore: SQLAlchemy table with a UNIQUE session_id column
"""
import logging
import re
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import Column, DateTime, String, create_engine, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from app.core.errors import PersistenceError, WalletConflictError

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-f]{40}$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WalletRecord(BaseModel):
    """A session's wallet as persisted. Never exposes the encrypted key in repr."""
    session_id: str = Field(..., min_length=1)
    address: str
    encrypted_key: str = Field(..., min_length=1, repr=False)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("address")
    @classmethod
    def normalize_address(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not ADDRESS_PATTERN.match(normalized):
            raise ValueError(f"Invalid wallet address: {value}")
        return normalized


class WalletStore(ABC):
    """Keyed record store mapping session id -> WalletRecord."""

    @abstractmethod
    def get(self, session_id: str) -> Optional[WalletRecord]:
        """Return the wallet for a session, or None."""

    @abstractmethod
    def insert(self, record: WalletRecord) -> WalletRecord:
        """
        Insert a new wallet.

        Raises:
            WalletConflictError: A wallet already exists for the session
            PersistenceError: The store is unavailable
        """

    @abstractmethod
    def touch(self, session_id: str) -> Optional[WalletRecord]:
        """Refresh updated_at and return the updated record."""


class InMemoryWalletStore(WalletStore):
    """Thread-safe dict-backed store. The lock stands in for a UNIQUE index."""

    def __init__(self):
        self._records: Dict[str, WalletRecord] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> Optional[WalletRecord]:
        with self._lock:
            record = self._records.get(session_id)
            return record.model_copy() if record else None

    def insert(self, record: WalletRecord) -> WalletRecord:
        with self._lock:
            if record.session_id in self._records:
                raise WalletConflictError(record.session_id)
            self._records[record.session_id] = record.model_copy()
            return record

    def touch(self, session_id: str) -> Optional[WalletRecord]:
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                return None
            record = record.model_copy(update={"updated_at": utc_now()})
            self._records[session_id] = record
            return record.model_copy()

    def count(self) -> int:
        with self._lock:
            return len(self._records)


Base = declarative_base()


class ServerWallet(Base):
    __tablename__ = "server_wallets"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String(255), nullable=False, unique=True, index=True)
    wallet_address = Column(String(42), nullable=False)
    encrypted_private_key = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


def _to_record(row: ServerWallet) -> WalletRecord:
    return WalletRecord(
        session_id=row.session_id,
        address=row.wallet_address,
        encrypted_key=row.encrypted_private_key,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlWalletStore(WalletStore):
    """
    SQLAlchemy-backed wallet store.

    Uniqueness per session comes from the UNIQUE constraint on session_id;
    a losing concurrent insert surfaces as WalletConflictError.
    """

    def __init__(self, database_url: str, create_tables: bool = True, **engine_kwargs):
        self.engine = create_engine(database_url, **engine_kwargs)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        if create_tables:
            Base.metadata.create_all(self.engine)

    def get(self, session_id: str) -> Optional[WalletRecord]:
        try:
            with self._session_factory() as session:
                row = session.execute(
                    select(ServerWallet).where(ServerWallet.session_id == session_id)
                ).scalars().first()
                return _to_record(row) if row else None
        except SQLAlchemyError as e:
            logger.error(f"Wallet: failed to read wallet store: {e}")
            raise PersistenceError("Wallet store unavailable") from e

    def insert(self, record: WalletRecord) -> WalletRecord:
        row = ServerWallet(
            session_id=record.session_id,
            wallet_address=record.address,
            encrypted_private_key=record.encrypted_key,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
        try:
            with self._session_factory() as session:
                session.add(row)
                try:
                    session.commit()
                except IntegrityError as e:
                    session.rollback()
                    raise WalletConflictError(record.session_id) from e
                return _to_record(row)
        except WalletConflictError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Wallet: failed to insert wallet: {e}")
            raise PersistenceError("Wallet store unavailable") from e

    def touch(self, session_id: str) -> Optional[WalletRecord]:
        try:
            with self._session_factory() as session:
                session.execute(
                    update(ServerWallet)
                    .where(ServerWallet.session_id == session_id)
                    .values(updated_at=utc_now())
                )
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Wallet: failed to refresh wallet: {e}")
            raise PersistenceError("Wallet store unavailable") from e
        return self.get(session_id)
