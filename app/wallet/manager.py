# app/wallet/manager.py
"""
Session wallet provisioning.

Each anonymous session owns exactly one custodial wallet. The first request
for a session generates a key pair, encrypts the private key and inserts it;
later requests decrypt the stored key. Concurrent first requests are
resolved by the store's uniqueness constraint: the losers re-read the
winning record instead of failing.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount

from app.core.errors import PersistenceError, WalletConflictError, WalletDecryptionError
from app.wallet.cipher import KeyCipher
from app.wallet.store import WalletRecord, WalletStore

logger = logging.getLogger(__name__)


def _hex_key(account: LocalAccount) -> str:
    key = account.key.hex()
    return key if key.startswith("0x") else f"0x{key}"


def derive_address(private_key: str) -> str:
    """Lower-cased address of the account controlled by private_key."""
    return Account.from_key(private_key).address.lower()


@dataclass
class WalletWithSecret:
    """A wallet with its decrypted key. Lives only for one call chain."""
    session_id: str
    address: str
    private_key: str = field(repr=False)
    created_at: datetime
    updated_at: datetime

    def to_account(self) -> LocalAccount:
        return Account.from_key(self.private_key)


class WalletManager:
    def __init__(self, store: WalletStore, cipher: Optional[KeyCipher] = None):
        self.store = store
        self.cipher = cipher or KeyCipher()

    def get_wallet(self, session_id: str) -> Optional[WalletRecord]:
        """Look up a session's wallet without decrypting it."""
        return self.store.get(session_id)

    def get_or_create(self, session_id: str) -> WalletWithSecret:
        """
        Return the session's wallet, creating it on first access.

        Raises:
            WalletDecryptionError: The stored wallet cannot be decrypted
            PersistenceError: The store is unavailable
        """
        existing = self.store.get(session_id)
        if existing is not None:
            wallet = self._unlock(existing)
            refreshed = self.store.touch(session_id)
            if refreshed is not None:
                wallet.updated_at = refreshed.updated_at
            return wallet

        account = Account.create()
        private_key = _hex_key(account)
        record = WalletRecord(
            session_id=session_id,
            address=account.address,
            encrypted_key=self.cipher.encrypt(private_key),
        )

        try:
            created = self.store.insert(record)
        except WalletConflictError:
            logger.info(f"Wallet: concurrent creation for session {session_id}, using existing wallet")
            winner = self.store.get(session_id)
            if winner is None:
                raise PersistenceError(f"Wallet for session {session_id} conflicted but could not be read")
            return self._unlock(winner)

        logger.info(f"Wallet: created wallet {created.address} for session {session_id}")
        return WalletWithSecret(
            session_id=created.session_id,
            address=created.address,
            private_key=private_key,
            created_at=created.created_at,
            updated_at=created.updated_at,
        )

    def _unlock(self, record: WalletRecord) -> WalletWithSecret:
        try:
            private_key = self.cipher.decrypt(record.encrypted_key)
        except WalletDecryptionError:
            logger.error(f"Wallet: failed to decrypt wallet {record.address} for session {record.session_id}")
            raise

        try:
            address = derive_address(private_key)
        except Exception as e:  # eth_keys raises its own ValidationError
            raise WalletDecryptionError("Decrypted key is not a valid private key") from e

        if address != record.address:
            logger.error(f"Wallet: decrypted key does not match address {record.address}")
            raise WalletDecryptionError("Decrypted key does not match the stored wallet address")

        return WalletWithSecret(
            session_id=record.session_id,
            address=record.address,
            private_key=private_key,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
