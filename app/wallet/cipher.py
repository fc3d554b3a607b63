# app/wallet/cipher.py
"""
Encryption of custodial private keys at rest.

Blob layout (base64 encoded):

    salt (64) | nonce (16) | tag (16) | ciphertext

The AES-256-GCM key is derived per call from the passphrase and the random
salt with PBKDF2-HMAC-SHA256 (100,000 iterations). Decryption verifies the
tag before any plaintext is released; every failure mode (tampering,
truncation, bad base64, wrong passphrase) raises WalletDecryptionError.
"""
import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from app.core.config import settings
from app.core.errors import ConfigurationError, WalletDecryptionError

logger = logging.getLogger(__name__)

SALT_LENGTH = 64
NONCE_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
KDF_ITERATIONS = 100_000

HEADER_LENGTH = SALT_LENGTH + NONCE_LENGTH + TAG_LENGTH


def derive_key(passphrase: str, salt: bytes) -> bytes:
    """Derive a 32-byte AES key from the passphrase and salt."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def encrypt_private_key(plaintext: str, passphrase: str) -> str:
    """
    Encrypt a secret under the passphrase.

    Args:
        plaintext: The secret to protect (a hex private key)
        passphrase: Process-wide encryption passphrase

    Returns:
        Base64 text of salt | nonce | tag | ciphertext
    """
    salt = os.urandom(SALT_LENGTH)
    nonce = os.urandom(NONCE_LENGTH)
    key = derive_key(passphrase, salt)

    # AESGCM appends the tag to the ciphertext
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

    return base64.b64encode(salt + nonce + tag + ciphertext).decode("ascii")


def decrypt_private_key(blob: str, passphrase: str) -> str:
    """
    Decrypt a blob produced by encrypt_private_key.

    Raises:
        WalletDecryptionError: On any integrity or passphrase failure
    """
    try:
        raw = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise WalletDecryptionError("Encrypted key is not valid base64") from e

    if len(raw) < HEADER_LENGTH:
        raise WalletDecryptionError("Encrypted key is truncated")

    salt = raw[:SALT_LENGTH]
    nonce = raw[SALT_LENGTH:SALT_LENGTH + NONCE_LENGTH]
    tag = raw[SALT_LENGTH + NONCE_LENGTH:HEADER_LENGTH]
    ciphertext = raw[HEADER_LENGTH:]

    key = derive_key(passphrase, salt)
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as e:
        raise WalletDecryptionError("Encrypted key failed authentication") from e

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise WalletDecryptionError("Decrypted key is not valid text") from e


def get_encryption_passphrase() -> str:
    """Read the passphrase from settings, failing if it is not configured."""
    passphrase = settings.WALLET_ENCRYPTION_KEY
    if not passphrase:
        logger.error("WALLET_ENCRYPTION_KEY not configured")
        raise ConfigurationError("WALLET_ENCRYPTION_KEY environment variable is not set")
    return passphrase


class KeyCipher:
    """
    Encrypts and decrypts wallet keys under a single passphrase.

    When no passphrase is given, it is read from settings on first use so
    that a missing WALLET_ENCRYPTION_KEY fails the first wallet operation
    rather than process start-up.
    """

    def __init__(self, passphrase: Optional[str] = None):
        self._passphrase = passphrase

    @property
    def passphrase(self) -> str:
        if self._passphrase is None:
            self._passphrase = get_encryption_passphrase()
        return self._passphrase

    def encrypt(self, plaintext: str) -> str:
        return encrypt_private_key(plaintext, self.passphrase)

    def decrypt(self, blob: str) -> str:
        return decrypt_private_key(blob, self.passphrase)
