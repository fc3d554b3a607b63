# app/core/errors.py
"""
Error taxonomy for the session proxy.

Only ResourceProxy turns these into HTTP status codes and audit records;
lower layers raise them and let them propagate.
"""


class GatewayError(Exception):
    """Base class for all proxy errors."""


class InputValidationError(GatewayError):
    """Missing or malformed caller input. Never retried."""


class ResourceNotFound(GatewayError):
    """The requested resource id is unknown or inactive."""


class ConfigurationError(GatewayError):
    """Required configuration is absent (raised at first use)."""


class WalletDecryptionError(GatewayError):
    """
    A stored wallet could not be decrypted or does not match its address.

    Fatal: the caller must not fall back to creating a new wallet, since
    funds may already sit at the stored address.
    """


class PaymentChallengeError(GatewayError):
    """Network failure, malformed challenge or rejected payment."""


class PersistenceError(GatewayError):
    """The wallet store or audit ledger is unavailable."""


class WalletConflictError(PersistenceError):
    """Insert lost a race: a wallet already exists for this session."""

    def __init__(self, session_id: str):
        super().__init__(f"Wallet already exists for session {session_id}")
        self.session_id = session_id
