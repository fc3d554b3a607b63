"""
x402 Payment Protocol client module.

This module implements the paying side of the x402 protocol for session
wallets: resources that answer 402 Payment Required are paid with a signed
transfer authorization and retried once.

Key components:
- challenge: challenge parsing, authorization building and signing
- client: the request / pay / retry transport
- audit: the append-only ledger of resource requests
- balance: USDC balance reads for session wallets

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
