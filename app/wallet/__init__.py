"""
Custodial session wallets.

- cipher: encryption of private keys at rest
- store: wallet persistence (one record per session)
- manager: get-or-create provisioning
"""
