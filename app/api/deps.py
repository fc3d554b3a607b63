# app/api/deps.py
"""
Service wiring for the API routers.

Each factory is cached so the process shares one store, ledger and client.
Tests replace them through app.dependency_overrides.
"""
import logging
from functools import lru_cache

from app.core.config import settings
from app.services.catalog import InMemoryResourceCatalog, ResourceCatalog, load_catalog_file
from app.services.proxy import ResourceProxy
from app.wallet.manager import WalletManager
from app.wallet.store import InMemoryWalletStore, SqlWalletStore, WalletStore
from app.x402.audit import AuditLedger, JsonlAuditLedger
from app.x402.client import PaymentChallengeClient

logger = logging.getLogger(__name__)


@lru_cache()
def get_wallet_store() -> WalletStore:
    if settings.DATABASE_URL:
        return SqlWalletStore(settings.DATABASE_URL)
    logger.warning("DATABASE_URL not configured - wallets are kept in memory only")
    return InMemoryWalletStore()


@lru_cache()
def get_wallet_manager() -> WalletManager:
    return WalletManager(get_wallet_store())


@lru_cache()
def get_audit_ledger() -> AuditLedger:
    return JsonlAuditLedger()


@lru_cache()
def get_resource_catalog() -> ResourceCatalog:
    if settings.RESOURCE_CATALOG_PATH:
        return load_catalog_file(settings.RESOURCE_CATALOG_PATH)
    logger.warning("RESOURCE_CATALOG_PATH not configured - resource catalog is empty")
    return InMemoryResourceCatalog()


@lru_cache()
def get_resource_proxy() -> ResourceProxy:
    return ResourceProxy(
        catalog=get_resource_catalog(),
        wallet_manager=get_wallet_manager(),
        ledger=get_audit_ledger(),
        client=PaymentChallengeClient(),
    )
