# app/core/config.py
from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl # AnyHttpUrl stays in pydantic core
from functools import lru_cache
from typing import Optional
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Session Proxy"
    API_V1_STR: str = "/api/v1"

    # Passphrase for custodial key encryption. Validated lazily on first use.
    WALLET_ENCRYPTION_KEY: Optional[str] = None

    # SQLAlchemy URL for the wallet table; in-memory store when unset
    DATABASE_URL: Optional[str] = None

    AUDIT_LOG_PATH: str = "logs/resource_requests.jsonl"
    RESOURCE_CATALOG_PATH: Optional[str] = None

    # x402 client
    X402_NETWORK: str = "base"
    X402_MAX_PAYMENT_ATOMIC: int = 100_000  # 0.10 USDC
    X402_REQUEST_TIMEOUT_SECONDS: float = 30.0

    # Balance reads
    BASE_RPC_URL: AnyHttpUrl = "https://mainnet.base.org"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
