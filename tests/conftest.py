# tests/conftest.py
"""
Shared helpers for building upstream HTTP responses and x402 challenges.
"""
import json

import requests

PAY_TO = "0x209693bc6afc0c5328ba36faf03c514ef312287c"
USDC_BASE = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
TEST_PASSPHRASE = "test-wallet-passphrase"


def build_response(status_code=200, body=None, headers=None, text=None) -> requests.Response:
    """Create a real requests.Response with the given status, body and headers."""
    response = requests.Response()
    response.status_code = status_code
    if text is not None:
        response._content = text.encode("utf-8")
    elif body is not None:
        response._content = json.dumps(body).encode("utf-8")
    else:
        response._content = b""
    # Already read, so iter_content replays _content instead of a raw stream
    response._content_consumed = True
    response.headers.update(headers or {})
    response.encoding = "utf-8"
    return response


def build_challenge(amount="1000", network="base", extra=None, **overrides) -> dict:
    """Create a 402 response body with a single exact-scheme requirement."""
    requirement = {
        "scheme": "exact",
        "network": network,
        "maxAmountRequired": amount,
        "resource": "https://weather.example.com/weather",
        "description": "Mock weather API",
        "mimeType": "application/json",
        "payTo": PAY_TO,
        "maxTimeoutSeconds": 60,
        "asset": USDC_BASE,
        "extra": extra if extra is not None else {"name": "USD Coin", "version": "2"},
    }
    requirement.update(overrides)
    return {
        "x402Version": 1,
        "error": "X-PAYMENT header is required",
        "accepts": [requirement],
    }
