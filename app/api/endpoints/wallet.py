# app/api/endpoints/wallet.py
from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional
import logging

from app.api.deps import get_wallet_manager
from app.api.models.wallet import ServerWalletResponse
from app.core.errors import ConfigurationError, PersistenceError, WalletDecryptionError
from app.wallet.manager import WalletManager
from app.x402.balance import format_usdc, get_usdc_balance

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/server-wallet", response_model=ServerWalletResponse)
def get_server_wallet(
    sessionId: Optional[str] = Query(default=None),
    manager: WalletManager = Depends(get_wallet_manager)
) -> ServerWalletResponse:
    """
    Get or create the server wallet for a session and return its USDC balance.

    The balance is null when it cannot be read from the chain.

    Raises:
        HTTPException: 400 without sessionId, 500 if the wallet is unavailable
    """
    if not sessionId:
        raise HTTPException(status_code=400, detail="sessionId parameter is required")

    try:
        wallet = manager.get_or_create(sessionId)
    except WalletDecryptionError as e:
        logger.error(f"Server wallet for session {sessionId} cannot be decrypted: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")
    except PersistenceError as e:
        logger.error(f"Wallet store unavailable: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")
    except ConfigurationError as e:
        logger.error(f"Wallet encryption not configured: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")

    balance = get_usdc_balance(wallet.address)
    logger.info(f"Server wallet endpoint accessed for session {sessionId}: {wallet.address}")

    return ServerWalletResponse(
        walletAddress=wallet.address,
        balance=str(balance) if balance is not None else None,
        balanceFormatted=format_usdc(balance) if balance is not None else None,
        sessionId=wallet.session_id,
        createdAt=wallet.created_at,
    )
