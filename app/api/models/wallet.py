from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class ServerWalletResponse(BaseModel):
    """
    Response model for the session wallet endpoint.
    """
    walletAddress: str
    balance: Optional[str] = None
    balanceFormatted: Optional[str] = None
    sessionId: str
    createdAt: datetime
