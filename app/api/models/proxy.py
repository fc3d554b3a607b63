from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Union


class ProxyResourceRequest(BaseModel):
    """
    Request model for a paid resource call.

    Required fields are optional here so that missing ones produce the
    proxy's own 400 response.
    """
    resourceId: Optional[str] = Field(default=None, description="Catalog id of the resource")
    path: Optional[str] = Field(default=None, description="Path relative to the resource base URL", example="/weather")
    params: Optional[Union[Dict[str, Any], List[Any]]] = Field(
        default=None,
        description="Query parameters; a list of [key, value] pairs keeps repeated keys",
        example={"location": "Tokyo", "date": "2025-01-15"}
    )
    sessionId: Optional[str] = Field(default=None, description="Anonymous session identifier")


class PaymentDetailsModel(BaseModel):
    txHash: str
    amount: str
    to: str


class ProxyResourceResponse(BaseModel):
    """Response model for a successful paid resource call."""
    success: bool = True
    data: Any = None
    paymentDetails: Optional[PaymentDetailsModel] = None
    walletAddress: str


class ResourceRequestEntry(BaseModel):
    """Public view of an audit record."""
    id: str
    resourceId: str
    actorId: str
    walletAddress: Optional[str] = None
    path: str
    params: Optional[Any] = None
    responseStatus: Optional[int] = None
    responseData: Optional[Any] = None
    status: str
    txHash: Optional[str] = None
    paymentAmount: Optional[str] = None
    paymentToAddress: Optional[str] = None
    nonce: Optional[str] = None
    errorMessage: Optional[str] = None
    createdAt: str
    completedAt: Optional[str] = None


class ResourceSummary(BaseModel):
    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    baseUrl: str
    priceHint: Optional[float] = None
