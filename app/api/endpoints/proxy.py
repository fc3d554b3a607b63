# app/api/endpoints/proxy.py
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.api.deps import get_resource_proxy
from app.api.models.proxy import ProxyResourceRequest, ProxyResourceResponse
from app.services.proxy import INTERNAL_ERROR_MESSAGE, ResourceProxy

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/proxy-resource",
    response_model=ProxyResourceResponse,
    responses={400: {"description": "Missing fields"}, 404: {"description": "Unknown resource"},
               500: {"description": "Payment or processing failure"}}
)
def proxy_resource(
    body: ProxyResourceRequest,
    proxy: ResourceProxy = Depends(get_resource_proxy)
):
    """
    Call a metered resource, paying with the session's server wallet.

    The wallet is created on the session's first call. If the resource
    answers with an x402 payment challenge the wallet signs a payment
    authorization and the request is retried once.
    """
    try:
        result = proxy.proxy(
            resource_id=body.resourceId,
            path=body.path,
            params=body.params,
            session_id=body.sessionId,
        )
    except Exception as e:
        logger.error(f"Error in proxy-resource API: {e}")
        return JSONResponse(status_code=500, content={"success": False, "error": INTERNAL_ERROR_MESSAGE})

    return JSONResponse(status_code=result.status_code, content=result.to_response())
