# app/api/endpoints/resources.py
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from requests.exceptions import RequestException

from app.api.deps import get_audit_ledger, get_resource_catalog
from app.api.models.proxy import ResourceRequestEntry, ResourceSummary
from app.core.errors import PersistenceError
from app.services.catalog import ResourceCatalog, fetch_discovery_document
from app.x402.audit import AuditLedger, AuditRecord

logger = logging.getLogger(__name__)

router = APIRouter()


def _to_entry(record: AuditRecord) -> ResourceRequestEntry:
    return ResourceRequestEntry(
        id=record.id,
        resourceId=record.resource_id,
        actorId=record.actor_id,
        walletAddress=record.wallet_address,
        path=record.path,
        params=record.params,
        responseStatus=record.response_status,
        responseData=record.response_data,
        status=record.status.value,
        txHash=record.tx_hash,
        paymentAmount=record.payment_amount,
        paymentToAddress=record.payment_to_address,
        nonce=record.nonce,
        errorMessage=record.error_message,
        createdAt=record.created_at.isoformat(),
        completedAt=record.completed_at.isoformat() if record.completed_at else None,
    )


@router.get("/resources", response_model=List[ResourceSummary])
def list_resources(catalog: ResourceCatalog = Depends(get_resource_catalog)) -> List[ResourceSummary]:
    """List active resources."""
    return [
        ResourceSummary(
            id=resource.id,
            name=resource.name,
            description=resource.description,
            baseUrl=resource.base_url,
            priceHint=resource.price_hint,
        )
        for resource in catalog.list_active()
    ]


@router.get("/resources/{resource_id}/discovery")
def get_resource_discovery(
    resource_id: str = Path(..., description="Catalog id of the resource"),
    catalog: ResourceCatalog = Depends(get_resource_catalog)
) -> Dict[str, Any]:
    """
    Fetch the resource's /.well-known/x402 document.

    Raises:
        HTTPException: 404 for unknown resources, 502 if the document
            cannot be fetched or parsed
    """
    resource = catalog.resolve(resource_id)
    if resource is None:
        raise HTTPException(status_code=404, detail="Resource not found")

    try:
        document = fetch_discovery_document(resource)
    except RequestException as e:
        logger.error(f"Failed to fetch discovery document for {resource_id}: {e}")
        raise HTTPException(status_code=502, detail="Failed to fetch discovery document")
    except ValueError as e:
        logger.error(f"Invalid discovery document for {resource_id}: {e}")
        raise HTTPException(status_code=502, detail="Invalid discovery document")

    return document.model_dump(by_alias=True)


@router.get("/resource-requests", response_model=List[ResourceRequestEntry])
def list_resource_requests(
    sessionId: Optional[str] = Query(default=None),
    resourceId: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    ledger: AuditLedger = Depends(get_audit_ledger)
) -> List[ResourceRequestEntry]:
    """
    List audited resource requests, most recent first.

    At least one of sessionId or resourceId is required.
    """
    if not sessionId and not resourceId:
        raise HTTPException(status_code=400, detail="sessionId or resourceId parameter is required")

    try:
        records = ledger.list_records(max_entries=limit, actor_id=sessionId, resource_id=resourceId)
    except PersistenceError as e:
        logger.error(f"Failed to read resource requests: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch resource requests")

    return [_to_entry(record) for record in records]


@router.get("/resource-requests/stats")
def get_resource_request_stats(ledger: AuditLedger = Depends(get_audit_ledger)) -> Dict[str, Any]:
    """Ledger statistics: counts by status, settled payments, date range."""
    try:
        return ledger.stats()
    except PersistenceError as e:
        logger.error(f"Failed to read resource request stats: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch resource request stats")
