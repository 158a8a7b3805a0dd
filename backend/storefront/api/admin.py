"""
Admin API Endpoints

Operator tools for grants and the pending delivery backlog.
"""
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional
import logging

from ..dependencies import get_delivery, get_fulfillment, get_ledger
from ..models.catalog import ProductType, parse_payload
from ..models.grants import GrantStatus
from ..services.delivery import DeliveryCoordinator
from ..services.fulfillment import FulfillmentEngine
from ..services.ledger import Ledger

logger = logging.getLogger(__name__)

router = APIRouter()


class AdminGrantRequest(BaseModel):
    """Grant issued by an operator outside checkout."""
    user_id: int
    grant_type: ProductType
    grant_data: Dict[str, Any] = Field(default_factory=dict)
    granted_by: Optional[int] = None
    product_name: Optional[str] = None
    quantity: int = Field(default=1, gt=0)
    reason: Optional[str] = None


@router.post("/admin/grant", status_code=201)
async def admin_grant_endpoint(
    request: AdminGrantRequest,
    fulfillment: FulfillmentEngine = Depends(get_fulfillment),
    ledger: Ledger = Depends(get_ledger)
) -> Dict[str, Any]:
    """
    Grant coins, VIP or items to a user.

    Request Body:
        {"user_id": 1, "grant_type": "coins", "grant_data": {"amount": 500}, "granted_by": 2}

    Returns:
        The grant; status "pending" means delivery is waiting for the player
    """
    payload = parse_payload(request.grant_type, request.grant_data)

    grant = await fulfillment.issue_grant(
        request.user_id,
        payload,
        granted_by=request.granted_by,
        product_name=request.product_name,
        quantity=request.quantity,
    )

    await ledger.log_activity(
        f"admin:{request.granted_by}", "admin_grant_created", "grant", grant.id, request.user_id,
        {"grant_type": request.grant_type, "reason": request.reason}
    )

    delivered = grant.status == "delivered"
    return {
        "success": True,
        "message": "Items granted and delivered successfully" if delivered
        else "Items granted successfully (pending delivery)",
        "grant": grant.model_dump(mode="json"),
    }


@router.get("/admin/grants")
async def list_grants_endpoint(
    status: Optional[GrantStatus] = None,
    user_id: Optional[int] = None,
    transaction_id: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    ledger: Ledger = Depends(get_ledger)
) -> Dict[str, Any]:
    """Grants filtered by status, owner or transaction, most recent first."""
    grants = await ledger.list_grants(
        status=status, user_id=user_id, transaction_id=transaction_id, limit=limit, offset=offset
    )
    return {
        "grants": [grant.model_dump(mode="json") for grant in grants],
        "pagination": {"limit": limit, "offset": offset, "count": len(grants)},
    }


@router.post("/admin/grants/{grant_id}/deliver")
async def redeliver_grant_endpoint(
    grant_id: str,
    actor: str = Query(default="admin"),
    delivery: DeliveryCoordinator = Depends(get_delivery),
    ledger: Ledger = Depends(get_ledger)
) -> Dict[str, Any]:
    """Retry delivery of a pending or failed grant; ends delivered or failed."""
    result = await delivery.redeliver(grant_id, actor=actor)
    grant = await ledger.get_grant(grant_id)
    return {
        "success": result.delivered,
        "message": result.message,
        "status": grant.status,
        "delivery": result.model_dump(),
    }


@router.get("/admin/queue")
async def delivery_queue_endpoint(
    limit: int = Query(default=50, ge=1, le=200),
    delivery: DeliveryCoordinator = Depends(get_delivery)
) -> Dict[str, Any]:
    """Pending delivery backlog with per-type counts."""
    snapshot = await delivery.queue_snapshot(limit=limit)
    return snapshot.model_dump(mode="json")


@router.post("/admin/queue/process")
async def process_queue_endpoint(
    delivery: DeliveryCoordinator = Depends(get_delivery)
) -> Dict[str, Any]:
    """Run one pass over the pending backlog now."""
    report = await delivery.process_pending_queue(actor="admin")
    return {
        "success": True,
        "message": f"Processed {report.processed} pending deliveries",
        "results": report.model_dump(),
    }
