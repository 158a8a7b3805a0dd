"""
Payments API Endpoints

Checkout and payment lifecycle for PIX purchases.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import Any, Dict, List
import logging

from ..dependencies import get_checkout
from ..models.transactions import Transaction
from ..services.checkout import CartItem, CheckoutService

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================================================
# Request Models
# ============================================================================

class CreatePaymentRequest(BaseModel):
    """Checkout request: buyer and the products to pay for."""
    user_id: int
    items: List[CartItem] = Field(min_length=1)


def _payment_view(transaction: Transaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "user_id": transaction.user_id,
        "amount_cents": transaction.amount_cents,
        "currency": transaction.currency,
        "status": transaction.status,
        "payment_method": transaction.payment_method,
        "payment_id": transaction.payment_id,
        "qr_code": transaction.qr_code,
        "expires_at": transaction.expires_at,
        "line_items": [item.model_dump(mode="json") for item in transaction.line_items],
        "created_at": transaction.created_at,
        "updated_at": transaction.updated_at,
    }


# ============================================================================
# Endpoints
# ============================================================================

@router.post("/payments", status_code=201)
async def create_payment_endpoint(
    request: CreatePaymentRequest,
    checkout: CheckoutService = Depends(get_checkout)
) -> Dict[str, Any]:
    """
    Create a PIX payment for a cart.

    Request Body:
        {"user_id": 1, "items": [{"product_id": 1, "quantity": 2}]}

    Returns:
        Pending payment with PIX QR code payload and expiry
    """
    logger.info(f"Creating payment for user {request.user_id}: {len(request.items)} items")

    transaction = await checkout.create_payment(request.user_id, request.items)

    return {
        "success": True,
        "message": "Payment created successfully",
        "payment": _payment_view(transaction),
    }


@router.get("/payments/{transaction_id}")
async def get_payment_endpoint(
    transaction_id: str,
    checkout: CheckoutService = Depends(get_checkout)
) -> Dict[str, Any]:
    """Payment details with the line item snapshot."""
    transaction = await checkout.get_payment(transaction_id)
    return {"success": True, "payment": _payment_view(transaction)}


@router.get("/payments/{transaction_id}/status")
async def get_payment_status_endpoint(
    transaction_id: str,
    checkout: CheckoutService = Depends(get_checkout)
) -> Dict[str, Any]:
    """
    Payment status, reconciled against the provider while pending.

    Returns the same transition a webhook would have made, so polling clients
    see approvals even when the webhook is late.
    """
    transaction, outcome = await checkout.get_payment_status(transaction_id)
    return {
        "success": True,
        "status": transaction.status,
        "payment_id": transaction.payment_id,
        "expires_at": transaction.expires_at,
        "reconciled": outcome.action if outcome else None,
    }


@router.post("/payments/{transaction_id}/cancel")
async def cancel_payment_endpoint(
    transaction_id: str,
    checkout: CheckoutService = Depends(get_checkout)
) -> Dict[str, Any]:
    """Cancel a pending payment (409 once it left pending)."""
    transaction = await checkout.cancel_payment(transaction_id, actor="user")
    return {
        "success": True,
        "message": "Payment cancelled successfully",
        "status": transaction.status,
    }
