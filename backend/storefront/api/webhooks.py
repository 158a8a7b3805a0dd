"""
Webhook Endpoints

Inbound callbacks from the PIX provider, generic payment gateways and the game
server. Signatures are checked over the raw body, so handlers read bytes and
never let FastAPI parse the JSON first.
"""
from fastapi import APIRouter, Depends, Header, Request
from typing import Any, Dict, Optional
import logging

from ..dependencies import get_reconciler
from ..services.webhooks import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/provider")
async def provider_webhook_endpoint(
    request: Request,
    x_signature: Optional[str] = Header(default=None),
    reconciler: WebhookReconciler = Depends(get_reconciler)
) -> Dict[str, Any]:
    """
    PIX provider notification.

    Headers:
        X-Signature: hex HMAC-SHA256 of the raw body
    """
    raw_body = await request.body()
    logger.info(f"PIX webhook received ({len(raw_body)} bytes)")

    outcomes = await reconciler.handle(raw_body, x_signature, "pix")

    return {
        "success": True,
        "message": "Webhook processed successfully",
        "results": [outcome.model_dump() for outcome in outcomes],
    }


@router.post("/webhooks/payment")
async def payment_webhook_endpoint(
    request: Request,
    x_webhook_signature: Optional[str] = Header(default=None),
    reconciler: WebhookReconciler = Depends(get_reconciler)
) -> Dict[str, Any]:
    """
    Generic payment notification: {"transactionId", "status", "paymentId"?}.

    Headers:
        X-Webhook-Signature: hex HMAC-SHA256 of the raw body
    """
    raw_body = await request.body()
    logger.info(f"Generic payment webhook received ({len(raw_body)} bytes)")

    outcomes = await reconciler.handle(raw_body, x_webhook_signature, "generic")
    outcome = outcomes[0]

    return {
        "success": True,
        "message": "Webhook processed successfully",
        "transaction_id": outcome.transaction_id,
        "action": outcome.action,
        "status": outcome.status,
    }


@router.post("/webhooks/delivery")
async def delivery_webhook_endpoint(
    request: Request,
    x_game_signature: Optional[str] = Header(default=None),
    reconciler: WebhookReconciler = Depends(get_reconciler)
) -> Dict[str, Any]:
    """
    Game server delivery confirmation: {"grantId", "status", "identifier"}.

    Headers:
        X-Game-Signature: hex HMAC-SHA256 of the raw body
    """
    raw_body = await request.body()
    previous = await reconciler.handle_delivery_confirmation(raw_body, x_game_signature)

    return {
        "success": True,
        "message": "Delivery webhook processed successfully",
        "previous_status": previous,
    }
