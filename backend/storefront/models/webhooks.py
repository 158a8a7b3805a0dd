"""
Pydantic Webhook Models

Normalized form of inbound payment status callbacks, independent of the
provider envelope they arrived in.
"""
from typing import Literal, Optional
from pydantic import BaseModel

from .transactions import TransactionStatus


class WebhookEvent(BaseModel):
    """
    One status update for one transaction.

    reference_kind tells the reconciler whether reference is the provider's
    payment id (PIX envelope) or our transaction id (generic envelope).
    """
    reference: str
    reference_kind: Literal["payment_id", "transaction_id"]
    status: TransactionStatus
    payment_id: Optional[str] = None


class ReconcileOutcome(BaseModel):
    """
    What reconciling one event did.

    action:
    - fulfilled: moved to approved and fulfillment ran
    - failed: moved to cancelled/failed and the failure path ran
    - duplicate: transaction already left pending, nothing changed
    - ignored: event carried no effective change (still pending)
    - unknown: no transaction matches the event reference; nothing changed

    transaction_id and the statuses are None only for "unknown" outcomes.
    """
    transaction_id: Optional[str] = None
    reference: Optional[str] = None
    previous_status: Optional[TransactionStatus] = None
    status: Optional[TransactionStatus] = None
    action: Literal["fulfilled", "failed", "duplicate", "ignored", "unknown"]
    grants_created: int = 0
