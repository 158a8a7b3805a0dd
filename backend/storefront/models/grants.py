"""
Pydantic Grant and Delivery Models

A grant is one unit of entitlement owed to a user; delivery results describe a
single push of that grant to the game server.
"""
from datetime import datetime
from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field

from .catalog import GrantData, GrantKind, grant_kind


GrantStatus = Literal["pending", "delivered", "failed"]


class Grant(BaseModel):
    """
    Grant record.

    State machine:
    - pending → delivered (delivery succeeded)
    - pending → failed (attempts exhausted or recipient unresolvable)
    - failed → delivered only via explicit administrator re-delivery
    """
    id: str
    transaction_id: Optional[str] = None  # None for admin-issued grants
    user_id: int
    grant_type: str
    grant_data: GrantData
    status: GrantStatus
    granted_by: Optional[int] = None  # None when system-issued
    granted_at: datetime

    @property
    def kind(self) -> GrantKind:
        return grant_kind(self.grant_type)

    @property
    def has_local_effect(self) -> bool:
        """Currency and entitlement grants are complete once the account is mutated."""
        return self.kind != "inventory"


class DeliveryResult(BaseModel):
    """
    Outcome of a delivery attempt.

    retry_after_seconds is set when delivered is False and the grant should be
    retried later; skipped means the owner has no linked game identity.
    """
    delivered: bool
    message: str = ""
    retry_after_seconds: Optional[int] = None
    attempts: int = 1
    skipped: bool = False
    recipient_online: Optional[bool] = None


class QueueReport(BaseModel):
    """
    Counters from one pass over the pending grant backlog.

    in_progress counts grants left alone because another caller holds their
    delivery lease; they are not part of processed.
    """
    processed: int = 0
    delivered: int = 0
    failed: int = 0
    skipped: int = 0
    in_progress: int = 0


class ItemOutcome(BaseModel):
    """Per-line-item result of a fulfillment run."""
    index: int
    product_type: str
    grant_id: Optional[str] = None
    grant_status: Optional[GrantStatus] = None
    error: Optional[str] = None


class FulfillmentReport(BaseModel):
    """Summary of fulfilling one approved transaction."""
    transaction_id: str
    grants_created: int = 0
    items_failed: int = 0
    items: List[ItemOutcome] = Field(default_factory=list)


class QueueSnapshot(BaseModel):
    """Operator view of the pending delivery backlog."""
    total: int
    by_type: Dict[str, int]
    items: List[Grant]
    has_more: bool
