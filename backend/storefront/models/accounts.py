"""
Pydantic Account, Product and Audit Models

Read projections of the rows fulfillment depends on.
"""
from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict

from .catalog import ProductType


class UserAccount(BaseModel):
    """Account projection: balance, entitlement and linked game identity."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    game_identifier: Optional[str] = None
    coins: int = 0
    vip_level: str = "none"
    vip_expires_at: Optional[datetime] = None


class Product(BaseModel):
    """Catalog product as checkout sees it. stock = -1 means unlimited."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    name: str
    price_cents: int
    type: ProductType
    data: Optional[Dict[str, Any]] = None
    active: bool = True
    stock: int = -1

    @property
    def unlimited(self) -> bool:
        return self.stock == -1


class AuditEntry(BaseModel):
    """One audit log row."""
    id: int
    actor: str
    action: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    user_id: Optional[int] = None
    details: Dict[str, Any]
    created_at: datetime
