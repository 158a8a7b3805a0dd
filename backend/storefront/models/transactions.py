"""
Pydantic Transaction Model

One checkout attempt with its immutable line-item snapshot.
"""
from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, Field, model_validator

from .catalog import LineItem


TransactionStatus = Literal["pending", "approved", "cancelled", "failed"]
TERMINAL_TRANSACTION_STATUSES = frozenset({"approved", "cancelled", "failed"})


class Transaction(BaseModel):
    """
    Transaction record.

    Invariants:
    - amount_cents equals the sum of line item subtotals
    - status only moves pending → approved | cancelled | failed
    - all monetary values in minor units (centavos)
    """
    id: str
    user_id: int
    amount_cents: int = Field(gt=0)
    currency: str = "BRL"
    status: TransactionStatus
    payment_method: str = "pix"
    payment_id: Optional[str] = None
    qr_code: Optional[str] = None
    expires_at: Optional[datetime] = None
    line_items: List[LineItem] = Field(min_length=1)
    created_at: datetime
    updated_at: datetime

    @model_validator(mode='after')
    def validate_amount(self):
        """Ensure amount matches the line item snapshot."""
        expected = sum(item.subtotal_cents for item in self.line_items)
        if self.amount_cents != expected:
            raise ValueError(f"Amount {self.amount_cents} != sum of line items({expected})")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TRANSACTION_STATUSES

    model_config = {
        "json_schema_extra": {
            "example": {
                "id": "Jx2c9Qp1hM0tYbq3VvW8sA",
                "user_id": 42,
                "amount_cents": 500,
                "currency": "BRL",
                "status": "pending",
                "payment_method": "pix",
                "payment_id": "txid7c1f09a2b44d",
                "qr_code": "00020126580014BR.GOV.BCB.PIX...",
                "expires_at": "2025-10-17T14:45:00",
                "line_items": [
                    {
                        "product_id": 1,
                        "product_code": "COINS_100",
                        "name": "100 Coins",
                        "product_type": "coins",
                        "unit_price_cents": 500,
                        "quantity": 1,
                        "subtotal_cents": 500,
                        "payload": {"type": "coins", "amount": 100}
                    }
                ],
                "created_at": "2025-10-17T14:30:00",
                "updated_at": "2025-10-17T14:30:00"
            }
        }
    }
