"""
Pydantic Line Item and Grant Payload Models

Product data is a tagged union keyed by product type. Each variant carries its
own schema so checkout, fulfillment and delivery never handle untyped blobs.
"""
from typing import Annotated, Any, Dict, Literal, Optional, Union
from pydantic import AliasChoices, BaseModel, Field, TypeAdapter, model_validator


ProductType = Literal["coins", "vip", "vehicle", "weapon", "item"]
GrantKind = Literal["currency", "entitlement", "inventory"]


# ==================== Payload Variants ====================

class CoinsPayload(BaseModel):
    """In-game currency pack. amount is credited once per purchased unit."""
    type: Literal["coins"] = "coins"
    amount: int = Field(default=100, gt=0)


class VipPayload(BaseModel):
    """Timed entitlement. duration_days is granted once per purchased unit."""
    type: Literal["vip"] = "vip"
    level: str = Field(default="bronze", min_length=1, max_length=20)
    duration_days: int = Field(
        default=30,
        gt=0,
        validation_alias=AliasChoices("duration_days", "duration")
    )


class InventoryPayload(BaseModel):
    """Game-side item. data is forwarded untouched to the game server."""
    type: Literal["vehicle", "weapon", "item"]
    data: Dict[str, Any] = Field(default_factory=dict)


GrantPayload = Annotated[
    Union[CoinsPayload, VipPayload, InventoryPayload],
    Field(discriminator="type")
]

_payload_adapter: TypeAdapter = TypeAdapter(GrantPayload)


def parse_payload(product_type: str, data: Optional[Dict[str, Any]]) -> Union[CoinsPayload, VipPayload, InventoryPayload]:
    """
    Build the typed payload for a product type from its stored data.

    Inventory products keep their whole data dict as the game-side payload;
    coins and VIP read their fields from it.

    Raises:
        pydantic.ValidationError: if the data does not fit the type's schema
    """
    data = dict(data or {})
    if product_type in ("vehicle", "weapon", "item"):
        return _payload_adapter.validate_python({"type": product_type, "data": data})
    data["type"] = product_type
    return _payload_adapter.validate_python(data)


def grant_kind(grant_type: str) -> GrantKind:
    """Map a product/grant type tag to its fulfillment kind."""
    if grant_type == "coins":
        return "currency"
    if grant_type == "vip":
        return "entitlement"
    return "inventory"


# ==================== Snapshots ====================

class LineItem(BaseModel):
    """Immutable snapshot of one purchased product, taken at checkout."""
    product_id: int
    product_code: str
    name: str
    product_type: ProductType
    unit_price_cents: int = Field(ge=0)
    quantity: int = Field(gt=0)
    subtotal_cents: int = Field(ge=0)
    payload: GrantPayload

    @model_validator(mode='after')
    def validate_snapshot(self):
        """Ensure subtotal matches quantity × unit price and payload matches type."""
        expected = self.quantity * self.unit_price_cents
        if self.subtotal_cents != expected:
            raise ValueError(f"Subtotal {self.subtotal_cents} != quantity({self.quantity}) × price({self.unit_price_cents})")
        if self.payload.type != self.product_type:
            raise ValueError(f"Payload type {self.payload.type} != product type {self.product_type}")
        return self


class GrantData(BaseModel):
    """What a grant owes: the typed payload plus the product it came from."""
    product_id: Optional[int] = None
    product_name: Optional[str] = None
    quantity: int = Field(default=1, gt=0)
    unit_price_cents: Optional[int] = Field(default=None, ge=0)
    payload: GrantPayload

    @classmethod
    def from_line_item(cls, item: LineItem) -> "GrantData":
        return cls(
            product_id=item.product_id,
            product_name=item.name,
            quantity=item.quantity,
            unit_price_cents=item.unit_price_cents,
            payload=item.payload,
        )
