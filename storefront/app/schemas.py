from pydantic import BaseModel, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List, Any, Dict
from decimal import Decimal
from datetime import datetime
from storefront.shared.security_config import sanitize_input, strip_input

class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True

# --- Requests ---
class OptionSchema(CamelModel):
    variant_index: Optional[int] = None
    color: Optional[str] = None
    color_hex: Optional[str] = None
    size: Optional[str] = None
    sku: Optional[str] = None

class CartLineAdd(CamelModel):
    product_id: Optional[str] = None
    qty: Optional[int] = None
    option: Optional[OptionSchema] = None

class CartLineOptionUpdate(CamelModel):
    option: Optional[OptionSchema] = None

class CartQtyUpdate(CamelModel):
    # Parsed by the cart engine so garbage maps to BAD_QTY
    qty: Any = None

class CartMergeRequest(CamelModel):
    # Entries are validated one by one so a bad entry cannot fail the batch
    items: List[Any] = []

class SingleOrderCreate(CamelModel):
    product_id: Optional[str] = None
    qty: Optional[int] = None
    option: Optional[OptionSchema] = None
    payment_method: Optional[str] = None

    @field_validator('payment_method')
    def sanitize_method(cls, v):
        return sanitize_input(v)

class CartOrderCreate(CamelModel):
    # Unusable entries match no line, like an index past the end
    lines: Optional[List[Any]] = None

class ShippingUpdate(CamelModel):
    courier_code: Optional[str] = None
    courier_name: Optional[str] = None
    tracking_number: Optional[str] = None

    @field_validator('courier_code', 'courier_name', 'tracking_number')
    def strip_fields(cls, v):
        return strip_input(v)

class OrderStatusUpdate(CamelModel):
    status: Optional[str] = None

class PaymentConfirm(CamelModel):
    order_id: Optional[str] = None
    order_key: Optional[str] = None
    amount: Optional[Decimal] = None

    @field_validator('order_key')
    def strip_key(cls, v):
        return strip_input(v)

class MockShipmentCreate(CamelModel):
    tracking_number: Optional[str] = None

    @field_validator('tracking_number')
    def strip_number(cls, v):
        return strip_input(v)

class MockRefresh(CamelModel):
    force_delivered: bool = False

# --- Responses ---
class CartLineResponse(CamelModel):
    product_id: str
    line_id: str
    line: int
    name: str
    price: Decimal
    images: List[str] = []
    qty: int
    line_price: Decimal
    variant_index: Optional[int] = None
    color: Optional[str] = None
    color_hex: Optional[str] = None
    size: Optional[str] = None
    sku: Optional[str] = None

class CartResponse(CamelModel):
    id: str
    items: List[CartLineResponse]
    total_qty: int
    total_price: Decimal
    version: int

class MergeEntryResult(CamelModel):
    index: int
    ok: bool
    error: Optional[str] = None

class CartMergeResponse(CartResponse):
    results: Optional[List[MergeEntryResult]] = None

class OrderCreated(CamelModel):
    id: str
    total_price: Decimal

class OrderItemResponse(CamelModel):
    product_id: str
    name: str
    image: Optional[str] = None
    price: Decimal
    qty: int
    option: Optional[OptionSchema] = None

class ShippingResponse(CamelModel):
    courier_code: Optional[str] = None
    courier_name: Optional[str] = None
    tracking_number: Optional[str] = None
    status: Optional[str] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    last_checkpoint: Optional[str] = None

class PaymentResponse(CamelModel):
    method: str
    provider: Optional[str] = None
    status: str
    paid_at: Optional[datetime] = None
    pg_transaction_id: Optional[str] = None
    receipt_url: Optional[str] = None

class OrderResponse(CamelModel):
    id: str
    user_id: str
    status: str
    total_price: Decimal
    payment_method: str
    payment: PaymentResponse
    shipping: Optional[ShippingResponse] = None
    items: List[OrderItemResponse]
    created_at: datetime
    updated_at: Optional[datetime] = None

class OrderListResponse(CamelModel):
    page: int
    limit: int
    total: int
    pages: int
    items: List[OrderResponse]

class PaymentConfirmed(CamelModel):
    id: str
    status: str
    payment: PaymentResponse

class MockShipmentResponse(CamelModel):
    id: str
    tracking_number: str

class TrackingResponse(CamelModel):
    id: str
    status: str
    shipping: Optional[ShippingResponse] = None

class WebhookAck(CamelModel):
    received: bool = True
    handled: bool = False
    details: Optional[Dict[str, Any]] = None
