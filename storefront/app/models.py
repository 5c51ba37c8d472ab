from datetime import datetime
from enum import Enum
from typing import Optional, List
from decimal import Decimal
from pydantic import BaseModel, Field
import uuid

class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    SHIPPING = "SHIPPING"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"

class ShippingStatus(str, Enum):
    READY = "READY"
    SHIPPING = "SHIPPING"
    DELIVERED = "DELIVERED"

# --- Catalog (read-only here) ---
class VariantSizeDB(BaseModel):
    name: str
    stock: int = 0
    sku: Optional[str] = None

class VariantDB(BaseModel):
    color: str
    # The catalog service writes camelCase keys
    color_hex: Optional[str] = Field(None, alias="colorHex")
    sizes: List[VariantSizeDB] = []

    class Config:
        populate_by_name = True

class ProductDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    name: str
    price: Decimal
    images: List[str] = []
    status: str = "ACTIVE"
    variants: List[VariantDB] = []

    class Config:
        populate_by_name = True

# --- Cart ---
class LineOption(BaseModel):
    variant_index: Optional[int] = None
    color: Optional[str] = None
    color_hex: Optional[str] = None
    size: Optional[str] = None
    sku: Optional[str] = None

    @property
    def key(self) -> str:
        if self.sku:
            return self.sku
        return f"{self.variant_index}-{self.size}"

def line_match_key(product_id: str, option: Optional[LineOption]) -> str:
    """Lines with equal keys hold the same product and option and must be merged."""
    return f"{product_id}::{option.key if option else ''}"

def new_line_id() -> str:
    return uuid.uuid4().hex

class CartLineDB(BaseModel):
    line_id: str = Field(default_factory=new_line_id)
    product_id: str
    qty: int = Field(..., ge=1)
    option: Optional[LineOption] = None

    @property
    def match_key(self) -> str:
        return line_match_key(self.product_id, self.option)

class CartDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    items: List[CartLineDB] = []
    version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True

# --- Order ---
class OrderItemDB(BaseModel):
    product_id: str
    qty: int
    price: Decimal # Snapshot, never re-read from the catalog
    option: Optional[LineOption] = None

class PaymentInfo(BaseModel):
    method: str = "CARD"
    provider: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    order_key: Optional[str] = None
    pg_transaction_id: Optional[str] = None
    receipt_url: Optional[str] = None
    paid_at: Optional[datetime] = None
    failure_msg: Optional[str] = None

    class Config:
        use_enum_values = True
        validate_default = True

class ShippingInfo(BaseModel):
    courier_code: Optional[str] = None
    courier_name: Optional[str] = None
    tracking_number: Optional[str] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    last_checkpoint: Optional[str] = None
    status: ShippingStatus = ShippingStatus.READY

    class Config:
        use_enum_values = True
        validate_default = True

def project_status(payment: PaymentInfo, shipping: Optional[ShippingInfo]) -> OrderStatus:
    """
    Derive the single order status from the payment and shipping sub-records.
    The order status is never stored; every reader goes through here.
    """
    shipping_status = shipping.status if shipping else ShippingStatus.READY
    if payment.status in (PaymentStatus.CANCELLED, PaymentStatus.FAILED):
        return OrderStatus.CANCELLED
    if shipping_status == ShippingStatus.DELIVERED:
        return OrderStatus.DELIVERED
    if shipping_status == ShippingStatus.SHIPPING:
        return OrderStatus.SHIPPING
    if payment.status in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
        return OrderStatus.PAID
    return OrderStatus.PENDING

def status_query(status: OrderStatus) -> dict:
    """Mongo filter selecting the orders whose projected status is `status`."""
    cancelled = [PaymentStatus.CANCELLED.value, PaymentStatus.FAILED.value]
    if status == OrderStatus.CANCELLED:
        return {"payment.status": {"$in": cancelled}}
    query = {"payment.status": {"$nin": cancelled}}
    if status == OrderStatus.DELIVERED:
        query["shipping.status"] = ShippingStatus.DELIVERED.value
    elif status == OrderStatus.SHIPPING:
        query["shipping.status"] = ShippingStatus.SHIPPING.value
    else:
        query["shipping.status"] = {"$nin": [ShippingStatus.SHIPPING.value, ShippingStatus.DELIVERED.value]}
        paid = [PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value]
        if status == OrderStatus.PAID:
            query["payment.status"] = {"$in": paid}
        else:
            query["payment.status"] = {"$nin": cancelled + paid}
    return query

class OrderDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    items: List[OrderItemDB]
    total_price: Decimal
    payment_method: str = "CARD"
    payment: PaymentInfo = Field(default_factory=PaymentInfo)
    shipping: Optional[ShippingInfo] = Field(default_factory=ShippingInfo)
    version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True

    @property
    def status(self) -> OrderStatus:
        return project_status(self.payment, self.shipping)

def load_document(model, doc: dict):
    """Build a DB model from a raw Mongo document, stringifying the ObjectId."""
    doc = dict(doc)
    doc["_id"] = str(doc["_id"])
    return model(**doc)
