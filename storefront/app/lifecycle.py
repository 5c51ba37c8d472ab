"""
Order lifecycle transitions.

Every writer that changes an order's payment or shipping state goes through
`apply_event`. It checks the transition against the current projected status
before touching anything, so a rejected event leaves the order as it was.
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from storefront.shared.utils import ConflictException
from storefront.app.models import (
    OrderDB, OrderStatus, PaymentStatus, ShippingInfo, ShippingStatus
)

class OrderEvent(str, Enum):
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PAYMENT_CANCELLED = "PAYMENT_CANCELLED"
    SHIPMENT_PREPARED = "SHIPMENT_PREPARED"
    SHIPMENT_DISPATCHED = "SHIPMENT_DISPATCHED"
    SHIPMENT_DELIVERED = "SHIPMENT_DELIVERED"

class InvalidTransition(ConflictException):
    def __init__(self, detail: str = "INVALID_TRANSITION"):
        super().__init__(detail=detail)

PAYMENT_FIELDS = ("provider", "order_key", "pg_transaction_id", "receipt_url", "paid_at")
SHIPPING_FIELDS = ("courier_code", "courier_name", "tracking_number", "last_checkpoint")

def apply_event(order: OrderDB, event: OrderEvent, now: Optional[datetime] = None, **details) -> bool:
    """
    Apply `event` to `order` in place. Returns False when the event is a no-op
    (the order is already in the target state), True when something changed.
    Raises InvalidTransition when the event is not allowed from the current state.
    """
    now = now or datetime.utcnow()
    status = order.status
    shipping_status = order.shipping.status if order.shipping else None

    if event == OrderEvent.PAYMENT_CONFIRMED:
        if order.payment.status == PaymentStatus.PAID:
            return False
        if order.payment.status != PaymentStatus.PENDING:
            raise InvalidTransition()
        order.payment.status = PaymentStatus.PAID.value
        for field in PAYMENT_FIELDS:
            if field in details:
                setattr(order.payment, field, details[field])
        if order.payment.paid_at is None:
            order.payment.paid_at = now

    elif event == OrderEvent.PAYMENT_CANCELLED:
        if status == OrderStatus.CANCELLED:
            return False
        if status not in (OrderStatus.PENDING, OrderStatus.PAID):
            raise InvalidTransition()
        order.payment.status = PaymentStatus.CANCELLED.value
        if "failure_msg" in details:
            order.payment.failure_msg = details["failure_msg"]

    elif event == OrderEvent.SHIPMENT_PREPARED:
        if status == OrderStatus.CANCELLED or shipping_status not in (None, ShippingStatus.READY):
            raise InvalidTransition()
        order.shipping = ShippingInfo(
            status=ShippingStatus.READY,
            **{f: details.get(f) for f in SHIPPING_FIELDS}
        )

    elif event == OrderEvent.SHIPMENT_DISPATCHED:
        if status == OrderStatus.CANCELLED or shipping_status == ShippingStatus.DELIVERED:
            raise InvalidTransition()
        if order.shipping is None:
            order.shipping = ShippingInfo()
        for field in SHIPPING_FIELDS:
            if field in details:
                setattr(order.shipping, field, details[field])
        order.shipping.status = ShippingStatus.SHIPPING.value
        order.shipping.shipped_at = now
        order.shipping.delivered_at = None

    elif event == OrderEvent.SHIPMENT_DELIVERED:
        if shipping_status == ShippingStatus.DELIVERED:
            return False
        if status == OrderStatus.CANCELLED or shipping_status != ShippingStatus.SHIPPING:
            raise InvalidTransition()
        order.shipping.status = ShippingStatus.DELIVERED.value
        order.shipping.delivered_at = now
        if "last_checkpoint" in details:
            order.shipping.last_checkpoint = details["last_checkpoint"]

    else:
        raise InvalidTransition()

    order.updated_at = now
    return True

# Admin status override maps a target status onto the event that reaches it
STATUS_EVENTS = {
    OrderStatus.PAID: OrderEvent.PAYMENT_CONFIRMED,
    OrderStatus.SHIPPING: OrderEvent.SHIPMENT_DISPATCHED,
    OrderStatus.DELIVERED: OrderEvent.SHIPMENT_DELIVERED,
    OrderStatus.CANCELLED: OrderEvent.PAYMENT_CANCELLED,
}

FORWARD_ORDER = [OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.SHIPPING, OrderStatus.DELIVERED]

def apply_status(order: OrderDB, target: OrderStatus, now: Optional[datetime] = None) -> bool:
    current = order.status
    if current == target:
        return False
    event = STATUS_EVENTS.get(target)
    if event is None or current == OrderStatus.CANCELLED:
        raise InvalidTransition()
    if target != OrderStatus.CANCELLED and FORWARD_ORDER.index(target) < FORWARD_ORDER.index(current):
        raise InvalidTransition()
    return apply_event(order, event, now)
