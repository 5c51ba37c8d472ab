"""
Mock carrier tracking.

Orders whose courier code is MOCK get a simulated feed:
    READY    -> SHIPPING  on the first refresh
    SHIPPING -> DELIVERED once MOCK_DELIVERY_AFTER_SECONDS have passed, or when forced
DELIVERED is terminal. Orders with another courier, or without shipping
info, are never touched. Refreshing is idempotent for a given clock reading.
"""
import asyncio
import logging
import random
from datetime import datetime, timedelta
from typing import Optional

from storefront.shared.utils import settings
from storefront.app.models import OrderDB, OrderStatus, ShippingStatus, status_query
from storefront.app.lifecycle import OrderEvent, apply_event
from storefront.app.orders import apply_order_event, mutate_order

logger = logging.getLogger(__name__)

MOCK_COURIER_CODE = "MOCK"
MOCK_COURIER_NAME = "Mock Courier (MOCK)"
CHECKPOINT_READY = "Ready for dispatch (MOCK)"
CHECKPOINT_PICKED_UP = "Picked up by carrier (MOCK)"
CHECKPOINT_DELIVERED = "Delivered (MOCK)"

def advance_mock_shipping(order: OrderDB, now: datetime, force_delivered: bool = False) -> bool:
    """Move a MOCK shipment one step forward. Returns True if the order changed."""
    shipping = order.shipping
    if shipping is None or shipping.courier_code != MOCK_COURIER_CODE:
        return False
    if order.status == OrderStatus.CANCELLED:
        return False

    if shipping.status == ShippingStatus.READY:
        return apply_event(
            order, OrderEvent.SHIPMENT_DISPATCHED, now,
            last_checkpoint=CHECKPOINT_PICKED_UP,
        )

    if shipping.status == ShippingStatus.SHIPPING:
        shipped_at = shipping.shipped_at or now
        due = now - shipped_at >= timedelta(seconds=settings.MOCK_DELIVERY_AFTER_SECONDS)
        if force_delivered or due:
            return apply_event(
                order, OrderEvent.SHIPMENT_DELIVERED, now,
                last_checkpoint=CHECKPOINT_DELIVERED,
            )

    return False

async def refresh_tracking_once(db, order_id: str, force_delivered: bool = False, now: Optional[datetime] = None) -> OrderDB:
    now = now or datetime.utcnow()
    order = await mutate_order(db, order_id, lambda o: advance_mock_shipping(o, now, force_delivered))
    logger.info(
        "Tracking refreshed",
        extra={"order_id": order.id, "event_type": order.shipping.status if order.shipping else None}
    )
    return order

async def prepare_mock_shipment(db, order_id: str, tracking_number: Optional[str] = None) -> OrderDB:
    number = tracking_number or str(random.randint(100000000, 999999999))
    return await apply_order_event(
        db, order_id, OrderEvent.SHIPMENT_PREPARED,
        courier_code=MOCK_COURIER_CODE,
        courier_name=MOCK_COURIER_NAME,
        tracking_number=number,
        last_checkpoint=CHECKPOINT_READY,
    )

async def run_tracking_sweep(db, now: Optional[datetime] = None) -> int:
    """Refresh every shipping order. One failing order never stops the sweep."""
    cursor = db.orders.find(status_query(OrderStatus.SHIPPING), {"_id": 1})
    order_ids = [str(doc["_id"]) async for doc in cursor]
    advanced = 0
    for order_id in order_ids:
        try:
            order = await refresh_tracking_once(db, order_id, now=now)
        except Exception:
            logger.exception("Tracking refresh failed", extra={"order_id": order_id})
            continue
        if order.shipping and order.shipping.status == ShippingStatus.DELIVERED:
            advanced += 1
    logger.info(f"Tracking sweep finished: {advanced}/{len(order_ids)} delivered")
    return advanced

async def tracking_sweep_loop(db, interval_seconds: int):
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_tracking_sweep(db)
        except Exception:
            logger.exception("Tracking sweep failed")
