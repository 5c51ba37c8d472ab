"""Payment confirmation and the payment gateway webhook."""
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from storefront.shared.utils import (
    settings, BadRequestException, ForbiddenException, NotFoundException
)
from storefront.app.models import OrderDB
from storefront.app.lifecycle import OrderEvent
from storefront.app.orders import apply_order_event, load_order
from storefront.app.schemas import WebhookAck

logger = logging.getLogger(__name__)

def demo_approval() -> dict:
    # Stands in for the gateway's confirm call; always approves
    return {
        "paid_at": datetime.utcnow(),
        "pg_transaction_id": str(uuid.uuid4()),
        "receipt_url": None,
    }

async def confirm_payment(
    db,
    user_id: str,
    order_id: Optional[str],
    order_key: Optional[str],
    amount: Optional[Decimal]
) -> OrderDB:
    if not order_id or not order_key or not amount:
        raise BadRequestException("BAD_REQUEST")

    order = await load_order(db, order_id)
    if order.user_id != user_id:
        raise ForbiddenException()

    # No partial payments and no rounding tolerance
    if Decimal(str(amount)) != order.total_price:
        logger.warning("Payment amount mismatch", extra={"order_id": order.id, "user_id": user_id, "error_code": "AMOUNT_MISMATCH"})
        raise BadRequestException("AMOUNT_MISMATCH")

    return await apply_order_event(
        db, order.id, OrderEvent.PAYMENT_CONFIRMED,
        provider=settings.PAYMENT_PROVIDER,
        order_key=order_key,
        **demo_approval()
    )

def parse_gateway_time(raw: Any) -> Optional[datetime]:
    if not isinstance(raw, str):
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed

async def handle_payment_webhook(db, event: Any) -> WebhookAck:
    """
    Apply a gateway event to its order. The sender always gets an ack, so
    failures here are reported through the log, never through the response.
    """
    if not isinstance(event, dict) or not event.get("orderId"):
        return WebhookAck(details={"reason": "NO_ORDER"})

    order_id = str(event["orderId"])
    event_type = event.get("type")
    try:
        if event_type == "PAYMENT_APPROVED":
            receipt = event.get("receipt") or {}
            await apply_order_event(
                db, order_id, OrderEvent.PAYMENT_CONFIRMED,
                paid_at=parse_gateway_time(event.get("approvedAt")) or datetime.utcnow(),
                pg_transaction_id=event.get("transactionKey"),
                receipt_url=receipt.get("url") if isinstance(receipt, dict) else None,
            )
        elif event_type == "PAYMENT_CANCELLED":
            await apply_order_event(db, order_id, OrderEvent.PAYMENT_CANCELLED)
        else:
            return WebhookAck(details={"reason": "IGNORED_TYPE"})
    except NotFoundException:
        logger.info("Webhook for unknown order", extra={"order_id": order_id, "event_type": event_type})
        return WebhookAck(details={"reason": "NOT_FOUND"})
    except Exception as e:
        logger.exception(
            "Webhook processing failed",
            extra={"order_id": order_id, "event_type": event_type, "error_code": getattr(e, "detail", "SERVER_ERROR")}
        )
        return WebhookAck(details={"reason": "FAILED"})

    return WebhookAck(handled=True)
