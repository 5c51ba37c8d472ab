"""
Order engine.

Orders are immutable financial snapshots: item prices and the total are
captured once at creation. Later changes only touch the payment and shipping
sub-records, always through `lifecycle.apply_event`.
"""
import logging
import math
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from bson import ObjectId

from storefront.shared.utils import (
    settings, to_mongo, compare_and_set, parse_object_id,
    BadRequestException, NotFoundException, ConflictException
)
from storefront.app.models import (
    CartDB, OrderDB, OrderItemDB, OrderStatus, ProductDB, load_document, status_query
)
from storefront.app.catalog import fetch_product, fetch_products, resolve_option
from storefront.app.cart import (
    DELETED_PRODUCT_NAME, coerce_add_qty, parse_line_ref, remove_line_ids
)
from storefront.app.lifecycle import OrderEvent, apply_event, apply_status
from storefront.app.schemas import (
    OptionSchema, OrderItemResponse, OrderListResponse, OrderResponse,
    PaymentResponse, ShippingResponse
)

logger = logging.getLogger(__name__)

OrderMutation = Callable[[OrderDB], bool]

# --- Persistence ---
async def load_order(db, order_id: str) -> OrderDB:
    oid = parse_object_id(order_id)
    if oid is None:
        raise NotFoundException()
    doc = await db.orders.find_one({"_id": oid})
    if not doc:
        raise NotFoundException()
    return load_document(OrderDB, doc)

async def insert_order(db, order: OrderDB) -> OrderDB:
    result = await db.orders.insert_one(to_mongo(order.dict(exclude={"id"})))
    order.id = str(result.inserted_id)
    logger.info("Order created", extra={"order_id": order.id, "user_id": order.user_id})
    return order

async def mutate_order(db, order_id: str, mutation: OrderMutation) -> OrderDB:
    """
    Load the order, apply `mutation` and save with compare-and-swap.
    `mutation` returns False when nothing changed; no write happens then.
    """
    for _ in range(settings.WRITE_CONFLICT_RETRIES):
        order = await load_order(db, order_id)
        if not mutation(order):
            return order
        fields = order.dict(include={"payment", "shipping", "updated_at"})
        if await compare_and_set(db.orders, ObjectId(order.id), order.version, fields):
            order.version += 1
            return order
        logger.info("Order write conflict, retrying", extra={"order_id": order_id})
    logger.warning("Order write conflict retries exhausted", extra={"order_id": order_id, "error_code": "WRITE_CONFLICT"})
    raise ConflictException()

async def apply_order_event(db, order_id: str, event: OrderEvent, now: Optional[datetime] = None, **details) -> OrderDB:
    order = await mutate_order(db, order_id, lambda o: apply_event(o, event, now, **details))
    logger.info("Order event applied", extra={"order_id": order.id, "event_type": event.value})
    return order

# --- Creation ---
async def create_single_order(
    db,
    user_id: str,
    product_id: Optional[str],
    qty: Any = None,
    option: Optional[OptionSchema] = None,
    payment_method: Optional[str] = None
) -> OrderDB:
    if not product_id:
        raise BadRequestException("BAD_REQUEST")
    if parse_object_id(product_id) is None:
        raise NotFoundException()
    product = await fetch_product(db, product_id)
    resolved = resolve_option(product, option)
    item_qty = coerce_add_qty(qty)

    method = payment_method or "CARD"
    order = OrderDB(
        user_id=user_id,
        items=[OrderItemDB(product_id=product.id, qty=item_qty, price=product.price, option=resolved)],
        total_price=product.price * item_qty,
        payment_method=method,
    )
    order.payment.method = method
    return await insert_order(db, order)

def _select_lines(cart: CartDB, refs: List[Any]):
    indexes = set()
    line_ids = set()
    for raw in refs:
        try:
            ref = parse_line_ref(raw)
        except BadRequestException:
            # Matches nothing, like an index past the end
            continue
        if isinstance(ref, int):
            indexes.add(ref)
        else:
            line_ids.add(ref)
    return [
        line for index, line in enumerate(cart.items)
        if index in indexes or line.line_id in line_ids
    ]

async def create_order_from_cart(db, user_id: str, refs: Optional[List[Any]]) -> OrderDB:
    """
    Turn the selected cart lines into an order, then drop exactly those lines
    from the cart. Selection is resolved against one loaded copy of the cart,
    so the order holds the contents the user saw.
    """
    if not isinstance(refs, list):
        raise BadRequestException("BAD_REQUEST")
    doc = await db.carts.find_one({"user_id": user_id})
    cart = load_document(CartDB, doc) if doc else None
    if cart is None or not cart.items:
        raise NotFoundException("CART_EMPTY")

    selected = _select_lines(cart, refs)
    if not selected:
        raise BadRequestException("NO_ITEMS")

    products = await fetch_products(db, [line.product_id for line in selected])
    items = []
    for line in selected:
        product = products.get(line.product_id)
        if product is None:
            raise NotFoundException()
        items.append(OrderItemDB(
            product_id=line.product_id,
            qty=line.qty,
            price=product.price,
            option=line.option,
        ))

    order = OrderDB(
        user_id=user_id,
        items=items,
        total_price=sum((item.price * item.qty for item in items), Decimal(0)),
    )
    order = await insert_order(db, order)

    try:
        await remove_line_ids(db, user_id, [line.line_id for line in selected])
    except ConflictException:
        # The order already exists; leave the lines for the user to remove
        logger.exception("Could not remove ordered lines from cart", extra={"order_id": order.id, "user_id": user_id})
    return order

# --- Admin ---
async def register_shipping(
    db,
    order_id: str,
    courier_code: Optional[str],
    courier_name: Optional[str],
    tracking_number: Optional[str]
) -> OrderDB:
    if not courier_code or not tracking_number:
        raise BadRequestException("BAD_REQUEST")
    return await apply_order_event(
        db, order_id, OrderEvent.SHIPMENT_DISPATCHED,
        courier_code=courier_code,
        courier_name=courier_name or None,
        tracking_number=tracking_number,
    )

def parse_status(raw: Optional[str]) -> OrderStatus:
    try:
        return OrderStatus(raw)
    except ValueError:
        raise BadRequestException("BAD_REQUEST")

async def set_order_status(db, order_id: str, raw_status: Optional[str]) -> OrderDB:
    target = parse_status(raw_status)
    order = await mutate_order(db, order_id, lambda o: apply_status(o, target))
    logger.info("Order status set", extra={"order_id": order.id, "event_type": target.value})
    return order

# --- Views ---
def build_order_response(order: OrderDB, products: Dict[str, ProductDB]) -> OrderResponse:
    items = []
    for item in order.items:
        product = products.get(item.product_id)
        items.append(OrderItemResponse(
            product_id=item.product_id,
            name=product.name if product else DELETED_PRODUCT_NAME,
            image=product.images[0] if product and product.images else None,
            price=item.price,
            qty=item.qty,
            option=OptionSchema(**item.option.dict()) if item.option else None,
        ))
    return OrderResponse(
        id=order.id,
        user_id=order.user_id,
        status=order.status.value,
        total_price=order.total_price,
        payment_method=order.payment_method,
        payment=PaymentResponse(**order.payment.dict()),
        shipping=ShippingResponse(**order.shipping.dict()) if order.shipping else None,
        items=items,
        created_at=order.created_at,
        updated_at=order.updated_at,
    )

async def build_order_responses(db, orders: List[OrderDB]) -> List[OrderResponse]:
    products = await fetch_products(db, [item.product_id for order in orders for item in order.items])
    return [build_order_response(order, products) for order in orders]

async def list_user_orders(db, user_id: str) -> List[OrderResponse]:
    cursor = db.orders.find({"user_id": user_id}).sort("created_at", -1)
    orders = [load_document(OrderDB, doc) async for doc in cursor]
    return await build_order_responses(db, orders)

def parse_day(raw: Optional[str]) -> Optional[date]:
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise BadRequestException("BAD_REQUEST")

def admin_query(
    raw_status: Optional[str],
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
    q: Optional[str] = None
) -> dict:
    """Mongo filter for the admin list. Date bounds are whole UTC days, inclusive."""
    query = {}
    if raw_status and raw_status != "ALL":
        query = status_query(parse_status(raw_status))

    start, end = parse_day(from_date), parse_day(to_date)
    if start or end:
        query["created_at"] = {}
        if start:
            query["created_at"]["$gte"] = datetime.combine(start, time.min)
        if end:
            query["created_at"]["$lte"] = datetime.combine(end, time.max)

    if q:
        # Only order ids are searchable; anything else matches no order
        query["_id"] = parse_object_id(q.strip())
    return query

async def list_orders(
    db,
    raw_status: Optional[str],
    page: int,
    limit: int,
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
    q: Optional[str] = None
) -> OrderListResponse:
    query = admin_query(raw_status, from_date, to_date, q)

    skip = (page - 1) * limit
    total = await db.orders.count_documents(query)
    cursor = db.orders.find(query).sort("created_at", -1).skip(skip).limit(limit)
    docs = await cursor.to_list(length=limit)
    orders = [load_document(OrderDB, doc) for doc in docs]
    return OrderListResponse(
        page=page,
        limit=limit,
        total=total,
        pages=math.ceil(total / limit),
        items=await build_order_responses(db, orders),
    )

async def get_order_detail(db, order_id: str) -> OrderResponse:
    order = await load_order(db, order_id)
    return (await build_order_responses(db, [order]))[0]
