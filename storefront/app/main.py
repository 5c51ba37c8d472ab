from fastapi import FastAPI, Depends, HTTPException, status, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from datetime import datetime
from typing import Optional, List
import asyncio
import contextlib
import os

from storefront.shared.utils import (
    get_db_client, settings, require_auth, require_admin,
    SuccessResponse, ErrorResponse, HealthResponse
)
from storefront.shared.logging_config import setup_logging, RequestLoggingMiddleware
from storefront.shared.security_config import (
    setup_rate_limiting, SecurityHeadersMiddleware, limiter,
    READ_LIMIT, WRITE_LIMIT, PAYMENT_LIMIT
)

from storefront.app.schemas import (
    CartLineAdd, CartLineOptionUpdate, CartQtyUpdate, CartMergeRequest,
    CartResponse, CartMergeResponse, SingleOrderCreate, CartOrderCreate,
    OrderCreated, OrderResponse, OrderListResponse, ShippingUpdate,
    OrderStatusUpdate, PaymentConfirm, PaymentConfirmed, PaymentResponse,
    MockShipmentCreate, MockShipmentResponse, MockRefresh, TrackingResponse,
    ShippingResponse, WebhookAck
)
from storefront.app.models import OrderDB
from storefront.app import cart as carts
from storefront.app import orders
from storefront.app import payments
from storefront.app import tracking

SERVICE_NAME = "storefront"

# Setup Logging
logger = setup_logging(SERVICE_NAME, settings.LOG_LEVEL)

app = FastAPI(title="Storefront API")

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name=SERVICE_NAME)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client[settings.MONGO_DB_NAME]
    # Indexes
    await app.mongodb.carts.create_index("user_id", unique=True)
    await app.mongodb.orders.create_index("user_id")
    await app.mongodb.orders.create_index([("created_at", -1)])
    await app.mongodb.orders.create_index("shipping.status")
    await app.mongodb.orders.create_index("payment.status")

    app.tracking_task = None
    if settings.TRACKING_SWEEP_ENABLED:
        app.tracking_task = asyncio.create_task(
            tracking.tracking_sweep_loop(app.mongodb, settings.TRACKING_SWEEP_INTERVAL_SECONDS)
        )
        logger.info(f"Tracking sweep every {settings.TRACKING_SWEEP_INTERVAL_SECONDS}s")

@app.on_event("shutdown")
async def shutdown_db_client():
    task = getattr(app, "tracking_task", None)
    if task:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    app.mongodb_client.close()

# --- Error Handlers ---
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=str(exc.detail)).dict(),
        headers=getattr(exc, "headers", None),
    )

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(error="BAD_REQUEST", details=jsonable_encoder(exc.errors())).dict(),
    )

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled error",
        extra={"request_id": getattr(request.state, "request_id", None), "path": request.url.path},
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(error="SERVER_ERROR").dict(),
    )

# --- Helpers ---
def tracking_view(order: OrderDB) -> TrackingResponse:
    return TrackingResponse(
        id=order.id,
        status=order.status.value,
        shipping=ShippingResponse(**order.shipping.dict()) if order.shipping else None,
    )

# --- Endpoints ---

# Cart
@app.get("/cart", response_model=SuccessResponse[CartResponse])
@limiter.limit(READ_LIMIT)
async def get_cart(request: Request, user: dict = Depends(require_auth)):
    cart = await carts.get_or_create_cart(app.mongodb, user["sub"])
    return SuccessResponse(data=await carts.hydrate_cart(app.mongodb, cart))

@app.post("/cart/items", response_model=SuccessResponse[CartResponse], status_code=status.HTTP_201_CREATED)
@limiter.limit(WRITE_LIMIT)
async def add_cart_line(item: CartLineAdd, request: Request, user: dict = Depends(require_auth)):
    cart = await carts.add_line(app.mongodb, user["sub"], item.product_id, item.qty, item.option)
    return SuccessResponse(data=await carts.hydrate_cart(app.mongodb, cart), message="Item added")

@app.put("/cart/items/line/{line}", response_model=SuccessResponse[CartResponse])
@limiter.limit(WRITE_LIMIT)
async def replace_cart_line_option(line: str, update: CartLineOptionUpdate, request: Request, user: dict = Depends(require_auth)):
    line_ref = carts.parse_line_ref(line)
    cart = await carts.replace_line_option(app.mongodb, user["sub"], line_ref, update.option)
    return SuccessResponse(data=await carts.hydrate_cart(app.mongodb, cart))

@app.patch("/cart/items/line/{line}", response_model=SuccessResponse[CartResponse])
@limiter.limit(WRITE_LIMIT)
async def set_cart_line_qty(line: str, update: CartQtyUpdate, request: Request, user: dict = Depends(require_auth)):
    line_ref = carts.parse_line_ref(line)
    cart = await carts.set_line_qty(app.mongodb, user["sub"], line_ref, update.qty)
    return SuccessResponse(data=await carts.hydrate_cart(app.mongodb, cart))

@app.delete("/cart/items/line/{line}", response_model=SuccessResponse[CartResponse])
@limiter.limit(WRITE_LIMIT)
async def remove_cart_line(line: str, request: Request, user: dict = Depends(require_auth)):
    line_ref = carts.parse_line_ref(line)
    cart = await carts.remove_line(app.mongodb, user["sub"], line_ref)
    return SuccessResponse(data=await carts.hydrate_cart(app.mongodb, cart))

@app.patch("/cart/items/{product_id}", response_model=SuccessResponse[CartResponse])
@limiter.limit(WRITE_LIMIT)
async def set_cart_product_qty(product_id: str, update: CartQtyUpdate, request: Request, user: dict = Depends(require_auth)):
    cart = await carts.set_product_qty(app.mongodb, user["sub"], product_id, update.qty)
    return SuccessResponse(data=await carts.hydrate_cart(app.mongodb, cart))

@app.delete("/cart/items/{product_id}", response_model=SuccessResponse[CartResponse])
@limiter.limit(WRITE_LIMIT)
async def remove_cart_product(product_id: str, request: Request, user: dict = Depends(require_auth)):
    cart = await carts.remove_product(app.mongodb, user["sub"], product_id)
    return SuccessResponse(data=await carts.hydrate_cart(app.mongodb, cart))

@app.post("/cart/clear", response_model=SuccessResponse[CartResponse])
@limiter.limit(WRITE_LIMIT)
async def clear_cart(request: Request, user: dict = Depends(require_auth)):
    cart = await carts.clear_cart(app.mongodb, user["sub"])
    return SuccessResponse(data=await carts.hydrate_cart(app.mongodb, cart), message="Cart cleared")

@app.post("/cart/merge", response_model=SuccessResponse[CartMergeResponse])
@limiter.limit(WRITE_LIMIT)
async def merge_cart(merge: CartMergeRequest, request: Request, user: dict = Depends(require_auth)):
    cart, results = await carts.merge_lines(app.mongodb, user["sub"], merge.items)
    view = CartMergeResponse(**(await carts.hydrate_cart(app.mongodb, cart)).dict())
    if settings.CART_MERGE_REPORT_SKIPPED:
        view.results = results
    return SuccessResponse(data=view)

# Orders
@app.post("/orders/single", response_model=SuccessResponse[OrderCreated], status_code=status.HTTP_201_CREATED)
@limiter.limit(WRITE_LIMIT)
async def create_single_order(body: SingleOrderCreate, request: Request, user: dict = Depends(require_auth)):
    order = await orders.create_single_order(
        app.mongodb, user["sub"], body.product_id, body.qty, body.option, body.payment_method
    )
    return SuccessResponse(data=OrderCreated(id=order.id, total_price=order.total_price), message="Order created successfully")

@app.post("/orders/from-cart", response_model=SuccessResponse[OrderCreated], status_code=status.HTTP_201_CREATED)
@limiter.limit(WRITE_LIMIT)
async def create_cart_order(body: CartOrderCreate, request: Request, user: dict = Depends(require_auth)):
    order = await orders.create_order_from_cart(app.mongodb, user["sub"], body.lines)
    return SuccessResponse(data=OrderCreated(id=order.id, total_price=order.total_price), message="Order created successfully")

@app.get("/orders/my", response_model=SuccessResponse[List[OrderResponse]])
@limiter.limit(READ_LIMIT)
async def list_my_orders(request: Request, user: dict = Depends(require_auth)):
    return SuccessResponse(data=await orders.list_user_orders(app.mongodb, user["sub"]))

@app.get("/orders/admin", response_model=SuccessResponse[OrderListResponse])
async def admin_list_orders(
    admin: dict = Depends(require_admin),
    status_filter: Optional[str] = Query("ALL", alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    from_date: Optional[str] = Query(None, alias="from"),
    to_date: Optional[str] = Query(None, alias="to"),
    q: Optional[str] = None
):
    return SuccessResponse(data=await orders.list_orders(
        app.mongodb, status_filter, page, limit, from_date=from_date, to_date=to_date, q=q
    ))

@app.get("/orders/admin/{order_id}", response_model=SuccessResponse[OrderResponse])
async def admin_get_order(order_id: str, admin: dict = Depends(require_admin)):
    return SuccessResponse(data=await orders.get_order_detail(app.mongodb, order_id))

@app.patch("/orders/{order_id}/shipping", response_model=SuccessResponse[TrackingResponse])
async def register_shipping(order_id: str, body: ShippingUpdate, admin: dict = Depends(require_admin)):
    order = await orders.register_shipping(
        app.mongodb, order_id, body.courier_code, body.courier_name, body.tracking_number
    )
    return SuccessResponse(data=tracking_view(order), message="Shipping registered")

@app.patch("/orders/{order_id}/status", response_model=SuccessResponse[TrackingResponse])
async def set_order_status(order_id: str, body: OrderStatusUpdate, admin: dict = Depends(require_admin)):
    order = await orders.set_order_status(app.mongodb, order_id, body.status)
    return SuccessResponse(data=tracking_view(order))

@app.post("/orders/{order_id}/mock/shipping", response_model=SuccessResponse[MockShipmentResponse])
async def set_mock_shipment(order_id: str, body: Optional[MockShipmentCreate] = None, admin: dict = Depends(require_admin)):
    tracking_number = body.tracking_number if body else None
    order = await tracking.prepare_mock_shipment(app.mongodb, order_id, tracking_number)
    return SuccessResponse(data=MockShipmentResponse(id=order.id, tracking_number=order.shipping.tracking_number))

@app.post("/orders/{order_id}/mock/refresh", response_model=SuccessResponse[TrackingResponse])
async def refresh_mock_tracking(order_id: str, body: Optional[MockRefresh] = None, admin: dict = Depends(require_admin)):
    force = body.force_delivered if body else False
    order = await tracking.refresh_tracking_once(app.mongodb, order_id, force_delivered=force)
    return SuccessResponse(data=tracking_view(order))

# Payments
@app.post("/payments/confirm", response_model=SuccessResponse[PaymentConfirmed])
@limiter.limit(PAYMENT_LIMIT)
async def confirm_payment(body: PaymentConfirm, request: Request, user: dict = Depends(require_auth)):
    order = await payments.confirm_payment(app.mongodb, user["sub"], body.order_id, body.order_key, body.amount)
    return SuccessResponse(
        data=PaymentConfirmed(id=order.id, status=order.status.value, payment=PaymentResponse(**order.payment.dict())),
        message="Payment confirmed"
    )

@app.post("/payments/webhook", response_model=SuccessResponse[WebhookAck])
async def payment_webhook(request: Request):
    try:
        event = await request.json()
    except ValueError:
        event = None
    return SuccessResponse(data=await payments.handle_payment_webhook(app.mongodb, event))

@app.get("/health", response_model=HealthResponse)
async def health_check():
    try:
        await app.mongodb_client.admin.command('ping')
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    if db_status != "connected":
        logger.error(f"Health Check Failed: DB={db_status}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="SERVICE_UNHEALTHY"
        )

    return HealthResponse(
        service=SERVICE_NAME,
        status="healthy",
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status,
    )

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
