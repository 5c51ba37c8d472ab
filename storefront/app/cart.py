"""
Cart engine.

One cart per user, stored as an ordered list of lines. Every operation is a
single load -> transform -> compare-and-swap save; a lost race reloads the
cart and re-applies the transform, so no update is silently overwritten.
"""
import logging
import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Union

from bson import ObjectId
from pydantic import ValidationError

from storefront.shared.utils import (
    settings, to_mongo, compare_and_set, parse_object_id,
    AppException, BadRequestException, NotFoundException, ConflictException
)
from storefront.app.models import CartDB, CartLineDB, LineOption, line_match_key, load_document
from storefront.app.catalog import fetch_product, fetch_products, resolve_option
from storefront.app.schemas import (
    CartResponse, CartLineResponse, MergeEntryResult, OptionSchema
)

logger = logging.getLogger(__name__)

LineRef = Union[int, str]
LinesTransform = Callable[[List[CartLineDB]], Awaitable[List[CartLineDB]]]

DELETED_PRODUCT_NAME = "(deleted product)"

_INDEX_RE = re.compile(r"^-?\d+$")
_LINE_ID_RE = re.compile(r"^[0-9a-f]{32}$")

# --- Input parsing ---
def parse_line_ref(raw: Any) -> LineRef:
    """A run of digits is a positional index; a 32-hex token is a stable line id."""
    if isinstance(raw, bool):
        raise BadRequestException("BAD_LINE")
    if isinstance(raw, int):
        if raw < 0:
            raise BadRequestException("BAD_LINE")
        return raw
    if isinstance(raw, str):
        if _INDEX_RE.match(raw):
            return parse_line_ref(int(raw))
        if _LINE_ID_RE.match(raw):
            return raw
    raise BadRequestException("BAD_LINE")

def parse_qty(raw: Any) -> int:
    if isinstance(raw, bool) or raw is None:
        raise BadRequestException("BAD_QTY")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    if isinstance(raw, str) and _INDEX_RE.match(raw.strip()):
        return int(raw.strip())
    raise BadRequestException("BAD_QTY")

def coerce_add_qty(raw: Any) -> int:
    """Quantities on add default to 1 and never go below it."""
    try:
        qty = parse_qty(raw)
    except BadRequestException:
        return 1
    return max(1, qty)

def locate_line(lines: List[CartLineDB], ref: LineRef) -> int:
    if isinstance(ref, int):
        if ref >= len(lines):
            raise NotFoundException("NOT_IN_CART")
        return ref
    for index, line in enumerate(lines):
        if line.line_id == ref:
            return index
    raise NotFoundException("NOT_IN_CART")

# --- Pure line transforms ---
def add_to_lines(lines: List[CartLineDB], product_id: str, qty: int, option: Optional[LineOption]) -> List[CartLineDB]:
    key = line_match_key(product_id, option)
    for line in lines:
        if line.match_key == key:
            line.qty += qty
            return lines
    lines.append(CartLineDB(product_id=product_id, qty=qty, option=option))
    return lines

def replace_option_in_lines(lines: List[CartLineDB], index: int, option: Optional[LineOption]) -> List[CartLineDB]:
    edited = lines[index]
    key = line_match_key(edited.product_id, option)
    for other_index, other in enumerate(lines):
        if other_index != index and other.match_key == key:
            # Collapse into the line that already holds this option
            other.qty += edited.qty
            del lines[index]
            return lines
    edited.option = option
    return lines

def set_qty_in_lines(lines: List[CartLineDB], index: int, qty: int) -> List[CartLineDB]:
    if qty <= 0:
        del lines[index]
    else:
        lines[index].qty = qty
    return lines

# --- Persistence ---
async def get_or_create_cart(db, user_id: str) -> CartDB:
    blank = CartDB(user_id=user_id).dict(exclude={"id", "user_id"})
    await db.carts.update_one(
        {"user_id": user_id},
        {"$setOnInsert": to_mongo(blank)},
        upsert=True
    )
    doc = await db.carts.find_one({"user_id": user_id})
    return load_document(CartDB, doc)

async def mutate_cart(db, user_id: str, transform: LinesTransform) -> CartDB:
    """
    Apply `transform` to the user's lines and save with compare-and-swap.
    The transform may raise AppException to abort without writing.
    """
    for _ in range(settings.WRITE_CONFLICT_RETRIES):
        cart = await get_or_create_cart(db, user_id)
        lines = await transform([line.copy(deep=True) for line in cart.items])
        now = datetime.utcnow()
        saved = await compare_and_set(
            db.carts, ObjectId(cart.id), cart.version,
            {"items": [line.dict() for line in lines], "updated_at": now}
        )
        if saved:
            cart.items = lines
            cart.version += 1
            cart.updated_at = now
            return cart
        logger.info("Cart write conflict, retrying", extra={"cart_id": cart.id, "user_id": user_id})
    logger.warning("Cart write conflict retries exhausted", extra={"user_id": user_id, "error_code": "WRITE_CONFLICT"})
    raise ConflictException()

# --- Operations ---
async def add_line(db, user_id: str, product_id: Optional[str], qty: Any = None, option: Optional[OptionSchema] = None) -> CartDB:
    if not product_id:
        raise BadRequestException("BAD_REQUEST")
    product = await fetch_product(db, product_id)
    resolved = resolve_option(product, option)
    add_qty = coerce_add_qty(qty)

    async def transform(lines):
        return add_to_lines(lines, product.id, add_qty, resolved)

    return await mutate_cart(db, user_id, transform)

async def replace_line_option(db, user_id: str, line_ref: LineRef, option: Optional[OptionSchema]) -> CartDB:
    async def transform(lines):
        index = locate_line(lines, line_ref)
        product = await fetch_product(db, lines[index].product_id)
        resolved = resolve_option(product, option)
        return replace_option_in_lines(lines, index, resolved)

    return await mutate_cart(db, user_id, transform)

async def set_line_qty(db, user_id: str, line_ref: LineRef, qty: Any) -> CartDB:
    new_qty = parse_qty(qty)

    async def transform(lines):
        return set_qty_in_lines(lines, locate_line(lines, line_ref), new_qty)

    return await mutate_cart(db, user_id, transform)

async def remove_line(db, user_id: str, line_ref: LineRef) -> CartDB:
    async def transform(lines):
        del lines[locate_line(lines, line_ref)]
        return lines

    return await mutate_cart(db, user_id, transform)

async def set_product_qty(db, user_id: str, product_id: str, qty: Any) -> CartDB:
    """Legacy: set the quantity of the first line holding `product_id`."""
    if parse_object_id(product_id) is None:
        raise BadRequestException("BAD_PRODUCT")
    new_qty = parse_qty(qty)

    async def transform(lines):
        index = next((i for i, line in enumerate(lines) if line.product_id == product_id), None)
        if index is None:
            raise NotFoundException("NOT_IN_CART")
        return set_qty_in_lines(lines, index, new_qty)

    return await mutate_cart(db, user_id, transform)

async def remove_product(db, user_id: str, product_id: str) -> CartDB:
    """Legacy: drop every line of `product_id`, whatever its option."""
    if parse_object_id(product_id) is None:
        raise BadRequestException("BAD_PRODUCT")

    async def transform(lines):
        kept = [line for line in lines if line.product_id != product_id]
        if len(kept) == len(lines):
            raise NotFoundException("NOT_IN_CART")
        return kept

    return await mutate_cart(db, user_id, transform)

async def clear_cart(db, user_id: str) -> CartDB:
    async def transform(lines):
        return []

    return await mutate_cart(db, user_id, transform)

async def remove_line_ids(db, user_id: str, line_ids: List[str]) -> CartDB:
    """Drop the given stable line ids; lines added meanwhile are kept."""
    doomed = set(line_ids)

    async def transform(lines):
        return [line for line in lines if line.line_id not in doomed]

    return await mutate_cart(db, user_id, transform)

async def _resolve_merge_entry(db, entry: Any) -> Tuple[str, int, Optional[LineOption]]:
    if not isinstance(entry, dict):
        raise BadRequestException("BAD_REQUEST")
    product_id = entry.get("productId") or entry.get("product_id")
    if not product_id:
        raise BadRequestException("BAD_REQUEST")
    raw_option = entry.get("option")
    try:
        option = OptionSchema(**raw_option) if isinstance(raw_option, dict) else None
    except ValidationError:
        raise BadRequestException("OPTION_REQUIRED")
    product = await fetch_product(db, str(product_id))
    return product.id, coerce_add_qty(entry.get("qty")), resolve_option(product, option)

async def merge_lines(db, user_id: str, entries: List[Any]) -> Tuple[CartDB, List[MergeEntryResult]]:
    """
    Fold a guest cart into the user's cart with add-line semantics.
    Entries that fail validation are skipped; the results list says which.
    """
    accepted = []
    results = []
    for index, entry in enumerate(entries):
        try:
            accepted.append(await _resolve_merge_entry(db, entry))
            results.append(MergeEntryResult(index=index, ok=True))
        except AppException as e:
            logger.info("Skipping guest cart entry", extra={"user_id": user_id, "error_code": e.code})
            results.append(MergeEntryResult(index=index, ok=False, error=e.code))

    async def transform(lines):
        for product_id, qty, option in accepted:
            add_to_lines(lines, product_id, qty, option)
        return lines

    cart = await mutate_cart(db, user_id, transform)
    return cart, results

# --- Hydration ---
async def hydrate_cart(db, cart: CartDB) -> CartResponse:
    """Join lines with live catalog data; prices here are always current."""
    products = await fetch_products(db, [line.product_id for line in cart.items])
    items = []
    total_qty = 0
    total_price = Decimal(0)
    for index, line in enumerate(cart.items):
        product = products.get(line.product_id)
        price = product.price if product else Decimal(0)
        line_price = price * line.qty
        total_qty += line.qty
        total_price += line_price
        option = line.option or LineOption()
        items.append(CartLineResponse(
            product_id=line.product_id,
            line_id=line.line_id,
            line=index,
            name=product.name if product else DELETED_PRODUCT_NAME,
            price=price,
            images=product.images if product else [],
            qty=line.qty,
            line_price=line_price,
            variant_index=option.variant_index,
            color=option.color,
            color_hex=option.color_hex,
            size=option.size,
            sku=option.sku,
        ))
    return CartResponse(
        id=cart.id,
        items=items,
        total_qty=total_qty,
        total_price=total_price,
        version=cart.version,
    )
