"""Read-only access to the product catalog and option resolution."""
from typing import Optional, Dict, Iterable

from storefront.shared.utils import BadRequestException, NotFoundException, parse_object_id
from storefront.app.models import ProductDB, LineOption, load_document

async def fetch_product(db, product_id: str) -> ProductDB:
    oid = parse_object_id(product_id)
    if oid is None:
        raise BadRequestException("BAD_PRODUCT")
    doc = await db.products.find_one({"_id": oid})
    if not doc:
        raise NotFoundException()
    return load_document(ProductDB, doc)

async def fetch_products(db, product_ids: Iterable[str]) -> Dict[str, ProductDB]:
    oids = [oid for oid in (parse_object_id(pid) for pid in set(product_ids)) if oid is not None]
    if not oids:
        return {}
    cursor = db.products.find({"_id": {"$in": oids}})
    products = {}
    async for doc in cursor:
        product = load_document(ProductDB, doc)
        products[product.id] = product
    return products

def resolve_option(product: ProductDB, option) -> Optional[LineOption]:
    """
    Validate a requested option against the product and return the stored form.

    Products without variants never carry an option. Products with variants
    need a variant index and a size that exist in the catalog; color, color hex
    and SKU are copied from the catalog so the line can be shown without a join.
    """
    if not product.variants:
        return None
    if option is None:
        raise BadRequestException("OPTION_REQUIRED")
    variant_index = getattr(option, "variant_index", None)
    size = getattr(option, "size", None)
    if variant_index is None or not size:
        raise BadRequestException("OPTION_REQUIRED")
    if not 0 <= variant_index < len(product.variants):
        raise BadRequestException("OPTION_REQUIRED")
    variant = product.variants[variant_index]
    matched = next((s for s in variant.sizes if s.name == size), None)
    if matched is None:
        raise BadRequestException("OPTION_REQUIRED")
    return LineOption(
        variant_index=variant_index,
        color=variant.color,
        color_hex=variant.color_hex,
        size=matched.name,
        sku=matched.sku,
    )
