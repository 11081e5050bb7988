"""
Cart engine.

A cart is one document per user holding line items keyed by
``(product_id, size, color)``. Variant values are normalised before they are
stored or compared: missing, ``None`` and blank strings all mean "no variant",
anything else is stripped of surrounding whitespace.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from database import Store, modify_user_doc
from errors import InvalidInput, InvalidState, NotFound

logger = logging.getLogger(__name__)

CartKey = Tuple[str, Optional[str], Optional[str]]


def normalize_variant(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def item_key(product_id: str, size: Optional[str] = None, color: Optional[str] = None) -> CartKey:
    return (product_id, normalize_variant(size), normalize_variant(color))


def _key_of(item: dict) -> CartKey:
    return item_key(item["product_id"], item.get("size"), item.get("color"))


async def _with_products(store: Store, cart: Optional[dict]) -> dict:
    if not cart:
        return {"items": []}
    items = cart.get("items", [])
    products = await store.find_products(item["product_id"] for item in items)
    return {
        "user_id": cart["user_id"],
        "items": [{**item, "product": products.get(item["product_id"])} for item in items],
        "updated_at": cart.get("updated_at"),
    }


async def get_cart(store: Store, user_id: str) -> dict:
    """Return the cart with product details; a user without a cart gets ``{"items": []}``."""
    return await _with_products(store, await store.load_user_doc("cart", user_id))


async def add_item(
    store: Store,
    user_id: str,
    product_id: str,
    quantity: int = 1,
    size: Optional[str] = None,
    color: Optional[str] = None,
) -> dict:
    if quantity < 1:
        raise InvalidInput("Quantity must be at least 1")
    product = await store.find_product(product_id)
    if product is None:
        raise NotFound("Product", product_id)
    if not product.get("availability", True):
        raise InvalidState(f"{product.get('name', 'Product')} is currently unavailable")

    key = item_key(product_id, size, color)

    def mutate(cart: Optional[dict]) -> dict:
        now = datetime.now(timezone.utc)
        items = cart["items"] if cart else []
        existing = next((item for item in items if _key_of(item) == key), None)
        if existing is not None:
            existing["quantity"] += quantity
        else:
            items.append({
                "product_id": key[0],
                "quantity": quantity,
                "size": key[1],
                "color": key[2],
                "added_at": now,
            })
        return {"items": items, "updated_at": now}

    cart = await modify_user_doc(store, "cart", user_id, mutate)
    return await _with_products(store, cart)


async def update_item(
    store: Store,
    user_id: str,
    product_id: str,
    quantity: int,
    size: Optional[str] = None,
    color: Optional[str] = None,
) -> dict:
    """Set a line item's quantity; zero or less removes the item."""
    key = item_key(product_id, size, color)

    def mutate(cart: Optional[dict]) -> dict:
        if not cart:
            raise NotFound("Cart")
        items = cart["items"]
        existing = next((item for item in items if _key_of(item) == key), None)
        if existing is None:
            raise NotFound("Item", product_id)
        if quantity <= 0:
            items = [item for item in items if _key_of(item) != key]
        else:
            existing["quantity"] = quantity
        return {"items": items, "updated_at": datetime.now(timezone.utc)}

    cart = await modify_user_doc(store, "cart", user_id, mutate)
    return await _with_products(store, cart)


async def remove_item(
    store: Store,
    user_id: str,
    product_id: str,
    size: Optional[str] = None,
    color: Optional[str] = None,
) -> dict:
    key = item_key(product_id, size, color)

    def mutate(cart: Optional[dict]) -> Optional[dict]:
        if not cart:
            return None
        items = [item for item in cart["items"] if _key_of(item) != key]
        if len(items) == len(cart["items"]):
            return None
        return {"items": items, "updated_at": datetime.now(timezone.utc)}

    cart = await modify_user_doc(store, "cart", user_id, mutate)
    return await _with_products(store, cart)


async def clear_cart(store: Store, user_id: str) -> None:
    def mutate(cart: Optional[dict]) -> Optional[dict]:
        if not cart or not cart["items"]:
            return None
        return {"items": [], "updated_at": datetime.now(timezone.utc)}

    await modify_user_doc(store, "cart", user_id, mutate)
    logger.info("Cleared cart for user %s", user_id)
