"""Wishlist engine: one set of product references per user."""
from datetime import datetime, timezone
from typing import List, Optional

from database import Store, modify_user_doc
from errors import NotFound


def _contains(wishlist: Optional[dict], product_id: str) -> bool:
    return bool(wishlist) and any(i["product_id"] == product_id for i in wishlist["items"])


async def list_items(store: Store, user_id: str) -> List[dict]:
    wishlist = await store.load_user_doc("wishlist", user_id)
    if not wishlist:
        return []
    items = wishlist["items"]
    products = await store.find_products(i["product_id"] for i in items)
    return [{**i, "product": products.get(i["product_id"])} for i in items]


async def add(store: Store, user_id: str, product_id: str) -> bool:
    """Add a product; returns False when it was already there."""
    if await store.find_product(product_id) is None:
        raise NotFound("Product", product_id)
    added = False

    def mutate(wishlist: Optional[dict]) -> Optional[dict]:
        nonlocal added
        if _contains(wishlist, product_id):
            added = False
            return None
        added = True
        now = datetime.now(timezone.utc)
        items = wishlist["items"] if wishlist else []
        items.append({"product_id": product_id, "added_at": now})
        return {"items": items, "updated_at": now}

    await modify_user_doc(store, "wishlist", user_id, mutate)
    return added


async def remove(store: Store, user_id: str, product_id: str) -> bool:
    """Remove a product; returns False when it was not there."""
    removed = False

    def mutate(wishlist: Optional[dict]) -> Optional[dict]:
        nonlocal removed
        removed = _contains(wishlist, product_id)
        if not removed:
            return None
        items = [i for i in wishlist["items"] if i["product_id"] != product_id]
        return {"items": items, "updated_at": datetime.now(timezone.utc)}

    await modify_user_doc(store, "wishlist", user_id, mutate)
    return removed


async def toggle(store: Store, user_id: str, product_id: str) -> bool:
    """Flip membership in one write; returns True when the product is now in the wishlist."""
    added = False

    def mutate(wishlist: Optional[dict]) -> dict:
        nonlocal added
        now = datetime.now(timezone.utc)
        items = wishlist["items"] if wishlist else []
        added = not _contains(wishlist, product_id)
        if added:
            items.append({"product_id": product_id, "added_at": now})
        else:
            items = [i for i in items if i["product_id"] != product_id]
        return {"items": items, "updated_at": now}

    if not _contains(await store.load_user_doc("wishlist", user_id), product_id):
        if await store.find_product(product_id) is None:
            raise NotFound("Product", product_id)
    await modify_user_doc(store, "wishlist", user_id, mutate)
    return added
