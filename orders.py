"""
Order workflow.

Orders are snapshots: item names, prices and images are copied from the
catalog when the order is placed, so later catalog edits never change a
historical order. Stock is reserved when the order is placed and given back
when it is cancelled.

Fulfilment:  confirmed -> processing -> shipped -> delivered
             any of the first three -> cancelled
             delivered -> cancelled (admin only, no restock)
             cancelled is final
Payment:     pending -> initiated -> paid | failed
"""
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import addresses
import carts
from config import Settings
from database import Store
from errors import InvalidInput, InvalidState, NotFound
from schemas import (
    ORDER_STATUSES,
    SETTLED_PAYMENT_STATUSES,
    TERMINAL_ORDER_STATUSES,
    Order,
    OrderAdminUpdate,
    OrderCreate,
    OrderItem,
    ShippingAddress,
)

logger = logging.getLogger(__name__)

ORDER_PREFIX = "ORD"


def generate_order_number() -> str:
    return f"{ORDER_PREFIX}-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


def compute_totals(subtotal: float, settings: Settings) -> Dict[str, float]:
    subtotal = round(subtotal, 2)
    shipping = 0.0 if subtotal > settings.free_shipping_threshold else settings.shipping_fee
    tax = round(subtotal * settings.tax_rate, 2)
    return {
        "subtotal": subtotal,
        "shipping": shipping,
        "tax": tax,
        "total": round(subtotal + shipping + tax, 2),
    }


async def _snapshot_cart(store: Store, user_id: str) -> List[OrderItem]:
    cart = await store.load_user_doc("cart", user_id)
    items = cart["items"] if cart else []
    if not items:
        raise InvalidInput("Cart is empty")
    products = await store.find_products(item["product_id"] for item in items)
    snapshot = []
    for item in items:
        product = products.get(item["product_id"])
        if product is None:
            raise NotFound("Product", item["product_id"])
        if not product.get("availability", True):
            raise InvalidState(f"{product.get('name', 'Product')} is currently unavailable")
        images = product.get("images") or []
        snapshot.append(OrderItem(
            product_id=item["product_id"],
            name=product.get("name", "Product"),
            price=float(product.get("price", 0)),
            quantity=item["quantity"],
            size=item.get("size"),
            color=item.get("color"),
            image=images[0] if images else None,
        ))
    return snapshot


def _stock_lines(items: List[dict]) -> Dict[str, int]:
    lines: Dict[str, int] = {}
    for item in items:
        lines[item["product_id"]] = lines.get(item["product_id"], 0) + item["quantity"]
    return lines


async def _reserve_stock(store: Store, lines: Dict[str, int]) -> None:
    reserved: List[Tuple[str, int]] = []
    for product_id, quantity in lines.items():
        if not await store.reserve_stock(product_id, quantity):
            for done_id, done_qty in reserved:
                await store.release_stock(done_id, done_qty)
            logger.warning("Insufficient stock for product %s (wanted %d)", product_id, quantity)
            raise InvalidState("Insufficient stock")
        reserved.append((product_id, quantity))


async def create_order(store: Store, settings: Settings, user_id: str, data: OrderCreate) -> dict:
    items = await _snapshot_cart(store, user_id)

    shipping_address = data.shipping_address
    if shipping_address is None:
        default = await addresses.get_default_address(store, user_id)
        if default is None:
            raise InvalidInput("Shipping address is required")
        shipping_address = ShippingAddress(**{
            k: v for k, v in default.items() if k in ShippingAddress.model_fields
        })

    totals = compute_totals(sum(i.price * i.quantity for i in items), settings)
    now = datetime.now(timezone.utc)
    order = Order(
        order_number=generate_order_number(),
        user_id=user_id,
        items=items,
        shipping_address=shipping_address,
        payment_method=data.payment_method,
        created_at=now,
        updated_at=now,
        **totals,
    )
    document = order.model_dump()

    lines = _stock_lines(document["items"])
    await _reserve_stock(store, lines)
    try:
        created = await store.insert_order(document)
    except Exception:
        for product_id, quantity in lines.items():
            await store.release_stock(product_id, quantity)
        raise

    # Gateway orders keep the cart until the payment callback confirms the payment
    if data.payment_method == "cod":
        await carts.clear_cart(store, user_id)
    logger.info("Order %s placed by user %s, total %.2f", created["order_number"], user_id, created["total"])
    return created


async def list_orders(store: Store, user_id: str) -> List[dict]:
    return await store.list_orders(user_id)


async def get_order(store: Store, user_id: str, order_ref: str) -> dict:
    order = await store.find_order(order_ref, user_id=user_id)
    if order is None:
        raise NotFound("Order", order_ref)
    return order


async def cancel_order(store: Store, user_id: str, order_ref: str) -> dict:
    """Cancel an order the caller owns.

    Orders that are not the caller's are reported as missing so their
    existence is not revealed.
    """
    order = await get_order(store, user_id, order_ref)
    if order["status"] in TERMINAL_ORDER_STATUSES:
        raise InvalidState(f"Cannot cancel a {order['status']} order")

    now = datetime.now(timezone.utc)
    changes = {"status": "cancelled", "cancelled_at": now, "updated_at": now}
    if order.get("payment_status") in SETTLED_PAYMENT_STATUSES:
        changes["refund_status"] = "requested"
    cancelled = await store.update_order(
        order["id"], changes, user_id=user_id, status_not_in=TERMINAL_ORDER_STATUSES
    )
    if cancelled is None:
        # status moved on between the read and the guarded write
        current = await get_order(store, user_id, order_ref)
        raise InvalidState(f"Cannot cancel a {current['status']} order")

    for product_id, quantity in _stock_lines(cancelled["items"]).items():
        await store.release_stock(product_id, quantity)
    if changes.get("refund_status"):
        logger.info("Refund requested for order %s", cancelled["order_number"])
    logger.info("Order %s cancelled by user %s", cancelled["order_number"], user_id)
    return cancelled


async def list_all_orders(store: Store) -> List[dict]:
    return await store.list_orders()


async def update_status(store: Store, order_ref: str, update: OrderAdminUpdate) -> dict:
    """Administrative overwrite of fulfilment status and trusted payment confirmation.

    A cancelled order stays cancelled: its stock has already gone back to the
    catalog. Cancelling a delivered order records the cancellation without
    restocking, since those units have left with the customer.
    """
    changes = update.model_dump(exclude_none=True)
    if not changes:
        raise InvalidInput("Nothing to update")
    order = await store.find_order(order_ref)
    if order is None:
        raise NotFound("Order", order_ref)

    current = order["status"]
    target = changes.get("status", current)
    if current == "cancelled" and target != "cancelled":
        raise InvalidState("Cannot reopen a cancelled order")

    now = datetime.now(timezone.utc)
    cancelling = target == "cancelled" and current != "cancelled"
    paying = changes.get("payment_status") == "paid" and order.get("payment_status") not in SETTLED_PAYMENT_STATUSES
    settled = paying or order.get("payment_status") in SETTLED_PAYMENT_STATUSES
    if cancelling:
        changes["cancelled_at"] = now
    if paying:
        changes["paid_at"] = now
    if settled and (cancelling or (paying and current == "cancelled")):
        changes["refund_status"] = "requested"
    changes["updated_at"] = now

    # the write only lands while the order is still in the status it was read in
    guard = tuple(s for s in ORDER_STATUSES if s != current)
    updated = await store.update_order(order["id"], changes, status_not_in=guard)
    if updated is None:
        raise InvalidState("Order changed while updating, please retry")
    if cancelling and current not in TERMINAL_ORDER_STATUSES:
        for product_id, quantity in _stock_lines(updated["items"]).items():
            await store.release_stock(product_id, quantity)
    if changes.get("refund_status"):
        logger.info("Refund requested for order %s", updated["order_number"])
    logger.info("Order %s updated by admin: %s", updated["order_number"], update.model_dump(exclude_none=True))
    return updated
