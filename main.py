import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import addresses
import carts
import orders
import payments
import wishlists
from auth import get_current_user_id, require_admin
from config import Settings, get_settings
from database import Store, StoreProvider
from errors import InvalidInput, NotFound, StorefrontError
from schemas import (
    AddressCreate,
    AddressUpdate,
    CartItemRequest,
    CartItemUpdate,
    OrderAdminUpdate,
    OrderCreate,
    PaymentCallbackRequest,
    PaymentInitiateRequest,
    Product,
    WishlistRequest,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.store_provider = StoreProvider(get_settings())
    yield
    await app.state.store_provider.close()


app = FastAPI(title="KidoCart Store API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    return response


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": "Invalid request", "errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    content = {"detail": "Internal server error"}
    if not get_settings().is_production:
        content["details"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# ----- Dependencies -----

async def get_store(request: Request) -> Store:
    return await request.app.state.store_provider.get()


def get_gateway(settings: Settings = Depends(get_settings)) -> payments.PhonePeClient:
    return payments.PhonePeClient.from_settings(settings)


# ----- Health -----
@app.get("/")
def read_root():
    return {"message": "KidoCart Store API running"}


@app.get("/test")
async def test_database(request: Request, settings: Settings = Depends(get_settings)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if settings.database_url else "❌ Not Set",
        "database_name": settings.database_name,
        "collections": [],
    }
    try:
        store = await get_store(request)
        response["collections"] = (await store.collection_names())[:10]
        response["database"] = "✅ Connected & Working"
    except Exception as e:
        response["database"] = f"⚠️ Error: {str(e)[:80]}"
    return response


# ----- Products -----
@app.get("/api/products")
async def list_products(
    category: Optional[str] = Query(None),
    age_group: Optional[str] = Query(None),
    brand: Optional[str] = Query(None),
    featured: Optional[bool] = Query(None),
    store: Store = Depends(get_store),
):
    filters = {}
    if category:
        filters["category"] = category
    if age_group:
        filters["age_group"] = age_group
    if brand:
        filters["brand"] = brand
    if featured is not None:
        filters["featured"] = featured
    return await store.list_products(filters)


@app.post("/api/products", status_code=201, dependencies=[Depends(require_admin)])
async def create_product(product: Product, store: Store = Depends(get_store)):
    data = product.model_dump()
    data["created_at"] = datetime.now(timezone.utc)
    return await store.insert_product(data)


@app.get("/api/products/{product_id}")
async def get_product(product_id: str, store: Store = Depends(get_store)):
    doc = await store.find_product(product_id)
    if not doc:
        raise NotFound("Product", product_id)
    return doc


# ----- Cart -----
@app.get("/api/cart")
async def get_cart(user_id: str = Depends(get_current_user_id), store: Store = Depends(get_store)):
    return await carts.get_cart(store, user_id)


@app.post("/api/cart")
async def add_to_cart(
    item: CartItemRequest,
    user_id: str = Depends(get_current_user_id),
    store: Store = Depends(get_store),
):
    return await carts.add_item(store, user_id, item.product_id, item.quantity, item.size, item.color)


@app.put("/api/cart")
async def update_cart_item(
    item: CartItemUpdate,
    user_id: str = Depends(get_current_user_id),
    store: Store = Depends(get_store),
):
    return await carts.update_item(store, user_id, item.product_id, item.quantity, item.size, item.color)


@app.delete("/api/cart")
async def delete_from_cart(
    product_id: Optional[str] = Query(None),
    size: Optional[str] = Query(None),
    color: Optional[str] = Query(None),
    clear: bool = Query(False),
    user_id: str = Depends(get_current_user_id),
    store: Store = Depends(get_store),
):
    if clear:
        await carts.clear_cart(store, user_id)
        return {"message": "Cart cleared"}
    if not product_id:
        raise InvalidInput("product_id is required")
    cart = await carts.remove_item(store, user_id, product_id, size, color)
    return {"message": "Item removed from cart", "cart": cart}


# ----- Wishlist -----
@app.get("/api/wishlist")
async def get_wishlist(user_id: str = Depends(get_current_user_id), store: Store = Depends(get_store)):
    return {"items": await wishlists.list_items(store, user_id)}


@app.post("/api/wishlist")
async def add_to_wishlist(
    body: WishlistRequest,
    user_id: str = Depends(get_current_user_id),
    store: Store = Depends(get_store),
):
    added = await wishlists.add(store, user_id, body.product_id)
    return {"added": added, "items": await wishlists.list_items(store, user_id)}


@app.post("/api/wishlist/toggle")
async def toggle_wishlist(
    body: WishlistRequest,
    user_id: str = Depends(get_current_user_id),
    store: Store = Depends(get_store),
):
    return {"added": await wishlists.toggle(store, user_id, body.product_id)}


@app.delete("/api/wishlist")
async def remove_from_wishlist(
    product_id: str = Query(...),
    user_id: str = Depends(get_current_user_id),
    store: Store = Depends(get_store),
):
    await wishlists.remove(store, user_id, product_id)
    return {"message": "Item removed from wishlist"}


# ----- Addresses -----
@app.get("/api/addresses")
async def list_addresses(user_id: str = Depends(get_current_user_id), store: Store = Depends(get_store)):
    return await addresses.list_addresses(store, user_id)


@app.post("/api/addresses", status_code=201)
async def create_address(
    body: AddressCreate,
    user_id: str = Depends(get_current_user_id),
    store: Store = Depends(get_store),
):
    return await addresses.add_address(store, user_id, body)


@app.put("/api/addresses/{address_id}")
async def update_address(
    address_id: str,
    body: AddressUpdate,
    user_id: str = Depends(get_current_user_id),
    store: Store = Depends(get_store),
):
    return await addresses.update_address(store, user_id, address_id, body)


@app.delete("/api/addresses/{address_id}")
async def delete_address(
    address_id: str,
    user_id: str = Depends(get_current_user_id),
    store: Store = Depends(get_store),
):
    await addresses.delete_address(store, user_id, address_id)
    return {"message": "Address deleted successfully"}


# ----- Orders -----
@app.get("/api/orders")
async def list_orders(user_id: str = Depends(get_current_user_id), store: Store = Depends(get_store)):
    return await orders.list_orders(store, user_id)


@app.post("/api/orders", status_code=201)
async def create_order(
    body: OrderCreate,
    user_id: str = Depends(get_current_user_id),
    store: Store = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    return await orders.create_order(store, settings, user_id, body)


@app.get("/api/orders/{order_ref}")
async def get_order(
    order_ref: str,
    user_id: str = Depends(get_current_user_id),
    store: Store = Depends(get_store),
):
    return await orders.get_order(store, user_id, order_ref)


@app.put("/api/orders/{order_ref}/cancel")
async def cancel_order(
    order_ref: str,
    user_id: str = Depends(get_current_user_id),
    store: Store = Depends(get_store),
):
    order = await orders.cancel_order(store, user_id, order_ref)
    return {"message": "Order cancelled successfully", "order": order}


@app.get("/api/admin/orders", dependencies=[Depends(require_admin)])
async def list_all_orders(store: Store = Depends(get_store)):
    return await orders.list_all_orders(store)


@app.put("/api/admin/orders/{order_ref}", dependencies=[Depends(require_admin)])
async def admin_update_order(order_ref: str, body: OrderAdminUpdate, store: Store = Depends(get_store)):
    return await orders.update_status(store, order_ref, body)


# ----- Payment -----
@app.post("/api/payment/phonepe/initiate")
async def initiate_payment(
    body: PaymentInitiateRequest,
    user_id: str = Depends(get_current_user_id),
    store: Store = Depends(get_store),
    settings: Settings = Depends(get_settings),
    gateway: payments.PhonePeClient = Depends(get_gateway),
):
    return await payments.initiate_payment(store, settings, gateway, user_id, body)


@app.post("/api/payment/phonepe/callback")
async def phonepe_callback(
    body: PaymentCallbackRequest,
    x_verify: Optional[str] = Header(None),
    store: Store = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    return await payments.process_callback(store, settings, body.response, x_verify)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
