"""
Database Schemas

Kids storefront models.
Each Pydantic model that maps to a MongoDB collection notes the collection name
(lowercased class name). Request models forbid unknown fields so that no
handler ever merges an arbitrary payload into a stored document.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

OrderStatus = Literal["confirmed", "processing", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "initiated", "paid", "failed"]
PaymentMethod = Literal["cod", "phonepe"]

ORDER_STATUSES = ("confirmed", "processing", "shipped", "delivered", "cancelled")
TERMINAL_ORDER_STATUSES = ("delivered", "cancelled")
SETTLED_PAYMENT_STATUSES = ("paid", "completed")


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ----- Catalog -----

class Product(StrictModel):
    """
    Collection: "product"
    Catalog item. Stock and availability are mutated by checkout and cancellation.
    """
    name: str = Field(..., min_length=1, description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., ge=0, description="Price in INR")
    original_price: Optional[float] = Field(None, ge=0, description="Price before discount")
    category: Optional[str] = Field(None, description="Category, e.g. 'clothing', 'toys'")
    age_group: Optional[str] = Field(None, description="Age group, e.g. '2-4'")
    brand: Optional[str] = None
    images: List[str] = Field(default_factory=list, description="Array of image URLs")
    stock: int = Field(0, ge=0, description="Units available")
    availability: bool = Field(True, description="Whether available for purchase")
    sizes: List[str] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list)
    badge: Optional[str] = None
    featured: bool = False


# ----- Cart / Wishlist -----

class CartItemRequest(StrictModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None
    color: Optional[str] = None


class CartItemUpdate(StrictModel):
    product_id: str
    # zero or negative removes the line item
    quantity: int
    size: Optional[str] = None
    color: Optional[str] = None


class WishlistRequest(StrictModel):
    product_id: str


# ----- Addresses -----

class ShippingAddress(StrictModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    street: str = Field(..., min_length=1, description="Street line")
    apartment: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., pattern=r"^\d{6}$", description="6-digit postal code")
    phone: Optional[str] = None


class AddressCreate(ShippingAddress):
    is_default: bool = False


class AddressUpdate(StrictModel):
    first_name: Optional[str] = Field(None, min_length=1)
    last_name: Optional[str] = Field(None, min_length=1)
    street: Optional[str] = Field(None, min_length=1)
    apartment: Optional[str] = None
    city: Optional[str] = Field(None, min_length=1)
    state: Optional[str] = Field(None, min_length=1)
    pincode: Optional[str] = Field(None, pattern=r"^\d{6}$")
    phone: Optional[str] = None
    is_default: Optional[bool] = None


class Address(AddressCreate):
    """Embedded in collection "address_book", one document per user."""
    id: str
    created_at: datetime


# ----- Orders -----

class OrderItem(BaseModel):
    """Snapshot of a cart line item, copied from the catalog at checkout."""
    product_id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    size: Optional[str] = None
    color: Optional[str] = None
    image: Optional[str] = None


class OrderCreate(StrictModel):
    # falls back to the caller's default address when omitted
    shipping_address: Optional[ShippingAddress] = None
    payment_method: PaymentMethod = "cod"


class Order(BaseModel):
    """
    Collection: "order"
    Immutable snapshot of a checkout plus its fulfilment and payment state.
    """
    order_number: str
    user_id: str
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    shipping: float = Field(..., ge=0)
    tax: float = Field(..., ge=0)
    total: float = Field(..., ge=0)
    currency: str = "INR"
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = "cod"
    payment_status: PaymentStatus = "pending"
    status: OrderStatus = "confirmed"
    merchant_transaction_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refund_status: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class OrderAdminUpdate(StrictModel):
    status: Optional[OrderStatus] = None
    # trusted confirmation for payments collected outside the gateway
    payment_status: Optional[Literal["paid"]] = None


# ----- Payment -----

class PaymentInitiateRequest(StrictModel):
    order_id: str
    amount: float
    customer_phone: str
    customer_email: Optional[str] = None

    @field_validator("customer_phone")
    @classmethod
    def digits_only(cls, value: str) -> str:
        digits = "".join(ch for ch in value if ch.isdigit())
        if len(digits) != 10:
            raise ValueError("Invalid phone number")
        return digits


class PaymentCallbackRequest(BaseModel):
    response: Optional[str] = None
