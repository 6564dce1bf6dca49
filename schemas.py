"""
Database Schemas for the Storefront

Each Pydantic model describes a record in one of the store collections:
products, carts, wishlists, addresses, orders and users. Records carry a
string `id` assigned by the store.
"""

from enum import Enum
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field


COLLECTIONS = ("products", "carts", "wishlists", "addresses", "orders", "users")


class User(BaseModel):
    """
    Users collection schema
    Upserted on login; is_admin is derived from the trusted admin email.
    """
    id: Optional[str] = None
    uid: str = Field(..., description="Identity provider user id")
    email: EmailStr = Field(..., description="Email address")
    name: str = Field("", description="Display name")
    is_admin: bool = Field(False)


class Session(BaseModel):
    """Authenticated identity passed into every domain call"""
    uid: str
    email: str = ""
    name: str = ""
    is_admin: bool = False


class Product(BaseModel):
    """Products collection schema"""
    id: Optional[str] = None
    title: str = Field(..., description="Product name")
    description: Optional[str] = Field(None)
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0, description="Units in stock")
    image: Optional[str] = Field(None, description="Image URL")


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class Cart(BaseModel):
    id: Optional[str] = None
    user_id: str
    items: List[CartItem] = []
    version: Optional[int] = Field(
        None, description="Bumped on every write to detect lost updates; absent on carts stored before versioning"
    )


class Wishlist(BaseModel):
    id: Optional[str] = None
    user_id: str
    product_ids: List[str] = []


class Address(BaseModel):
    id: Optional[str] = None
    user_id: str
    label: str = "Other"
    line1: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = ""
    pincode: str = ""


class OrderStatus(str, Enum):
    CREATED = "On Process"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"


class OrderItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0, description="Price frozen at purchase time")


class Order(BaseModel):
    id: Optional[str] = None
    user_id: str
    items: List[OrderItem]
    address_id: str
    total: float
    status: OrderStatus = OrderStatus.CREATED
    created_at: datetime
    idempotency_key: Optional[str] = None


def record(model: BaseModel) -> dict:
    """Plain dict for the store, without the store-assigned id."""
    data = model.model_dump(mode="json", exclude={"id"})
    return {k: v for k, v in data.items() if v is not None}
