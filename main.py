import logging
import os
import threading
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field

import accounts
import cart as carts
import catalog
import orders
import wishlist as wishlists
from database import db, ensure_indexes
from errors import StorefrontError
from resources import ResourceClient, get_resource_client
from schemas import OrderStatus, Product, Session, record

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# One store client per process, shared by all requests.
_store_client: Optional[ResourceClient] = None
_store_lock = threading.Lock()


def close_client() -> None:
    global _store_client
    with _store_lock:
        if _store_client is not None:
            _store_client.close()
            _store_client = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
    yield
    close_client()


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


class LoginRequest(BaseModel):
    uid: str
    email: EmailStr
    name: Optional[str] = None


class CartItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class QuantityRequest(BaseModel):
    quantity: int


class WishlistRequest(BaseModel):
    product_id: str


class AddressRequest(BaseModel):
    label: Optional[str] = None
    line1: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None


class CheckoutRequest(BaseModel):
    address_id: Optional[str] = None
    idempotency_key: Optional[str] = None


class StatusRequest(BaseModel):
    status: OrderStatus


# Dependencies

def get_client() -> ResourceClient:
    global _store_client
    with _store_lock:
        if _store_client is None:
            _store_client = get_resource_client()
        client = _store_client
    if client is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return client


def get_session(
    x_user_id: Optional[str] = Header(None),
    client: ResourceClient = Depends(get_client),
) -> Session:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Login required")
    session = accounts.session_for(client, x_user_id)
    if session is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    return session


@app.get("/")
def root():
    return {"message": "Storefront Backend Running"}


@app.get("/test")
def test_database():
    info = {
        "backend": "running",
        "store": os.getenv("STORE_BACKEND", "mongo"),
        "database": "unavailable",
        "collections": [],
    }
    try:
        if db is not None:
            info["database"] = "connected"
            info["collections"] = db.list_collection_names()
    except Exception as e:
        info["database"] = f"error: {str(e)[:80]}"
    return info


# Users
@app.post("/users/login")
def login(payload: LoginRequest, client: ResourceClient = Depends(get_client)):
    user = accounts.upsert_user(client, payload.uid, payload.email, payload.name or "")
    return user.model_dump()


# Products
@app.get("/products")
def list_products(
    q: Optional[str] = None, sort: Optional[str] = None, client: ResourceClient = Depends(get_client)
):
    return catalog.search_products(client.list("products"), q or "", sort or "")


@app.get("/products/{product_id}")
def get_product(product_id: str, client: ResourceClient = Depends(get_client)):
    return client.get("products", product_id)


# Cart
@app.get("/cart")
def get_cart(session: Session = Depends(get_session), client: ResourceClient = Depends(get_client)):
    return carts.cart_summary(client, session)


@app.post("/cart/items")
def cart_add(
    item: CartItemRequest,
    session: Session = Depends(get_session),
    client: ResourceClient = Depends(get_client),
):
    carts.add_to_cart(client, session, item.product_id, item.quantity)
    return carts.cart_summary(client, session)


@app.patch("/cart/items/{product_id}")
def cart_update(
    product_id: str,
    body: QuantityRequest,
    session: Session = Depends(get_session),
    client: ResourceClient = Depends(get_client),
):
    carts.update_cart_quantity(client, session, product_id, body.quantity)
    return carts.cart_summary(client, session)


@app.delete("/cart/items/{product_id}")
def cart_remove(
    product_id: str,
    session: Session = Depends(get_session),
    client: ResourceClient = Depends(get_client),
):
    carts.remove_from_cart(client, session, product_id)
    return carts.cart_summary(client, session)


# Wishlist
@app.get("/wishlist")
def get_wishlist(session: Session = Depends(get_session), client: ResourceClient = Depends(get_client)):
    return {"products": wishlists.wishlist_products(client, session)}


@app.post("/wishlist/items")
def wishlist_add(
    body: WishlistRequest,
    session: Session = Depends(get_session),
    client: ResourceClient = Depends(get_client),
):
    return wishlists.add_to_wishlist(client, session, body.product_id).model_dump()


@app.delete("/wishlist/items/{product_id}")
def wishlist_remove(
    product_id: str,
    session: Session = Depends(get_session),
    client: ResourceClient = Depends(get_client),
):
    return wishlists.remove_from_wishlist(client, session, product_id).model_dump()


# Addresses
@app.get("/addresses")
def get_addresses(session: Session = Depends(get_session), client: ResourceClient = Depends(get_client)):
    return [a.model_dump() for a in accounts.list_addresses(client, session)]


@app.post("/addresses")
def create_address(
    body: AddressRequest,
    session: Session = Depends(get_session),
    client: ResourceClient = Depends(get_client),
):
    return accounts.add_address(client, session, body.model_dump(exclude_none=True)).model_dump()


# Checkout -> create order
# Plain def: runs to completion in the worker pool even if the client goes away.
@app.post("/checkout")
def checkout(
    body: CheckoutRequest,
    session: Session = Depends(get_session),
    client: ResourceClient = Depends(get_client),
):
    result = orders.place_order(client, session, body.address_id, body.idempotency_key)
    return {
        "order_id": result.order_id,
        "total": result.order.total,
        "status": result.order.status.value,
        "reference": result.reference,
        "replayed": result.replayed,
        "cart_cleared": result.cart_cleared,
        "warnings": result.warnings,
    }


@app.get("/orders")
def my_orders(session: Session = Depends(get_session), client: ResourceClient = Depends(get_client)):
    return orders.list_user_orders(client, session)


# Admin
@app.get("/admin/orders")
def admin_orders(session: Session = Depends(get_session), client: ResourceClient = Depends(get_client)):
    return orders.list_all_orders(client, session)


@app.get("/admin/stats")
def admin_stats(session: Session = Depends(get_session), client: ResourceClient = Depends(get_client)):
    return catalog.order_stats(orders.list_all_orders(client, session))


@app.patch("/admin/orders/{order_id}/status")
def admin_change_status(
    order_id: str,
    body: StatusRequest,
    session: Session = Depends(get_session),
    client: ResourceClient = Depends(get_client),
):
    return orders.change_order_status(client, session, order_id, body.status.value)


# Seed some demo products if empty
DEMO_PRODUCTS = [
    {"title": "Noise-Canceling Headphones", "description": "Over-ear, Bluetooth 5.3, 30h battery", "price": 129.99, "stock": 40, "image": "https://images.unsplash.com/photo-1517495306984-937bcd3c5b86"},
    {"title": "Mechanical Keyboard", "description": "Hot-swappable RGB keyboard", "price": 79.99, "stock": 30, "image": "https://images.unsplash.com/photo-1516382799247-87df95d790b5"},
    {"title": "Smartwatch", "description": "Track fitness and notifications", "price": 69.99, "stock": 35, "image": "https://images.unsplash.com/photo-1512086734732-172b66a17c72"},
    {"title": "Classic T-Shirt", "description": "100% cotton, unisex fit", "price": 14.99, "stock": 0, "image": "https://images.unsplash.com/photo-1512436991641-6745cdb1723f"},
]


@app.post("/seed")
def seed_products(client: ResourceClient = Depends(get_client)):
    if client.list("products"):
        return {"message": "Products already exist"}
    for p in DEMO_PRODUCTS:
        client.create("products", record(Product(**p)))
    return {"message": "Seeded", "products": len(DEMO_PRODUCTS)}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
