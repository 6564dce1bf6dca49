"""
Cart aggregate.

The functions in the first half are pure: they take a Cart and return a new
one without touching the store. The helpers below them persist a user's
cart through a ResourceClient. Every write bumps `version` and is applied
only if the stored version is still the one that was read, so two devices
editing the same cart cannot silently overwrite each other.
"""
import logging
from typing import Callable, Optional

from errors import (
    CartEmptied,
    ConflictError,
    DuplicateRecord,
    NotFoundError,
    OutOfStock,
    PriceUnavailable,
    ValidationError,
)
from resources import ResourceClient
from schemas import Cart, CartItem, Session, record

logger = logging.getLogger(__name__)


def add_item(cart: Cart, product_id: str, stock_available: int, qty: int = 1) -> Cart:
    if qty < 1:
        raise ValidationError("Quantity must be at least 1")
    if stock_available <= 0:
        raise OutOfStock(product_id)
    updated = cart.model_copy(deep=True)
    for line in updated.items:
        if line.product_id == product_id:
            line.quantity += qty
            return updated
    updated.items.append(CartItem(product_id=product_id, quantity=qty))
    return updated


def remove_item(cart: Cart, product_id: str) -> Cart:
    """Drop the line for `product_id`. Raises CartEmptied when nothing is left."""
    updated = cart.model_copy(deep=True)
    updated.items = [line for line in updated.items if line.product_id != product_id]
    if not updated.items:
        raise CartEmptied(updated)
    return updated


def set_quantity(cart: Cart, product_id: str, quantity: int) -> Cart:
    if quantity < 1:
        return remove_item(cart, product_id)
    updated = cart.model_copy(deep=True)
    for line in updated.items:
        if line.product_id == product_id:
            line.quantity = quantity
            return updated
    raise ValidationError(f"Product {product_id} is not in the cart")


def merge_carts(target: Cart, other: Cart) -> Cart:
    merged = target.model_copy(deep=True)
    lines = {line.product_id: line for line in merged.items}
    for line in other.items:
        if line.product_id in lines:
            lines[line.product_id].quantity += line.quantity
        else:
            lines[line.product_id] = CartItem(product_id=line.product_id, quantity=line.quantity)
            merged.items.append(lines[line.product_id])
    return merged


def total_value(cart: Cart, price_lookup: Callable[[str], Optional[float]]) -> float:
    total = 0.0
    for line in cart.items:
        try:
            price = price_lookup(line.product_id)
        except NotFoundError:
            price = None
        if price is None:
            raise PriceUnavailable(line.product_id)
        total += line.quantity * price
    return total


def item_count(cart: Optional[Cart]) -> int:
    if cart is None:
        return 0
    return sum(line.quantity for line in cart.items)


# ----------------------- Persistence -----------------------
def load_cart(client: ResourceClient, session: Session) -> Optional[Cart]:
    found = client.find_one("carts", {"user_id": session.uid})
    return Cart.model_validate(found) if found else None


def _save(client: ResourceClient, cart: Cart) -> Cart:
    if cart.id is None:
        created = client.create("carts", record(cart.model_copy(update={"version": 1})))
        return Cart.model_validate(created)
    # None matches carts written before versioning, which have no version field
    expected = {"version": cart.version}
    saved = client.compare_and_set(
        "carts",
        cart.id,
        expected,
        {"items": [line.model_dump() for line in cart.items], "version": (cart.version or 0) + 1},
    )
    if saved is None:
        raise ConflictError("carts", cart.id)
    return Cart.model_validate(saved)


def _mutate(
    client: ResourceClient,
    session: Session,
    mutation: Callable[[Cart], Cart],
    attempts: int = 2,
) -> Optional[Cart]:
    """Load, apply `mutation`, save. Returns None when the cart was emptied and deleted."""
    for attempt in range(1, attempts + 1):
        current = load_cart(client, session) or Cart(user_id=session.uid)
        try:
            updated = mutation(current)
        except CartEmptied:
            if current.id is not None:
                client.delete("carts", current.id)
                logger.info("Deleted emptied cart %s of user %s", current.id, session.uid)
            return None
        try:
            return _save(client, updated)
        except (ConflictError, DuplicateRecord):
            if attempt == attempts:
                raise
            logger.info("Cart of user %s changed concurrently, reapplying", session.uid)
    return None


def add_to_cart(client: ResourceClient, session: Session, product_id: str, qty: int = 1) -> Cart:
    product = client.get("products", product_id)
    stock = int(product.get("stock") or 0)
    return _mutate(client, session, lambda cart: add_item(cart, product_id, stock, qty))


def remove_from_cart(client: ResourceClient, session: Session, product_id: str) -> Optional[Cart]:
    return _mutate(client, session, lambda cart: remove_item(cart, product_id))


def update_cart_quantity(
    client: ResourceClient, session: Session, product_id: str, quantity: int
) -> Optional[Cart]:
    return _mutate(client, session, lambda cart: set_quantity(cart, product_id, quantity))


def cart_summary(client: ResourceClient, session: Session) -> dict:
    """
    Cart lines joined with product details, plus total and badge count.

    Lines whose product was deleted or has no price stay in the cart, marked
    ``available: False`` and left out of the total, so the shopper can still
    see and remove them.
    """
    cart = load_cart(client, session)
    if cart is None:
        return {"id": None, "items": [], "total": 0.0, "count": 0}

    items = []
    total = 0.0
    for line in cart.items:
        try:
            product = client.get("products", line.product_id)
        except NotFoundError:
            product = None
        price = product.get("price") if product else None
        if price is None:
            logger.info("Cart of user %s holds unavailable product %s", session.uid, line.product_id)
            items.append({"product_id": line.product_id, "quantity": line.quantity, "available": False})
            continue
        total += line.quantity * price
        items.append(
            {
                "product_id": line.product_id,
                "title": product.get("title"),
                "image": product.get("image"),
                "price": price,
                "stock": product.get("stock"),
                "quantity": line.quantity,
                "line_total": line.quantity * price,
                "available": True,
            }
        )
    return {"id": cart.id, "items": items, "total": total, "count": item_count(cart)}
