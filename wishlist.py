"""Wishlist aggregate: an idempotent set of product ids per user."""
import logging
from typing import List

from errors import DuplicateRecord, NotFoundError, OutOfStock
from resources import ResourceClient
from schemas import Session, Wishlist, record

logger = logging.getLogger(__name__)


def add_product(wishlist: Wishlist, product_id: str, stock_available: int) -> Wishlist:
    if stock_available <= 0:
        raise OutOfStock(product_id)
    if product_id in wishlist.product_ids:
        return wishlist
    return wishlist.model_copy(update={"product_ids": wishlist.product_ids + [product_id]})


def remove_product(wishlist: Wishlist, product_id: str) -> Wishlist:
    if product_id not in wishlist.product_ids:
        return wishlist
    return wishlist.model_copy(
        update={"product_ids": [p for p in wishlist.product_ids if p != product_id]}
    )


def load_wishlist(client: ResourceClient, session: Session) -> Wishlist:
    found = client.find_one("wishlists", {"user_id": session.uid})
    if not found:
        return Wishlist(user_id=session.uid)
    return Wishlist.model_validate(found)


def add_to_wishlist(client: ResourceClient, session: Session, product_id: str) -> Wishlist:
    product = client.get("products", product_id)
    current = load_wishlist(client, session)
    updated = add_product(current, product_id, int(product.get("stock") or 0))
    if updated is current:
        return current
    if current.id is None:
        try:
            created = client.create("wishlists", record(updated))
            return Wishlist.model_validate(created)
        except DuplicateRecord:
            # created from another device in the meantime
            current = load_wishlist(client, session)
    return Wishlist.model_validate(client.add_to_set("wishlists", current.id, "product_ids", product_id))


def remove_from_wishlist(client: ResourceClient, session: Session, product_id: str) -> Wishlist:
    current = load_wishlist(client, session)
    if current.id is None or product_id not in current.product_ids:
        return current
    return Wishlist.model_validate(client.pull("wishlists", current.id, "product_ids", product_id))


def wishlist_products(client: ResourceClient, session: Session) -> List[dict]:
    """Products on the wishlist that still exist, out-of-stock ones included."""
    products = []
    for product_id in load_wishlist(client, session).product_ids:
        try:
            products.append(client.get("products", product_id))
        except NotFoundError:
            logger.info("Wishlisted product %s no longer exists", product_id)
    return products
