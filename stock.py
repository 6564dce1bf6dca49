"""
Stock reservation: claim `qty` units of a product for an order line.

On a store with conditional updates the decrement is a single
`stock = stock - qty WHERE stock >= qty`. On a plain REST store the write
is tagged with a fresh token and the product is re-read straight away; if
another token is found our write was overwritten and the reservation is
reported as a conflict.
"""
import logging
import uuid
from dataclasses import dataclass

from errors import ConflictError, InsufficientStock
from resources import ResourceClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reservation:
    product_id: str
    quantity: int


def reserve_stock(client: ResourceClient, product_id: str, qty: int) -> Reservation:
    if client.supports_conditional_update:
        updated = client.increment("products", product_id, "stock", -qty, minimum=qty)
        if updated is None:
            product = client.get("products", product_id)
            raise InsufficientStock(product_id, qty, int(product.get("stock") or 0))
        logger.info("Reserved %d of product %s, %s left", qty, product_id, updated.get("stock"))
        return Reservation(product_id, qty)

    product = client.get("products", product_id)
    stock = int(product.get("stock") or 0)
    if stock < qty:
        raise InsufficientStock(product_id, qty, stock)

    token = uuid.uuid4().hex
    client.update("products", product_id, {"stock": stock - qty, "stock_token": token})
    after = client.get("products", product_id)
    if after.get("stock_token") != token:
        logger.warning("Stock write on product %s was overwritten by a concurrent order", product_id)
        raise ConflictError("products", product_id)
    if int(after.get("stock") or 0) < 0:
        client.update("products", product_id, {"stock": int(after["stock"]) + qty})
        logger.warning("Stock of product %s went negative, write undone", product_id)
        raise ConflictError("products", product_id)
    logger.info("Reserved %d of product %s, %d left", qty, product_id, stock - qty)
    return Reservation(product_id, qty)


def release_stock(client: ResourceClient, reservation: Reservation) -> None:
    """Compensate a reservation by putting its units back."""
    if client.supports_conditional_update:
        client.increment("products", reservation.product_id, "stock", reservation.quantity)
    else:
        product = client.get("products", reservation.product_id)
        client.update(
            "products",
            reservation.product_id,
            {"stock": int(product.get("stock") or 0) + reservation.quantity},
        )
    logger.info("Released %d of product %s", reservation.quantity, reservation.product_id)


def reserve_with_retry(
    client: ResourceClient, product_id: str, qty: int, attempts: int = 2
) -> Reservation:
    """Reserve, retrying a bounded number of times when a concurrent write is detected."""
    for attempt in range(1, attempts + 1):
        try:
            return reserve_stock(client, product_id, qty)
        except ConflictError:
            if attempt == attempts:
                raise
            logger.info("Retrying reservation of product %s after conflict", product_id)
    raise ConflictError("products", product_id)
