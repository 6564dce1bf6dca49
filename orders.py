"""
Orders: the checkout workflow, admin status transitions and order queries.

Checkout touches three collections (products, orders, carts) on a store
without transactions, so it runs as a saga: each step that changes stock
is recorded, and a failure later on releases what was reserved before the
error reaches the caller. Errors raised after something was committed say
what is still in force and carry a reference the user can quote.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from cart import load_cart
from errors import (
    DuplicateRecord,
    EmptyCart,
    IllegalStatusTransition,
    InvalidAddress,
    ConflictError,
    NotFoundError,
    OrderPlacementFailed,
    OrderWriteFailed,
    PermissionDenied,
    ProductRemoved,
    StockRollbackFailed,
    StorefrontError,
    TransportError,
    ValidationError,
)
from resources import ResourceClient
from schemas import Cart, Order, OrderItem, OrderStatus, Session, record
from stock import Reservation, release_stock, reserve_with_retry

logger = logging.getLogger(__name__)


class Step(str, Enum):
    START = "start"
    ADDRESS_VALIDATED = "address_validated"
    STOCK_RESERVING = "stock_reserving"
    ORDER_RECORDED = "order_recorded"
    CART_CLEARED = "cart_cleared"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PlacementResult:
    order_id: str
    order: Order
    reference: str
    cart_cleared: bool = True
    warnings: List[str] = field(default_factory=list)
    replayed: bool = False


class OrderPlacement:
    """
    One checkout attempt for the cart of `session`.

    Steps run strictly in sequence. `state` tracks the last step reached;
    `reservations` holds the stock decrements that are currently in force.
    """

    def __init__(
        self,
        client: ResourceClient,
        session: Session,
        address_id: Optional[str],
        idempotency_key: Optional[str] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.client = client
        self.session = session
        self.address_id = address_id
        self.idempotency_key = idempotency_key
        self.reference = idempotency_key or uuid.uuid4().hex[:12]
        self.now = now or (lambda: datetime.now(timezone.utc))
        self.state = Step.START
        self.reservations: List[Reservation] = []
        self.order_id: Optional[str] = None

    def committed(self) -> List[str]:
        done = [f"reserved {r.quantity} x product {r.product_id}" for r in self.reservations]
        if self.order_id:
            done.append(f"order {self.order_id} recorded")
        return done

    def run(self) -> PlacementResult:
        try:
            return self._run()
        except OrderPlacementFailed:
            self.state = Step.FAILED
            raise
        except StorefrontError as e:
            failed_at = self.state
            self.state = Step.FAILED
            logger.warning(
                "Checkout %s for user %s failed at %s: %s",
                self.reference, self.session.uid, failed_at.value, e,
            )
            self._rollback(failed_at)
            if isinstance(e, TransportError):
                raise OrderPlacementFailed(
                    f"Checkout stopped at {failed_at.value}: {e.message}. Reference {self.reference}",
                    reference=self.reference,
                    step=failed_at.value,
                    committed=self.committed(),
                ) from e
            raise

    def _run(self) -> PlacementResult:
        existing = self._existing_order()
        if existing is not None:
            logger.info("Checkout %s already placed as order %s", self.reference, existing.id)
            return PlacementResult(
                order_id=existing.id,
                order=existing,
                reference=self.reference,
                cart_cleared=False,
                replayed=True,
            )

        cart = self._validate()
        lines = self._snapshot(cart)
        self._reserve(lines)
        order = self._record(lines)
        if order.id != self.order_id:
            # a concurrent submission with the same key won the race
            return PlacementResult(
                order_id=order.id,
                order=order,
                reference=self.reference,
                cart_cleared=False,
                replayed=True,
            )
        return self._clear_cart(cart, order)

    def _existing_order(self) -> Optional[Order]:
        if not self.idempotency_key:
            return None
        found = self.client.find_one(
            "orders", {"user_id": self.session.uid, "idempotency_key": self.idempotency_key}
        )
        return Order.model_validate(found) if found else None

    def _validate(self) -> Cart:
        cart = load_cart(self.client, self.session)
        if cart is None or not cart.items:
            raise EmptyCart()
        if not self.address_id:
            raise InvalidAddress(self.address_id)
        try:
            address = self.client.get("addresses", self.address_id)
        except NotFoundError:
            raise InvalidAddress(self.address_id) from None
        if address.get("user_id") != self.session.uid:
            raise InvalidAddress(self.address_id)
        self.state = Step.ADDRESS_VALIDATED
        return cart

    def _snapshot(self, cart: Cart) -> List[OrderItem]:
        """Freeze the current price of every line."""
        lines = []
        for line in cart.items:
            try:
                product = self.client.get("products", line.product_id)
            except NotFoundError:
                raise ProductRemoved(line.product_id) from None
            lines.append(
                OrderItem(
                    product_id=line.product_id,
                    quantity=line.quantity,
                    unit_price=float(product.get("price") or 0),
                )
            )
        return lines

    def _reserve(self, lines: List[OrderItem]) -> None:
        self.state = Step.STOCK_RESERVING
        # fixed order so overlapping checkouts always contend in the same sequence
        for line in sorted(lines, key=lambda item: item.product_id):
            try:
                reservation = reserve_with_retry(self.client, line.product_id, line.quantity)
            except NotFoundError:
                raise ProductRemoved(line.product_id) from None
            self.reservations.append(reservation)

    def _record(self, lines: List[OrderItem]) -> Order:
        order = Order(
            user_id=self.session.uid,
            items=lines,
            address_id=self.address_id,
            total=sum(line.quantity * line.unit_price for line in lines),
            status=OrderStatus.CREATED,
            created_at=self.now(),
            idempotency_key=self.idempotency_key,
        )
        try:
            created = self.client.create("orders", record(order))
        except StorefrontError as e:
            # the write may have landed even though we saw an error
            existing = self._lookup_after_write_error()
            if existing is not None:
                if isinstance(e, DuplicateRecord):
                    self._rollback(Step.STOCK_RESERVING)
                    return existing
                logger.warning("Order write for checkout %s reported %s but landed", self.reference, e)
                created = existing.model_dump(mode="json")
            else:
                self._rollback(Step.STOCK_RESERVING)
                raise OrderWriteFailed(
                    f"The order could not be recorded and reserved stock was released. "
                    f"Reference {self.reference}",
                    reference=self.reference,
                    step=Step.STOCK_RESERVING.value,
                    committed=self.committed(),
                ) from e
        self.order_id = created["id"]
        self.state = Step.ORDER_RECORDED
        logger.info(
            "Order %s recorded for user %s, total %.2f", self.order_id, self.session.uid, order.total
        )
        return Order.model_validate(created)

    def _lookup_after_write_error(self) -> Optional[Order]:
        try:
            return self._existing_order()
        except StorefrontError as e:
            logger.warning("Could not check for a landed order of checkout %s: %s", self.reference, e)
            return None

    def _rollback(self, step: Step) -> None:
        while self.reservations:
            reservation = self.reservations[-1]
            try:
                release_stock(self.client, reservation)
            except StorefrontError as e:
                logger.error(
                    "Rollback of product %s for checkout %s failed: %s",
                    reservation.product_id, self.reference, e,
                )
                raise StockRollbackFailed(
                    reservation.product_id,
                    reference=self.reference,
                    step=step.value,
                    committed=self.committed(),
                ) from e
            self.reservations.pop()

    def _clear_cart(self, cart: Cart, order: Order) -> PlacementResult:
        result = PlacementResult(order_id=order.id, order=order, reference=self.reference)
        try:
            self.client.delete("carts", cart.id)
            self.state = Step.CART_CLEARED
        except StorefrontError as e:
            logger.warning("Order %s placed but cart %s was not cleared: %s", order.id, cart.id, e)
            result.cart_cleared = False
            result.warnings.append(f"Order placed but the cart could not be cleared: {e}")
        self.state = Step.DONE
        return result


def place_order(
    client: ResourceClient,
    session: Session,
    address_id: Optional[str],
    idempotency_key: Optional[str] = None,
) -> PlacementResult:
    return OrderPlacement(client, session, address_id, idempotency_key).run()


# ----------------------- Status transitions -----------------------
ORDER_FLOW = [OrderStatus.CREATED, OrderStatus.SHIPPED, OrderStatus.DELIVERED]


def check_transition(current: str, target: str) -> bool:
    """
    Validate an admin status change.

    Orders move forward one step at a time and Delivered is terminal.
    Returns False when `target` equals `current`, meaning nothing to write.
    """
    try:
        target_status = OrderStatus(target)
    except ValueError:
        raise ValidationError(f"Unknown order status {target!r}") from None
    try:
        current_status = OrderStatus(current)
    except ValueError:
        raise IllegalStatusTransition(current, target) from None

    if current_status == OrderStatus.DELIVERED:
        raise IllegalStatusTransition(current, target)
    if target_status == current_status:
        return False
    if ORDER_FLOW.index(target_status) != ORDER_FLOW.index(current_status) + 1:
        raise IllegalStatusTransition(current, target)
    return True


def change_order_status(client: ResourceClient, session: Session, order_id: str, status: str) -> dict:
    if not session.is_admin:
        raise PermissionDenied("Admin only")
    order = client.get("orders", order_id)
    if not check_transition(order.get("status"), status):
        return order
    updated = client.compare_and_set(
        "orders", order_id, {"status": order.get("status")}, {"status": OrderStatus(status).value}
    )
    if updated is None:
        raise ConflictError("orders", order_id)
    logger.info("Order %s moved from %s to %s by %s", order_id, order.get("status"), status, session.email)
    return updated


# ----------------------- Queries -----------------------
def _newest_first(orders: List[dict]) -> List[dict]:
    return sorted(orders, key=lambda o: str(o.get("created_at") or ""), reverse=True)


def list_user_orders(client: ResourceClient, session: Session) -> List[dict]:
    return _newest_first(client.list("orders", {"user_id": session.uid}))


def list_all_orders(client: ResourceClient, session: Session) -> List[dict]:
    if not session.is_admin:
        raise PermissionDenied("Admin only")
    return _newest_first(client.list("orders"))
