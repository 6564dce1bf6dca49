"""
Domain errors for the storefront.

Every error knows the HTTP status it maps to and how to describe itself as
JSON, so the API layer can report the specific product, quantity or
workflow step that failed.
"""
from typing import Any, Dict, List, Optional


class StorefrontError(Exception):
    http_status = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": type(self).__name__, "detail": self.message}


# ----------------------- Validation -----------------------
class ValidationError(StorefrontError):
    http_status = 400


class EmptyCart(ValidationError):
    def __init__(self):
        super().__init__("Cart is empty")


class InvalidAddress(ValidationError):
    def __init__(self, address_id: Optional[str]):
        self.address_id = address_id
        super().__init__(f"Address {address_id!r} is missing or not yours")


class PermissionDenied(StorefrontError):
    http_status = 403


# ----------------------- Lookups -----------------------
class NotFoundError(StorefrontError):
    http_status = 404

    def __init__(self, collection: str, record_id: str, message: Optional[str] = None):
        self.collection = collection
        self.record_id = record_id
        super().__init__(message or f"{collection}/{record_id} not found")

    def to_dict(self):
        data = super().to_dict()
        data.update({"collection": self.collection, "id": self.record_id})
        return data


class ProductRemoved(NotFoundError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__("products", product_id, f"Product {product_id} is no longer available")


class PriceUnavailable(StorefrontError):
    http_status = 404

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"No price available for product {product_id}")


# ----------------------- Stock -----------------------
class OutOfStock(StorefrontError):
    http_status = 409

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product {product_id} is out of stock")


class InsufficientStock(StorefrontError):
    http_status = 409

    def __init__(self, product_id: str, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Only {available} of product {product_id} available, {requested} requested"
        )

    def to_dict(self):
        data = super().to_dict()
        data.update(
            {"product_id": self.product_id, "requested": self.requested, "available": self.available}
        )
        return data


class ConflictError(StorefrontError):
    """A concurrent writer changed the record between our read and write."""

    http_status = 409

    def __init__(self, collection: str, record_id: str):
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"Concurrent update detected on {collection}/{record_id}")

    def to_dict(self):
        data = super().to_dict()
        data.update({"collection": self.collection, "id": self.record_id})
        return data


class DuplicateRecord(StorefrontError):
    http_status = 409

    def __init__(self, collection: str, message: str = ""):
        self.collection = collection
        super().__init__(message or f"Duplicate record in {collection}")


# ----------------------- Orders -----------------------
class IllegalStatusTransition(StorefrontError):
    http_status = 409

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Cannot move order from {from_status!r} to {to_status!r}")

    def to_dict(self):
        data = super().to_dict()
        data.update({"from": self.from_status, "to": self.to_status})
        return data


class TransportError(StorefrontError):
    http_status = 502


class OrderPlacementFailed(StorefrontError):
    """
    Checkout could not complete. `committed` lists the side effects that are
    still in force so the user can be told exactly what happened.
    """

    http_status = 502

    def __init__(
        self,
        message: str,
        reference: str,
        step: str,
        committed: Optional[List[str]] = None,
    ):
        self.reference = reference
        self.step = step
        self.committed = list(committed or [])
        super().__init__(message)

    def to_dict(self):
        data = super().to_dict()
        data.update({"reference": self.reference, "step": self.step, "committed": self.committed})
        return data


class OrderWriteFailed(OrderPlacementFailed):
    pass


class StockRollbackFailed(OrderPlacementFailed):
    http_status = 500

    def __init__(self, product_id: str, reference: str, step: str, committed=None):
        self.product_id = product_id
        super().__init__(
            f"Stock for product {product_id} was reserved but could not be released. "
            f"Contact support with reference {reference}",
            reference=reference,
            step=step,
            committed=committed,
        )

    def to_dict(self):
        data = super().to_dict()
        data["product_id"] = self.product_id
        return data


class CartEmptied(Exception):
    """Signal raised when the last line leaves a cart; the record should be deleted."""

    def __init__(self, cart):
        self.cart = cart
        super().__init__("Cart has no items left")
