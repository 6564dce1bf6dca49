"""Product listing and admin order statistics."""
from typing import Iterable, List

from schemas import OrderStatus

SORTS = {
    "price_asc": (lambda p: p.get("price") or 0, False),
    "price_desc": (lambda p: p.get("price") or 0, True),
    "title_asc": (lambda p: (p.get("title") or "").lower(), False),
}


def search_products(products: Iterable[dict], query: str = "", sort: str = "") -> List[dict]:
    """Filter by case-insensitive title match, then sort. Unknown sort keys keep store order."""
    needle = (query or "").strip().lower()
    found = [p for p in products if needle in (p.get("title") or "").lower()]
    if sort in SORTS:
        key, reverse = SORTS[sort]
        found.sort(key=key, reverse=reverse)
    return found


def order_stats(orders: Iterable[dict]) -> dict:
    stats = {"total": 0, "revenue": 0.0, "pending": 0, "shipped": 0, "delivered": 0}
    for order in orders:
        stats["total"] += 1
        stats["revenue"] += order.get("total") or 0
        status = order.get("status")
        if status == OrderStatus.CREATED.value:
            stats["pending"] += 1
        elif status == OrderStatus.SHIPPED.value:
            stats["shipped"] += 1
        elif status == OrderStatus.DELIVERED.value:
            stats["delivered"] += 1
    return stats
