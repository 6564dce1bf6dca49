"""Tests for the cart aggregate and its persistence helpers."""

import pytest

import cart as carts
from errors import CartEmptied, ConflictError, OutOfStock, PriceUnavailable, NotFoundError, ValidationError
from schemas import Cart, CartItem


def make(*lines):
    return Cart(user_id="u1", items=[CartItem(product_id=p, quantity=q) for p, q in lines])


class TestAddItem:
    def test_repeated_adds_merge_into_one_line(self):
        cart = make()
        for qty in (1, 2, 3):
            cart = carts.add_item(cart, "p1", stock_available=10, qty=qty)

        assert len(cart.items) == 1
        assert cart.items[0].quantity == 6

    def test_new_product_is_appended(self):
        cart = carts.add_item(make(("p1", 1)), "p2", stock_available=3)
        assert [(l.product_id, l.quantity) for l in cart.items] == [("p1", 1), ("p2", 1)]

    def test_out_of_stock_is_rejected(self):
        with pytest.raises(OutOfStock) as exc:
            carts.add_item(make(), "p1", stock_available=0)
        assert exc.value.product_id == "p1"

    def test_quantity_must_be_positive(self):
        with pytest.raises(ValidationError):
            carts.add_item(make(), "p1", stock_available=5, qty=0)

    def test_input_cart_is_not_mutated(self):
        original = make(("p1", 1))
        carts.add_item(original, "p1", stock_available=5)
        assert original.items[0].quantity == 1


class TestRemoveItem:
    def test_remove_keeps_other_lines(self):
        cart = carts.remove_item(make(("p1", 1), ("p2", 2)), "p1")
        assert [l.product_id for l in cart.items] == ["p2"]

    def test_removing_last_line_signals_cart_emptied(self):
        with pytest.raises(CartEmptied) as exc:
            carts.remove_item(make(("p1", 1)), "p1")
        assert exc.value.cart.items == []

    def test_remove_then_add_does_not_resurrect_old_quantity(self):
        cart = make(("p1", 5), ("p2", 1))
        cart = carts.remove_item(cart, "p1")
        cart = carts.add_item(cart, "p1", stock_available=10, qty=2)

        lines = [l for l in cart.items if l.product_id == "p1"]
        assert len(lines) == 1
        assert lines[0].quantity == 2


class TestQuantityAndMerge:
    def test_set_quantity_below_one_removes_line(self):
        cart = carts.set_quantity(make(("p1", 3), ("p2", 1)), "p1", 0)
        assert [l.product_id for l in cart.items] == ["p2"]

    def test_set_quantity_for_missing_line(self):
        with pytest.raises(ValidationError):
            carts.set_quantity(make(("p1", 3)), "p9", 2)

    def test_merge_sums_quantities(self):
        merged = carts.merge_carts(make(("p1", 1), ("p2", 1)), make(("p2", 2), ("p3", 4)))
        assert {l.product_id: l.quantity for l in merged.items} == {"p1": 1, "p2": 3, "p3": 4}


class TestTotals:
    def test_total_value(self):
        prices = {"p1": 100.0, "p2": 2.5}
        assert carts.total_value(make(("p1", 2), ("p2", 4)), prices.get) == 210.0

    def test_unknown_price(self):
        with pytest.raises(PriceUnavailable) as exc:
            carts.total_value(make(("p1", 1), ("gone", 1)), {"p1": 1.0}.get)
        assert exc.value.product_id == "gone"

    def test_lookup_raising_not_found(self):
        def lookup(product_id):
            raise NotFoundError("products", product_id)

        with pytest.raises(PriceUnavailable):
            carts.total_value(make(("p1", 1)), lookup)

    def test_item_count(self):
        assert carts.item_count(make(("p1", 2), ("p2", 3))) == 5
        assert carts.item_count(None) == 0


class TestPersistence:
    def test_first_add_creates_cart(self, client, session, make_product):
        product = make_product(client, stock=3)

        saved = carts.add_to_cart(client, session, product["id"])

        assert saved.id is not None
        assert saved.version == 1
        assert client.list("carts", {"user_id": "u1"})[0]["items"] == [
            {"product_id": product["id"], "quantity": 1}
        ]

    def test_add_merges_and_bumps_version(self, client, session, make_product):
        product = make_product(client, stock=3)
        carts.add_to_cart(client, session, product["id"])

        saved = carts.add_to_cart(client, session, product["id"], qty=2)

        assert saved.version == 2
        assert saved.items[0].quantity == 3

    def test_out_of_stock_product_is_not_added(self, client, session, make_product):
        product = make_product(client, stock=0)
        with pytest.raises(OutOfStock):
            carts.add_to_cart(client, session, product["id"])
        assert client.list("carts") == []

    def test_removing_last_item_deletes_record(self, client, session, make_product):
        product = make_product(client)
        carts.add_to_cart(client, session, product["id"])

        assert carts.remove_from_cart(client, session, product["id"]) is None
        assert client.list("carts") == []

    def test_legacy_cart_without_version_can_be_updated(self, client, session, make_product):
        product = make_product(client)
        client.create("carts", {"user_id": "u1", "items": [{"product_id": product["id"], "quantity": 1}]})

        saved = carts.update_cart_quantity(client, session, product["id"], 4)

        assert saved.items[0].quantity == 4
        assert saved.version == 1

    @pytest.mark.parametrize("store_name", ["client", "rest_client"])
    def test_cart_stored_at_version_zero_can_be_updated(self, request, session, store_name):
        store = request.getfixturevalue(store_name)
        product = store.create("products", {"title": "Lamp", "price": 20.0, "stock": 5})
        store.create("carts", {"user_id": "u1", "items": [{"product_id": product["id"], "quantity": 1}], "version": 0})

        saved = carts.update_cart_quantity(store, session, product["id"], 2)

        assert saved.items[0].quantity == 2
        assert saved.version == 1

    def test_concurrent_write_is_reapplied_on_fresh_state(
        self, client, session, make_product, make_cart, monkeypatch
    ):
        p1 = make_product(client, title="A")
        p2 = make_product(client, title="B")
        stored = make_cart(client, "u1", [(p1["id"], 1)])
        real_load = carts.load_cart
        calls = []

        def racing_load(store, sess):
            loaded = real_load(store, sess)
            if not calls:
                # another device adds p2 right after our first read
                store.update("carts", stored["id"], {
                    "items": [{"product_id": p1["id"], "quantity": 1}, {"product_id": p2["id"], "quantity": 1}],
                    "version": 2,
                })
            calls.append(1)
            return loaded

        monkeypatch.setattr(carts, "load_cart", racing_load)
        saved = carts.add_to_cart(client, session, p1["id"])

        assert len(calls) == 2
        assert {l.product_id: l.quantity for l in saved.items} == {p1["id"]: 2, p2["id"]: 1}
        assert saved.version == 3

    def test_repeated_conflicts_surface(self, client, session, make_product, make_cart, monkeypatch):
        product = make_product(client)
        make_cart(client, "u1", [(product["id"], 1)])
        monkeypatch.setattr(client, "compare_and_set", lambda *a, **kw: None)

        with pytest.raises(ConflictError):
            carts.add_to_cart(client, session, product["id"])

    def test_summary_joins_products(self, client, session, make_product, make_cart):
        p1 = make_product(client, title="Lamp", price=20.0)
        p2 = make_product(client, title="Desk", price=150.0)
        make_cart(client, "u1", [(p1["id"], 2), (p2["id"], 1)])

        summary = carts.cart_summary(client, session)

        assert summary["total"] == 190.0
        assert summary["count"] == 3
        assert [i["title"] for i in summary["items"]] == ["Lamp", "Desk"]

    def test_summary_without_cart(self, client, session):
        assert carts.cart_summary(client, session) == {"id": None, "items": [], "total": 0.0, "count": 0}

    def test_summary_flags_deleted_product(self, client, session, make_product):
        gone = make_product(client, title="Gone", price=40.0)
        kept = make_product(client, title="Kept", price=15.0)
        carts.add_to_cart(client, session, gone["id"])
        carts.add_to_cart(client, session, kept["id"])
        client.delete("products", gone["id"])

        carts.add_to_cart(client, session, kept["id"])
        summary = carts.cart_summary(client, session)

        assert summary["total"] == 30.0
        assert summary["count"] == 3
        assert summary["items"][0] == {"product_id": gone["id"], "quantity": 1, "available": False}
        assert (summary["items"][1]["title"], summary["items"][1]["available"]) == ("Kept", True)
