"""Shared pytest fixtures for the storefront tests."""

import itertools
import json
from collections import defaultdict

import httpx
import mongomock
import pytest

from resources import MongoResourceClient, RestResourceClient
from schemas import Session


class JsonServer:
    """In-memory json-server: equality filters, get, post, patch, delete.

    `fail(method, path, outcome)` queues an injected failure: an httpx
    exception to raise or a status code to answer with. `before` is called
    with every request before it is handled.
    """

    def __init__(self):
        self.collections = defaultdict(dict)
        self._ids = itertools.count(1)
        self._failures = []
        self.before = None
        self.requests = []

    def fail(self, method, path, outcome, times=1):
        for _ in range(times):
            self._failures.append((method, path, outcome))

    def seed(self, collection, **fields):
        record_id = str(next(self._ids))
        self.collections[collection][record_id] = {"id": record_id, **fields}
        return self.collections[collection][record_id]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        for i, (method, path, outcome) in enumerate(self._failures):
            if method == request.method and request.url.path.startswith(path):
                del self._failures[i]
                if isinstance(outcome, Exception):
                    raise outcome
                return httpx.Response(outcome, json={})
        if self.before is not None:
            self.before(request)

        parts = request.url.path.strip("/").split("/")
        records = self.collections[parts[0]]
        if len(parts) == 1:
            if request.method == "GET":
                params = dict(request.url.params)
                found = [
                    r for r in records.values()
                    if all(str(r.get(k)) == v for k, v in params.items())
                ]
                return httpx.Response(200, json=found)
            if request.method == "POST":
                data = json.loads(request.content)
                return httpx.Response(201, json=self.seed(parts[0], **data))
        record_id = parts[1]
        if record_id not in records:
            return httpx.Response(404, json={})
        if request.method == "GET":
            return httpx.Response(200, json=records[record_id])
        if request.method == "PATCH":
            records[record_id].update(json.loads(request.content))
            return httpx.Response(200, json=records[record_id])
        if request.method == "DELETE":
            del records[record_id]
            return httpx.Response(200, json={})
        return httpx.Response(405, json={})


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def client(mongo_db):
    return MongoResourceClient(mongo_db)


@pytest.fixture
def json_server():
    return JsonServer()


@pytest.fixture
def rest_client(json_server):
    rest = RestResourceClient(
        base_url="http://store.test",
        retries=3,
        backoff=0,
        transport=httpx.MockTransport(json_server.handle),
    )
    yield rest
    rest.close()


@pytest.fixture
def session():
    return Session(uid="u1", email="shopper@example.com", name="Shopper")


@pytest.fixture
def other_session():
    return Session(uid="u2", email="other@example.com", name="Other")


@pytest.fixture
def admin_session():
    return Session(uid="admin", email="admin@example.com", name="Admin", is_admin=True)


@pytest.fixture
def make_product():
    def _make(store, title="Widget", price=100.0, stock=5):
        return store.create(
            "products", {"title": title, "description": "", "price": price, "stock": stock}
        )
    return _make


@pytest.fixture
def make_address():
    def _make(store, user_id, line1="1 Main St", city="Pune"):
        return store.create(
            "addresses",
            {"user_id": user_id, "label": "Home", "line1": line1, "city": city, "state": "", "pincode": ""},
        )
    return _make


@pytest.fixture
def make_cart():
    def _make(store, user_id, lines):
        items = [{"product_id": pid, "quantity": qty} for pid, qty in lines]
        return store.create("carts", {"user_id": user_id, "items": items, "version": 1})
    return _make
