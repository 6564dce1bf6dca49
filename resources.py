"""
Resource client: list/get/create/update/delete against the named store
collections, plus the conditional primitives the checkout workflow needs.

Two stores are supported:

- MongoDB (pymongo), where conditional updates are atomic.
- A json-server style REST store (httpx), which has no conditional write;
  the conditional helpers are emulated there with a re-read.
"""
import logging
import os
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import httpx
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import DuplicateRecord, NotFoundError, TransportError

logger = logging.getLogger(__name__)

STORE_BACKEND = os.getenv("STORE_BACKEND", "mongo")
REST_STORE_URL = os.getenv("REST_STORE_URL", "http://localhost:3001")
REST_STORE_TIMEOUT = float(os.getenv("REST_STORE_TIMEOUT", "10"))
REST_STORE_RETRIES = int(os.getenv("REST_STORE_RETRIES", "3"))


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ResourceClient:
    """Store-agnostic surface used by the domain modules."""

    supports_conditional_update = False

    def list(self, collection: str, filter: Optional[Mapping[str, Any]] = None) -> List[dict]:
        raise NotImplementedError

    def get(self, collection: str, record_id: str) -> dict:
        raise NotImplementedError

    def create(self, collection: str, record: Mapping[str, Any]) -> dict:
        raise NotImplementedError

    def update(self, collection: str, record_id: str, fields: Mapping[str, Any]) -> dict:
        raise NotImplementedError

    def delete(self, collection: str, record_id: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Release connections held by the client."""

    def find_one(self, collection: str, filter: Mapping[str, Any]) -> Optional[dict]:
        items = self.list(collection, filter)
        return items[0] if items else None

    def increment(
        self,
        collection: str,
        record_id: str,
        field: str,
        amount: int,
        minimum: Optional[int] = None,
    ) -> Optional[dict]:
        raise NotImplementedError(f"{type(self).__name__} has no conditional update")

    # The defaults below re-read before writing. A concurrent writer can
    # still slip in between the read and the write.
    def compare_and_set(
        self,
        collection: str,
        record_id: str,
        expected: Mapping[str, Any],
        fields: Mapping[str, Any],
    ) -> Optional[dict]:
        current = self.get(collection, record_id)
        if any(current.get(k) != v for k, v in expected.items()):
            return None
        return self.update(collection, record_id, fields)

    def add_to_set(self, collection: str, record_id: str, field: str, value: Any) -> dict:
        current = self.get(collection, record_id)
        values = list(current.get(field) or [])
        if value in values:
            return current
        values.append(value)
        return self.update(collection, record_id, {field: values})

    def pull(self, collection: str, record_id: str, field: str, value: Any) -> dict:
        current = self.get(collection, record_id)
        values = list(current.get(field) or [])
        if value not in values:
            return current
        return self.update(collection, record_id, {field: [v for v in values if v != value]})


# ----------------------- MongoDB -----------------------
def serialize_doc(doc):
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.get("_id")
    if isinstance(_id, ObjectId):
        doc["id"] = str(_id)
        del doc["_id"]
    # convert datetimes
    for k, v in list(doc.items()):
        if isinstance(v, datetime):
            doc[k] = v.isoformat()
    return doc


def oid(id_str: str) -> Optional[ObjectId]:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        return None


@contextmanager
def store_errors(collection: str):
    """Re-raise pymongo failures as store errors the domain layer handles."""
    try:
        yield
    except DuplicateKeyError as e:
        raise DuplicateRecord(collection, str(e)) from e
    except PyMongoError as e:
        logger.warning("Store operation on %s failed: %s", collection, e)
        raise TransportError(f"Store operation on {collection} failed: {e}") from e


class MongoResourceClient(ResourceClient):
    supports_conditional_update = True

    def __init__(self, database):
        self.db = database

    def _by_id(self, collection: str, record_id: str) -> dict:
        _id = oid(record_id)
        if _id is None:
            raise NotFoundError(collection, record_id)
        return {"_id": _id}

    def _find_and_update(self, collection, filt, update, record_id):
        update.setdefault("$set", {})["updated_at"] = _now()
        with store_errors(collection):
            doc = self.db[collection].find_one_and_update(
                filt, update, return_document=ReturnDocument.AFTER
            )
            if doc is None and self.db[collection].find_one({"_id": filt["_id"]}) is None:
                raise NotFoundError(collection, record_id)
        return serialize_doc(doc)

    def list(self, collection, filter=None):
        with store_errors(collection):
            return [serialize_doc(d) for d in self.db[collection].find(dict(filter or {}))]

    def get(self, collection, record_id):
        with store_errors(collection):
            doc = self.db[collection].find_one(self._by_id(collection, record_id))
        if not doc:
            raise NotFoundError(collection, record_id)
        return serialize_doc(doc)

    def create(self, collection, record):
        data = {k: v for k, v in dict(record).items() if k != "id"}
        now = _now()
        data.setdefault("created_at", now)
        data["updated_at"] = now
        with store_errors(collection):
            result = self.db[collection].insert_one(data)
        data["_id"] = result.inserted_id
        return serialize_doc(data)

    def update(self, collection, record_id, fields):
        changes = {k: v for k, v in dict(fields).items() if k != "id"}
        return self._find_and_update(
            collection, self._by_id(collection, record_id), {"$set": changes}, record_id
        )

    def delete(self, collection, record_id):
        _id = oid(record_id)
        if _id is not None:
            with store_errors(collection):
                self.db[collection].delete_one({"_id": _id})

    def increment(self, collection, record_id, field, amount, minimum=None):
        filt = self._by_id(collection, record_id)
        if minimum is not None:
            filt[field] = {"$gte": minimum}
        return self._find_and_update(collection, filt, {"$inc": {field: amount}}, record_id)

    def compare_and_set(self, collection, record_id, expected, fields):
        filt = self._by_id(collection, record_id)
        filt.update(expected)
        return self._find_and_update(collection, filt, {"$set": dict(fields)}, record_id)

    def add_to_set(self, collection, record_id, field, value):
        return self._find_and_update(
            collection, self._by_id(collection, record_id), {"$addToSet": {field: value}}, record_id
        )

    def pull(self, collection, record_id, field, value):
        return self._find_and_update(
            collection, self._by_id(collection, record_id), {"$pull": {field: value}}, record_id
        )


# ----------------------- REST store -----------------------
class RestResourceClient(ResourceClient):
    """
    Client for a json-server style REST store.

    Transport failures and 5xx responses are retried up to `retries`
    attempts. POSTs are only retried when the connection was never
    established, so a retry cannot create a duplicate record.
    """

    supports_conditional_update = False

    def __init__(
        self,
        base_url: str = REST_STORE_URL,
        timeout: float = REST_STORE_TIMEOUT,
        retries: int = REST_STORE_RETRIES,
        backoff: float = 0.2,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.retries = max(1, retries)
        self.backoff = backoff
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        last_error = ""
        for attempt in range(1, self.retries + 1):
            try:
                response = self._client.request(method, path, **kwargs)
            except httpx.TransportError as e:
                last_error = str(e) or type(e).__name__
                if method == "POST" and not isinstance(e, (httpx.ConnectError, httpx.ConnectTimeout)):
                    break
            else:
                if response.status_code < 500:
                    return response
                last_error = f"HTTP {response.status_code}"
                if method == "POST":
                    break
            logger.warning(
                "Store request %s %s failed (attempt %d/%d): %s",
                method, path, attempt, self.retries, last_error,
            )
            if attempt < self.retries and self.backoff:
                time.sleep(self.backoff * attempt)
        raise TransportError(f"{method} {path} failed: {last_error}")

    def _handle_response(self, response: httpx.Response, collection: str, record_id: str = ""):
        if response.status_code == 404:
            raise NotFoundError(collection, record_id)
        if response.status_code == 409:
            raise DuplicateRecord(collection, response.text)
        if response.status_code >= 400:
            raise TransportError(
                f"Store rejected request on {collection}: HTTP {response.status_code}"
            )
        return response.json()

    def list(self, collection, filter=None):
        params = {k: str(v) for k, v in dict(filter or {}).items()}
        response = self._request("GET", f"/{collection}", params=params)
        return self._handle_response(response, collection)

    def get(self, collection, record_id):
        response = self._request("GET", f"/{collection}/{record_id}")
        return self._handle_response(response, collection, record_id)

    def create(self, collection, record):
        data = {k: v for k, v in dict(record).items() if k != "id"}
        now = _now().isoformat()
        data.setdefault("created_at", now)
        data["updated_at"] = now
        response = self._request("POST", f"/{collection}", json=data)
        return self._handle_response(response, collection)

    def update(self, collection, record_id, fields):
        data = {k: v for k, v in dict(fields).items() if k != "id"}
        data["updated_at"] = _now().isoformat()
        response = self._request("PATCH", f"/{collection}/{record_id}", json=data)
        return self._handle_response(response, collection, record_id)

    def delete(self, collection, record_id):
        response = self._request("DELETE", f"/{collection}/{record_id}")
        if response.status_code >= 400 and response.status_code != 404:
            raise TransportError(
                f"Store rejected delete on {collection}/{record_id}: HTTP {response.status_code}"
            )


def get_resource_client() -> Optional[ResourceClient]:
    """
    Client for the configured store, or None when Mongo is not configured.

    The REST client owns a connection pool: build it once per process and
    close it on shutdown.
    """
    if STORE_BACKEND == "rest":
        return RestResourceClient()
    from database import db

    if db is None:
        return None
    return MongoResourceClient(db)
