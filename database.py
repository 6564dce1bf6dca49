"""
MongoDB connection for the storefront.

`db` is None when DATABASE_URL / DATABASE_NAME are not configured; the API
reports the database as unavailable in that case.
"""
import logging
import os

from pymongo import ASCENDING, MongoClient

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def ensure_indexes(database) -> None:
    """Uniqueness rules the resource layer relies on."""
    database["carts"].create_index([("user_id", ASCENDING)], unique=True)
    database["wishlists"].create_index([("user_id", ASCENDING)], unique=True)
    database["users"].create_index([("uid", ASCENDING)], unique=True)
    database["addresses"].create_index([("user_id", ASCENDING)])
    database["orders"].create_index(
        [("user_id", ASCENDING), ("idempotency_key", ASCENDING)],
        unique=True,
        partialFilterExpression={"idempotency_key": {"$exists": True}},
    )
    logger.info("Indexes ensured on %s", database.name)
