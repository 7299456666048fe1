"""
MongoDB access for the marketplace.

`db` is None when DATABASE_URL / DATABASE_NAME are not set so the app can
still boot and report its state on /health.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from config import DATABASE_NAME, DATABASE_URL

logger = logging.getLogger(__name__)

client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def create_document(collection_name: str, data) -> str:
    """Insert a document with created_at/updated_at stamps and return its id."""
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = datetime.now(timezone.utc)
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None):
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    cursor = db[collection_name].find(filter_dict or {}).sort("created_at", DESCENDING)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database) -> None:
    database["user"].create_index("email", unique=True)
    database["user"].create_index("token")
    database["shop"].create_index("owner_id", unique=True)
    database["shop"].create_index([("is_active", ASCENDING), ("is_verified", ASCENDING)])
    database["product"].create_index("shop_id")
    database["product"].create_index("owner_id")
    database["product"].create_index("category")
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index("user_id")
    database["order"].create_index("shop_id")
    database["order"].create_index("status")
    database["order"].create_index([("created_at", DESCENDING)])
    database["order"].create_index(
        [("user_id", ASCENDING), ("idempotency_key", ASCENDING)],
        unique=True,
        partialFilterExpression={"idempotency_key": {"$type": "string"}},
    )
    logger.info("Database indexes ensured")
