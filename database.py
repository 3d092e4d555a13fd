"""
MongoDB access helpers.

One client per process; routes receive the database through the ``get_db``
dependency so tests can swap in another handle.
"""
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.database import Database

from errors import ValidationError
from settings import DATABASE_NAME, DATABASE_URL


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


@lru_cache(maxsize=1)
def get_client() -> MongoClient:
    return MongoClient(DATABASE_URL, tz_aware=True)


def get_db() -> Database:
    return get_client()[DATABASE_NAME]


def oid(value: Any) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationError("Invalid ID")


def serialize(doc: Any) -> Any:
    """Convert ObjectIds (at any depth) to strings for JSON responses."""
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, dict):
        return {k: serialize(v) for k, v in doc.items()}
    if isinstance(doc, list):
        return [serialize(v) for v in doc]
    return doc


def create_document(db: Database, collection_name: str, data) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        doc = data.model_dump(by_alias=True, exclude_none=True)
    else:
        doc = dict(data)
    stamp = now_utc()
    doc.setdefault("createdAt", stamp)
    doc["updatedAt"] = stamp
    result = db[collection_name].insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def get_documents(db: Database, collection_name: str, filter_dict: Optional[dict] = None,
                  limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def next_sequence(db: Database, name: str) -> int:
    counter = db["counters"].find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return counter["seq"]


def ensure_indexes(db: Database) -> None:
    db["users"].create_index("email", unique=True)
    db["users"].create_index("role")
    db["products"].create_index("slug", unique=True)
    db["products"].create_index("sku", unique=True)
    db["products"].create_index([("category", ASCENDING), ("status", ASCENDING)])
    db["products"].create_index([("featured", ASCENDING), ("status", ASCENDING)])
    db["products"].create_index("price")
    db["categories"].create_index("name", unique=True)
    db["categories"].create_index("slug", unique=True)
    db["categories"].create_index("isActive")
    db["carts"].create_index("user", unique=True)
    db["wishlists"].create_index("user", unique=True)
    db["orders"].create_index("orderNumber", unique=True)
    db["orders"].create_index([("user", ASCENDING), ("createdAt", DESCENDING)])
    db["orders"].create_index("status")
    db["orders"].create_index("paymentInfo.stripePaymentIntentId")


def paginate(page: Optional[int], limit: Optional[int], default_limit: int,
             max_limit: Optional[int] = None):
    page = max(1, page or 1)
    limit = limit if limit and limit > 0 else default_limit
    if max_limit:
        limit = min(limit, max_limit)
    return page, limit, (page - 1) * limit
