import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, GEOSPHERE, MongoClient
from pymongo.database import Database

from errors import ValidationFailed

logger = logging.getLogger(__name__)

USERS = "user"
SERVICES = "service"
BOOKINGS = "booking"
REVIEWS = "review"
PORTFOLIO = "portfolio"

# Never leaves the database
PRIVATE_FIELDS = ("password_hash",)


def create_client(mongo_url: str) -> MongoClient:
    return MongoClient(mongo_url, tz_aware=True)


def get_database(client: MongoClient, name: str) -> Database:
    return client[name]


def ensure_indexes(db: Database) -> None:
    db[USERS].create_index("email", unique=True)
    db[USERS].create_index([("address.city", ASCENDING)])
    db[SERVICES].create_index([("provider_id", ASCENDING)])
    db[SERVICES].create_index([("created_at", DESCENDING)])
    db[SERVICES].create_index([("location", GEOSPHERE)])
    db[BOOKINGS].create_index([("customer_id", ASCENDING), ("status", ASCENDING)])
    db[BOOKINGS].create_index([("provider_id", ASCENDING), ("status", ASCENDING)])
    db[BOOKINGS].create_index([("scheduled_date", ASCENDING)])
    db[REVIEWS].create_index("booking_id", unique=True)
    db[REVIEWS].create_index([("provider_id", ASCENDING), ("rating", DESCENDING)])
    db[REVIEWS].create_index([("service_id", ASCENDING)])
    db[PORTFOLIO].create_index(
        [("provider_id", ASCENDING), ("featured", DESCENDING), ("created_at", DESCENDING)]
    )
    logger.info("Database indexes ensured")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(id_str: Any, field: str = "id") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(str(id_str))
    except (InvalidId, TypeError):
        raise ValidationFailed(f"Invalid {field} format")


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes unless the client is tz-aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _convert(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, dict):
        return serialize(value)
    if isinstance(value, list):
        return [_convert(v) for v in value]
    return value


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = {}
    for k, v in doc.items():
        if k in PRIVATE_FIELDS:
            continue
        if k == "_id":
            d["id"] = str(v)
            continue
        d[k] = _convert(v)
    return d


def serialize_many(docs: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [serialize(d) for d in docs]


def paginate(page: int, limit: int, max_limit: int = 100) -> Dict[str, int]:
    page = max(int(page or 1), 1)
    limit = min(max(int(limit or 1), 1), max_limit)
    return {"page": page, "limit": limit, "skip": (page - 1) * limit}
