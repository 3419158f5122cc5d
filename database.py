"""
MongoDB connection and document helpers.

``db`` is ``None`` when ``DATABASE_URL``/``DATABASE_NAME`` are not set; the
``/test`` endpoint reports that state instead of failing at import.
"""
import datetime
import logging
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import MongoClient
from pymongo.database import Database

from config import Settings
from errors import InvalidInput

logger = logging.getLogger(__name__)

USERS_COLLECTION = "users"
LOANS_COLLECTION = "loans"


def connect(settings: Settings) -> Optional[Database]:
    if not settings.database_url or not settings.database_name:
        logger.warning("DATABASE_URL or DATABASE_NAME not set; running without a database")
        return None
    client = MongoClient(settings.database_url)
    logger.info("MongoDB client created for database %s", settings.database_name)
    return client[settings.database_name]


def to_object_id(value: Any) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise InvalidInput("Invalid id")


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return None
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    # Convert datetime to iso
    for k, v in list(d.items()):
        if isinstance(v, (datetime.datetime, datetime.date)):
            d[k] = v.isoformat()
        elif isinstance(v, ObjectId):
            d[k] = str(v)
    return d


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)
