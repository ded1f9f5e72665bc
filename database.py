"""
MongoDB access for MedShare.

The client is created lazily from DATABASE_URL; ``db`` stays None when the
database is not configured so the app can still boot and report its status.
"""
from datetime import datetime, timezone
from typing import Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

import settings
from errors import Unavailable, ValidationError

client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.DATABASE_URL:
    client = MongoClient(
        settings.DATABASE_URL,
        serverSelectionTimeoutMS=settings.DATABASE_TIMEOUT_MS,
        connectTimeoutMS=settings.DATABASE_TIMEOUT_MS,
        socketTimeoutMS=settings.DATABASE_TIMEOUT_MS,
    )
    db = client[settings.DATABASE_NAME]


def utcnow() -> datetime:
    """Naive UTC timestamp, the form pymongo hands back from the store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db() -> Database:
    if db is None:
        raise Unavailable("Database not available")
    return db


def _resolve(database: Optional[Database]) -> Database:
    if database is not None:
        return database
    return get_db()


def create_document(collection_name: str, data: Union[BaseModel, dict], database: Optional[Database] = None) -> str:
    """Insert a document, stamping created_at/updated_at, and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()
    now = utcnow()
    if data_dict.get("created_at") is None:
        data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = _resolve(database)[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def oid(s: str) -> ObjectId:
    try:
        return ObjectId(s)
    except (InvalidId, TypeError):
        raise ValidationError("Invalid id")


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["medicine"].create_index([("donor_id", ASCENDING), ("name", ASCENDING), ("expiry_date", ASCENDING)])
    database["medicine"].create_index([("status", ASCENDING), ("expiry_date", ASCENDING)])
    database["medicine"].create_index([("created_at", DESCENDING)])
    database["medicinerequest"].create_index([("medicine_lot_id", ASCENDING), ("recipient_id", ASCENDING)])
    database["medicinerequest"].create_index([("recipient_id", ASCENDING), ("requested_at", DESCENDING)])
