import os
import logging
from datetime import datetime, timezone
from typing import Optional, Union
from pydantic import BaseModel
from pymongo import MongoClient

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]
else:
    logger.warning("DATABASE_URL or DATABASE_NAME not set; database unavailable")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_document(collection_name: str, data: Union[BaseModel, dict], database=None) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id as a string."""
    database = db if database is None else database
    if database is None:
        raise RuntimeError("Database not configured")
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict.setdefault("updated_at", now)
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                  sort: Optional[list] = None, database=None) -> list:
    database = db if database is None else database
    if database is None:
        raise RuntimeError("Database not configured")
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
