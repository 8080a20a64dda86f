"""
Database access

Thin pymongo layer shared by the API. `db` is None when the connection
settings are missing so the app can still boot and report its status.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Union

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if db is None:
        raise RuntimeError("Database not available")
    if isinstance(data, BaseModel):
        data = data.model_dump()
    doc = dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def ensure_indexes():
    if db is None:
        logger.warning("Database not configured, skipping index creation")
        return
    db["user"].create_index([("email", ASCENDING)], unique=True)
    # one review per (user, product)
    db["review"].create_index([("user", ASCENDING), ("product", ASCENDING)], unique=True)
    db["review"].create_index([("product", ASCENDING)])
    db["product"].create_index([("category", ASCENDING), ("created_at", DESCENDING)])
    logger.info("Indexes ensured on %s", db.name)
