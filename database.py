"""
MongoDB access.

`db` is the module-level database handle configured from DATABASE_URL and
DATABASE_NAME. Services talk to it through DocumentStore, which adds whole
document saves guarded by a `version` field (compare-and-swap).
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import MongoClient

from errors import ConcurrentUpdateError, NotFound

load_dotenv()

logger = logging.getLogger(__name__)

_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    _client = MongoClient(database_url)
    db = _client[database_name]

M = TypeVar("M", bound=BaseModel)


def create_document(collection_name: str, data: Union[BaseModel, dict]):
    """Insert a single document with timestamps and return its id."""
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return DocumentStore(db).insert(collection_name, data)


def get_documents(collection_name: str, filter_dict: dict = None, limit: int = None):
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    cursor = db[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return [public_doc(d) for d in cursor]


def to_object_id(value: str, error: Type[NotFound] = NotFound) -> ObjectId:
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise error()


def public_doc(doc: Optional[Dict[str, Any]]):
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def to_storage(data: Union[BaseModel, dict]) -> Dict[str, Any]:
    # json mode turns Decimal into strings and enums into their values
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    else:
        data = dict(data)
    data.pop("id", None)
    data.pop("_id", None)
    return data


class DocumentStore:
    """Collection access with optimistic-concurrency saves."""

    def __init__(self, database):
        self.db = database

    def find_by_id(self, collection: str, doc_id: str, model: Type[M], error: Type[NotFound] = NotFound) -> M:
        doc = self.db[collection].find_one({"_id": to_object_id(doc_id, error)})
        if not doc:
            raise error()
        return model.model_validate(public_doc(doc))

    def find_one(self, collection: str, filter_dict: dict, model: Type[M]) -> Optional[M]:
        doc = self.db[collection].find_one(filter_dict)
        return model.model_validate(public_doc(doc)) if doc else None

    def find(self, collection: str, filter_dict: dict, model: Type[M], sort: Optional[List[tuple]] = None) -> List[M]:
        cursor = self.db[collection].find(filter_dict)
        if sort:
            cursor = cursor.sort(sort)
        return [model.model_validate(public_doc(d)) for d in cursor]

    def insert(self, collection: str, data: Union[BaseModel, dict]) -> str:
        doc = to_storage(data)
        if isinstance(data, BaseModel) and getattr(data, "id", None):
            doc["_id"] = ObjectId(data.id)
        now = datetime.now(timezone.utc)
        doc["version"] = 0
        doc["created_at"] = now
        doc["updated_at"] = now
        result = self.db[collection].insert_one(doc)
        if isinstance(data, BaseModel) and "id" in type(data).model_fields:
            data.id = str(result.inserted_id)
            data.version = 0
        return str(result.inserted_id)

    def save(self, collection: str, model: BaseModel) -> None:
        """Overwrite the stored document if nobody saved it since it was read.

        Raises ConcurrentUpdateError when the stored version moved on.
        """
        doc = to_storage(model)
        expected = doc.pop("version", 0)
        doc["version"] = expected + 1
        doc["updated_at"] = datetime.now(timezone.utc)
        result = self.db[collection].update_one(
            {"_id": ObjectId(model.id), "version": expected},
            {"$set": doc},
        )
        if result.matched_count == 0:
            logger.warning("Version conflict saving %s %s at version %s", collection, model.id, expected)
            raise ConcurrentUpdateError()
        model.version = expected + 1
