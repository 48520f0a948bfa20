"""Document store primitives used by the quota engine.

The engine never talks to motor directly. Everything it needs from the
persistent store is expressed through DocumentStore:

- get / put / create             single-document reads and writes
- count_where / find_where       ground-truth counting and enumeration
- atomic_add                     conditional $inc for ledger counters
- compare_and_set                conditional $set for status transitions
- delete_where                   synthetic-data cleanup

Documents are keyed by ``_id``. MongoDocumentStore maps every driver failure
(network, timeout, auth) to StoreUnavailable; nothing is retried here.
"""
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
import logging

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import database
from services.quota_errors import StoreUnavailable

logger = logging.getLogger(__name__)


class DuplicateDocument(Exception):
    """create() found an existing document with the same id."""

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"{collection}/{doc_id} already exists")


class DocumentStore(ABC):
    """Minimal persistence contract for the quota engine."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def put(self, collection: str, doc_id: str, fields: Dict[str, Any], merge: bool = True) -> None:
        ...

    @abstractmethod
    async def create(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Insert only if no document with doc_id exists; raises DuplicateDocument otherwise."""

    @abstractmethod
    async def count_where(self, collection: str, query: Dict[str, Any]) -> int:
        ...

    @abstractmethod
    async def find_where(self, collection: str, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def atomic_add(
        self,
        collection: str,
        doc_id: str,
        field: str,
        delta: int,
        condition: Optional[Dict[str, Any]] = None,
        set_fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Add delta to field in one atomic step, only if the document also matches
        condition. Returns the updated document, or None when nothing matched.
        """

    @abstractmethod
    async def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        condition: Dict[str, Any],
        fields: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Set fields only if the document matches condition. None when nothing matched."""

    @abstractmethod
    async def delete_where(self, collection: str, query: Dict[str, Any]) -> int:
        ...


@asynccontextmanager
async def _translate_errors(operation: str):
    try:
        yield
    except DuplicateKeyError:
        raise
    except PyMongoError as e:
        logger.error(f"Store call failed during {operation}: {e}")
        raise StoreUnavailable(operation, e) from e


class MongoDocumentStore(DocumentStore):
    """DocumentStore backed by a motor database handle."""

    def __init__(self, db=None):
        self._db = db

    @property
    def db(self):
        if self._db is None:
            self._db = database.get_db()
        if self._db is None:
            raise StoreUnavailable("connect", RuntimeError("database is not connected"))
        return self._db

    async def get(self, collection, doc_id):
        async with _translate_errors(f"get {collection}/{doc_id}"):
            return await self.db[collection].find_one({"_id": doc_id})

    async def put(self, collection, doc_id, fields, merge=True):
        async with _translate_errors(f"put {collection}/{doc_id}"):
            if merge:
                await self.db[collection].update_one({"_id": doc_id}, {"$set": fields}, upsert=True)
            else:
                await self.db[collection].replace_one({"_id": doc_id}, {**fields, "_id": doc_id}, upsert=True)

    async def create(self, collection, doc_id, fields):
        doc = {**fields, "_id": doc_id}
        try:
            async with _translate_errors(f"create {collection}/{doc_id}"):
                await self.db[collection].insert_one(doc)
        except DuplicateKeyError as e:
            raise DuplicateDocument(collection, doc_id) from e
        return doc

    async def count_where(self, collection, query):
        async with _translate_errors(f"count {collection}"):
            return await self.db[collection].count_documents(query)

    async def find_where(self, collection, query):
        async with _translate_errors(f"find {collection}"):
            return await self.db[collection].find(query).to_list(length=None)

    async def atomic_add(self, collection, doc_id, field, delta, condition=None, set_fields=None):
        update: Dict[str, Any] = {"$inc": {field: delta}}
        if set_fields:
            update["$set"] = set_fields
        async with _translate_errors(f"atomic_add {collection}/{doc_id}.{field}"):
            return await self.db[collection].find_one_and_update(
                {"_id": doc_id, **(condition or {})},
                update,
                return_document=ReturnDocument.AFTER,
            )

    async def compare_and_set(self, collection, doc_id, condition, fields):
        async with _translate_errors(f"compare_and_set {collection}/{doc_id}"):
            return await self.db[collection].find_one_and_update(
                {"_id": doc_id, **condition},
                {"$set": fields},
                return_document=ReturnDocument.AFTER,
            )

    async def delete_where(self, collection, query):
        async with _translate_errors(f"delete {collection}"):
            result = await self.db[collection].delete_many(query)
            return result.deleted_count


_default_store: Optional[DocumentStore] = None


def get_document_store() -> DocumentStore:
    """Process-wide store bound to the connected database."""
    global _default_store
    if _default_store is None:
        _default_store = MongoDocumentStore()
    return _default_store
