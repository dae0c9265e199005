"""
Document Store Access

The CRM persists its records in an external document database reached
through a small get/put/query surface. ``DocumentStore`` defines that
surface; ``MongoDocumentStore`` implements it on pymongo and
``InMemoryDocumentStore`` implements it in process for development and tests.

Documents are plain dictionaries keyed by a string ``id``. Query filters are
equality matches (a list, tuple or set value matches any of its members),
optional inclusive ranges per field, a single sort field and a limit.
"""

import copy
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import structlog
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError

logger = structlog.get_logger(__name__)

RangeFilters = Mapping[str, Tuple[Any, Any]]


class DataStoreError(Exception):
    """Raised when the backing store cannot complete an operation."""

    def __init__(self, message: str, operation: str, collection: str):
        super().__init__(message)
        self.operation = operation
        self.collection = collection


def new_document_id() -> str:
    return uuid.uuid4().hex


class DocumentStore(ABC):
    """Minimal document database interface used by repositories and the audit log."""

    @abstractmethod
    def insert(self, collection: str, document: Dict[str, Any]) -> str:
        """Store a new document and return its id."""

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one document by id."""

    @abstractmethod
    def update(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> bool:
        """Merge ``changes`` into a document. Returns False when it does not exist."""

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> bool:
        """Remove a document. Returns False when it does not exist."""

    @abstractmethod
    def query(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        ranges: Optional[RangeFilters] = None,
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Return documents matching every filter, sorted and capped."""

    def ping(self) -> bool:
        return True


def _is_multi(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


class InMemoryDocumentStore(DocumentStore):
    """
    Process-local store. Documents are deep-copied on the way in and out so
    callers can never mutate stored state by reference.
    """

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    def insert(self, collection: str, document: Dict[str, Any]) -> str:
        doc = copy.deepcopy(document)
        doc_id = doc.get('id') or new_document_id()
        doc['id'] = doc_id
        with self._lock:
            self._collection(collection)[doc_id] = doc
        return doc_id

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def update(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> bool:
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            if doc is None:
                return False
            doc.update(copy.deepcopy(changes))
            doc['id'] = doc_id
            return True

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            return self._collection(collection).pop(doc_id, None) is not None

    def query(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        ranges: Optional[RangeFilters] = None,
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        with self._lock:
            documents = list(self._collection(collection).values())

        def matches(doc: Dict[str, Any]) -> bool:
            for field, expected in (filters or {}).items():
                actual = doc.get(field)
                if _is_multi(expected):
                    if actual not in expected:
                        return False
                elif actual != expected:
                    return False
            for field, (low, high) in (ranges or {}).items():
                actual = doc.get(field)
                if actual is None:
                    return False
                if low is not None and actual < low:
                    return False
                if high is not None and actual > high:
                    return False
            return True

        results = [doc for doc in documents if matches(doc)]
        if order_by:
            # Documents missing the sort field go last
            present = [doc for doc in results if doc.get(order_by) is not None]
            missing = [doc for doc in results if doc.get(order_by) is None]
            present.sort(key=lambda doc: doc[order_by], reverse=descending)
            results = present + missing
        if limit is not None:
            results = results[:limit]
        return copy.deepcopy(results)

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._collection(collection))


class MongoDocumentStore(DocumentStore):
    """
    pymongo-backed store. The document ``id`` is stored as ``_id``.

    Args:
        client: Connected ``MongoClient``
        database_name: Database holding the CRM collections
    """

    def __init__(self, client: MongoClient, database_name: str):
        self._client = client
        self._database = client[database_name]

    @classmethod
    def from_uri(cls, uri: str, database_name: str, **kwargs) -> 'MongoDocumentStore':
        kwargs.setdefault('serverSelectionTimeoutMS', 5000)
        kwargs.setdefault('tz_aware', True)
        return cls(MongoClient(uri, **kwargs), database_name)

    @staticmethod
    def _to_document(raw: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if raw is None:
            return None
        doc = dict(raw)
        doc['id'] = str(doc.pop('_id'))
        return doc

    @staticmethod
    def _build_filter(filters: Optional[Mapping[str, Any]],
                      ranges: Optional[RangeFilters]) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        for field, expected in (filters or {}).items():
            key = '_id' if field == 'id' else field
            query[key] = {'$in': list(expected)} if _is_multi(expected) else expected
        for field, (low, high) in (ranges or {}).items():
            bounds = {}
            if low is not None:
                bounds['$gte'] = low
            if high is not None:
                bounds['$lte'] = high
            if bounds:
                query[field] = bounds
        return query

    def _fail(self, operation: str, collection: str, error: PyMongoError):
        logger.error(
            "Document store operation failed",
            operation=operation,
            collection=collection,
            error=str(error),
        )
        raise DataStoreError(str(error), operation, collection) from error

    def insert(self, collection: str, document: Dict[str, Any]) -> str:
        doc = dict(document)
        doc_id = doc.pop('id', None) or new_document_id()
        doc['_id'] = doc_id
        try:
            self._database[collection].insert_one(doc)
        except PyMongoError as e:
            self._fail('insert', collection, e)
        return doc_id

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self._to_document(self._database[collection].find_one({'_id': doc_id}))
        except PyMongoError as e:
            self._fail('get', collection, e)

    def update(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> bool:
        changes = {k: v for k, v in changes.items() if k not in ('id', '_id')}
        try:
            result = self._database[collection].update_one({'_id': doc_id}, {'$set': changes})
        except PyMongoError as e:
            self._fail('update', collection, e)
        return result.matched_count > 0

    def delete(self, collection: str, doc_id: str) -> bool:
        try:
            result = self._database[collection].delete_one({'_id': doc_id})
        except PyMongoError as e:
            self._fail('delete', collection, e)
        return result.deleted_count > 0

    def query(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        ranges: Optional[RangeFilters] = None,
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        try:
            cursor = self._database[collection].find(self._build_filter(filters, ranges))
            if order_by:
                cursor = cursor.sort(order_by, DESCENDING if descending else ASCENDING)
            if limit:
                cursor = cursor.limit(limit)
            return [self._to_document(doc) for doc in cursor]
        except PyMongoError as e:
            self._fail('query', collection, e)

    def ensure_indexes(self, indexes: Mapping[str, Iterable[str]],
                       unique: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        """Create single-field indexes; fields listed in ``unique`` reject duplicates."""
        unique = unique or {}
        for collection, fields in indexes.items():
            unique_fields = set(unique.get(collection, ()))
            for field in fields:
                self._database[collection].create_index(field, unique=field in unique_fields)
        for collection, fields in unique.items():
            for field in set(fields) - set(indexes.get(collection, ())):
                self._database[collection].create_index(field, unique=True)

    def ping(self) -> bool:
        try:
            self._client.admin.command('ping')
            return True
        except PyMongoError:
            return False


def build_document_store(backend: str, uri: Optional[str] = None,
                         database_name: Optional[str] = None) -> DocumentStore:
    """Create the store named by the ``DOCUMENT_STORE`` setting."""
    if backend == 'mongodb':
        if not uri or not database_name:
            raise ValueError('MONGODB_URI and MONGODB_DATABASE are required for mongodb')
        return MongoDocumentStore.from_uri(uri, database_name)
    if backend == 'memory':
        return InMemoryDocumentStore()
    raise ValueError(f'Unknown document store: {backend}')
