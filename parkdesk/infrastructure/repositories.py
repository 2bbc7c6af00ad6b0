# File: parkdesk/infrastructure/repositories.py
"""
Repository Pattern Implementation for the Parking Desk

This module implements the Repository Pattern over a document store.
Repositories give the application layer a collection-like interface for
tariff snapshots, active sessions and settled receipts, while the store
abstraction hides the underlying database.

Store Implementations:
- InMemoryDocumentStore - For testing, demos and single-process use
- MongoDocumentStore - MongoDB via pymongo, change streams for notifications

Logical collections:
- tariffs          - one document holding the whole tariff table snapshot
- active_sessions  - one document per vehicle on the lot, unique by plate
- receipts         - log of settled sessions, one document per exit attempt

Atomicity guards live here: the unique plate constraint serializes
concurrent entries and single-document deletes serialize exit and cancel.
"""

from abc import ABC, abstractmethod
from typing import (
    TypeVar, Generic, Optional, List, Dict, Any, Callable, Iterator
)
from contextlib import contextmanager
from dataclasses import dataclass
from uuid import uuid4
import copy
import logging
import threading

import pymongo
from pymongo.errors import PyMongoError, DuplicateKeyError

from ..domain.models import TariffTable, Receipt
from ..domain.aggregates import ParkingSession

# Type variables for generic repositories
T = TypeVar('T')  # Entity type
ID = TypeVar('ID')  # ID type

TARIFFS = "tariffs"
ACTIVE_SESSIONS = "active_sessions"
RECEIPTS = "receipts"

DEFAULT_UNIQUE_FIELDS = {ACTIVE_SESSIONS: "plate"}


# ============================================================================
# STORE ERRORS AND NOTIFICATIONS
# ============================================================================

class DocumentStoreError(Exception):
    """The document store is unreachable or rejected an operation"""
    pass


class DuplicateDocumentError(DocumentStoreError):
    """An insert violated a unique field"""

    def __init__(self, collection: str, field: str, value: Any):
        self.collection = collection
        self.field = field
        self.value = value
        super().__init__(f"Duplicate {field}={value!r} in {collection}")


@dataclass(frozen=True)
class StoreChange:
    """Change notification for a collection"""
    collection: str
    operation: str  # insert, replace, delete
    document_id: Optional[str] = None


ChangeCallback = Callable[[StoreChange], None]


# ============================================================================
# DOCUMENT STORE INTERFACE
# ============================================================================

class DocumentStore(ABC):
    """
    Document store contract consumed by the repositories
    Documents are plain dicts with an '_id' key
    """

    @abstractmethod
    def read_all(self, collection: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def find_by_field(self, collection: str, field: str, value: Any) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def get(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def insert(self, collection: str, document: Dict[str, Any]) -> str:
        """Insert a new document; raises DuplicateDocumentError on a unique clash"""
        pass

    @abstractmethod
    def replace(self, collection: str, document_id: str, document: Dict[str, Any]) -> None:
        """Replace a document, creating it when absent"""
        pass

    @abstractmethod
    def delete(self, collection: str, document_id: str) -> bool:
        """Delete a document; True only for the caller that removed it"""
        pass

    @abstractmethod
    def subscribe(self, collection: str, callback: ChangeCallback) -> str:
        pass

    @abstractmethod
    def unsubscribe(self, subscription_id: str) -> bool:
        pass

    def close(self) -> None:
        pass


# ============================================================================
# IN-MEMORY DOCUMENT STORE (For Testing)
# ============================================================================

class InMemoryDocumentStore(DocumentStore):
    """In-memory store; notifications are delivered synchronously after writes"""

    def __init__(self, unique_fields: Optional[Dict[str, str]] = None):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._unique_fields = dict(DEFAULT_UNIQUE_FIELDS if unique_fields is None else unique_fields)
        self._subscriptions: Dict[str, tuple] = {}  # subscription_id -> (collection, callback)
        self._lock = threading.RLock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    def read_all(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(doc) for doc in self._collection(collection).values()]

    def find_by_field(self, collection: str, field: str, value: Any) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(doc) for doc in self._collection(collection).values()
                if doc.get(field) == value
            ]

    def get(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            doc = self._collection(collection).get(document_id)
            return copy.deepcopy(doc) if doc is not None else None

    def insert(self, collection: str, document: Dict[str, Any]) -> str:
        with self._lock:
            docs = self._collection(collection)
            document_id = str(document.get("_id") or uuid4())
            if document_id in docs:
                raise DuplicateDocumentError(collection, "_id", document_id)

            unique_field = self._unique_fields.get(collection)
            if unique_field is not None:
                value = document.get(unique_field)
                if any(doc.get(unique_field) == value for doc in docs.values()):
                    raise DuplicateDocumentError(collection, unique_field, value)

            stored = copy.deepcopy(document)
            stored["_id"] = document_id
            docs[document_id] = stored
            self._logger.debug(f"Inserted {document_id} into {collection}")

        self._notify(StoreChange(collection, "insert", document_id))
        return document_id

    def replace(self, collection: str, document_id: str, document: Dict[str, Any]) -> None:
        with self._lock:
            stored = copy.deepcopy(document)
            stored["_id"] = document_id
            self._collection(collection)[document_id] = stored
            self._logger.debug(f"Replaced {document_id} in {collection}")

        self._notify(StoreChange(collection, "replace", document_id))

    def delete(self, collection: str, document_id: str) -> bool:
        with self._lock:
            removed = self._collection(collection).pop(document_id, None)

        if removed is None:
            return False
        self._logger.debug(f"Deleted {document_id} from {collection}")
        self._notify(StoreChange(collection, "delete", document_id))
        return True

    def subscribe(self, collection: str, callback: ChangeCallback) -> str:
        subscription_id = str(uuid4())
        with self._lock:
            self._subscriptions[subscription_id] = (collection, callback)
        self._logger.debug(f"Subscribed to {collection} with ID {subscription_id}")
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            return self._subscriptions.pop(subscription_id, None) is not None

    def _notify(self, change: StoreChange) -> None:
        with self._lock:
            callbacks = [cb for name, cb in self._subscriptions.values() if name == change.collection]
        for callback in callbacks:
            try:
                callback(change)
            except Exception as e:
                self._logger.error(f"Error in change callback for {change.collection}: {e}")

    def clear(self):
        """Clear all data (for testing)"""
        with self._lock:
            self._collections.clear()


# ============================================================================
# MONGODB DOCUMENT STORE
# ============================================================================

class MongoDocumentStore(DocumentStore):
    """
    MongoDB-backed store

    Every call carries the client's server-selection and socket timeouts, so
    an unreachable server surfaces as DocumentStoreError instead of hanging.
    Subscriptions use change streams, which need a replica set.
    """

    def __init__(
        self,
        mongo_url: str = "mongodb://localhost:27017",
        database: str = "parkdesk",
        timeout_ms: int = 5000,
        client: Optional[Any] = None,
        unique_fields: Optional[Dict[str, str]] = None
    ):
        self.mongo_url = mongo_url
        self._logger = logging.getLogger(self.__class__.__name__)
        if client is None:
            with self._translate_errors("connect"):
                client = pymongo.MongoClient(
                    mongo_url,
                    serverSelectionTimeoutMS=timeout_ms,
                    socketTimeoutMS=timeout_ms,
                    connectTimeoutMS=timeout_ms,
                )
        self.client = client
        self.db = self.client[database]
        self._unique_fields = dict(DEFAULT_UNIQUE_FIELDS if unique_fields is None else unique_fields)
        self._watchers: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

        self.ensure_indexes()

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except DuplicateKeyError:
            raise
        except PyMongoError as e:
            self._logger.error(f"MongoDB error during {operation}: {e}")
            raise DocumentStoreError(f"{operation} failed: {e}") from e

    def ensure_indexes(self) -> None:
        with self._translate_errors("create indexes"):
            for collection, field in self._unique_fields.items():
                self.db[collection].create_index([(field, pymongo.ASCENDING)], unique=True)

    def read_all(self, collection: str) -> List[Dict[str, Any]]:
        with self._translate_errors(f"read {collection}"):
            return list(self.db[collection].find({}))

    def find_by_field(self, collection: str, field: str, value: Any) -> List[Dict[str, Any]]:
        with self._translate_errors(f"query {collection}"):
            return list(self.db[collection].find({field: value}))

    def get(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        with self._translate_errors(f"get {collection}"):
            return self.db[collection].find_one({"_id": document_id})

    def insert(self, collection: str, document: Dict[str, Any]) -> str:
        stored = dict(document)
        stored.setdefault("_id", str(uuid4()))
        try:
            with self._translate_errors(f"insert into {collection}"):
                self.db[collection].insert_one(stored)
        except DuplicateKeyError as e:
            field = self._unique_fields.get(collection, "_id")
            self._logger.debug(f"Duplicate key inserting into {collection}: {e}")
            raise DuplicateDocumentError(collection, field, stored.get(field)) from e

        self._logger.debug(f"Inserted {stored['_id']} into {collection}")
        return str(stored["_id"])

    def replace(self, collection: str, document_id: str, document: Dict[str, Any]) -> None:
        stored = dict(document)
        stored["_id"] = document_id
        with self._translate_errors(f"replace in {collection}"):
            self.db[collection].replace_one({"_id": document_id}, stored, upsert=True)
        self._logger.debug(f"Replaced {document_id} in {collection}")

    def delete(self, collection: str, document_id: str) -> bool:
        with self._translate_errors(f"delete from {collection}"):
            removed = self.db[collection].find_one_and_delete({"_id": document_id})
        return removed is not None

    # ------------------------------------------------------------------------
    # Change streams
    # ------------------------------------------------------------------------

    def subscribe(self, collection: str, callback: ChangeCallback) -> str:
        subscription_id = str(uuid4())
        watcher = {
            "collection": collection,
            "callback": callback,
            "stream": None,
            "running": True,
        }
        thread = threading.Thread(
            target=self._watch, args=(subscription_id, watcher), daemon=True
        )
        watcher["thread"] = thread
        with self._lock:
            self._watchers[subscription_id] = watcher
        thread.start()
        self._logger.info(f"Watching {collection} with ID {subscription_id}")
        return subscription_id

    def _watch(self, subscription_id: str, watcher: Dict[str, Any]) -> None:
        collection = watcher["collection"]
        try:
            with self.db[collection].watch() as stream:
                watcher["stream"] = stream
                for event in stream:
                    if not watcher["running"]:
                        break
                    document_key = event.get("documentKey") or {}
                    change = StoreChange(
                        collection=collection,
                        operation=event.get("operationType", "unknown"),
                        document_id=str(document_key.get("_id")) if document_key else None,
                    )
                    try:
                        watcher["callback"](change)
                    except Exception as e:
                        self._logger.error(f"Error in change callback for {collection}: {e}")
        except PyMongoError as e:
            if watcher["running"]:
                self._logger.error(f"Change stream on {collection} stopped: {e}")
        finally:
            with self._lock:
                self._watchers.pop(subscription_id, None)

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            watcher = self._watchers.pop(subscription_id, None)
        if watcher is None:
            return False
        watcher["running"] = False
        stream = watcher.get("stream")
        if stream is not None:
            try:
                stream.close()
            except PyMongoError as e:
                self._logger.debug(f"Error closing change stream: {e}")
        return True

    def close(self) -> None:
        for subscription_id in list(self._watchers):
            self.unsubscribe(subscription_id)
        self.client.close()
        self._logger.info("MongoDB store closed")


# ============================================================================
# REPOSITORY INTERFACE
# ============================================================================

class Repository(ABC, Generic[T, ID]):
    """Base repository interface"""

    @abstractmethod
    def add(self, entity: T) -> T:
        pass

    @abstractmethod
    def get(self, id: ID) -> Optional[T]:
        pass

    @abstractmethod
    def get_all(self) -> List[T]:
        pass

    @abstractmethod
    def delete(self, id: ID) -> bool:
        pass

    def count(self) -> int:
        return len(self.get_all())


# ============================================================================
# DOCUMENT-BACKED REPOSITORIES
# ============================================================================

class TariffRepository:
    """Stores the whole tariff table as a single document"""

    DOCUMENT_ID = "default-prices"

    def __init__(self, store: DocumentStore):
        self.store = store
        self._logger = logging.getLogger(self.__class__.__name__)

    def load(self) -> Optional[TariffTable]:
        """Return the persisted snapshot, or None when nothing is stored"""
        document = self.store.get(TARIFFS, self.DOCUMENT_ID)
        if not document or not document.get("rules"):
            return None
        return TariffTable.from_document(document["rules"])

    def save(self, table: TariffTable) -> None:
        self.store.replace(TARIFFS, self.DOCUMENT_ID, {"rules": table.to_document()})
        self._logger.debug(f"Saved tariff snapshot with {len(table)} categories")

    def subscribe(self, callback: ChangeCallback) -> str:
        return self.store.subscribe(TARIFFS, callback)


class SessionRepository(Repository[ParkingSession, str]):
    """Active sessions, one document each, unique by plate"""

    def __init__(self, store: DocumentStore):
        self.store = store
        self._logger = logging.getLogger(self.__class__.__name__)

    def add(self, session: ParkingSession) -> ParkingSession:
        self.store.insert(ACTIVE_SESSIONS, session.to_document())
        return session

    def get(self, id: str) -> Optional[ParkingSession]:
        document = self.store.get(ACTIVE_SESSIONS, id)
        return ParkingSession.from_document(document) if document else None

    def get_all(self) -> List[ParkingSession]:
        return [ParkingSession.from_document(doc) for doc in self.store.read_all(ACTIVE_SESSIONS)]

    def find_by_plate(self, plate: str) -> Optional[ParkingSession]:
        documents = self.store.find_by_field(ACTIVE_SESSIONS, "plate", plate)
        if not documents:
            return None
        if len(documents) > 1:
            self._logger.warning(f"Found {len(documents)} active sessions for plate {plate}")
        return ParkingSession.from_document(documents[0])

    def delete(self, id: str) -> bool:
        return self.store.delete(ACTIVE_SESSIONS, id)

    def subscribe(self, callback: ChangeCallback) -> str:
        return self.store.subscribe(ACTIVE_SESSIONS, callback)


class ReceiptRepository(Repository[Receipt, str]):
    """
    Receipts, one document per exit attempt keyed by receipt_id

    Lookups by id go through the session id. A settled session keeps a
    single receipt: the attempt that closed it discards the others.
    """

    def __init__(self, store: DocumentStore):
        self.store = store
        self._logger = logging.getLogger(self.__class__.__name__)

    def add(self, receipt: Receipt) -> Receipt:
        self.store.replace(RECEIPTS, receipt.receipt_id, receipt.to_document())
        return receipt

    def get(self, id: str) -> Optional[Receipt]:
        """Receipt for a session id"""
        documents = self.store.find_by_field(RECEIPTS, "session_id", id)
        if not documents:
            return None
        if len(documents) > 1:
            self._logger.warning(f"Found {len(documents)} receipts for session {id}")
        return Receipt.from_document(documents[0])

    def get_all(self) -> List[Receipt]:
        receipts = [Receipt.from_document(doc) for doc in self.store.read_all(RECEIPTS)]
        return sorted(receipts, key=lambda r: r.exit_timestamp)

    def find_by_plate(self, plate: str) -> List[Receipt]:
        documents = self.store.find_by_field(RECEIPTS, "plate", plate)
        return sorted(
            (Receipt.from_document(doc) for doc in documents),
            key=lambda r: r.exit_timestamp
        )

    def delete(self, id: str) -> bool:
        """Delete every receipt for a session id"""
        documents = self.store.find_by_field(RECEIPTS, "session_id", id)
        removed = [self.store.delete(RECEIPTS, str(doc["_id"])) for doc in documents]
        return any(removed)

    def withdraw(self, receipt: Receipt) -> bool:
        """Remove this attempt's receipt only"""
        return self.store.delete(RECEIPTS, receipt.receipt_id)

    def discard_other_attempts(self, receipt: Receipt) -> int:
        """Remove receipts left for the same session by other attempts"""
        discarded = 0
        for document in self.store.find_by_field(RECEIPTS, "session_id", receipt.session_id):
            document_id = str(document["_id"])
            if document_id != receipt.receipt_id and self.store.delete(RECEIPTS, document_id):
                discarded += 1
        return discarded


# ============================================================================
# REPOSITORY FACTORY
# ============================================================================

class RepositoryFactory:
    """Factory for creating stores"""

    @staticmethod
    def create_in_memory_store() -> InMemoryDocumentStore:
        return InMemoryDocumentStore()

    @staticmethod
    def create_mongo_store(
        mongo_url: str,
        database: str = "parkdesk",
        timeout_ms: int = 5000
    ) -> MongoDocumentStore:
        return MongoDocumentStore(mongo_url, database=database, timeout_ms=timeout_ms)
