"""Abstract generic accessor for database operations.

This module defines the operation surface shared by the blocking
``MongoDbContext`` and the asyncio ``AsyncMongoDbContext``, plus the
pieces both use to build filters and to collapse driver results into
booleans.

Every operation receives the collection name and the entity type
explicitly; the entity type drives decoding of returned documents.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, Type, TypeVar

from pymongo import ReplaceOne
from pymongo.errors import BulkWriteError

from repository.filters import Filter, and_, to_filter
from repository.store import CollectionRef

logger = logging.getLogger(__name__)

T = TypeVar('T')
K = TypeVar('K')

Predicate = Any
PredicateFactory = Callable[[Any], Predicate]


def was_modified(result: Any) -> bool:
    """True if the write was acknowledged and changed at least one document."""
    return bool(result.acknowledged and result.modified_count > 0)


def was_replaced(result: Any) -> bool:
    """True if a replace changed a document or upserted a new one."""
    return bool(
        result.acknowledged
        and (result.modified_count > 0 or result.upserted_id is not None)
    )


def was_deleted(result: Any) -> bool:
    """True if the delete was acknowledged and removed at least one document."""
    return bool(result.acknowledged and result.deleted_count > 0)


def bulk_succeeded(result: Any) -> bool:
    """True if the bulk write was acknowledged and upserted or modified something."""
    return bool(
        result.acknowledged
        and (result.upserted_count + result.modified_count) > 0
    )


def assign_identity(entity: Any, inserted_id: Any) -> None:
    """Copy a store-assigned ``_id`` back onto an entity that had none."""
    if isinstance(entity, dict):
        entity.setdefault('_id', inserted_id)
    elif hasattr(entity, 'id') and getattr(entity, 'id') is None:
        entity.id = inserted_id


def assign_persisted_identities(entities: List[Any], documents: List[dict],
                                error: BulkWriteError, ordered: bool) -> None:
    """Assign ids to the entities an interrupted ``insert_many`` did persist.

    The driver stamps an ``_id`` on every document before sending it.
    In ordered mode the first ``nInserted`` documents were written; in
    unordered mode every document without a write error was.
    """
    details = error.details or {}
    failed = {write_error.get('index') for write_error in details.get('writeErrors', [])}
    if ordered:
        persisted = range(details.get('nInserted', 0))
    else:
        persisted = [index for index in range(len(documents)) if index not in failed]
    for index in persisted:
        if '_id' in documents[index]:
            assign_identity(entities[index], documents[index]['_id'])


class BaseDbContext(ABC):
    """Abstract base class for the generic accessor.

    Subclasses bind to a store handle and implement every operation,
    either blocking or as coroutines with the same semantics.
    """

    def __init__(self, store: Any):
        """Initialize the accessor.

        Args:
            store: ``MongoDbClient`` or ``AsyncMongoDbClient``.
        """
        self._store = store

    @property
    def store(self) -> Any:
        return self._store

    def _collection(self, collection_name: str, entity_type: Type[T]) -> CollectionRef[T]:
        return self._store.collection(collection_name, entity_type)

    @staticmethod
    def _batch_filter(entity_type: Any, predicate_factory: PredicateFactory,
                      keys: Iterable[Any]) -> Dict[str, Any]:
        """AND together the predicate built for each key.

        Note the conjunction: with two or more keys the documents must
        satisfy every per-key predicate at once.
        """
        filters = [predicate_factory(key) for key in keys]
        if len(filters) > 1:
            logger.warning(
                "Batch select combines %d per-key predicates with AND; "
                "documents must match all of them", len(filters)
            )
        return and_(*(Filter(to_filter(item, entity_type)) for item in filters)).to_mongo()

    @staticmethod
    def _bulk_requests(ref: CollectionRef, predicate_factory: PredicateFactory,
                       entities: Iterable[Any]) -> List[ReplaceOne]:
        return [
            ReplaceOne(
                to_filter(predicate_factory(entity), ref.entity_type),
                ref.encode(entity),
                upsert=True,
            )
            for entity in entities
        ]

    @staticmethod
    def _check_limit(limit: int) -> None:
        if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
            raise ValueError(f"limit must be a positive integer, got {limit!r}")

    @abstractmethod
    def find(self, collection_name: str, entity_type: Type[T],
             predicate: Predicate) -> Optional[T]:
        """Return the first document matching ``predicate``, or None."""

    @abstractmethod
    def select(self, collection_name: str, entity_type: Type[T],
               predicate: Predicate) -> List[T]:
        """Return every document matching ``predicate``, in store order."""

    @abstractmethod
    def select_by_keys(self, collection_name: str, entity_type: Type[T],
                       predicate_factory: Callable[[K], Predicate],
                       keys: Optional[List[K]]) -> List[T]:
        """Return documents matching ``predicate_factory(key)`` for all ``keys``.

        An empty or None ``keys`` list returns an empty result without
        querying the store.
        """

    @abstractmethod
    def select_with_limit(self, collection_name: str, entity_type: Type[T],
                          predicate: Predicate, limit: int) -> List[T]:
        """Return at most ``limit`` documents matching ``predicate``."""

    @abstractmethod
    def select_with_key(self, collection_name: str, entity_type: Type[T],
                        key: str, value: Any) -> List[T]:
        """Return documents whose ``key`` equals ``str(value)``."""

    @abstractmethod
    def select_all(self, collection_name: str, entity_type: Type[T]) -> List[T]:
        """Return every document in the collection."""

    @abstractmethod
    def insert_one(self, collection_name: str, entity_type: Type[T], entity: T) -> None:
        """Insert one entity; store rejections propagate."""

    @abstractmethod
    def insert_many(self, collection_name: str, entity_type: Type[T],
                    entities: List[T], ordered: bool = True) -> None:
        """Insert entities, stopping at the first failure when ``ordered``."""

    @abstractmethod
    def update_one(self, collection_name: str, entity_type: Type[T],
                   predicate: Predicate, entity: T, upsert: bool = False) -> bool:
        """Replace the first match with ``entity``."""

    @abstractmethod
    def apply_update(self, collection_name: str, entity_type: Type[T],
                     predicate: Predicate, update: Any, upsert: bool = False) -> bool:
        """Apply an ``Update`` descriptor to the first match."""

    @abstractmethod
    def update_one_push(self, collection_name: str, entity_type: Type[T],
                        predicate: Predicate, field: str, value: Any) -> bool:
        """Append ``value`` to array ``field`` of the first match."""

    @abstractmethod
    def update_one_add_to_set(self, collection_name: str, entity_type: Type[T],
                              predicate: Predicate, field: str, value: Any) -> bool:
        """Append ``value`` to array ``field`` of the first match unless present."""

    @abstractmethod
    def bulk_write(self, collection_name: str, entity_type: Type[T],
                   predicate_factory: Callable[[T], Predicate],
                   entities: Optional[List[T]], ordered: bool = False) -> bool:
        """Upsert each entity against its own predicate in one bulk call."""

    @abstractmethod
    def delete_one(self, collection_name: str, entity_type: Type[T],
                   predicate: Predicate) -> bool:
        """Delete the first match."""

    @abstractmethod
    def delete_many(self, collection_name: str, entity_type: Type[T],
                    predicate: Predicate) -> bool:
        """Delete every match."""
