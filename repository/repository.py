"""Blocking generic accessor over a pymongo database.

This module provides ``MongoDbContext``, which runs every operation on
the calling thread through a ``MongoDbClient`` store handle.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, Type, TypeVar

from pymongo.errors import BulkWriteError

from repository import updates
from repository.base_repository import (
    BaseDbContext,
    Predicate,
    assign_identity,
    assign_persisted_identities,
    bulk_succeeded,
    was_deleted,
    was_modified,
    was_replaced,
)
from repository.filters import check_field_name, to_filter
from repository.store import MongoDbClient

logger = logging.getLogger(__name__)

T = TypeVar('T')
K = TypeVar('K')


class MongoDbContext(BaseDbContext):
    """Typed CRUD and query operations executed synchronously.

    Example:
        context = MongoDbContext(MongoDbClient('mongodb://localhost', 'shop'))
        user = context.find('users', User, where(id=1))
    """

    def __init__(self, store: MongoDbClient):
        super().__init__(store)

    def find(self, collection_name: str, entity_type: Type[T],
             predicate: Predicate) -> Optional[T]:
        """Find the first document matching a predicate.

        Args:
            collection_name: Name of the collection.
            entity_type: Entity type to decode into.
            predicate: Filter built with ``Field``/``where`` or a native mapping.

        Returns:
            The entity if found, None otherwise.
        """
        query_filter = to_filter(predicate, entity_type)
        ref = self._collection(collection_name, entity_type)
        logger.debug("find_one on '%s' with %s", collection_name, query_filter)
        document = ref.collection.find_one(query_filter)
        if document is None:
            return None
        return ref.decode(document)

    def select(self, collection_name: str, entity_type: Type[T],
               predicate: Predicate) -> List[T]:
        """Get all documents matching a predicate.

        Args:
            collection_name: Name of the collection.
            entity_type: Entity type to decode into.
            predicate: Filter built with ``Field``/``where`` or a native mapping.

        Returns:
            List of matching entities, in store order.
        """
        query_filter = to_filter(predicate, entity_type)
        ref = self._collection(collection_name, entity_type)
        logger.debug("find on '%s' with %s", collection_name, query_filter)
        return [ref.decode(document) for document in ref.collection.find(query_filter)]

    def select_by_keys(self, collection_name: str, entity_type: Type[T],
                       predicate_factory: Callable[[K], Predicate],
                       keys: Optional[List[K]]) -> List[T]:
        """Get documents matching the AND of one predicate per key.

        Args:
            collection_name: Name of the collection.
            entity_type: Entity type to decode into.
            predicate_factory: Builds the predicate for a single key.
            keys: Keys to build predicates for.

        Returns:
            List of entities matching every per-key predicate; empty
            without a query when ``keys`` is empty or None.
        """
        if not keys:
            return []
        query_filter = self._batch_filter(entity_type, predicate_factory, keys)
        return self.select(collection_name, entity_type, query_filter)

    def select_with_limit(self, collection_name: str, entity_type: Type[T],
                          predicate: Predicate, limit: int) -> List[T]:
        """Get at most ``limit`` documents matching a predicate.

        Args:
            collection_name: Name of the collection.
            entity_type: Entity type to decode into.
            predicate: Filter built with ``Field``/``where`` or a native mapping.
            limit: Maximum number of entities, must be positive.

        Returns:
            List of up to ``limit`` entities.

        Raises:
            ValueError: If ``limit`` is not a positive integer.
        """
        self._check_limit(limit)
        query_filter = to_filter(predicate, entity_type)
        ref = self._collection(collection_name, entity_type)
        logger.debug("find on '%s' with %s limit %d", collection_name, query_filter, limit)
        cursor = ref.collection.find(query_filter).limit(limit)
        return [ref.decode(document) for document in cursor]

    def select_with_key(self, collection_name: str, entity_type: Type[T],
                        key: str, value: Any) -> List[T]:
        """Get documents whose stored ``key`` equals ``str(value)``.

        Args:
            collection_name: Name of the collection.
            entity_type: Entity type to decode into.
            key: Stored field name, used as given.
            value: Compared as a string.

        Returns:
            List of matching entities.
        """
        return self.select(collection_name, entity_type, {check_field_name(key): str(value)})

    def select_all(self, collection_name: str, entity_type: Type[T]) -> List[T]:
        """Get every document in the collection."""
        return self.select(collection_name, entity_type, {})

    def insert_one(self, collection_name: str, entity_type: Type[T], entity: T) -> None:
        """Insert a single entity.

        A missing identity is filled with the store-assigned ``_id``.

        Args:
            collection_name: Name of the collection.
            entity_type: Entity type of ``entity``.
            entity: The entity to insert.

        Raises:
            pymongo.errors.DuplicateKeyError: If the identity already exists.
        """
        ref = self._collection(collection_name, entity_type)
        result = ref.collection.insert_one(ref.encode(entity))
        assign_identity(entity, result.inserted_id)
        logger.debug("Inserted %s into '%s'", result.inserted_id, collection_name)

    def insert_many(self, collection_name: str, entity_type: Type[T],
                    entities: List[T], ordered: bool = True) -> None:
        """Insert several entities in one batch.

        Entities that were persisted get their identity assigned, also
        when the batch fails part way.

        Args:
            collection_name: Name of the collection.
            entity_type: Entity type of ``entities``.
            entities: The entities to insert.
            ordered: Insert in list order and stop at the first failure.

        Raises:
            pymongo.errors.BulkWriteError: If any document was rejected.
        """
        ref = self._collection(collection_name, entity_type)
        documents = [ref.encode(entity) for entity in entities]
        try:
            result = ref.collection.insert_many(documents, ordered=ordered)
        except BulkWriteError as err:
            assign_persisted_identities(entities, documents, err, ordered)
            raise
        for entity, inserted_id in zip(entities, result.inserted_ids):
            assign_identity(entity, inserted_id)
        logger.debug("Inserted %d documents into '%s'", len(result.inserted_ids), collection_name)

    def update_one(self, collection_name: str, entity_type: Type[T],
                   predicate: Predicate, entity: T, upsert: bool = False) -> bool:
        """Replace the first document matching a predicate.

        Args:
            collection_name: Name of the collection.
            entity_type: Entity type of ``entity``.
            predicate: Filter selecting the document to replace.
            entity: The replacement entity.
            upsert: Insert ``entity`` when nothing matches.

        Returns:
            True if a document was modified or upserted.
        """
        return self.apply_update(collection_name, entity_type, predicate,
                                 updates.replace(entity), upsert=upsert)

    def apply_update(self, collection_name: str, entity_type: Type[T],
                     predicate: Predicate, update: updates.Update,
                     upsert: bool = False) -> bool:
        """Apply an update descriptor to the first matching document.

        Args:
            collection_name: Name of the collection.
            entity_type: Entity type whose field names apply.
            predicate: Filter selecting the document.
            update: ``push``, ``add_to_set`` or ``replace`` descriptor.
            upsert: Create a document when nothing matches.

        Returns:
            True if the write was acknowledged and changed a document.
        """
        query_filter = to_filter(predicate, entity_type)
        ref = self._collection(collection_name, entity_type)
        logger.debug("%s on '%s' with %s", update.operator, collection_name, query_filter)
        if update.is_replacement:
            result = ref.collection.replace_one(query_filter, ref.encode(update.value), upsert=upsert)
            return was_replaced(result)
        result = ref.collection.update_one(query_filter, update.to_mongo(entity_type), upsert=upsert)
        return was_modified(result)

    def update_one_push(self, collection_name: str, entity_type: Type[T],
                        predicate: Predicate, field: str, value: Any) -> bool:
        """Append a value to an array field, duplicates allowed.

        Returns:
            True if a document was modified.
        """
        return self.apply_update(collection_name, entity_type, predicate,
                                 updates.push(field, value))

    def update_one_add_to_set(self, collection_name: str, entity_type: Type[T],
                              predicate: Predicate, field: str, value: Any) -> bool:
        """Append a value to an array field unless it is already present.

        Returns:
            True if a document was modified; False when the value was
            already in the array.
        """
        return self.apply_update(collection_name, entity_type, predicate,
                                 updates.add_to_set(field, value))

    def bulk_write(self, collection_name: str, entity_type: Type[T],
                   predicate_factory: Callable[[T], Predicate],
                   entities: Optional[List[T]], ordered: bool = False) -> bool:
        """Replace-or-insert every entity against its own predicate.

        Args:
            collection_name: Name of the collection.
            entity_type: Entity type of ``entities``.
            predicate_factory: Builds the match predicate for an entity.
            entities: The entities to upsert.
            ordered: Run in list order and stop at the first failure.

        Returns:
            True if the bulk write upserted or modified something; False
            without calling the store when ``entities`` is empty or None.
        """
        if not entities:
            logger.warning("Skipping bulk write on '%s': no entities given", collection_name)
            return False
        ref = self._collection(collection_name, entity_type)
        requests = self._bulk_requests(ref, predicate_factory, entities)
        result = ref.collection.bulk_write(requests, ordered=ordered)
        return bulk_succeeded(result)

    def delete_one(self, collection_name: str, entity_type: Type[T],
                   predicate: Predicate) -> bool:
        """Delete the first document matching a predicate.

        Returns:
            True if a document was deleted, False otherwise.
        """
        query_filter = to_filter(predicate, entity_type)
        ref = self._collection(collection_name, entity_type)
        logger.debug("delete_one on '%s' with %s", collection_name, query_filter)
        return was_deleted(ref.collection.delete_one(query_filter))

    def delete_many(self, collection_name: str, entity_type: Type[T],
                    predicate: Predicate) -> bool:
        """Delete every document matching a predicate.

        Returns:
            True if at least one document was deleted, False otherwise.
        """
        query_filter = to_filter(predicate, entity_type)
        ref = self._collection(collection_name, entity_type)
        logger.debug("delete_many on '%s' with %s", collection_name, query_filter)
        return was_deleted(ref.collection.delete_many(query_filter))
