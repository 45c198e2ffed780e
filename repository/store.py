"""Store handles: one client bound to one logical database.

``MongoDbClient`` wraps a blocking ``pymongo.MongoClient`` and
``AsyncMongoDbClient`` a ``pymongo.AsyncMongoClient``. Both resolve typed collection
references by name; nothing is cached beyond the driver's own pool.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Generic, Mapping, Type, TypeVar

from pymongo.errors import ConfigurationError, ConnectionFailure, ServerSelectionTimeoutError

from repository.codec import DocumentCodec
from repository.exceptions import StoreConfigurationError
from util.connect import DEFAULT_TIMEOUT_MS, create_async_client, create_client

logger = logging.getLogger(__name__)

T = TypeVar('T')

_INVALID_DATABASE_CHARS = frozenset('/\\. "$\x00')
_MAX_DATABASE_NAME_BYTES = 63


def validate_database_name(database_name: Any) -> str:
    """Check a database name against MongoDB's naming restrictions.

    Raises:
        StoreConfigurationError: If the name is empty or malformed.
    """
    if not isinstance(database_name, str) or not database_name:
        raise StoreConfigurationError(
            "Database name is empty; a database name is required to access a database"
        )
    bad_chars = _INVALID_DATABASE_CHARS.intersection(database_name)
    if bad_chars:
        raise StoreConfigurationError(
            f"Database name {database_name!r} contains invalid characters {sorted(bad_chars)}"
        )
    if len(database_name.encode('utf-8')) > _MAX_DATABASE_NAME_BYTES:
        raise StoreConfigurationError(
            f"Database name {database_name!r} is longer than {_MAX_DATABASE_NAME_BYTES} bytes"
        )
    return database_name


@dataclass(frozen=True)
class CollectionRef(Generic[T]):
    """A collection name bound to an entity type within one database."""

    database: Any
    name: str
    entity_type: Type[T]
    codec: DocumentCodec

    @property
    def collection(self) -> Any:
        """The driver collection object, blocking or asyncio."""
        return self.database[self.name]

    def encode(self, entity: T) -> dict:
        return self.codec.encode(entity)

    def decode(self, document: Mapping[str, Any]) -> T:
        return self.codec.decode(self.entity_type, document)


class _StoreHandle:
    """Shared construction and collection lookup for both store handles."""

    def __init__(self, client: Any, database_name: str, ignore_extra_fields: bool,
                 owns_client: bool):
        self._client = client
        self._owns_client = owns_client
        self._database_name = database_name
        self._database = client[database_name]
        self._codec = DocumentCodec(ignore_extra_fields=ignore_extra_fields)
        logger.debug(
            "%s bound to database '%s' (ignore_extra_fields=%s)",
            type(self).__name__, database_name, ignore_extra_fields
        )

    @property
    def client(self) -> Any:
        return self._client

    @property
    def database(self) -> Any:
        return self._database

    @property
    def database_name(self) -> str:
        return self._database_name

    @property
    def codec(self) -> DocumentCodec:
        return self._codec

    def collection(self, name: str, entity_type: Type[T]) -> CollectionRef[T]:
        """Return a reference to collection ``name`` decoding into ``entity_type``.

        The collection is not required to exist; MongoDB creates it on
        first write.

        Raises:
            StoreConfigurationError: If ``name`` is empty.
        """
        if not isinstance(name, str) or not name:
            raise StoreConfigurationError("Collection name is empty")
        return CollectionRef(self._database, name, entity_type, self._codec)

    def close(self) -> None:
        """Close the client if this handle created it."""
        if self._owns_client:
            self._client.close()


def _check_connection(connection: Any) -> None:
    if connection is None:
        raise StoreConfigurationError("Connection is null; a URI or client is required")
    if isinstance(connection, str) and not connection.strip():
        raise StoreConfigurationError("Connection string is empty")


class MongoDbClient(_StoreHandle):
    """Blocking store handle.

    Args:
        connection: MongoDB URI or an existing ``pymongo.MongoClient``.
        database_name: Logical database to bind to.
        ignore_extra_fields: Drop unknown stored fields when decoding.
        timeout_ms: Server selection timeout used when building a client.

    Raises:
        StoreConfigurationError: On an empty or malformed connection or
            database name.
    """

    def __init__(self, connection: Any, database_name: str, *,
                 ignore_extra_fields: bool = True,
                 timeout_ms: int = DEFAULT_TIMEOUT_MS):
        _check_connection(connection)
        validate_database_name(database_name)
        owns_client = isinstance(connection, str)
        if owns_client:
            try:
                client = create_client(connection, timeout_ms)
            except (ConfigurationError, ValueError) as err:
                raise StoreConfigurationError(f"Invalid MongoDB connection string: {err}") from err
        else:
            client = connection
        super().__init__(client, database_name, ignore_extra_fields, owns_client)

    def ping(self) -> bool:
        """Return True if the server answers a ping."""
        try:
            self._database.command('ping')
        except (ServerSelectionTimeoutError, ConnectionFailure) as err:
            logger.warning("MongoDB ping failed for '%s': %s", self._database_name, err)
            return False
        return True


class AsyncMongoDbClient(_StoreHandle):
    """Asyncio store handle.

    Args:
        connection: MongoDB URI or an existing ``pymongo.AsyncMongoClient``.
        database_name: Logical database to bind to.
        ignore_extra_fields: Drop unknown stored fields when decoding.
        timeout_ms: Server selection timeout used when building a client.

    Raises:
        StoreConfigurationError: On an empty or malformed connection or
            database name.
    """

    def __init__(self, connection: Any, database_name: str, *,
                 ignore_extra_fields: bool = True,
                 timeout_ms: int = DEFAULT_TIMEOUT_MS):
        _check_connection(connection)
        validate_database_name(database_name)
        owns_client = isinstance(connection, str)
        if owns_client:
            try:
                client = create_async_client(connection, timeout_ms)
            except (ConfigurationError, ValueError) as err:
                raise StoreConfigurationError(f"Invalid MongoDB connection string: {err}") from err
        else:
            client = connection
        super().__init__(client, database_name, ignore_extra_fields, owns_client)

    async def ping(self) -> bool:
        """Return True if the server answers a ping."""
        try:
            await self._database.command('ping')
        except (ServerSelectionTimeoutError, ConnectionFailure) as err:
            logger.warning("MongoDB ping failed for '%s': %s", self._database_name, err)
            return False
        return True

    async def close(self) -> None:  # type: ignore[override]
        """Close the client if this handle created it."""
        if self._owns_client:
            await self._client.close()
