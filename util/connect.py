"""MongoDB connection utilities.

This module reads connection defaults from the environment and builds
blocking and asyncio pymongo clients for the store handles.
"""
from __future__ import annotations

import logging
import os

import pymongo
from pymongo import AsyncMongoClient
from pymongo.errors import ConnectionFailure, ServerSelectionTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
DEFAULT_DB = os.getenv("MONGO_DB", "mydatabase")
DEFAULT_TIMEOUT_MS = int(os.getenv("MONGO_TIMEOUT_MS", "5000"))


def create_client(
    uri: str | None = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS
) -> pymongo.MongoClient:
    """Build a MongoClient without contacting the server.

    Args:
        uri: MongoDB connection URI, defaults to ``MONGO_URI``.
        timeout_ms: Server selection timeout in milliseconds.

    Returns:
        MongoClient instance; connections are opened lazily.

    Raises:
        pymongo.errors.ConfigurationError: If the URI cannot be parsed.
    """
    uri = uri or DEFAULT_URI
    return pymongo.MongoClient(uri, serverSelectionTimeoutMS=timeout_ms)


def create_async_client(
    uri: str | None = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS
) -> AsyncMongoClient:
    """Build an asyncio MongoClient without contacting the server.

    Args:
        uri: MongoDB connection URI, defaults to ``MONGO_URI``.
        timeout_ms: Server selection timeout in milliseconds.

    Returns:
        AsyncMongoClient instance; connections are opened lazily.

    Raises:
        pymongo.errors.ConfigurationError: If the URI cannot be parsed.
    """
    uri = uri or DEFAULT_URI
    return AsyncMongoClient(uri, serverSelectionTimeoutMS=timeout_ms)


def get_client(
    uri: str | None = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS
) -> pymongo.MongoClient:
    """Return a connected MongoClient.

    Args:
        uri: MongoDB connection URI.
        timeout_ms: Server selection timeout in milliseconds.

    Returns:
        Connected MongoClient instance.

    Raises:
        ConnectionError: If connection fails.
    """
    uri = uri or DEFAULT_URI
    mongo_client = create_client(uri, timeout_ms)
    try:
        mongo_client.admin.command("ping")
    except (ServerSelectionTimeoutError, ConnectionFailure) as err:
        raise ConnectionError(
            f"Could not connect to MongoDB at {uri}: {err}"
        ) from err
    return mongo_client


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    try:
        mongo_client = get_client()
        database_names = mongo_client.list_database_names()
        mongo_client.close()
        logger.info(
            "MongoDB connection successful (%s); database '%s' %s.",
            DEFAULT_URI, DEFAULT_DB,
            "exists" if DEFAULT_DB in database_names else "will be created on first write"
        )
    except ConnectionError as err:
        logger.error("Could not connect to MongoDB: %s", err)
        raise SystemExit(1) from err
