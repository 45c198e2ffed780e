"""Errors raised by the data-access layer itself.

Store-side failures (duplicate keys, network errors, bulk write errors)
are not wrapped: they propagate as the ``pymongo.errors`` the driver
raised.
"""


class DataAccessError(Exception):
    """Base class for errors raised by this package."""


class StoreConfigurationError(DataAccessError, ValueError):
    """Connection descriptor, database name or collection name is unusable."""


class PredicateTranslationError(DataAccessError, TypeError):
    """A predicate or update description cannot be expressed as a MongoDB filter."""


class DocumentDecodeError(DataAccessError, ValueError):
    """A stored document cannot be mapped onto the requested entity type."""
