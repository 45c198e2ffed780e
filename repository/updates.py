"""Update descriptors: a single mutating operator applied to one document."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from repository.codec import storage_path, to_storage_value
from repository.exceptions import PredicateTranslationError
from repository.filters import check_field_name

PUSH = '$push'
ADD_TO_SET = '$addToSet'
REPLACE = 'replace'


@dataclass(frozen=True)
class Update:
    """Field/value pair with the operator to apply.

    For ``REPLACE`` the ``value`` is the whole replacement entity and
    ``field`` is unused.
    """

    operator: str
    value: Any
    field: Optional[str] = None

    def __post_init__(self):
        if self.operator not in (PUSH, ADD_TO_SET, REPLACE):
            raise PredicateTranslationError(f"Unsupported update operator {self.operator!r}")
        if self.operator != REPLACE:
            check_field_name(self.field)

    @property
    def is_replacement(self) -> bool:
        return self.operator == REPLACE

    def to_mongo(self, entity_type: Any = None) -> Dict[str, Any]:
        """Return the ``update_one`` document for array operators.

        ``field`` is an attribute path, mapped to its stored name when
        ``entity_type`` is given.
        """
        if self.is_replacement:
            raise PredicateTranslationError("A replacement has no update document")
        stored_field = storage_path(entity_type, self.field)
        return {self.operator: {stored_field: to_storage_value(self.value)}}


def push(field: str, value: Any) -> Update:
    """Append ``value`` to the array ``field``, duplicates allowed."""
    return Update(PUSH, value, field)


def add_to_set(field: str, value: Any) -> Update:
    """Append ``value`` to the array ``field`` unless already present."""
    return Update(ADD_TO_SET, value, field)


def replace(entity: Any) -> Update:
    """Replace the whole matched document with ``entity``."""
    return Update(REPLACE, entity)
