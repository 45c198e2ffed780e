"""Base entity model for documents stored through the data-access layer.

Entities are plain dataclasses. The identity lives in the ``id``
attribute and is persisted under MongoDB's ``_id`` key. ``DocumentBase``
is generic over the key type, so ``Order(DocumentBase[OrderKey])``
decodes its stored ``_id`` back into an ``OrderKey``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

ID_FIELD = '_id'

K = TypeVar('K')


def identity_field(default: Any = None) -> Any:
    """Declare a dataclass field that is stored as the document ``_id``.

    Args:
        default: Default identity value, ``None`` lets the store assign one.

    Returns:
        A dataclass field carrying the ``bson_name`` alias.
    """
    return field(default=default, metadata={'bson_name': ID_FIELD})


@dataclass
class DocumentBase(Generic[K]):
    """Abstract identity-carrying entity.

    Subclasses add their own fields after ``id``; since ``id`` has a
    default, every subclass field needs a default as well.

    Attributes:
        id: Scalar or composite document key. Immutable once assigned.
    """

    id: Optional[K] = identity_field()

    def __setattr__(self, name: str, value: Any) -> None:
        if name == 'id':
            current = self.__dict__.get('id')
            if current is not None and value != current:
                raise AttributeError(
                    f"{type(self).__name__}.id is already set to {current!r}"
                )
        super().__setattr__(name, value)

    def has_identity(self) -> bool:
        """Return True once an identity value has been assigned."""
        return self.id is not None
