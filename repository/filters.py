"""Predicate builder producing MongoDB filter documents.

Predicates are composed from ``Field`` comparisons and the ``&``, ``|``
and ``~`` combinators, so only filters MongoDB can express are ever
built::

    (Field('age') >= 18) & (Field('name') == 'a')
    where(university_name='U', department_name='D')
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping

from repository.codec import storage_path, to_storage_value
from repository.exceptions import PredicateTranslationError


def check_field_name(name: Any) -> str:
    if not isinstance(name, str) or not name:
        raise PredicateTranslationError(f"Field name must be a non-empty string, got {name!r}")
    if name.startswith('$'):
        raise PredicateTranslationError(f"Field name cannot start with '$': {name!r}")
    return name


class Filter:
    """An immutable MongoDB filter expression."""

    __slots__ = ('_expression',)

    def __init__(self, expression: Mapping[str, Any]):
        self._expression = dict(expression)

    def to_mongo(self) -> Dict[str, Any]:
        """Return the filter as a driver-ready document."""
        return dict(self._expression)

    def __and__(self, other: 'Filter') -> 'Filter':
        return and_(self, other)

    def __or__(self, other: 'Filter') -> 'Filter':
        return or_(self, other)

    def __invert__(self) -> 'Filter':
        return Filter({'$nor': [self.to_mongo()]})

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Filter):
            return NotImplemented
        return self._expression == other._expression

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"Filter({self._expression!r})"


class Field:
    """Reference to a document field used on the left side of a comparison.

    ``Field('_id') == 1`` builds a ``Filter``; it does not compare fields.
    """

    __slots__ = ('name',)

    def __init__(self, name: str):
        self.name = check_field_name(name)

    def _compare(self, operator: str, value: Any) -> Filter:
        return Filter({self.name: {operator: to_storage_value(value)}})

    def __eq__(self, value: Any) -> Filter:  # type: ignore[override]
        return Filter({self.name: to_storage_value(value)})

    def __ne__(self, value: Any) -> Filter:  # type: ignore[override]
        return self._compare('$ne', value)

    def __gt__(self, value: Any) -> Filter:
        return self._compare('$gt', value)

    def __ge__(self, value: Any) -> Filter:
        return self._compare('$gte', value)

    def __lt__(self, value: Any) -> Filter:
        return self._compare('$lt', value)

    def __le__(self, value: Any) -> Filter:
        return self._compare('$lte', value)

    __hash__ = None  # type: ignore[assignment]

    def in_(self, values: Iterable[Any]) -> Filter:
        return Filter({self.name: {'$in': [to_storage_value(v) for v in values]}})

    def not_in(self, values: Iterable[Any]) -> Filter:
        return Filter({self.name: {'$nin': [to_storage_value(v) for v in values]}})

    def exists(self, present: bool = True) -> Filter:
        return Filter({self.name: {'$exists': present}})

    def __repr__(self) -> str:
        return f"Field({self.name!r})"


def _flatten(operator: str, filters: Iterable[Filter]) -> List[Dict[str, Any]]:
    clauses: List[Dict[str, Any]] = []
    for item in filters:
        if not isinstance(item, Filter):
            raise PredicateTranslationError(f"Cannot combine {item!r} with {operator}")
        expression = item.to_mongo()
        if list(expression) == [operator]:
            clauses.extend(expression[operator])
        else:
            clauses.append(expression)
    return clauses


def and_(*filters: Filter) -> Filter:
    """Conjunction of ``filters``; no arguments matches every document."""
    clauses = _flatten('$and', filters)
    if not clauses:
        return match_all()
    if len(clauses) == 1:
        return Filter(clauses[0])
    return Filter({'$and': clauses})


def or_(*filters: Filter) -> Filter:
    """Disjunction of ``filters``."""
    clauses = _flatten('$or', filters)
    if not clauses:
        raise PredicateTranslationError("or_() needs at least one filter")
    if len(clauses) == 1:
        return Filter(clauses[0])
    return Filter({'$or': clauses})


def where(**equalities: Any) -> Filter:
    """Shorthand for an AND of field equalities."""
    return and_(*(Field(name) == value for name, value in equalities.items()))


def match_all() -> Filter:
    return Filter({})


_LOGICAL_OPERATORS = ('$and', '$or', '$nor')


def _rename_fields(expression: Mapping[str, Any], entity_type: Any) -> Dict[str, Any]:
    renamed: Dict[str, Any] = {}
    for key, value in expression.items():
        if key in _LOGICAL_OPERATORS:
            renamed[key] = [_rename_fields(clause, entity_type) for clause in value]
        else:
            renamed[storage_path(entity_type, key)] = value
    return renamed


def to_filter(predicate: Any, entity_type: Any = None) -> Dict[str, Any]:
    """Translate a predicate into a MongoDB filter document.

    Field names of a ``Filter`` are entity attribute paths; with an
    ``entity_type`` they are mapped to stored names, so ``where(id=1)``
    on a ``DocumentBase`` entity becomes ``{'_id': 1}``. Raw mappings are
    taken as native filters and sent unchanged.

    Args:
        predicate: A ``Filter`` or an already-native filter mapping.
        entity_type: Dataclass whose field aliases apply.

    Returns:
        Filter document for the driver.

    Raises:
        PredicateTranslationError: For anything else, e.g. a lambda.
    """
    if isinstance(predicate, Filter):
        return _rename_fields(predicate.to_mongo(), entity_type)
    if isinstance(predicate, Mapping):
        return dict(predicate)
    if callable(predicate):
        raise PredicateTranslationError(
            "Callables cannot be translated to a MongoDB filter; build one with Field()"
        )
    raise PredicateTranslationError(f"Unsupported predicate: {predicate!r}")
