"""Entity <-> document conversion.

The codec replaces per-repository ``_entity_to_document`` /
``_document_to_entity`` pairs with one generic implementation driven by
dataclass fields and their type hints. Nested dataclasses, including a
composite ``id``, are stored as embedded documents and rebuilt on read.
Whether unknown stored fields are tolerated is an explicit codec option
chosen when the store handle is built.
"""
from __future__ import annotations

import dataclasses
import functools
import logging
import types
import typing
from typing import Any, Dict, Generic, List, Mapping, Optional, Type, TypeVar, Union

from repository.exceptions import DocumentDecodeError

logger = logging.getLogger(__name__)

T = TypeVar('T')

_UNION_TYPES = (Union, types.UnionType)


def _storage_name(entity_field: dataclasses.Field) -> str:
    return entity_field.metadata.get('bson_name', entity_field.name)


def _is_dataclass_type(candidate: Any) -> bool:
    return isinstance(candidate, type) and dataclasses.is_dataclass(candidate)


def _substitute(hint: Any, type_vars: Mapping[Any, Any]) -> Any:
    if isinstance(hint, TypeVar):
        return type_vars.get(hint, Any)
    origin = typing.get_origin(hint)
    args = typing.get_args(hint)
    if origin in _UNION_TYPES:
        return Union[tuple(_substitute(arg, type_vars) for arg in args)]
    if origin is list and args:
        return List[_substitute(args[0], type_vars)]
    return hint


def _type_var_bindings(entity_type: type) -> Dict[Any, Any]:
    """Map type variables of generic bases (e.g. ``DocumentBase[K]``) to concrete types."""
    bindings: Dict[Any, Any] = {}
    for klass in reversed(entity_type.__mro__):
        for base in klass.__dict__.get('__orig_bases__', ()):
            origin = typing.get_origin(base)
            if origin is Generic:
                continue
            parameters = getattr(origin, '__parameters__', ())
            for parameter, argument in zip(parameters, typing.get_args(base)):
                bindings[parameter] = _substitute(argument, bindings)
    return bindings


@functools.lru_cache(maxsize=None)
def field_types(entity_type: type) -> Dict[str, Any]:
    """Resolved type hints of a dataclass, with generic key types bound.

    Returns an empty mapping when the hints cannot be evaluated (e.g. a
    class defined inside a function referencing local names); values are
    then decoded as stored.
    """
    try:
        hints = typing.get_type_hints(entity_type)
    except (NameError, TypeError) as err:
        logger.debug("Cannot resolve type hints of %s: %s", entity_type.__name__, err)
        return {}
    bindings = _type_var_bindings(entity_type)
    return {name: _substitute(hint, bindings) for name, hint in hints.items()}


def _dataclass_target(hint: Any) -> Optional[type]:
    if _is_dataclass_type(hint):
        return hint
    if typing.get_origin(hint) in _UNION_TYPES:
        for arg in typing.get_args(hint):
            if _is_dataclass_type(arg):
                return arg
    return None


def _fields_by_name(entity_type: Any) -> Dict[str, dataclasses.Field]:
    if not _is_dataclass_type(entity_type):
        return {}
    return {entity_field.name: entity_field for entity_field in dataclasses.fields(entity_type)}


def storage_path(entity_type: Any, path: str) -> str:
    """Translate an attribute path (``id``, ``id.tenant``) to its stored path.

    Segments that are not dataclass attributes are kept as given, so
    storage names such as ``_id`` pass through unchanged.
    """
    current = entity_type
    segments = []
    for segment in path.split('.'):
        entity_field = _fields_by_name(current).get(segment)
        if entity_field is None:
            segments.append(segment)
            current = None
            continue
        segments.append(_storage_name(entity_field))
        hint = field_types(current).get(segment)
        if typing.get_origin(hint) is list and typing.get_args(hint):
            # dot notation reaches into array elements
            hint = typing.get_args(hint)[0]
        current = _dataclass_target(hint)
    return '.'.join(segments)


def _encode_dataclass(entity: Any, skip_empty_identity: bool) -> Dict[str, Any]:
    document: Dict[str, Any] = {}
    for entity_field in dataclasses.fields(entity):
        key = _storage_name(entity_field)
        value = getattr(entity, entity_field.name)
        if skip_empty_identity and key == '_id' and value is None:
            continue
        document[key] = to_storage_value(value)
    return document


def to_storage_value(value: Any) -> Any:
    """Convert nested dataclasses (honouring ``bson_name`` aliases) to documents."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _encode_dataclass(value, skip_empty_identity=False)
    if isinstance(value, (list, tuple)):
        return [to_storage_value(item) for item in value]
    if isinstance(value, dict):
        return {key: to_storage_value(item) for key, item in value.items()}
    return value


class DocumentCodec:
    """Converts dataclass entities (or plain dicts) to and from documents.

    Args:
        ignore_extra_fields: Drop stored fields the entity type does not
            declare instead of failing. Applies to every entity type
            decoded through this codec, nested ones included.
    """

    def __init__(self, ignore_extra_fields: bool = True):
        self._ignore_extra_fields = ignore_extra_fields

    @property
    def ignore_extra_fields(self) -> bool:
        return self._ignore_extra_fields

    def encode(self, entity: Any) -> Dict[str, Any]:
        """Convert an entity to a MongoDB document.

        A ``None`` identity is left out so the store assigns an ``_id``.

        Args:
            entity: Dataclass instance or mapping.

        Returns:
            Dictionary suitable for the driver.

        Raises:
            TypeError: If the entity is neither a dataclass nor a mapping.
        """
        if isinstance(entity, Mapping):
            return dict(entity)
        if not dataclasses.is_dataclass(entity) or isinstance(entity, type):
            raise TypeError(
                f"Cannot encode {type(entity).__name__}: expected a dataclass or mapping"
            )
        return _encode_dataclass(entity, skip_empty_identity=True)

    def decode(self, entity_type: Type[T], document: Mapping[str, Any]) -> T:
        """Convert a MongoDB document to ``entity_type``.

        Args:
            entity_type: Target dataclass, or ``dict`` for raw documents.
            document: Document returned by the driver.

        Returns:
            The decoded entity.

        Raises:
            DocumentDecodeError: On unknown fields (when not ignored),
                missing required fields, or an unsupported entity type.
        """
        if entity_type is dict:
            return dict(document)  # type: ignore[return-value]
        if not _is_dataclass_type(entity_type):
            raise DocumentDecodeError(
                f"{getattr(entity_type, '__name__', entity_type)!r} is not a dataclass"
            )
        return self._decode_dataclass(entity_type, document)

    def _decode_dataclass(self, entity_type: Type[T], document: Mapping[str, Any]) -> T:
        attribute_names = {
            _storage_name(entity_field): entity_field.name
            for entity_field in dataclasses.fields(entity_type)
            if entity_field.init
        }
        hints = field_types(entity_type)

        kwargs: Dict[str, Any] = {}
        unknown = []
        for key, value in document.items():
            if key in attribute_names:
                name = attribute_names[key]
                kwargs[name] = self._decode_value(hints.get(name), value)
            else:
                unknown.append(key)

        if unknown:
            if not self._ignore_extra_fields:
                raise DocumentDecodeError(
                    f"Unknown fields for {entity_type.__name__}: {', '.join(sorted(unknown))}"
                )
            logger.debug(
                "Ignoring unknown fields %s for %s", unknown, entity_type.__name__
            )

        try:
            return entity_type(**kwargs)
        except TypeError as err:
            raise DocumentDecodeError(
                f"Cannot build {entity_type.__name__} from document: {err}"
            ) from err

    def _decode_value(self, hint: Any, value: Any) -> Any:
        if hint is None or value is None:
            return value
        target = _dataclass_target(hint)
        if target is not None and isinstance(value, Mapping):
            return self._decode_dataclass(target, value)
        if typing.get_origin(hint) is list and isinstance(value, list):
            args = typing.get_args(hint)
            if args:
                return [self._decode_value(args[0], item) for item in value]
        return value
