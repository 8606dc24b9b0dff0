"""Type registry and JSON codec for events, notifications and mementos.

The registry is a closed, explicit ``tag -> dataclass`` table populated at
startup and frozen before the first read.  Stored envelopes carry the tag,
never a language-level type path, so renaming a class only requires
registering the old tag as an alias.

The codec turns frozen dataclasses into UTF-8 JSON and back:

*  ``Decimal`` and ``datetime`` survive the round trip.
*  Tuples come back as tuples, not lists.
*  Unknown payload fields are ignored and missing ones take the field
   default, so event schemas can evolve in both directions.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import types
import typing
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

from aggregate_store.core.errors import (
    RegistryFrozen,
    SerializationError,
    UnknownEventType,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class EventRegistry:
    """Maps stable string tags to event / notification / memento classes."""

    def __init__(self) -> None:
        self._by_name: dict[str, type] = {}
        self._names: dict[type, str] = {}
        self._frozen = False

    def register(
        self,
        cls: type,
        name: str | None = None,
        *,
        aliases: tuple[str, ...] = (),
    ) -> type:
        """Register *cls* under *name* (default: its ``__qualname__``).

        Usable as a plain call or as a class decorator.  *aliases* resolve to
        the same class on read but are never written.
        """
        if self._frozen:
            raise RegistryFrozen(
                f"Cannot register {cls.__qualname__}: registry is frozen"
            )
        if not dataclasses.is_dataclass(cls):
            raise TypeError(f"{cls.__qualname__} must be a dataclass")

        tag = name or cls.__qualname__
        for key in (tag, *aliases):
            existing = self._by_name.get(key)
            if existing is not None and existing is not cls:
                raise ValueError(
                    f"Tag {key!r} already maps to {existing.__qualname__}"
                )
            self._by_name[key] = cls
        self._names.setdefault(cls, tag)
        return cls

    def register_all(self, classes: typing.Iterable[type]) -> None:
        for cls in classes:
            self.register(cls)

    def freeze(self) -> None:
        """Close the registry.  Further registrations raise ``RegistryFrozen``."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def name_of(self, cls: type) -> str:
        try:
            return self._names[cls]
        except KeyError:
            raise SerializationError(
                f"{cls.__qualname__} is not registered"
            ) from None

    def resolve(self, name: str) -> type:
        try:
            return self._by_name[name]
        except KeyError:
            raise UnknownEventType(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self._names)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class ISerializer(Protocol):
    """Codec between typed objects and opaque versioned payloads."""

    def type_name_of(self, obj: Any) -> str:
        """Stable tag stored next to the payload."""
        ...

    def serialize(self, obj: Any) -> bytes:
        ...

    def deserialize(self, payload: bytes, type_name: str) -> Any:
        """Rebuild a typed object.  Raises ``SerializationError``."""
        ...

    def decode(self, payload: bytes) -> dict[str, Any]:
        """Untyped view of a payload, for criteria predicates."""
        ...


# ---------------------------------------------------------------------------
# JSON helpers (Decimal / datetime safe)
# ---------------------------------------------------------------------------

class _PayloadEncoder(json.JSONEncoder):
    """Handles Decimal and datetime serialization."""

    def default(self, o: Any) -> Any:
        if isinstance(o, Decimal):
            return str(o)
        if isinstance(o, datetime):
            return o.isoformat()
        return super().default(o)


def _coerce(value: Any, hint: Any) -> Any:
    """Convert a JSON value back to the Python type named by *hint*."""
    if value is None or hint is Any:
        return value

    origin = typing.get_origin(hint)
    args = typing.get_args(hint)

    if origin is typing.Union or origin is types.UnionType:
        candidates = [a for a in args if a is not type(None)]
        return _coerce(value, candidates[0]) if candidates else value
    if hint is Decimal:
        return Decimal(str(value))
    if hint is datetime:
        return datetime.fromisoformat(value) if isinstance(value, str) else value
    if origin is tuple and isinstance(value, list):
        if len(args) == 2 and args[1] is Ellipsis:
            return tuple(_coerce(v, args[0]) for v in value)
        return tuple(
            _coerce(v, args[i] if i < len(args) else Any)
            for i, v in enumerate(value)
        )
    if origin is list and isinstance(value, list):
        inner = args[0] if args else Any
        return [_coerce(v, inner) for v in value]
    return value


class JsonSerializer:
    """JSON codec over an :class:`EventRegistry`."""

    def __init__(self, registry: EventRegistry) -> None:
        self._registry = registry
        self._hints: dict[type, dict[str, Any]] = {}

    @property
    def registry(self) -> EventRegistry:
        return self._registry

    def type_name_of(self, obj: Any) -> str:
        return self._registry.name_of(type(obj))

    def serialize(self, obj: Any) -> bytes:
        if not dataclasses.is_dataclass(obj) or isinstance(obj, type):
            raise SerializationError(
                f"Cannot serialize {type(obj).__name__}: not a dataclass instance"
            )
        try:
            raw = json.dumps(
                dataclasses.asdict(obj), cls=_PayloadEncoder, sort_keys=True,
            )
        except (TypeError, ValueError) as exc:
            raise SerializationError(
                f"Cannot serialize {type(obj).__name__}: {exc}"
            ) from exc
        return raw.encode("utf-8")

    def decode(self, payload: bytes) -> dict[str, Any]:
        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise SerializationError(f"Malformed payload: {exc}") from exc
        if not isinstance(data, dict):
            raise SerializationError(
                f"Payload must be a JSON object, got {type(data).__name__}"
            )
        return data

    def deserialize(self, payload: bytes, type_name: str) -> Any:
        cls = self._registry.resolve(type_name)
        data = self.decode(payload)
        hints = self._field_hints(cls)

        kwargs: dict[str, Any] = {}
        for name, hint in hints.items():
            if name not in data:
                continue
            try:
                kwargs[name] = _coerce(data[name], hint)
            except (ValueError, TypeError, InvalidOperation) as exc:
                raise SerializationError(
                    f"{type_name}.{name}: cannot restore {data[name]!r}: {exc}"
                ) from exc

        ignored = set(data) - set(hints)
        if ignored:
            logger.debug("Ignoring unknown fields %s on %s", sorted(ignored), type_name)

        try:
            return cls(**kwargs)
        except TypeError as exc:
            raise SerializationError(f"Cannot build {type_name}: {exc}") from exc

    def _field_hints(self, cls: type) -> dict[str, Any]:
        hints = self._hints.get(cls)
        if hints is None:
            resolved = typing.get_type_hints(cls)
            hints = {
                f.name: resolved.get(f.name, Any)
                for f in dataclasses.fields(cls)
                if f.init
            }
            self._hints[cls] = hints
        return hints
