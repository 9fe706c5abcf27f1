"""
Object graph writer and reader.

An :class:`ObjectWriter` turns a graph of Python objects into a flat list of
tokens made of JSON primitives; an :class:`ObjectReader` rebuilds the graph
from those tokens. Primitive values are written as themselves. Everything
else is written as an ``["o", tag]`` marker followed by whatever fields its
serializer writes.

Each non-primitive object gets the next index of a per-stream identity table
the first time it is written. Writing the same instance again emits an
``["r", index]`` back-reference, so shared sub-objects stay shared after a
round trip. The reader assigns indices in the same order. Serializers that
call :meth:`ObjectReader.register` before reading their children make
cyclic graphs round-trip as well.

Immutable containers (tuples, frozensets) cannot be published before their
children exist. Like pickle, they get their identity slot after their
children are written. If a child already wrote the same container in full
(the container sits on a cycle through a mutable child), the outer copy is
followed by a ``["d", index]`` marker and the reader discards the copy it
just built in favour of the one already in the table.

Token markers:
    ["o", tag]      object header
    ["r", index]    back-reference
    ["b", base64]   bytes
    ["f", repr]     non-finite float
    ["i", digits]   integer outside the signed 64-bit range
    ["d", index]    discard the immutable container just read, use the indexed one
"""

from __future__ import annotations

import base64
import math
from typing import Any

from ..utils.error_handling import EntryCorruptError
from .registry import SerializerRegistry, default_registry

_PRIMITIVES = (type(None), bool, str)
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class _Pending:
    """Identity slot whose object is still being constructed."""


class _Broken:
    """Identity slot assigned inside an entry that failed to load."""


_PENDING = _Pending()
_BROKEN = _Broken()


class ObjectWriter:
    """Serialization context passed to ``ObjectSerializer.serialize``."""

    def __init__(self, registry: SerializerRegistry | None = None) -> None:
        self.registry = registry or default_registry
        self.tokens: list[Any] = []
        self._memo: dict[int, int] = {}
        # Keeps written objects alive so their ids are not reused mid-stream.
        self._written: list[Any] = []

    @property
    def object_count(self) -> int:
        return len(self._written)

    def write(self, value: Any) -> None:
        value_type = type(value)
        if value_type in _PRIMITIVES:
            self.tokens.append(value)
            return
        if value_type is int:
            if _INT64_MIN <= value <= _INT64_MAX:
                self.tokens.append(value)
            else:
                self.tokens.append(["i", str(value)])
            return
        if value_type is float:
            if math.isfinite(value):
                self.tokens.append(value)
            else:
                self.tokens.append(["f", repr(value)])
            return
        if value_type is bytes:
            self.tokens.append(["b", base64.b64encode(value).decode("ascii")])
            return

        index = self._memo.get(id(value))
        if index is not None:
            self.tokens.append(["r", index])
            return

        tag, serializer = self.registry.lookup_type(value_type)
        if getattr(serializer, "memoize_after_children", False):
            self.tokens.append(["o", tag])
            serializer.serialize(value, self)
            index = self._memo.get(id(value))
            if index is not None:
                self.tokens.append(["d", index])
            else:
                self._remember(value)
            return

        self._remember(value)
        self.tokens.append(["o", tag])
        serializer.serialize(value, self)

    def _remember(self, value: Any) -> None:
        self._memo[id(value)] = len(self._written)
        self._written.append(value)

    def mark(self) -> tuple[int, int]:
        """Position to roll back to if the next value fails to serialize."""
        return len(self.tokens), len(self._written)

    def rollback(self, mark: tuple[int, int]) -> None:
        token_count, object_count = mark
        del self.tokens[token_count:]
        for obj in self._written[object_count:]:
            self._memo.pop(id(obj), None)
        del self._written[object_count:]


class ObjectReader:
    """Deserialization context passed to ``ObjectSerializer.deserialize``."""

    def __init__(self, tokens: list[Any], registry: SerializerRegistry | None = None) -> None:
        self.registry = registry or default_registry
        self.tokens = tokens
        self.position = 0
        self._objects: list[Any] = []
        self._constructing: list[int] = []

    @property
    def object_count(self) -> int:
        return len(self._objects)

    def at_end(self) -> bool:
        return self.position >= len(self.tokens)

    def _next_token(self) -> Any:
        if self.position >= len(self.tokens):
            raise EntryCorruptError("Unexpected end of serialized stream")
        token = self.tokens[self.position]
        self.position += 1
        return token

    def read(self) -> Any:
        token = self._next_token()
        if not isinstance(token, list):
            return token
        if len(token) != 2:
            raise EntryCorruptError(f"Malformed stream marker at token {self.position - 1}")

        marker, arg = token
        if marker == "o":
            return self._read_object(arg)
        if marker == "r":
            return self._resolve_reference(arg)
        if marker == "b":
            return base64.b64decode(arg)
        if marker == "f":
            return float(arg)
        if marker == "i":
            return int(arg)
        raise EntryCorruptError(f"Unknown stream marker {marker!r}")

    def register(self, obj: Any) -> None:
        """Publish the object under construction so nested back-references resolve to it."""
        if not self._constructing or self._constructing[-1] < 0:
            raise EntryCorruptError("register() called outside of a registrable deserialize()")
        self._objects[self._constructing[-1]] = obj

    def skip_to(self, position: int, start_count: int, object_count: int) -> None:
        """Resume after an entry that failed to load; its identity slots become unusable."""
        self.position = position
        del self._constructing[:]
        del self._objects[start_count:]
        self._objects.extend(_BROKEN for _ in range(object_count - start_count))

    def _read_object(self, tag: str) -> Any:
        serializer = self.registry.lookup_tag(tag)
        if getattr(serializer, "memoize_after_children", False):
            return self._read_immutable(serializer)

        index = len(self._objects)
        self._objects.append(_PENDING)
        self._constructing.append(index)
        try:
            obj = serializer.deserialize(self)
        finally:
            self._constructing.pop()
        if self._objects[index] is _PENDING:
            self._objects[index] = obj
        return obj

    def _read_immutable(self, serializer: Any) -> Any:
        # -1: no identity slot to register into while the children are read
        self._constructing.append(-1)
        try:
            obj = serializer.deserialize(self)
        finally:
            self._constructing.pop()

        if self.position < len(self.tokens):
            token = self.tokens[self.position]
            if isinstance(token, list) and len(token) == 2 and token[0] == "d":
                self.position += 1
                return self._resolve_reference(token[1])
        self._objects.append(obj)
        return obj

    def _resolve_reference(self, index: Any) -> Any:
        if not isinstance(index, int) or not 0 <= index < len(self._objects):
            raise EntryCorruptError(f"Back-reference {index!r} out of range")
        obj = self._objects[index]
        if obj is _PENDING:
            raise EntryCorruptError(f"Back-reference {index} to an object still under construction")
        if obj is _BROKEN:
            raise EntryCorruptError(f"Back-reference {index} into an entry that failed to load")
        return obj
