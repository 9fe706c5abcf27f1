"""
Serializer registry for buildstash.

Maps a Python class to a stable type tag and an :class:`ObjectSerializer`.
Writers look serializers up by the exact runtime type of a value; readers look
them up by the tag found in the stream. Tags have the form
``"{request}/{name}"`` where ``request`` is the import path of the module
that performs the registration. When a reader meets a tag that is not known
yet it imports ``request`` once, giving that module the chance to register its
serializers, and retries.

Example:
    >>> from dataclasses import dataclass
    >>> from buildstash.serialization import serializable
    >>>
    >>> @serializable("myplugin.models")
    ... @dataclass
    ... class ModuleOutput:
    ...     source: str
    ...     exports: list[str]
"""

from __future__ import annotations

import dataclasses
import importlib
import threading
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from ..utils.error_handling import UnregisteredTypeError
from ..utils.logging_config import get_logger

if TYPE_CHECKING:
    from .context import ObjectReader, ObjectWriter

T = TypeVar("T")

logger = get_logger()


class ObjectSerializer(Protocol):
    """Writes and reads the fields of one type, in the same fixed order."""

    def serialize(self, obj: Any, context: ObjectWriter) -> None: ...

    def deserialize(self, context: ObjectReader) -> Any: ...


class DataclassSerializer:
    """Field-ordered serializer for dataclasses (frozen and slotted included)."""

    def __init__(self, cls: type) -> None:
        self.cls = cls
        self.field_names = [f.name for f in dataclasses.fields(cls)]

    def serialize(self, obj: Any, context: ObjectWriter) -> None:
        for name in self.field_names:
            context.write(getattr(obj, name))

    def deserialize(self, context: ObjectReader) -> Any:
        obj = self.cls.__new__(self.cls)
        context.register(obj)
        for name in self.field_names:
            object.__setattr__(obj, name, context.read())
        return obj


class EnumSerializer:
    """Serializes enum members by value."""

    def __init__(self, cls: type[Enum]) -> None:
        self.cls = cls

    def serialize(self, obj: Enum, context: ObjectWriter) -> None:
        context.write(obj.value)

    def deserialize(self, context: ObjectReader) -> Enum:
        return self.cls(context.read())


class SerializerRegistry:
    """
    Explicit registry of serializers keyed by class and by type tag.

    Registration is expected to happen at import time of the producing
    module, before any cache file is read or written.
    """

    def __init__(self, importer: Callable[[str], Any] = importlib.import_module) -> None:
        self._importer = importer
        self._by_type: dict[type, tuple[str, ObjectSerializer]] = {}
        self._by_tag: dict[str, tuple[type, ObjectSerializer]] = {}
        self._inheritable: list[type] = []
        self._imported_requests: set[str] = set()
        self._lock = threading.RLock()

    def register(
        self,
        cls: type,
        request: str,
        name: str,
        serializer: ObjectSerializer,
        *,
        subclasses: bool = False,
    ) -> None:
        """
        Register ``serializer`` for ``cls`` under the tag ``request/name``.

        Args:
            cls: Class whose instances the serializer handles
            request: Import path of the registering module (import hint)
            name: Discriminator, unique within ``request``
            serializer: Object with ``serialize`` and ``deserialize``
            subclasses: Also use this serializer for subclasses of ``cls``
                that have no serializer of their own

        Raises:
            ValueError: If the tag is already taken by another class
        """
        tag = f"{request}/{name}"
        with self._lock:
            existing = self._by_tag.get(tag)
            if existing is not None and existing[0] is not cls:
                raise ValueError(
                    f"Serializer tag {tag!r} already registered for {existing[0].__qualname__}"
                )
            self._by_type[cls] = (tag, serializer)
            self._by_tag[tag] = (cls, serializer)
            if subclasses and cls not in self._inheritable:
                self._inheritable.append(cls)

    def register_dataclass(self, cls: type[T], request: str | None = None, name: str | None = None) -> type[T]:
        self.register(cls, request or cls.__module__, name or cls.__qualname__, DataclassSerializer(cls))
        return cls

    def register_enum(self, cls: type[Enum], request: str | None = None, name: str | None = None) -> None:
        self.register(cls, request or cls.__module__, name or cls.__qualname__, EnumSerializer(cls))

    def is_registered(self, cls: type) -> bool:
        with self._lock:
            return cls in self._by_type

    def tags(self) -> list[str]:
        with self._lock:
            return sorted(self._by_tag)

    def lookup_type(self, cls: type) -> tuple[str, ObjectSerializer]:
        """Resolve the serializer for a runtime type."""
        with self._lock:
            found = self._by_type.get(cls)
            if found is not None:
                return found
            for base in cls.__mro__[1:]:
                if base in self._inheritable:
                    return self._by_type[base]
        raise UnregisteredTypeError(f"{cls.__module__}.{cls.__qualname__}")

    def lookup_tag(self, tag: str) -> ObjectSerializer:
        """Resolve the serializer for a stream tag, importing its module once if needed."""
        with self._lock:
            found = self._by_tag.get(tag)
        if found is not None:
            return found[1]

        request = tag.rpartition("/")[0]
        if request and request not in self._imported_requests:
            self._imported_requests.add(request)
            try:
                self._importer(request)
            except ImportError as e:
                logger.debug(f"Import hint {request!r} for tag {tag!r} failed: {e}")
            with self._lock:
                found = self._by_tag.get(tag)
            if found is not None:
                return found[1]

        raise UnregisteredTypeError(tag)


default_registry = SerializerRegistry()


def register(
    cls: type,
    request: str,
    name: str,
    serializer: ObjectSerializer,
    *,
    subclasses: bool = False,
) -> None:
    """Register a serializer on the process-wide registry."""
    default_registry.register(cls, request, name, serializer, subclasses=subclasses)


def serializable(request: str | None = None, name: str | None = None) -> Callable[[type[T]], type[T]]:
    """Class decorator registering a dataclass on the process-wide registry."""

    def decorator(cls: type[T]) -> type[T]:
        return default_registry.register_dataclass(cls, request, name)

    return decorator
