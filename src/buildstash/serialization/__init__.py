"""
Serialization package for buildstash.

Makes arbitrary in-memory build artifacts durable through an explicit
registry of per-type serializers and an identity-preserving object stream.

Public API:
    SerializerRegistry: Maps classes to type tags and serializers
    default_registry: Process-wide registry with the built-in serializers
    register: Register a serializer on the process-wide registry
    serializable: Dataclass decorator form of ``register``
    ObjectWriter / ObjectReader: Serialization contexts
    dumps / loads: Serialize a single object graph to bytes and back
"""

from __future__ import annotations

from typing import Any

from . import builtin as _builtin  # noqa: F401  registers the built-in serializers
from .codec import decode_stream, encode_stream
from .context import ObjectReader, ObjectWriter
from .registry import (
    DataclassSerializer,
    EnumSerializer,
    ObjectSerializer,
    SerializerRegistry,
    default_registry,
    register,
    serializable,
)


def create_registry() -> SerializerRegistry:
    """A fresh registry holding only the built-in serializers."""
    registry = SerializerRegistry()
    _builtin.register_builtin_serializers(registry)
    return registry


def dumps(value: Any, registry: SerializerRegistry | None = None) -> bytes:
    """Serialize an object graph to compressed bytes."""
    writer = ObjectWriter(registry)
    writer.write(value)
    return encode_stream(writer.tokens)


def loads(data: bytes, registry: SerializerRegistry | None = None) -> Any:
    """Rebuild an object graph written by :func:`dumps`."""
    return ObjectReader(decode_stream(data), registry).read()


__all__ = [
    "DataclassSerializer",
    "EnumSerializer",
    "ObjectReader",
    "ObjectSerializer",
    "ObjectWriter",
    "create_registry",
    "SerializerRegistry",
    "default_registry",
    "dumps",
    "loads",
    "register",
    "serializable",
]
