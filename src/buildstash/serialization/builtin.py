"""
Built-in serializers.

Registers serializers for the standard container types, byte arrays,
compiled regular expressions, paths and exceptions on a registry. The
process-wide registry gets them when this module is imported.
"""

from __future__ import annotations

import builtins
import re
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any

from .context import ObjectReader, ObjectWriter
from .registry import SerializerRegistry, default_registry

REQUEST = "buildstash.serialization.builtin"


def _ordered(items: Any) -> list[Any]:
    """Deterministic order for set members."""
    try:
        return sorted(items)
    except TypeError:
        return sorted(items, key=lambda item: (type(item).__qualname__, repr(item)))


class ListSerializer:
    def serialize(self, obj: list[Any], context: ObjectWriter) -> None:
        context.write(len(obj))
        for item in obj:
            context.write(item)

    def deserialize(self, context: ObjectReader) -> list[Any]:
        result: list[Any] = []
        context.register(result)
        for _ in range(context.read()):
            result.append(context.read())
        return result


class TupleSerializer:
    """Tuples get their identity slot once their items are read."""

    memoize_after_children = True

    def serialize(self, obj: tuple[Any, ...], context: ObjectWriter) -> None:
        context.write(len(obj))
        for item in obj:
            context.write(item)

    def deserialize(self, context: ObjectReader) -> tuple[Any, ...]:
        return tuple(context.read() for _ in range(context.read()))


class DictSerializer:
    """Mappings keep insertion order."""

    def serialize(self, obj: dict[Any, Any], context: ObjectWriter) -> None:
        context.write(len(obj))
        for key, value in obj.items():
            context.write(key)
            context.write(value)

    def deserialize(self, context: ObjectReader) -> dict[Any, Any]:
        result: dict[Any, Any] = {}
        context.register(result)
        for _ in range(context.read()):
            key = context.read()
            result[key] = context.read()
        return result


class SetSerializer:
    def serialize(self, obj: set[Any], context: ObjectWriter) -> None:
        items = _ordered(obj)
        context.write(len(items))
        for item in items:
            context.write(item)

    def deserialize(self, context: ObjectReader) -> set[Any]:
        result: set[Any] = set()
        context.register(result)
        for _ in range(context.read()):
            result.add(context.read())
        return result


class FrozenSetSerializer:
    memoize_after_children = True

    def serialize(self, obj: frozenset[Any], context: ObjectWriter) -> None:
        items = _ordered(obj)
        context.write(len(items))
        for item in items:
            context.write(item)

    def deserialize(self, context: ObjectReader) -> frozenset[Any]:
        return frozenset(context.read() for _ in range(context.read()))


class ByteArraySerializer:
    def serialize(self, obj: bytearray, context: ObjectWriter) -> None:
        context.write(bytes(obj))

    def deserialize(self, context: ObjectReader) -> bytearray:
        return bytearray(context.read())


class PatternSerializer:
    def serialize(self, obj: re.Pattern[Any], context: ObjectWriter) -> None:
        context.write(obj.pattern)
        context.write(int(obj.flags))

    def deserialize(self, context: ObjectReader) -> re.Pattern[Any]:
        pattern = context.read()
        flags = context.read()
        # re.compile adds UNICODE itself for str patterns and rejects it for bytes
        if isinstance(pattern, bytes):
            flags &= ~re.UNICODE
        return re.compile(pattern, flags)


class PathSerializer:
    def __init__(self, cls: type) -> None:
        self.cls = cls

    def serialize(self, obj: Any, context: ObjectWriter) -> None:
        context.write(str(obj))

    def deserialize(self, context: ObjectReader) -> Any:
        return self.cls(context.read())


class ExceptionSerializer:
    """
    Exceptions keep their type name and arguments.

    Builtin exception types are restored as themselves; any other type is
    restored as ``Exception`` carrying an ``original_type`` attribute.
    Arguments that are not primitives are written as their ``repr``.
    """

    def serialize(self, obj: BaseException, context: ObjectWriter) -> None:
        context.write(type(obj).__module__)
        context.write(type(obj).__qualname__)
        args = [
            arg if isinstance(arg, (str, int, float, bool, type(None))) else repr(arg)
            for arg in obj.args
        ]
        context.write(len(args))
        for arg in args:
            context.write(arg)

    def deserialize(self, context: ObjectReader) -> BaseException:
        module = context.read()
        qualname = context.read()
        args = [context.read() for _ in range(context.read())]

        cls = getattr(builtins, qualname, None) if module == "builtins" else None
        if isinstance(cls, type) and issubclass(cls, BaseException):
            try:
                return cls(*args)
            except TypeError:
                pass
        error = Exception(*args)
        error.original_type = f"{module}.{qualname}"  # type: ignore[attr-defined]
        return error


def register_builtin_serializers(registry: SerializerRegistry) -> None:
    registry.register(list, REQUEST, "list", ListSerializer())
    registry.register(tuple, REQUEST, "tuple", TupleSerializer())
    registry.register(dict, REQUEST, "dict", DictSerializer())
    registry.register(set, REQUEST, "set", SetSerializer())
    registry.register(frozenset, REQUEST, "frozenset", FrozenSetSerializer())
    registry.register(bytearray, REQUEST, "bytearray", ByteArraySerializer())
    registry.register(re.Pattern, REQUEST, "re.Pattern", PatternSerializer())
    registry.register(PurePosixPath, REQUEST, "PurePosixPath", PathSerializer(PurePosixPath))
    registry.register(PureWindowsPath, REQUEST, "PureWindowsPath", PathSerializer(PureWindowsPath))
    concrete_path = type(Path())
    registry.register(concrete_path, REQUEST, "Path", PathSerializer(Path))
    registry.register(BaseException, REQUEST, "Exception", ExceptionSerializer(), subclasses=True)


register_builtin_serializers(default_registry)
