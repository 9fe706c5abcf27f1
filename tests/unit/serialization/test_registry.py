"""Tests for buildstash.serialization registry and object streams."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import pytest

from buildstash.serialization import (
    ObjectReader,
    ObjectWriter,
    SerializerRegistry,
    create_registry,
    dumps,
    loads,
    serializable,
)
from buildstash.utils.error_handling import EntryCorruptError, UnregisteredTypeError


@serializable("tests.serialization", "Chunk")
@dataclass
class Chunk:
    name: str
    parts: list = field(default_factory=list)
    parent: object = None


@serializable("tests.serialization", "Holder")
@dataclass(eq=False)
class Holder:
    """Hashable by identity, so it can sit inside a frozenset on a cycle."""

    items: object = None


class Color(str, Enum):
    RED = "red"
    BLUE = "blue"


# ---------------------------------------------------------------------------
# Round trips
# ---------------------------------------------------------------------------


class TestRoundTrip:
    """Values survive dumps/loads unchanged."""

    def test_primitives_and_containers(self):
        value = {
            "none": None,
            "flag": True,
            "count": 3,
            "ratio": 0.25,
            "text": "héllo",
            "items": [1, "two", (3, 4)],
            "tags": {"b", "a"},
            "frozen": frozenset({1, 2}),
            "raw": b"\x00\xff",
            "buffer": bytearray(b"abc"),
            "path": Path("/src/app.py"),
        }
        assert loads(dumps(value)) == value

    def test_dict_keeps_insertion_order(self):
        value = {"z": 1, "a": 2, "m": 3}
        assert list(loads(dumps(value))) == ["z", "a", "m"]

    def test_non_finite_floats(self):
        result = loads(dumps([float("inf"), float("-inf"), float("nan")]))
        assert result[0] == math.inf
        assert result[1] == -math.inf
        assert math.isnan(result[2])

    def test_big_integers(self):
        value = [2**63, -(2**63) - 1, 10**40]
        assert loads(dumps(value)) == value

    def test_compiled_pattern(self):
        pattern = re.compile(r"^\w+\.py$", re.IGNORECASE)
        result = loads(dumps(pattern))
        assert result.pattern == pattern.pattern
        assert result.flags == pattern.flags

    def test_registered_dataclass(self):
        chunk = Chunk("main", ["a", "b"])
        result = loads(dumps(chunk))
        assert isinstance(result, Chunk)
        assert result == chunk

    def test_builtin_exception(self):
        result = loads(dumps(KeyError("missing")))
        assert isinstance(result, KeyError)
        assert result.args == ("missing",)

    def test_custom_exception_keeps_type_name(self):
        class BuildFailed(Exception):
            pass

        result = loads(dumps(BuildFailed("loader crashed", 3)))
        assert type(result) is Exception
        assert result.args == ("loader crashed", 3)
        assert result.original_type.endswith("BuildFailed")


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


class TestIdentity:
    """Shared and cyclic object graphs."""

    def test_shared_object_stays_shared(self):
        shared = ["common"]
        result = loads(dumps({"a": shared, "b": shared}))
        assert result["a"] is result["b"]

    def test_equal_but_distinct_objects_stay_distinct(self):
        result = loads(dumps([["x"], ["x"]]))
        assert result[0] == result[1]
        assert result[0] is not result[1]

    def test_self_referencing_list(self):
        value: list = [1]
        value.append(value)
        result = loads(dumps(value))
        assert result[0] == 1
        assert result[1] is result

    def test_dataclass_cycle(self):
        parent = Chunk("parent")
        child = Chunk("child", parent=parent)
        parent.parts.append(child)
        result = loads(dumps(parent))
        assert result.parts[0].parent is result

    def test_tuple_on_a_cycle(self):
        inner: list = []
        value = (inner,)
        inner.append(value)
        result = loads(dumps(value))
        assert isinstance(result, tuple)
        assert result[0][0] is result

    def test_tuple_on_a_cycle_inside_a_container(self):
        inner: list = []
        value = (inner, "tail")
        inner.append(value)
        result = loads(dumps({"entry": value, "again": value}))
        assert result["entry"] is result["again"]
        assert result["entry"][0][0] is result["entry"]
        assert result["entry"][1] == "tail"

    def test_frozenset_on_a_cycle(self):
        holder = Holder()
        value = frozenset({holder})
        holder.items = value
        result = loads(dumps(value))
        (member,) = result
        assert member.items is result

    def test_object_counts_match_with_immutable_cycle(self):
        inner: list = []
        value = (inner,)
        inner.append(value)
        writer = ObjectWriter()
        writer.write(value)
        assert writer.tokens[-1] == ["d", 1]
        reader = ObjectReader(list(writer.tokens))
        reader.read()
        assert reader.at_end()
        assert reader.object_count == writer.object_count == 2

    def test_reference_to_object_under_construction_is_rejected(self):
        tokens = [["o", "buildstash.serialization.builtin/Path"], ["r", 0]]
        with pytest.raises(EntryCorruptError):
            ObjectReader(tokens).read()


# ---------------------------------------------------------------------------
# Writer and reader contexts
# ---------------------------------------------------------------------------


class TestContexts:
    """ObjectWriter/ObjectReader bookkeeping."""

    def test_rollback_discards_partial_object(self):
        writer = ObjectWriter()
        writer.write(["kept"])
        mark = writer.mark()
        with pytest.raises(UnregisteredTypeError):
            writer.write([object()])
        writer.rollback(mark)
        writer.write("after")

        reader = ObjectReader(writer.tokens)
        assert reader.read() == ["kept"]
        assert reader.read() == "after"
        assert reader.at_end()

    def test_object_counts_match(self):
        writer = ObjectWriter()
        writer.write({"a": [1, 2], "b": (3,)})
        reader = ObjectReader(list(writer.tokens))
        reader.read()
        assert reader.object_count == writer.object_count == 3

    def test_truncated_stream(self):
        writer = ObjectWriter()
        writer.write([1, 2, 3])
        with pytest.raises(EntryCorruptError):
            ObjectReader(writer.tokens[:-1]).read()

    def test_unknown_marker(self):
        with pytest.raises(EntryCorruptError):
            ObjectReader([["q", 1]]).read()

    def test_corrupt_bytes(self):
        with pytest.raises(EntryCorruptError):
            loads(b"not a zlib stream")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestSerializerRegistry:
    """Tag and type lookup."""

    def test_unregistered_type_on_write(self):
        class Opaque:
            pass

        with pytest.raises(UnregisteredTypeError) as exc_info:
            dumps(Opaque())
        assert "Opaque" in exc_info.value.type_name

    def test_unknown_tag_on_read(self):
        registry = create_registry()
        with pytest.raises(UnregisteredTypeError):
            ObjectReader([["o", "tests.nowhere/Thing"]], registry).read()

    def test_duplicate_tag_rejected(self):
        registry = SerializerRegistry()

        @dataclass
        class First:
            x: int

        @dataclass
        class Second:
            x: int

        registry.register_dataclass(First, "tests.dup", "Thing")
        with pytest.raises(ValueError):
            registry.register_dataclass(Second, "tests.dup", "Thing")

    def test_reregistering_same_class_is_allowed(self):
        registry = SerializerRegistry()
        registry.register_dataclass(Chunk, "tests.same", "Chunk")
        registry.register_dataclass(Chunk, "tests.same", "Chunk")
        assert registry.tags() == ["tests.same/Chunk"]

    def test_import_hint_registers_on_first_read(self):
        imported = []

        def importer(request: str) -> None:
            imported.append(request)
            reading.register_enum(Color, request, "Color")

        reading = SerializerRegistry(importer=importer)
        writing = SerializerRegistry()
        writing.register_enum(Color, "tests.plugin", "Color")
        writer = ObjectWriter(writing)
        writer.write(Color.BLUE)

        assert ObjectReader(writer.tokens, reading).read() is Color.BLUE
        assert imported == ["tests.plugin"]

    def test_import_hint_tried_once(self):
        attempts = []

        def importer(request: str) -> None:
            attempts.append(request)
            raise ImportError(request)

        registry = SerializerRegistry(importer=importer)
        for _ in range(2):
            with pytest.raises(UnregisteredTypeError):
                registry.lookup_tag("tests.missing/Thing")
        assert attempts == ["tests.missing"]

    def test_subclass_lookup(self):
        registry = create_registry()

        class LoaderError(RuntimeError):
            pass

        tag, _ = registry.lookup_type(LoaderError)
        assert tag.endswith("/Exception")
        assert registry.is_registered(BaseException)
        assert not registry.is_registered(LoaderError)
