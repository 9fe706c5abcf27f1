"""
Binary layout of buildstash cache files.

A cache file is::

    MAGIC (8 bytes) | header length (4 bytes, big endian) | header | body

The header is an orjson-encoded JSON object that can be read without
touching the body, so validation only pays for the header. The body is the
zlib-compressed orjson encoding of an :class:`ObjectWriter` token list.
"""

from __future__ import annotations

import zlib
from pathlib import Path
from typing import Any

import orjson

from ..utils.error_handling import EntryCorruptError

MAGIC = b"BSTASH\x00\x01"
FORMAT_VERSION = 1
_LENGTH_BYTES = 4


def encode_stream(tokens: list[Any]) -> bytes:
    return zlib.compress(orjson.dumps(tokens), level=6)


def decode_stream(data: bytes) -> list[Any]:
    try:
        tokens = orjson.loads(zlib.decompress(data))
    except (zlib.error, orjson.JSONDecodeError) as e:
        raise EntryCorruptError(f"Cannot decode cache stream: {e}") from e
    if not isinstance(tokens, list):
        raise EntryCorruptError("Cache stream is not a token list")
    return tokens


def encode_file(header: dict[str, Any], tokens: list[Any] | None = None) -> bytes:
    header_bytes = orjson.dumps(header)
    body = encode_stream(tokens) if tokens is not None else b""
    return MAGIC + len(header_bytes).to_bytes(_LENGTH_BYTES, "big") + header_bytes + body


def _split(data: bytes, path: Path | None) -> tuple[dict[str, Any], bytes]:
    prefix = len(MAGIC) + _LENGTH_BYTES
    if len(data) < prefix or not data.startswith(MAGIC):
        raise EntryCorruptError("Not a buildstash cache file", file_path=path)
    length = int.from_bytes(data[len(MAGIC) : prefix], "big")
    if len(data) < prefix + length:
        raise EntryCorruptError("Truncated cache file header", file_path=path)
    try:
        header = orjson.loads(data[prefix : prefix + length])
    except orjson.JSONDecodeError as e:
        raise EntryCorruptError(f"Cannot decode cache file header: {e}", file_path=path) from e
    if not isinstance(header, dict):
        raise EntryCorruptError("Cache file header is not an object", file_path=path)
    return header, data[prefix + length :]


def decode_file(data: bytes, path: Path | None = None) -> tuple[dict[str, Any], list[Any]]:
    header, body = _split(data, path)
    tokens = decode_stream(body) if body else []
    return header, tokens


def read_header(path: Path) -> dict[str, Any]:
    """Read only the header of a cache file."""
    with path.open("rb") as f:
        prefix = f.read(len(MAGIC) + _LENGTH_BYTES)
        if len(prefix) < len(MAGIC) + _LENGTH_BYTES:
            raise EntryCorruptError("Not a buildstash cache file", file_path=path)
        length = int.from_bytes(prefix[len(MAGIC) :], "big")
        header, _ = _split(prefix + f.read(length), path)
    return header
