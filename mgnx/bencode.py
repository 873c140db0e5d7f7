"""Bencoding: the serialisation format used by the peer wire and metadata exchange."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

_MAX_DEPTH = 512
_INT_RE = re.compile(rb"-?(?:0|[1-9][0-9]*)")
_LEN_RE = re.compile(rb"0|[1-9][0-9]*")


class BencodeError(ValueError):
    """Raised for values that cannot be encoded or data that cannot be decoded."""


def _key_bytes(key: object) -> bytes:
    if isinstance(key, str):
        return key.encode("utf-8", "surrogateescape")
    if isinstance(key, (bytes, bytearray, memoryview)):
        return bytes(key)
    raise BencodeError(f"dictionary keys must be strings, not {type(key).__name__}")


def _encode_into(value: Any, out: list[bytes], depth: int) -> None:
    if depth > _MAX_DEPTH:
        raise BencodeError("value nested too deeply")
    if isinstance(value, int):
        out.append(b"i%de" % value)
    elif isinstance(value, (bytes, bytearray, memoryview)):
        data = bytes(value)
        out.append(b"%d:" % len(data))
        out.append(data)
    elif isinstance(value, str):
        data = value.encode("utf-8", "surrogateescape")
        out.append(b"%d:" % len(data))
        out.append(data)
    elif isinstance(value, (list, tuple)):
        out.append(b"l")
        for item in value:
            _encode_into(item, out, depth + 1)
        out.append(b"e")
    elif isinstance(value, Mapping):
        entries: dict[bytes, Any] = {}
        for key, item in value.items():
            raw = _key_bytes(key)
            if raw in entries:
                raise BencodeError(f"duplicate dictionary key {raw!r}")
            entries[raw] = item
        out.append(b"d")
        for raw in sorted(entries):
            out.append(b"%d:" % len(raw))
            out.append(raw)
            _encode_into(entries[raw], out, depth + 1)
        out.append(b"e")
    else:
        raise BencodeError(f"cannot encode value of type {type(value).__name__}")


def encode(value: Any) -> bytes:
    """Encode ints, strings, bytes, lists and dicts; dict keys are sorted."""
    out: list[bytes] = []
    _encode_into(value, out, 0)
    return b"".join(out)


def _decode_string(data: bytes, pos: int) -> tuple[bytes, int]:
    colon = data.find(b":", pos)
    if colon < 0:
        raise BencodeError(f"unterminated string length at offset {pos}")
    digits = data[pos:colon]
    if not _LEN_RE.fullmatch(digits):
        raise BencodeError(f"invalid string length {digits!r} at offset {pos}")
    start = colon + 1
    end = start + int(digits)
    if end > len(data):
        raise BencodeError(f"string at offset {pos} runs past the end of the data")
    return data[start:end], end


def _decode_at(data: bytes, pos: int, depth: int) -> tuple[Any, int]:
    if depth > _MAX_DEPTH:
        raise BencodeError("data nested too deeply")
    if pos >= len(data):
        raise BencodeError("unexpected end of data")
    lead = data[pos:pos + 1]
    if lead == b"i":
        end = data.find(b"e", pos + 1)
        if end < 0:
            raise BencodeError(f"unterminated integer at offset {pos}")
        digits = data[pos + 1:end]
        if not _INT_RE.fullmatch(digits) or digits == b"-0":
            raise BencodeError(f"invalid integer {digits!r} at offset {pos}")
        return int(digits), end + 1
    if lead == b"l":
        items = []
        pos += 1
        while True:
            if pos >= len(data):
                raise BencodeError("unterminated list")
            if data[pos:pos + 1] == b"e":
                return items, pos + 1
            item, pos = _decode_at(data, pos, depth + 1)
            items.append(item)
    if lead == b"d":
        result: dict[str, Any] = {}
        pos += 1
        while True:
            if pos >= len(data):
                raise BencodeError("unterminated dictionary")
            if data[pos:pos + 1] == b"e":
                return result, pos + 1
            if not data[pos:pos + 1].isdigit():
                raise BencodeError(f"dictionary key at offset {pos} is not a string")
            raw_key, pos = _decode_string(data, pos)
            value, pos = _decode_at(data, pos, depth + 1)
            result[raw_key.decode("utf-8", "surrogateescape")] = value
    if lead.isdigit():
        return _decode_string(data, pos)
    raise BencodeError(f"unexpected byte {lead!r} at offset {pos}")


def decode_prefix(data: bytes) -> tuple[Any, int]:
    """Decode one value from the start of ``data``; return it and the bytes consumed.

    Strings come back as bytes, dictionary keys as str.
    """
    return _decode_at(bytes(data), 0, 0)


def decode(data: bytes) -> Any:
    """Decode exactly one value; trailing bytes are an error."""
    value, end = decode_prefix(data)
    if end != len(data):
        raise BencodeError(f"{len(data) - end} unused trailing bytes")
    return value