"""Bencoding as used by the KRPC wire protocol."""

from __future__ import annotations

import re
from collections.abc import Mapping
from operator import itemgetter

__all__ = ["BencodeError", "encode", "decode"]

_INTEGER = re.compile(rb"-?(0|[1-9][0-9]*)")
_LENGTH = re.compile(rb"0|[1-9][0-9]*")


class BencodeError(ValueError):
    """Raised when a value cannot be bencoded or data is not valid bencode."""


def encode(value: object) -> bytes:
    """Bencode ``value``: ints, bytes-like, str, lists, tuples and mappings."""
    out = bytearray()
    _encode_into(value, out)
    return bytes(out)


def _as_key(key: object) -> bytes:
    if isinstance(key, str):
        return key.encode()
    if isinstance(key, (bytes, bytearray, memoryview)):
        return bytes(key)
    raise BencodeError(f"dictionary keys must be strings, got {type(key).__name__}")


def _encode_into(value: object, out: bytearray) -> None:
    if isinstance(value, int):
        out += b"i%de" % value
    elif isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        out += b"%d:" % len(raw)
        out += raw
    elif isinstance(value, str):
        _encode_into(value.encode(), out)
    elif isinstance(value, (list, tuple)):
        out += b"l"
        for item in value:
            _encode_into(item, out)
        out += b"e"
    elif isinstance(value, Mapping):
        items = sorted(((_as_key(k), v) for k, v in value.items()), key=itemgetter(0))
        keys = [k for k, _ in items]
        if len(set(keys)) != len(keys):
            raise BencodeError("duplicate dictionary key")
        out += b"d"
        for key, item in items:
            _encode_into(key, out)
            _encode_into(item, out)
        out += b"e"
    else:
        raise BencodeError(f"cannot bencode value of type {type(value).__name__}")


class _Parser:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def _peek(self) -> int:
        if self.pos >= len(self.data):
            raise BencodeError("unexpected end of data")
        return self.data[self.pos]

    def _find(self, marker: bytes) -> int:
        end = self.data.find(marker, self.pos)
        if end < 0:
            raise BencodeError("unexpected end of data")
        return end

    def parse(self) -> object:
        head = self._peek()
        if head == ord("i"):
            return self._integer()
        if head == ord("l"):
            return self._list()
        if head == ord("d"):
            return self._dict()
        if ord("0") <= head <= ord("9"):
            return self._string()
        raise BencodeError(f"invalid token {bytes([head])!r} at offset {self.pos}")

    def _integer(self) -> int:
        self.pos += 1
        end = self._find(b"e")
        token = self.data[self.pos:end]
        if not _INTEGER.fullmatch(token) or token == b"-0":
            raise BencodeError(f"malformed integer {token!r}")
        self.pos = end + 1
        return int(token)

    def _string(self) -> bytes:
        colon = self._find(b":")
        token = self.data[self.pos:colon]
        if not _LENGTH.fullmatch(token):
            raise BencodeError(f"malformed string length {token!r}")
        length = int(token)
        start = colon + 1
        if start + length > len(self.data):
            raise BencodeError("string runs past end of data")
        self.pos = start + length
        return self.data[start:self.pos]

    def _list(self) -> list:
        self.pos += 1
        items = []
        while self._peek() != ord("e"):
            items.append(self.parse())
        self.pos += 1
        return items

    def _dict(self) -> dict:
        self.pos += 1
        result: dict[bytes, object] = {}
        while self._peek() != ord("e"):
            if not ord("0") <= self._peek() <= ord("9"):
                raise BencodeError(f"dictionary key at offset {self.pos} is not a string")
            key = self._string()
            if key in result:
                raise BencodeError(f"duplicate dictionary key {key!r}")
            result[key] = self.parse()
        self.pos += 1
        return result


def decode(data: bytes | bytearray | memoryview) -> object:
    """Decode one bencoded value; strings come back as bytes, dict keys as bytes."""
    parser = _Parser(bytes(data))
    value = parser.parse()
    if parser.pos != len(parser.data):
        raise BencodeError("trailing data after bencoded value")
    return value