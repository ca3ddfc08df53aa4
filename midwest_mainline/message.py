"""KRPC messages of the mainline DHT and their bencoded wire form."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import ClassVar

from . import bencode
from .bencode import BencodeError
from .domain import CompactPeerContact

__all__ = [
    "MessageDecodeError",
    "Krpc",
    "PingQuery",
    "FindNodeQuery",
    "GetPeersQuery",
    "AnnouncePeerQuery",
    "PingAnnouncePeerResponse",
    "FindNodeGetPeersNonCompliantResponse",
    "GetPeersSuccessResponse",
    "GetPeersDeferredResponse",
    "ErrorResponse",
    "decode_krpc",
    "new_ping_query",
    "new_find_node_query",
    "new_get_peers_query",
    "new_announce_peer_query",
    "new_ping_response",
    "new_find_node_response",
    "new_get_peers_success_response",
    "new_get_peers_deferred_response",
    "new_get_peers_deferred_response_non_compliant",
    "new_announce_peer_response",
    "new_standard_generic_error_response",
    "new_standard_server_error",
    "new_standard_protocol_error",
    "new_unsupported_error",
]

ID_LENGTH = 20
_U8_MAX = 0xFF
_U16_MAX = 0xFFFF
_U32_MAX = 0xFFFFFFFF


class MessageDecodeError(ValueError):
    """Raised when bytes are not a KRPC message this package understands."""


# --- decoding helpers -------------------------------------------------------

def _require(fields: Mapping, key: bytes) -> object:
    try:
        return fields[key]
    except KeyError:
        raise MessageDecodeError(f"missing field {key.decode()!r}") from None


def _bytes_field(fields: Mapping, key: bytes) -> bytes:
    value = _require(fields, key)
    if not isinstance(value, bytes):
        raise MessageDecodeError(f"field {key.decode()!r} must be a byte string")
    return value


def _id_field(fields: Mapping, key: bytes) -> bytes:
    value = _bytes_field(fields, key)
    if len(value) != ID_LENGTH:
        raise MessageDecodeError(f"field {key.decode()!r} must be {ID_LENGTH} bytes, got {len(value)}")
    return value


def _int_field(fields: Mapping, key: bytes, upper: int) -> int:
    value = _require(fields, key)
    if not isinstance(value, int) or not 0 <= value <= upper:
        raise MessageDecodeError(f"field {key.decode()!r} must be an integer in [0, {upper}]")
    return value


def _dict_field(fields: Mapping, key: bytes) -> Mapping:
    value = _require(fields, key)
    if not isinstance(value, dict):
        raise MessageDecodeError(f"field {key.decode()!r} must be a dictionary")
    return value


def _expect_method(fields: Mapping, name: bytes) -> None:
    if _bytes_field(fields, b"q") != name:
        raise MessageDecodeError(f"query method is not {name.decode()!r}")


# --- construction helpers ---------------------------------------------------

def _set_bytes(obj: object, name: str, length: int | None = None) -> None:
    value = bytes(getattr(obj, name))
    if length is not None and len(value) != length:
        raise ValueError(f"{name} must be {length} bytes, got {len(value)}")
    object.__setattr__(obj, name, value)


def _check_range(name: str, value: int, upper: int) -> None:
    if not 0 <= value <= upper:
        raise ValueError(f"{name} must be in [0, {upper}], got {value}")


class Krpc(ABC):
    """Base of every KRPC message; ``transaction_id`` ties responses to queries."""

    _kind: ClassVar[str]
    transaction_id: bytes

    def is_query(self) -> bool:
        return self._kind == "query"

    def is_response(self) -> bool:
        return self._kind == "response"

    def is_error(self) -> bool:
        return self._kind == "error"

    def encode(self) -> bytes:
        """Bencode the message for the wire."""
        return bencode.encode(self._fields())

    @abstractmethod
    def _fields(self) -> dict:
        """The message as a dictionary ready for bencoding."""

    @classmethod
    @abstractmethod
    def _from_fields(cls, fields: Mapping) -> Krpc:
        """Build the message from a decoded dictionary or raise ``MessageDecodeError``."""


@dataclass(frozen=True)
class PingQuery(Krpc):
    _kind: ClassVar[str] = "query"

    transaction_id: bytes
    id: bytes
    message_type: bytes = b"q"

    def __post_init__(self) -> None:
        _set_bytes(self, "transaction_id")
        _set_bytes(self, "id", ID_LENGTH)
        _set_bytes(self, "message_type")

    def _fields(self) -> dict:
        return {"t": self.transaction_id, "y": self.message_type, "q": b"ping", "a": {"id": self.id}}

    @classmethod
    def _from_fields(cls, fields: Mapping) -> PingQuery:
        _expect_method(fields, b"ping")
        args = _dict_field(fields, b"a")
        return cls(_bytes_field(fields, b"t"), _id_field(args, b"id"), _bytes_field(fields, b"y"))


@dataclass(frozen=True)
class FindNodeQuery(Krpc):
    _kind: ClassVar[str] = "query"

    transaction_id: bytes
    id: bytes
    target: bytes
    message_type: bytes = b"q"

    def __post_init__(self) -> None:
        _set_bytes(self, "transaction_id")
        _set_bytes(self, "id", ID_LENGTH)
        _set_bytes(self, "target", ID_LENGTH)
        _set_bytes(self, "message_type")

    def _fields(self) -> dict:
        return {
            "t": self.transaction_id,
            "y": self.message_type,
            "q": b"find_node",
            "a": {"id": self.id, "target": self.target},
        }

    @classmethod
    def _from_fields(cls, fields: Mapping) -> FindNodeQuery:
        _expect_method(fields, b"find_node")
        args = _dict_field(fields, b"a")
        return cls(
            _bytes_field(fields, b"t"),
            _id_field(args, b"id"),
            _id_field(args, b"target"),
            _bytes_field(fields, b"y"),
        )


@dataclass(frozen=True)
class GetPeersQuery(Krpc):
    _kind: ClassVar[str] = "query"

    transaction_id: bytes
    id: bytes
    info_hash: bytes
    message_type: bytes = b"q"

    def __post_init__(self) -> None:
        _set_bytes(self, "transaction_id")
        _set_bytes(self, "id", ID_LENGTH)
        _set_bytes(self, "info_hash", ID_LENGTH)
        _set_bytes(self, "message_type")

    def _fields(self) -> dict:
        return {
            "t": self.transaction_id,
            "y": self.message_type,
            "q": b"get_peers",
            "a": {"id": self.id, "info_hash": self.info_hash},
        }

    @classmethod
    def _from_fields(cls, fields: Mapping) -> GetPeersQuery:
        _expect_method(fields, b"get_peers")
        args = _dict_field(fields, b"a")
        return cls(
            _bytes_field(fields, b"t"),
            _id_field(args, b"id"),
            _id_field(args, b"info_hash"),
            _bytes_field(fields, b"y"),
        )


@dataclass(frozen=True)
class AnnouncePeerQuery(Krpc):
    _kind: ClassVar[str] = "query"

    transaction_id: bytes
    id: bytes
    implied_port: int
    info_hash: bytes
    port: int
    token: bytes
    message_type: bytes = b"q"

    def __post_init__(self) -> None:
        _set_bytes(self, "transaction_id")
        _set_bytes(self, "id", ID_LENGTH)
        _set_bytes(self, "info_hash", ID_LENGTH)
        _set_bytes(self, "token")
        _set_bytes(self, "message_type")
        _check_range("implied_port", self.implied_port, _U8_MAX)
        _check_range("port", self.port, _U16_MAX)

    def _fields(self) -> dict:
        return {
            "t": self.transaction_id,
            "y": self.message_type,
            "q": b"announce_peer",
            "a": {
                "id": self.id,
                "implied_port": self.implied_port,
                "info_hash": self.info_hash,
                "port": self.port,
                "token": self.token,
            },
        }

    @classmethod
    def _from_fields(cls, fields: Mapping) -> AnnouncePeerQuery:
        _expect_method(fields, b"announce_peer")
        args = _dict_field(fields, b"a")
        return cls(
            transaction_id=_bytes_field(fields, b"t"),
            id=_id_field(args, b"id"),
            implied_port=_int_field(args, b"implied_port", _U8_MAX),
            info_hash=_id_field(args, b"info_hash"),
            port=_int_field(args, b"port", _U16_MAX),
            token=_bytes_field(args, b"token"),
            message_type=_bytes_field(fields, b"y"),
        )


@dataclass(frozen=True)
class PingAnnouncePeerResponse(Krpc):
    """Answer to ping and to announce_peer; the two look identical on the wire."""

    _kind: ClassVar[str] = "response"

    transaction_id: bytes
    id: bytes
    message_type: bytes = b"r"

    def __post_init__(self) -> None:
        _set_bytes(self, "transaction_id")
        _set_bytes(self, "id", ID_LENGTH)
        _set_bytes(self, "message_type")

    def _fields(self) -> dict:
        return {"t": self.transaction_id, "y": self.message_type, "r": {"id": self.id}}

    @classmethod
    def _from_fields(cls, fields: Mapping) -> PingAnnouncePeerResponse:
        body = _dict_field(fields, b"r")
        return cls(_bytes_field(fields, b"t"), _id_field(body, b"id"), _bytes_field(fields, b"y"))


@dataclass(frozen=True)
class FindNodeGetPeersNonCompliantResponse(Krpc):
    """Answer to find_node, or a get_peers answer that carries nodes but no token."""

    _kind: ClassVar[str] = "response"

    transaction_id: bytes
    id: bytes
    nodes: bytes
    message_type: bytes = b"r"

    def __post_init__(self) -> None:
        _set_bytes(self, "transaction_id")
        _set_bytes(self, "id", ID_LENGTH)
        _set_bytes(self, "nodes")
        _set_bytes(self, "message_type")

    def _fields(self) -> dict:
        return {"t": self.transaction_id, "y": self.message_type, "r": {"id": self.id, "nodes": self.nodes}}

    @classmethod
    def _from_fields(cls, fields: Mapping) -> FindNodeGetPeersNonCompliantResponse:
        body = _dict_field(fields, b"r")
        return cls(
            _bytes_field(fields, b"t"),
            _id_field(body, b"id"),
            _bytes_field(body, b"nodes"),
            _bytes_field(fields, b"y"),
        )


@dataclass(frozen=True)
class GetPeersSuccessResponse(Krpc):
    """Answer to get_peers that lists peers for the info hash."""

    _kind: ClassVar[str] = "response"

    transaction_id: bytes
    id: bytes
    token: bytes
    values: tuple[CompactPeerContact, ...]
    message_type: bytes = b"r"

    def __post_init__(self) -> None:
        _set_bytes(self, "transaction_id")
        _set_bytes(self, "id", ID_LENGTH)
        _set_bytes(self, "token")
        _set_bytes(self, "message_type")
        object.__setattr__(self, "values", tuple(self.values))

    def _fields(self) -> dict:
        return {
            "t": self.transaction_id,
            "y": self.message_type,
            "r": {"id": self.id, "token": self.token, "values": [peer.raw for peer in self.values]},
        }

    @classmethod
    def _from_fields(cls, fields: Mapping) -> GetPeersSuccessResponse:
        body = _dict_field(fields, b"r")
        raw_values = _require(body, b"values")
        if not isinstance(raw_values, list) or not all(isinstance(v, bytes) for v in raw_values):
            raise MessageDecodeError("field 'values' must be a list of byte strings")
        return cls(
            _bytes_field(fields, b"t"),
            _id_field(body, b"id"),
            _bytes_field(body, b"token"),
            tuple(CompactPeerContact(raw) for raw in raw_values),
            _bytes_field(fields, b"y"),
        )


@dataclass(frozen=True)
class GetPeersDeferredResponse(Krpc):
    """Answer to get_peers that carries closer nodes and a token."""

    _kind: ClassVar[str] = "response"

    transaction_id: bytes
    id: bytes
    token: bytes
    nodes: bytes
    message_type: bytes = b"r"

    def __post_init__(self) -> None:
        _set_bytes(self, "transaction_id")
        _set_bytes(self, "id", ID_LENGTH)
        _set_bytes(self, "token")
        _set_bytes(self, "nodes")
        _set_bytes(self, "message_type")

    def _fields(self) -> dict:
        return {
            "t": self.transaction_id,
            "y": self.message_type,
            "r": {"id": self.id, "token": self.token, "nodes": self.nodes},
        }

    @classmethod
    def _from_fields(cls, fields: Mapping) -> GetPeersDeferredResponse:
        body = _dict_field(fields, b"r")
        return cls(
            _bytes_field(fields, b"t"),
            _id_field(body, b"id"),
            _bytes_field(body, b"token"),
            _bytes_field(body, b"nodes"),
            _bytes_field(fields, b"y"),
        )


@dataclass(frozen=True)
class ErrorResponse(Krpc):
    _kind: ClassVar[str] = "error"

    transaction_id: bytes
    code: int
    message: str
    message_type: bytes = b"e"

    def __post_init__(self) -> None:
        _set_bytes(self, "transaction_id")
        _set_bytes(self, "message_type")
        _check_range("code", self.code, _U32_MAX)

    def _fields(self) -> dict:
        return {"t": self.transaction_id, "y": self.message_type, "e": [self.code, self.message]}

    @classmethod
    def _from_fields(cls, fields: Mapping) -> ErrorResponse:
        error = _require(fields, b"e")
        if not isinstance(error, list) or len(error) != 2:
            raise MessageDecodeError("field 'e' must be a two-element list")
        code, message = error
        if not isinstance(code, int) or not 0 <= code <= _U32_MAX:
            raise MessageDecodeError("error code must be an unsigned 32-bit integer")
        if not isinstance(message, bytes):
            raise MessageDecodeError("error message must be a string")
        return cls(_bytes_field(fields, b"t"), code, message.decode("utf-8"), _bytes_field(fields, b"y"))


# Tried in order: an earlier variant that is satisfied wins, so the more
# demanding shapes come first.
_VARIANTS: tuple[type[Krpc], ...] = (
    AnnouncePeerQuery,
    FindNodeQuery,
    GetPeersQuery,
    PingQuery,
    GetPeersSuccessResponse,
    GetPeersDeferredResponse,
    FindNodeGetPeersNonCompliantResponse,
    PingAnnouncePeerResponse,
    ErrorResponse,
)


def decode_krpc(data: bytes | bytearray | memoryview) -> Krpc:
    """Decode bencoded bytes into the first message type whose fields they satisfy."""
    try:
        fields = bencode.decode(data)
    except BencodeError as exc:
        raise MessageDecodeError(str(exc)) from exc
    if not isinstance(fields, dict):
        raise MessageDecodeError("a KRPC message must be a dictionary")
    for variant in _VARIANTS:
        try:
            return variant._from_fields(fields)
        except ValueError:
            continue
    raise MessageDecodeError("data does not match any KRPC message")


def new_ping_query(transaction_id: bytes, querying_id: bytes) -> PingQuery:
    return PingQuery(transaction_id, querying_id)


def new_find_node_query(transaction_id: bytes, querying_id: bytes, target_id: bytes) -> FindNodeQuery:
    return FindNodeQuery(transaction_id, querying_id, target_id)


def new_get_peers_query(transaction_id: bytes, querying_id: bytes, info_hash: bytes) -> GetPeersQuery:
    return GetPeersQuery(transaction_id, querying_id, info_hash)


def new_announce_peer_query(
    transaction_id: bytes,
    info_hash: bytes,
    querying_id: bytes,
    port: int,
    implied_port: bool,
    token: bytes,
) -> AnnouncePeerQuery:
    return AnnouncePeerQuery(
        transaction_id=transaction_id,
        id=querying_id,
        implied_port=1 if implied_port else 0,
        info_hash=info_hash,
        port=port,
        token=token,
    )


def new_ping_response(transaction_id: bytes, responding_id: bytes) -> PingAnnouncePeerResponse:
    return PingAnnouncePeerResponse(transaction_id, responding_id)


def new_find_node_response(
    transaction_id: bytes, responding_id: bytes, nodes: bytes
) -> FindNodeGetPeersNonCompliantResponse:
    """Answer a find_node query with concatenated compact node contacts."""
    return FindNodeGetPeersNonCompliantResponse(transaction_id, responding_id, nodes)


def new_get_peers_success_response(
    transaction_id: bytes,
    responding_id: bytes,
    response_token: bytes,
    peers: Iterable[CompactPeerContact],
) -> GetPeersSuccessResponse:
    """Answer a get_peers query when peers for the info hash are known."""
    return GetPeersSuccessResponse(transaction_id, responding_id, response_token, tuple(peers))


def new_get_peers_deferred_response(
    transaction_id: bytes,
    responding_id: bytes,
    response_token: bytes,
    closest_nodes: bytes,
) -> GetPeersDeferredResponse:
    """Answer a get_peers query with the closest nodes when no peers are known."""
    return GetPeersDeferredResponse(transaction_id, responding_id, response_token, closest_nodes)


def new_get_peers_deferred_response_non_compliant(
    transaction_id: bytes, responding_id: bytes, closest_nodes: bytes
) -> FindNodeGetPeersNonCompliantResponse:
    """A get_peers answer with the closest nodes but without a token."""
    return FindNodeGetPeersNonCompliantResponse(transaction_id, responding_id, closest_nodes)


def new_announce_peer_response(transaction_id: bytes, responding_id: bytes) -> PingAnnouncePeerResponse:
    return PingAnnouncePeerResponse(transaction_id, responding_id)


def new_standard_generic_error_response(transaction_id: bytes) -> ErrorResponse:
    return ErrorResponse(transaction_id, 201, "A Generic Error Occurred")


def new_standard_server_error(transaction_id: bytes) -> ErrorResponse:
    return ErrorResponse(transaction_id, 202, "A Server Error Occurred")


def new_standard_protocol_error(transaction_id: bytes) -> ErrorResponse:
    return ErrorResponse(transaction_id, 203, "A Protocol Error Occurred")


def new_unsupported_error(transaction_id: bytes) -> ErrorResponse:
    return ErrorResponse(transaction_id, 204, "A Unsupported Method Error Occurred")