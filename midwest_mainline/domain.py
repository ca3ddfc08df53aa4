"""Compact node and peer contact encodings."""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable
from dataclasses import dataclass

__all__ = [
    "Address",
    "CompactNodeContact",
    "CompactPeerContact",
    "concat_node_contacts",
    "split_node_contacts",
]

Address = tuple[str, int]

NODE_ID_LENGTH = 20
NODE_CONTACT_LENGTH = 26
PEER_CONTACT_LENGTH = 6


def _pack_address(addr: Address) -> bytes:
    host, port = addr
    packed_ip = ipaddress.IPv4Address(host).packed
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"port {port} out of range")
    return packed_ip + port.to_bytes(2, "big")


def _unpack_address(raw: bytes) -> Address:
    return str(ipaddress.IPv4Address(raw[:4])), int.from_bytes(raw[4:6], "big")


@dataclass(frozen=True)
class CompactNodeContact:
    """A 20-byte node id followed by an IPv4 address and a big-endian port."""

    raw: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "raw", bytes(self.raw))
        if len(self.raw) != NODE_CONTACT_LENGTH:
            raise ValueError(f"node contact must be {NODE_CONTACT_LENGTH} bytes, got {len(self.raw)}")

    @classmethod
    def from_node_id_and_addr(cls, node_id: bytes, addr: Address) -> CompactNodeContact:
        if len(node_id) != NODE_ID_LENGTH:
            raise ValueError(f"node id must be {NODE_ID_LENGTH} bytes, got {len(node_id)}")
        return cls(bytes(node_id) + _pack_address(addr))

    def node_id(self) -> bytes:
        return self.raw[:NODE_ID_LENGTH]

    def address(self) -> Address:
        return _unpack_address(self.raw[NODE_ID_LENGTH:])

    def __repr__(self) -> str:
        host, port = self.address()
        return f"id: {self.node_id().hex()}, ip =  {host}:{port}"


@dataclass(frozen=True)
class CompactPeerContact:
    """An IPv4 address followed by a big-endian port."""

    raw: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "raw", bytes(self.raw))
        if len(self.raw) != PEER_CONTACT_LENGTH:
            raise ValueError(f"peer contact must be {PEER_CONTACT_LENGTH} bytes, got {len(self.raw)}")

    @classmethod
    def from_address(cls, addr: Address) -> CompactPeerContact:
        return cls(_pack_address(addr))

    def address(self) -> Address:
        return _unpack_address(self.raw)


def concat_node_contacts(contacts: Iterable[CompactNodeContact]) -> bytes:
    """Join node contacts into the single byte string used on the wire."""
    return b"".join(contact.raw for contact in contacts)


def split_node_contacts(data: bytes) -> list[CompactNodeContact]:
    """Split a wire byte string into node contacts, ignoring a trailing partial entry."""
    whole = len(data) - len(data) % NODE_CONTACT_LENGTH
    return [
        CompactNodeContact(data[start:start + NODE_CONTACT_LENGTH])
        for start in range(0, whole, NODE_CONTACT_LENGTH)
    ]