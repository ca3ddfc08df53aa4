"""Message routing between the socket, the client and the server, and BEP-42 node ids."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import secrets

from .domain import Address
from .message import Krpc

__all__ = ["DhtServiceFailure", "MessageDemultiplexer", "crc32c", "random_idv4"]

log = logging.getLogger(__name__)

_CASTAGNOLI_REVERSED = 0x82F63B78


def _crc32c_table() -> tuple[int, ...]:
    table = []
    for byte in range(256):
        crc = byte
        for _ in range(8):
            crc = (crc >> 1) ^ _CASTAGNOLI_REVERSED if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_TABLE = _crc32c_table()


def crc32c(data: bytes | bytearray | memoryview) -> int:
    """CRC-32C (Castagnoli) checksum of ``data``."""
    crc = 0xFFFFFFFF
    for byte in bytes(data):
        crc = _TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ 0xFFFFFFFF


_IP_MASK = (0x03, 0x0F, 0x3F, 0xFF)


def random_idv4(external_ip: str | ipaddress.IPv4Address, rand: int) -> bytes:
    """Generate a node id bound to ``external_ip`` as described by BEP-42.

    ``rand`` is a byte; its low three bits select the id space and it becomes
    the last byte of the id.
    """
    if not 0 <= rand <= 0xFF:
        raise ValueError(f"rand must be a byte, got {rand}")
    octets = ipaddress.IPv4Address(external_ip).packed
    masked = bytearray(octet & mask for octet, mask in zip(octets, _IP_MASK))
    masked[0] |= (rand & 0x07) << 5
    crc = crc32c(masked)

    head = bytes(
        [
            (crc >> 24) & 0xFF,
            (crc >> 16) & 0xFF,
            ((crc >> 8) & 0xF8) | (secrets.randbits(8) & 0x07),
        ]
    )
    return head + secrets.token_bytes(16) + bytes([rand])


class DhtServiceFailure(Exception):
    """A DHT operation failed; the message says why."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class MessageDemultiplexer:
    """Routes incoming messages to waiting requests or to the server's query queue.

    Items on ``incoming_messages`` are ``(message, address)`` pairs; a ``None``
    item ends :meth:`run`. A message whose transaction id was registered
    resolves the registered future; every other message is put on
    ``query_queue`` together with its sender's address.
    """

    def __init__(self, incoming_messages: asyncio.Queue, query_queue: asyncio.Queue) -> None:
        self._incoming = incoming_messages
        self._query_queue = query_queue
        self._pending: dict[bytes, asyncio.Future] = {}

    async def run(self) -> None:
        while (item := await self._incoming.get()) is not None:
            message, address = item
            message: Krpc
            address: Address
            transaction_id = message.transaction_id
            log.debug("received message for transaction id %s", transaction_id.hex().upper())

            waiter = self._pending.pop(transaction_id, None)
            if waiter is not None:
                # a finished or cancelled waiter means nobody is interested any more
                if not waiter.done():
                    waiter.set_result(message)
            else:
                await self._query_queue.put((message, address))

    def register(self, transaction_id: bytes, future: asyncio.Future) -> None:
        """Expect a response with ``transaction_id``; it will resolve ``future``.

        A previous registration for the same id is replaced, since its
        response may never have arrived.
        """
        self._pending[bytes(transaction_id)] = future