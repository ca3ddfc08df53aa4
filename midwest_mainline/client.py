"""The DHT client: queries other nodes for nodes and peers."""

from __future__ import annotations

import asyncio
import enum
import ipaddress
import logging
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass
from itertools import groupby
from typing import Any, Protocol, TypeVar

from .bencode import BencodeError
from .domain import Address, CompactNodeContact, CompactPeerContact, split_node_contacts
from .message import (
    ErrorResponse,
    FindNodeGetPeersNonCompliantResponse,
    GetPeersDeferredResponse,
    GetPeersSuccessResponse,
    Krpc,
    PingAnnouncePeerResponse,
    new_announce_peer_query,
    new_find_node_query,
    new_get_peers_query,
    new_ping_query,
)
from .routing import RoutingTable
from .service import DhtServiceFailure, MessageDemultiplexer
from .transaction_id_pool import TransactionIdPool

__all__ = ["RecursiveSearchError", "DhtClientV4", "gather_all"]

log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_QUERY_TIMEOUT = 15.0
_STARTING_POOL_SIZE = 3


class _DatagramSender(Protocol):
    def sendto(self, data: bytes, addr: Address) -> Any: ...


class RecursiveSearchError(Exception):
    """A branch of a recursive search ended without a result."""

    class Kind(enum.Enum):
        BOTTOMED_OUT = "BottomedOut"
        CANCELLED = "Cancelled"
        JOIN_ERROR = "JoinError"
        DHT_SERVICE_FAILURE = "DhtServiceFailure"

    def __init__(self, kind: RecursiveSearchError.Kind) -> None:
        super().__init__(kind.value)
        self.kind = kind

    def __str__(self) -> str:
        return self.kind.value


async def gather_all(coroutines: Iterable[Awaitable[T]]) -> list[T]:
    """Start every coroutine as a task at once, then collect the results in order.

    If one of them raises, the others are cancelled and the error propagates.
    """
    tasks = [asyncio.ensure_future(coroutine) for coroutine in coroutines]
    try:
        return [await task for task in tasks]
    except BaseException:
        for task in tasks:
            task.cancel()
        raise


async def _settled(awaitable: Awaitable[T]) -> T | Exception:
    """Await and hand back a search or service failure instead of raising it."""
    try:
        return await awaitable
    except (DhtServiceFailure, RecursiveSearchError) as exc:
        return exc


async def _quietly(awaitable: Awaitable[Any]) -> None:
    try:
        await awaitable
    except RecursiveSearchError as exc:
        log.debug("search ended: %s", exc)


def _dedup(items: Iterable[T]) -> list[T]:
    """Drop consecutive duplicates."""
    return [item for item, _ in groupby(items)]


def _address_key(contact: CompactNodeContact) -> tuple[int, int]:
    host, port = contact.address()
    return int(ipaddress.IPv4Address(host)), port


@dataclass
class _PeersAnswer:
    token: bytes | None
    nodes: list[CompactNodeContact] | None = None
    peers: list[CompactPeerContact] | None = None


class DhtClientV4:
    """Sends queries on behalf of our node and interprets the answers."""

    def __init__(
        self,
        bind_addr: Address,
        transport: _DatagramSender,
        demultiplexer: MessageDemultiplexer,
        routing_table: RoutingTable,
        our_id: bytes,
        *,
        query_timeout: float = DEFAULT_QUERY_TIMEOUT,
    ) -> None:
        self.socket_address = bind_addr
        self.transport = transport
        self.demultiplexer = demultiplexer
        self.routing_table = routing_table
        self.our_id = bytes(our_id)
        self.transaction_id_pool = TransactionIdPool()
        self.query_timeout = query_timeout

    def _next_transaction_id(self) -> bytes:
        return self.transaction_id_pool.next().to_bytes(4, "big")

    async def send_message(self, message: Krpc, recipient: Address) -> Krpc:
        """Send ``message`` and wait for the response with the same transaction id.

        The routing table is left alone; callers decide what to do with the answer.
        """
        try:
            data = message.encode()
        except BencodeError as exc:
            raise DhtServiceFailure(str(exc)) from exc
        response = asyncio.get_running_loop().create_future()
        self.demultiplexer.register(message.transaction_id, response)
        try:
            self.transport.sendto(data, recipient)
        except OSError as exc:
            raise DhtServiceFailure(str(exc)) from exc
        return await response

    async def _send_with_timeout(self, message: Krpc, recipient: Address) -> Krpc:
        try:
            return await asyncio.wait_for(self.send_message(message, recipient), self.query_timeout)
        except asyncio.TimeoutError as exc:
            raise DhtServiceFailure("deadline has elapsed") from exc

    async def ping(self, recipient: Address) -> None:
        """Ping ``recipient`` and add it to the routing table when it answers."""
        query = new_ping_query(self._next_transaction_id(), self.our_id)
        response = await self.send_message(query, recipient)
        if not isinstance(response, PingAnnouncePeerResponse):
            log.warning("Unexpected response to ping: %r", response)
            raise DhtServiceFailure("Unexpected response to ping")
        self.routing_table.add_new_node(CompactNodeContact.from_node_id_and_addr(response.id, recipient))

    async def _ask_her_for_nodes(self, interlocutor: Address, target: bytes) -> list[CompactNodeContact]:
        query = new_find_node_query(self._next_transaction_id(), self.our_id, target)
        response = await self._send_with_timeout(query, interlocutor)
        if not isinstance(response, FindNodeGetPeersNonCompliantResponse):
            raise DhtServiceFailure("Did not get an find node response")
        # some clients return duplicate nodes
        return _dedup(sorted(split_node_contacts(response.nodes), key=_address_key))

    async def _ask_her_for_peers(self, interlocutor: Address, target: bytes) -> _PeersAnswer:
        query = new_get_peers_query(self._next_transaction_id(), self.our_id, target)
        response = await self._send_with_timeout(query, interlocutor)
        if isinstance(response, GetPeersDeferredResponse):
            nodes = _dedup(split_node_contacts(response.nodes))
            log.debug("got a deferred response from %s, returned nodes: %r", interlocutor, nodes)
            return _PeersAnswer(response.token, nodes=nodes)
        if isinstance(response, FindNodeGetPeersNonCompliantResponse):
            nodes = _dedup(split_node_contacts(response.nodes))
            log.debug("got a deferred response from %s (token missing), returned nodes %r", interlocutor, nodes)
            return _PeersAnswer(None, nodes=nodes)
        if isinstance(response, GetPeersSuccessResponse):
            peers = _dedup(response.values)
            log.debug("got a success response from %s, values %r", interlocutor, peers)
            return _PeersAnswer(response.token, peers=peers)
        if isinstance(response, ErrorResponse):
            log.warning("Got an error response to get peers: %r", response)
            raise DhtServiceFailure("Got an error response to get peers")
        log.warning("Unexpected response to get peers: %r", response)
        raise DhtServiceFailure("Unexpected response to get peers")

    @staticmethod
    async def _race(search: asyncio.Task, found: asyncio.Future, failure: str) -> Any:
        try:
            await asyncio.wait({search, found}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            search.cancel()
            found.cancel()
            raise
        if found.done() and not found.cancelled():
            search.cancel()
            return found.result()
        found.cancel()
        raise DhtServiceFailure(failure)

    async def find_node(self, target: bytes) -> CompactNodeContact:
        """Locate the node with id ``target``, asking the network when it is not known."""
        target = bytes(target)
        known = self.routing_table.find(target)
        if known is not None:
            return known.contact

        closest = self.routing_table.find_closest(target)
        answers = await gather_all(
            _settled(self._ask_her_for_nodes(contact.address(), target)) for contact in closest
        )
        batches = [answer for answer in answers if not isinstance(answer, Exception)]
        if not batches:
            raise DhtServiceFailure("Could not find node, all nodes requests ended in failure")

        returned = [node for batch in batches for node in batch]
        hit = next((node for node in returned if node.node_id() == target), None)
        if hit is not None:
            return hit

        our = int.from_bytes(self.our_id, "big")
        ranked = sorted(returned, key=lambda node: int.from_bytes(node.node_id(), "big") ^ our)
        seen = set(ranked)
        starting_pool = ranked[:_STARTING_POOL_SIZE]

        found = asyncio.get_running_loop().create_future()
        search = asyncio.create_task(
            _quietly(self._recursive_find_from_pool(starting_pool, target, seen, found))
        )
        return await self._race(search, found, "Could not find node, all nodes requests ended in failure")

    async def _recursive_find_from_pool(
        self,
        pool: list[CompactNodeContact],
        finding: bytes,
        seen: set[CompactNodeContact],
        slot: asyncio.Future,
    ) -> None:
        """Ask every unseen node in ``pool`` for ``finding``; the first hit fills ``slot``."""
        pool = [node for node in pool if node not in seen]
        log.info("len = %d", len(pool))
        if not pool:
            raise RecursiveSearchError(RecursiveSearchError.Kind.BOTTOMED_OUT)

        async def branch(node: CompactNodeContact) -> None:
            returned = await self._ask_her_for_nodes(node.address(), finding)
            for contact in returned:
                self.routing_table.add_new_node(contact)
            hit = next((contact for contact in returned if contact.node_id() == finding), None)
            if hit is not None:
                if slot.done():
                    raise RecursiveSearchError(RecursiveSearchError.Kind.CANCELLED)
                slot.set_result(hit)
                return
            seen.add(node)
            await self._recursive_find_from_pool(returned, finding, seen, slot)

        await gather_all(_settled(branch(node)) for node in pool)
        raise RecursiveSearchError(RecursiveSearchError.Kind.BOTTOMED_OUT)

    async def _recursive_get_peers_from_pool(
        self,
        pool: list[CompactNodeContact],
        finding: bytes,
        seen: set[CompactNodeContact],
        slot: asyncio.Future,
    ) -> None:
        """Ask every unseen node in ``pool`` for peers; the first success fills ``slot``."""
        pool = [node for node in pool if node not in seen]
        log.info("Starting pool size: %d", len(pool))
        if not pool:
            log.debug("bottomed out")
            raise RecursiveSearchError(RecursiveSearchError.Kind.BOTTOMED_OUT)

        async def branch(node: CompactNodeContact) -> None:
            answer = await self._ask_her_for_peers(node.address(), finding)
            if answer.peers is None:
                deferred = _dedup(answer.nodes or [])
                seen.add(node)
                await self._recursive_get_peers_from_pool(deferred, finding, seen, slot)
                return
            if slot.done():
                raise RecursiveSearchError(RecursiveSearchError.Kind.CANCELLED)
            slot.set_result((answer.token, answer.peers))

        log.debug("spawning %d tasks", len(pool))
        await gather_all(_settled(branch(node)) for node in pool)
        raise RecursiveSearchError(RecursiveSearchError.Kind.BOTTOMED_OUT)

    async def get_peers(self, info_hash: bytes) -> tuple[bytes, list[CompactPeerContact]]:
        """Search the network for peers of ``info_hash``; returns the token and the peers."""
        info_hash = bytes(info_hash)
        closest = self.routing_table.find_closest(info_hash)
        found = asyncio.get_running_loop().create_future()
        search = asyncio.create_task(
            _quietly(self._recursive_get_peers_from_pool(closest, info_hash, set(), found))
        )
        return await self._race(search, found, "all branches in get peers failed")

    async def announce_peers(
        self,
        recipient: Address,
        info_hash: bytes,
        port: int | None,
        token: bytes,
    ) -> None:
        """Announce that we have ``info_hash``; without ``port`` our bound port is used."""
        query = new_announce_peer_query(
            self._next_transaction_id(),
            info_hash,
            self.our_id,
            self.socket_address[1] if port is None else port,
            True,
            token,
        )
        response = await self.send_message(query, recipient)
        if isinstance(response, PingAnnouncePeerResponse):
            return
        if isinstance(response, ErrorResponse):
            raise DhtServiceFailure(f"node responded with an error to our announce peer request {response!r}")
        raise DhtServiceFailure("non-compliant response from DHT node")