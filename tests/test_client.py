import asyncio
from contextlib import asynccontextmanager

import pytest

from midwest_mainline.client import DhtClientV4, RecursiveSearchError, gather_all
from midwest_mainline.domain import CompactNodeContact, CompactPeerContact, concat_node_contacts
from midwest_mainline.message import (
    AnnouncePeerQuery,
    GetPeersQuery,
    decode_krpc,
    new_find_node_response,
    new_get_peers_deferred_response,
    new_get_peers_deferred_response_non_compliant,
    new_get_peers_success_response,
    new_ping_response,
    new_standard_generic_error_response,
)
from midwest_mainline.routing import RoutingTable
from midwest_mainline.service import DhtServiceFailure, MessageDemultiplexer

OUR_ID = bytes(20)
BIND = ("0.0.0.0", 51413)
INFO_HASH = b"mnopqrstuvwxyz123456"


def node_id(n):
    return bytes([n]) * 20


def address(n):
    return (f"10.0.0.{n}", 6881)


def contact(n):
    return CompactNodeContact.from_node_id_and_addr(node_id(n), address(n))


class FakeNetwork:
    """Answers queries sent to known addresses through the incoming queue."""

    def __init__(self, incoming):
        self.incoming = incoming
        self.handlers = {}
        self.sent = []

    def sendto(self, data, addr):
        message = decode_krpc(data)
        self.sent.append((message, addr))
        handler = self.handlers.get(addr)
        if handler is None:
            return
        reply = handler(message)
        if reply is not None:
            self.incoming.put_nowait((decode_krpc(reply.encode()), addr))


@asynccontextmanager
async def make_client():
    incoming = asyncio.Queue()
    queries = asyncio.Queue()
    demux = MessageDemultiplexer(incoming, queries)
    net = FakeNetwork(incoming)
    table = RoutingTable(OUR_ID)
    client = DhtClientV4(BIND, net, demux, table, OUR_ID, query_timeout=0.2)
    runner = asyncio.create_task(demux.run())
    try:
        yield client, net
    finally:
        incoming.put_nowait(None)
        await runner


@pytest.mark.asyncio
async def test_gather_all_keeps_order():
    async def delayed(value, delay):
        await asyncio.sleep(delay)
        return value

    results = await gather_all([delayed("a", 0.03), delayed("b", 0.0), delayed("c", 0.01)])
    assert results == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_gather_all_propagates_errors():
    async def boom():
        raise ValueError("bad")

    async def fine():
        return 1

    with pytest.raises(ValueError):
        await gather_all([fine(), boom()])


def test_recursive_search_error_text():
    error = RecursiveSearchError(RecursiveSearchError.Kind.BOTTOMED_OUT)
    assert str(error) == "BottomedOut"
    assert error.kind is RecursiveSearchError.Kind.BOTTOMED_OUT


@pytest.mark.asyncio
async def test_ping_adds_responder_to_routing_table():
    async with make_client() as (client, net):
        net.handlers[address(1)] = lambda q: new_ping_response(q.transaction_id, node_id(1))
        await client.ping(address(1))
        known = client.routing_table.find(node_id(1))
        assert known is not None
        assert known.contact.address() == address(1)


@pytest.mark.asyncio
async def test_ping_unexpected_response_raises():
    async with make_client() as (client, net):
        net.handlers[address(1)] = lambda q: new_standard_generic_error_response(q.transaction_id)
        with pytest.raises(DhtServiceFailure, match="Unexpected response to ping"):
            await client.ping(address(1))
        assert client.routing_table.node_count() == 0


@pytest.mark.asyncio
async def test_transaction_ids_are_big_endian_counters():
    async with make_client() as (client, net):
        net.handlers[address(1)] = lambda q: new_ping_response(q.transaction_id, node_id(1))
        await client.ping(address(1))
        await client.ping(address(1))
        ids = [message.transaction_id for message, _ in net.sent]
        assert ids == [(0).to_bytes(4, "big"), (1).to_bytes(4, "big")]


@pytest.mark.asyncio
async def test_announce_uses_bound_port_by_default():
    async with make_client() as (client, net):
        net.handlers[address(1)] = lambda q: new_ping_response(q.transaction_id, node_id(1))
        await client.announce_peers(address(1), INFO_HASH, None, b"token")
        query, recipient = net.sent[0]
        assert isinstance(query, AnnouncePeerQuery)
        assert recipient == address(1)
        assert query.port == BIND[1]
        assert query.implied_port == 1
        assert query.info_hash == INFO_HASH
        assert query.token == b"token"


@pytest.mark.asyncio
async def test_announce_with_explicit_port():
    async with make_client() as (client, net):
        net.handlers[address(1)] = lambda q: new_ping_response(q.transaction_id, node_id(1))
        await client.announce_peers(address(1), INFO_HASH, 6881, b"token")
        query, _ = net.sent[0]
        assert query.port == 6881


@pytest.mark.asyncio
async def test_announce_error_response_raises():
    async with make_client() as (client, net):
        net.handlers[address(1)] = lambda q: new_standard_generic_error_response(q.transaction_id)
        with pytest.raises(DhtServiceFailure, match="error to our announce peer request"):
            await client.announce_peers(address(1), INFO_HASH, None, b"token")


@pytest.mark.asyncio
async def test_announce_non_compliant_response_raises():
    async with make_client() as (client, net):
        net.handlers[address(1)] = lambda q: new_find_node_response(q.transaction_id, node_id(1), b"")
        with pytest.raises(DhtServiceFailure, match="non-compliant response from DHT node"):
            await client.announce_peers(address(1), INFO_HASH, None, b"token")


@pytest.mark.asyncio
async def test_find_node_known_locally_sends_nothing():
    async with make_client() as (client, net):
        client.routing_table.add_new_node(contact(5))
        found = await client.find_node(node_id(5))
        assert found == contact(5)
        assert net.sent == []


@pytest.mark.asyncio
async def test_find_node_with_empty_table_fails():
    async with make_client() as (client, _):
        with pytest.raises(DhtServiceFailure, match="all nodes requests ended in failure"):
            await client.find_node(node_id(9))


@pytest.mark.asyncio
async def test_find_node_target_in_first_answer():
    async with make_client() as (client, net):
        client.routing_table.add_new_node(contact(1))
        net.handlers[address(1)] = lambda q: new_find_node_response(
            q.transaction_id, node_id(1), concat_node_contacts([contact(2), contact(9), contact(9)])
        )
        found = await client.find_node(node_id(9))
        assert found == contact(9)
        assert found.address() == address(9)


@pytest.mark.asyncio
async def test_find_node_stops_after_first_round_when_missing():
    async with make_client() as (client, net):
        client.routing_table.add_new_node(contact(1))
        net.handlers[address(1)] = lambda q: new_find_node_response(
            q.transaction_id, node_id(1), concat_node_contacts([contact(2), contact(3)])
        )
        with pytest.raises(DhtServiceFailure):
            await client.find_node(node_id(7))
        assert len(net.sent) == 1
        assert client.routing_table.node_count() == 1


@pytest.mark.asyncio
async def test_find_node_times_out_when_nobody_answers():
    async with make_client() as (client, net):
        client.routing_table.add_new_node(contact(1))
        with pytest.raises(DhtServiceFailure):
            await client.find_node(node_id(7))
        assert [recipient for _, recipient in net.sent] == [address(1)]


@pytest.mark.asyncio
async def test_get_peers_direct_success():
    peers = [
        CompactPeerContact.from_address(("192.0.2.1", 6881)),
        CompactPeerContact.from_address(("192.0.2.2", 51413)),
    ]
    async with make_client() as (client, net):
        client.routing_table.add_new_node(contact(1))
        net.handlers[address(1)] = lambda q: new_get_peers_success_response(
            q.transaction_id, node_id(1), b"token", peers
        )
        token, found = await client.get_peers(INFO_HASH)
        assert token == b"token"
        assert list(found) == peers
        query, _ = net.sent[0]
        assert isinstance(query, GetPeersQuery)
        assert query.info_hash == INFO_HASH


@pytest.mark.asyncio
async def test_get_peers_follows_deferred_response():
    peers = [CompactPeerContact.from_address(("192.0.2.7", 6881))]
    async with make_client() as (client, net):
        client.routing_table.add_new_node(contact(1))
        net.handlers[address(1)] = lambda q: new_get_peers_deferred_response(
            q.transaction_id, node_id(1), b"token", concat_node_contacts([contact(2)])
        )
        net.handlers[address(2)] = lambda q: new_get_peers_success_response(
            q.transaction_id, node_id(2), b"second", peers
        )
        token, found = await client.get_peers(INFO_HASH)
        assert token == b"second"
        assert list(found) == peers
        assert [recipient for _, recipient in net.sent] == [address(1), address(2)]


@pytest.mark.asyncio
async def test_get_peers_follows_response_without_token():
    peers = [CompactPeerContact.from_address(("192.0.2.8", 6881))]
    async with make_client() as (client, net):
        client.routing_table.add_new_node(contact(1))
        net.handlers[address(1)] = lambda q: new_get_peers_deferred_response_non_compliant(
            q.transaction_id, node_id(1), concat_node_contacts([contact(3)])
        )
        net.handlers[address(3)] = lambda q: new_get_peers_success_response(
            q.transaction_id, node_id(3), b"token", peers
        )
        token, found = await client.get_peers(INFO_HASH)
        assert token == b"token"
        assert list(found) == peers


@pytest.mark.asyncio
async def test_get_peers_error_responses_fail():
    async with make_client() as (client, net):
        client.routing_table.add_new_node(contact(1))
        net.handlers[address(1)] = lambda q: new_standard_generic_error_response(q.transaction_id)
        with pytest.raises(DhtServiceFailure, match="all branches in get peers failed"):
            await client.get_peers(INFO_HASH)


@pytest.mark.asyncio
async def test_get_peers_with_empty_table_fails():
    async with make_client() as (client, net):
        with pytest.raises(DhtServiceFailure, match="all branches in get peers failed"):
            await client.get_peers(INFO_HASH)
        assert net.sent == []