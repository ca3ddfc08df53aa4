# midwest_mainline

Building blocks for a BitTorrent "mainline" distributed hash table node
(BEP-5) on asyncio, with BEP-42 style node id generation. It has no
dependencies outside the standard library.

## Modules

- `midwest_mainline.bencode`: `encode(value)` and `decode(data)`. `encode`
  takes ints, bytes-like objects, `str`, lists, tuples and mappings, and writes
  dictionary keys in sorted order. `decode` returns strings and dictionary keys
  as `bytes`. Malformed input, trailing data or duplicate keys raise
  `BencodeError`, which is a `ValueError`.
- `midwest_mainline.domain`: `CompactNodeContact` (a 20-byte node id, an IPv4
  address and a big-endian port, 26 bytes in all) and `CompactPeerContact` (an
  address and a port, 6 bytes). Addresses are `(host, port)` tuples.
  `concat_node_contacts` joins contacts into a compact `nodes` string.
  `split_node_contacts` splits such a string back into contacts and ignores a
  trailing partial entry.
- `midwest_mainline.message`: KRPC messages as frozen dataclasses:
  - `PingQuery`, `FindNodeQuery`, `GetPeersQuery` and `AnnouncePeerQuery`
  - `PingAnnouncePeerResponse`, `FindNodeGetPeersNonCompliantResponse`,
    `GetPeersSuccessResponse` and `GetPeersDeferredResponse`
  - `ErrorResponse`

  They all derive from `Krpc`. `Krpc` has `is_query()`, `is_response()`,
  `is_error()` and `encode()`. Helpers such as `new_ping_query`,
  `new_find_node_response` and `new_standard_generic_error_response` build the
  messages. `decode_krpc(data)` tries each message shape in turn and raises
  `MessageDecodeError` when none fits.
- `midwest_mainline.routing`: `RoutingTable`, the Kademlia table. It uses
  8-node `Bucket`s, split around our own id as they fill. Its methods are
  `add_new_node`, `find`, `find_closest` (at most eight contacts, ordered by XOR
  distance) and `node_count`.
- `midwest_mainline.transaction_id_pool`: `TransactionIdPool`, a thread-safe
  32-bit counter that wraps around when it overflows.
- `midwest_mainline.service`:
  - `MessageDemultiplexer` reads `(message, address)` pairs from an
    `asyncio.Queue`. A message whose transaction id was registered resolves the
    registered future; every other message goes to a query queue. A `None`
    item stops `run()`.
  - `random_idv4(external_ip, rand)` derives a BEP-42 node id from an external
    IPv4 address.
  - `crc32c(data)` computes the CRC-32C checksum.
  - `DhtServiceFailure` is the error raised when a DHT operation fails.
- `midwest_mainline.client`:
  - `DhtClientV4` provides `send_message`, `ping`, `find_node`, `get_peers` and
    `announce_peers`. The queries that `find_node` and `get_peers` send out
    give up after `query_timeout` seconds (15 by default).
  - `gather_all` runs coroutines concurrently and collects their results in
    order.
  - `RecursiveSearchError` is raised when a branch of a search ends without a
    result.

## Example

```python
from midwest_mainline.message import decode_krpc, new_ping_query

query = new_ping_query(b"aa", b"abcdefghij0123456789")
wire = query.encode()
assert wire == b"d1:ad2:id20:abcdefghij0123456789e1:q4:ping1:t2:aa1:y1:qe"
assert decode_krpc(wire) == query
```

```python
from midwest_mainline.domain import CompactNodeContact
from midwest_mainline.routing import RoutingTable

table = RoutingTable(bytes(20))
table.add_new_node(
    CompactNodeContact.from_node_id_and_addr(b"\x01" * 20, ("10.0.0.1", 6881))
)
print(table.node_count())
print(table.find_closest(b"\x02" * 20))
```

### Wiring a client to a UDP socket

The package does not open sockets itself. You connect the pieces:

```python
import asyncio
import secrets

from midwest_mainline.client import DhtClientV4
from midwest_mainline.message import MessageDecodeError, decode_krpc
from midwest_mainline.routing import RoutingTable
from midwest_mainline.service import MessageDemultiplexer, random_idv4


class KrpcProtocol(asyncio.DatagramProtocol):
    def __init__(self, incoming):
        self.incoming = incoming

    def datagram_received(self, data, addr):
        try:
            self.incoming.put_nowait((decode_krpc(data), addr))
        except MessageDecodeError:
            pass


async def main():
    incoming, queries = asyncio.Queue(), asyncio.Queue()
    demultiplexer = MessageDemultiplexer(incoming, queries)
    loop = asyncio.get_running_loop()
    transport, _ = await loop.create_datagram_endpoint(
        lambda: KrpcProtocol(incoming), local_addr=("0.0.0.0", 6881)
    )
    our_id = random_idv4("203.0.113.7", secrets.randbits(8))
    table = RoutingTable(our_id)
    client = DhtClientV4(("0.0.0.0", 6881), transport, demultiplexer, table, our_id)
    router = asyncio.create_task(demultiplexer.run())
    try:
        await asyncio.wait_for(client.ping(("192.0.2.10", 6881)), 5)
        print(table.node_count())
    finally:
        incoming.put_nowait(None)
        await router
        transport.close()


asyncio.run(main())
```

`send_message`, `ping` and `announce_peers` wait for an answer with no time
limit of their own. Wrap them in `asyncio.wait_for` if you need one.

## What it does not do

- It has no server. Queries from other nodes end up on the demultiplexer's
  query queue, and nothing answers them.
- It has no bootstrap routine and no long-running node. You fill the routing
  table with `ping` or `RoutingTable.add_new_node`.
- It has no command-line program.
- It does not store announced peers, and it does not expire or ping routing
  table entries.
- It supports IPv4 only.

## Installation

```
pip install midwest_mainline
```

## Running the tests

```
pip install -e ".[test]"
pytest
```