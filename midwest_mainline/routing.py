"""The Kademlia routing table that keeps track of nodes near our id."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from .domain import CompactNodeContact

__all__ = ["BUCKET_SIZE", "ID_SPACE", "Node", "Bucket", "RoutingTable"]

log = logging.getLogger(__name__)

BUCKET_SIZE = 8
ID_SPACE = 2**160


def _as_int(node_id: bytes) -> int:
    return int.from_bytes(node_id, "big")


@dataclass
class Node:
    contact: CompactNodeContact
    last_checked: float


@dataclass
class Bucket:
    """Nodes whose distance lies in ``[lower_bound, upper_bound)``."""

    lower_bound: int
    upper_bound: int
    nodes: list[Node] = field(default_factory=list)

    def full(self) -> bool:
        return len(self.nodes) >= BUCKET_SIZE

    def covers(self, value: int) -> bool:
        return self.lower_bound <= value < self.upper_bound


class RoutingTable:
    """Buckets of known nodes, split around our own id as they fill."""

    def __init__(self, node_id: bytes) -> None:
        self.our_id = _as_int(node_id)
        self.buckets: list[Bucket] = [Bucket(0, ID_SPACE)]

    def _nodes(self):
        return (node for bucket in self.buckets for node in bucket.nodes)

    def node_count(self) -> int:
        return sum(len(bucket.nodes) for bucket in self.buckets)

    def add_new_node(self, contact: CompactNodeContact) -> None:
        """Add a node; a known node is refreshed, a node for a full bucket may be dropped."""
        known = self.find(contact.node_id())
        if known is not None:
            known.last_checked = time.monotonic()
            return

        distance = self.our_id ^ _as_int(contact.node_id())
        target = next((b for b in self.buckets if b.covers(distance)), None)
        if target is None:
            raise LookupError(f"no bucket covers distance {distance:#x}")

        if not target.full():
            target.nodes.append(Node(contact, time.monotonic()))
            log.debug("node added")
        elif target.covers(self.our_id):
            new_bucket = Bucket(target.upper_bound // 2, target.upper_bound)
            staying = []
            for node in target.nodes:
                if _as_int(node.contact.node_id()) <= new_bucket.lower_bound:
                    new_bucket.nodes.append(node)
                else:
                    staying.append(node)
            target.nodes = staying
            target.upper_bound //= 2
            self.buckets.append(new_bucket)
            log.debug("bucket split")
        else:
            log.debug("node not added, bucket full and not within our id")
        log.info("node processed, node count: %d", self.node_count())

    def find_closest(self, target: bytes) -> list[CompactNodeContact]:
        """Return up to eight known contacts closest to ``target``, excluding ``target`` itself."""
        target_int = _as_int(target)
        ranked = sorted(self._nodes(), key=lambda node: _as_int(node.contact.node_id()) ^ target_int)
        closest = (node.contact for node in ranked if node.contact.node_id() != target)
        return [contact for contact, _ in zip(closest, range(BUCKET_SIZE))]

    def find(self, target: bytes) -> Node | None:
        return next((node for node in self._nodes() if node.contact.node_id() == target), None)