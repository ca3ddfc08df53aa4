"""Bencode, KRPC messages, routing table and asyncio client for the BitTorrent mainline DHT."""

__version__ = "0.1.1"