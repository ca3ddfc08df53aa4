import pytest

from midwest_mainline.domain import (
    CompactNodeContact,
    CompactPeerContact,
    concat_node_contacts,
    split_node_contacts,
)

NODE_ID = b"abcdefghij0123456789"


def test_node_contact_round_trip():
    contact = CompactNodeContact.from_node_id_and_addr(NODE_ID, ("87.98.162.88", 6881))
    assert contact.node_id() == NODE_ID
    assert contact.address() == ("87.98.162.88", 6881)
    assert len(contact.raw) == 26


def test_node_contact_layout():
    contact = CompactNodeContact.from_node_id_and_addr(NODE_ID, ("178.143.32.252", 24385))
    assert contact.raw == NODE_ID + bytes.fromhex("b28f20fc5f41")


def test_node_contact_repr_shows_id_and_address():
    contact = CompactNodeContact.from_node_id_and_addr(NODE_ID, ("87.98.162.88", 6881))
    assert NODE_ID.hex() in repr(contact)
    assert "87.98.162.88:6881" in repr(contact)


def test_node_contact_equality_and_hash():
    a = CompactNodeContact.from_node_id_and_addr(NODE_ID, ("10.0.0.1", 1))
    b = CompactNodeContact(a.raw)
    assert a == b
    assert len({a, b}) == 1


@pytest.mark.parametrize("length", [0, 25, 27])
def test_node_contact_wrong_length(length):
    with pytest.raises(ValueError):
        CompactNodeContact(bytes(length))


def test_node_contact_bad_id_length():
    with pytest.raises(ValueError):
        CompactNodeContact.from_node_id_and_addr(b"short", ("10.0.0.1", 1))


def test_node_contact_bad_address():
    with pytest.raises(ValueError):
        CompactNodeContact.from_node_id_and_addr(NODE_ID, ("not an ip", 1))
    with pytest.raises(ValueError):
        CompactNodeContact.from_node_id_and_addr(NODE_ID, ("10.0.0.1", 70000))


@pytest.mark.parametrize(
    "addr, wire",
    [
        (("178.143.32.252", 24385), "b28f20fc5f41"),
        (("176.37.231.137", 36878), "b025e789900e"),
        (("91.214.242.127", 1070), "5bd6f27f042e"),
    ],
)
def test_peer_contact_wire_bytes(addr, wire):
    peer = CompactPeerContact.from_address(addr)
    assert peer.raw == bytes.fromhex(wire)
    assert peer.address() == addr


def test_peer_contact_wrong_length():
    with pytest.raises(ValueError):
        CompactPeerContact(b"12345")


def test_concat_and_split_round_trip():
    contacts = [
        CompactNodeContact.from_node_id_and_addr(bytes([i]) * 20, ("10.0.0.%d" % i, 1000 + i))
        for i in range(1, 5)
    ]
    joined = concat_node_contacts(contacts)
    assert len(joined) == 26 * len(contacts)
    assert split_node_contacts(joined) == contacts


def test_split_ignores_trailing_partial_entry():
    contact = CompactNodeContact.from_node_id_and_addr(NODE_ID, ("10.0.0.1", 1))
    assert split_node_contacts(contact.raw + b"extra") == [contact]
    assert split_node_contacts(NODE_ID) == []