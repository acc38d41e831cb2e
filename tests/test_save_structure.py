import struct

import pytest

from cpsav_tree import (
    BadNodeCount,
    BadSignature,
    MalformedLink,
    Node,
    NO_NODE,
    TruncatedInput,
    account_bytes,
    encode_packed_int,
    load_report,
    read_save_structure,
)


def test_minimal_hand_built_save():
    data = (
        b"EDON"
        + b"\x01"
        + encode_packed_int(-4) + b"root"
        + struct.pack("<iiII", -1, -1, 0, 10)
        + struct.pack("<I", 0)
        + b"ENOD"
    )
    tree = read_save_structure(data)

    assert tree.tree_offset == 0
    assert tree.nodes == [Node("root", NO_NODE, NO_NODE, 0, 10)]
    assert tree.payload == data

    (entry,) = account_bytes(tree)
    assert entry.name == "root"
    assert entry.own_bytes == entry.total_bytes == 10
    assert load_report(data) == "root: 10 own bytes, 10 total bytes"


def test_table_after_leading_data(build_save):
    data = build_save([("root", -1, -1, 0, 6)], prefix=b"HEADERDATA")
    tree = read_save_structure(data)

    assert tree.tree_offset == 10
    assert tree.node_payload(0) == b"HEADER"


def test_accepts_bytearray(build_save):
    tree = read_save_structure(bytearray(build_save([("root", -1, -1, 0, 0)])))
    assert isinstance(tree.payload, bytes)
    assert len(tree.nodes) == 1


def test_utf16_names(build_save):
    tree = read_save_structure(build_save([("inventory", -1, -1, 0, 0)], utf16=True))
    assert tree.nodes[0].name == "inventory"


def test_bad_trailer_signature(build_save):
    with pytest.raises(BadSignature):
        read_save_structure(build_save([("root", -1, -1, 0, 0)], trailer_magic=b"DONE"))


def test_bad_tree_signature(build_save):
    with pytest.raises(BadSignature):
        read_save_structure(build_save([("root", -1, -1, 0, 0)], tree_magic=b"NODE"))


def test_tree_offset_pointing_at_wrong_place(build_save):
    data = build_save([("root", -1, -1, 0, 0)], prefix=b"xxxxEDON", tree_offset=2)
    with pytest.raises(BadSignature):
        read_save_structure(data)


def test_tree_offset_past_end(build_save):
    with pytest.raises(TruncatedInput):
        read_save_structure(build_save([], tree_offset=10_000))


def test_buffer_smaller_than_trailer():
    with pytest.raises(TruncatedInput):
        read_save_structure(b"ENOD")


def test_empty_node_table(build_save):
    tree = read_save_structure(build_save([]))
    assert tree.nodes == []
    assert tree.root_indices() == []


def test_fewer_records_than_declared(build_save):
    records = [
        ("a_rather_long_node_name", -1, -1, 0, 0),
        ("another_long_node_name", -1, -1, 0, 0),
    ]
    with pytest.raises(TruncatedInput):
        read_save_structure(build_save(records, node_count=3))


def test_declared_count_larger_than_buffer(build_save):
    with pytest.raises(TruncatedInput):
        read_save_structure(build_save([("a", -1, -1, 0, 0)], node_count=1 << 30))


def test_negative_node_count(build_save):
    with pytest.raises(BadNodeCount):
        read_save_structure(build_save([], node_count=-1))


def test_child_index_out_of_range(build_save):
    with pytest.raises(MalformedLink):
        read_save_structure(build_save([("root", -1, 5, 0, 0)]))


def test_next_index_below_sentinel(build_save):
    with pytest.raises(MalformedLink):
        read_save_structure(build_save([("root", -2, -1, 0, 0)]))


def test_sibling_loop(build_save):
    records = [
        ("root", -1, 1, 0, 30),
        ("a", 2, -1, 0, 10),
        ("b", 1, -1, 0, 10),
    ]
    with pytest.raises(MalformedLink):
        read_save_structure(build_save(records))


def test_self_referencing_sibling(build_save):
    with pytest.raises(MalformedLink):
        read_save_structure(build_save([("root", 0, -1, 0, 0)]))


def test_children_and_roots(build_save):
    records = [
        ("root", -1, 1, 0, 100),
        ("a", 2, 3, 0, 30),
        ("b", -1, -1, 30, 20),
        ("a.x", -1, -1, 0, 5),
    ]
    tree = read_save_structure(build_save(records))

    assert tree.children(0) == [1, 2]
    assert tree.children(1) == [3]
    assert tree.children(2) == []
    assert tree.root_indices() == [0]
    assert tree.nodes[0].has_children
    assert tree.nodes[1].has_next
    assert not tree.nodes[2].has_next


def test_node_payload_outside_buffer(build_save):
    tree = read_save_structure(build_save([("root", -1, -1, 0, 1_000_000)]))
    with pytest.raises(TruncatedInput):
        tree.node_payload(0)
