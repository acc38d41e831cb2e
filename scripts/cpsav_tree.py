#!/usr/bin/env python3
"""
sav.dat Node Table Inspector

Reads the node table of a sav.dat save container and reports, for every node,
how many bytes belong to the node itself and how many to its immediate
children.

Usage:
    python cpsav_tree.py info <sav.dat> [<sav.dat> ...]
    python cpsav_tree.py tree <sav.dat>
    python cpsav_tree.py export <sav.dat> <output.yaml>

File layout (all integers little-endian):
- Trailer: the last 8 bytes are [u32 tree_offset]["ENOD"]
- At tree_offset: ["EDON"][packed node_count][node_count records]
- Record: [prefixed name][i32 next_idx][i32 child_idx][u32 data_offset][u32 data_size]

Node payloads are only measured, never decoded.

Copyright (C) 2026 wszqkzqk <wszqkzqk@qq.com>

This library is free software; you can redistribute it and/or
modify it under the terms of the GNU Lesser General Public
License as published by the Free Software Foundation; either
version 2.1 of the License, or (at your option) any later version.

This library is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the GNU
Lesser General Public License for more details.

You should have received a copy of the GNU Lesser General Public
License along with this library; if not, write to the Free Software
Foundation, Inc., 51 Franklin Street, Fifth Floor, Boston, MA  02110-1301  USA
"""

import argparse
import logging
import struct
import sys
import yaml
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

TRAILER_MAGIC = b"ENOD"
TREE_MAGIC = b"EDON"
TRAILER_SIZE = 8  # tree_offset(4) + magic(4)

# Index value meaning "no sibling" / "no child"
NO_NODE = -1

PACKED_INT_MAX_BYTES = 5
PACKED_INT_LIMIT = 1 << 35  # 6 + 7 + 7 + 7 + 8 magnitude bits

# Smallest possible record: 1-byte empty name + four 32-bit fields
MIN_RECORD_SIZE = 1 + 4 * 4

LOAD_FAILED_MESSAGE = "Could not load save"
READ_FAILED_MESSAGE = "Could not read file"


# ============================================================================
# Errors
# ============================================================================

class SaveParseError(Exception):
    """Base class for everything that can go wrong while reading a save."""


class TruncatedInput(SaveParseError):
    """The buffer ended before a required field."""


class BadSignature(SaveParseError):
    """The ENOD trailer or the EDON tree marker is missing."""


class InvalidText(SaveParseError):
    """A string payload is not valid in the encoding its length selected."""


class BadNodeCount(SaveParseError):
    """The node table declares a negative number of nodes."""


class MalformedLink(SaveParseError):
    """A next/child index points outside the node table, or a sibling chain loops."""


class InconsistentAccounting(SaveParseError):
    """A node's immediate children declare more bytes than the node itself."""

    def __init__(self, index: int, name: str, total_bytes: int, child_bytes: int):
        super().__init__(
            f"Node {index} ({name!r}) declares {total_bytes} bytes "
            f"but its children declare {child_bytes}"
        )
        self.index = index
        self.name = name
        self.total_bytes = total_bytes
        self.child_bytes = child_bytes


# ============================================================================
# Binary Reader/Writer Helpers
# ============================================================================

class BinaryReader:
    """Helper class for reading binary data in little-endian format."""

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    @property
    def remaining(self) -> int:
        return len(self.data) - self.pos

    def seek(self, pos: int):
        if pos < 0 or pos > len(self.data):
            raise TruncatedInput(f"Offset {pos} is outside the {len(self.data)}-byte buffer")
        self.pos = pos

    def read_bytes(self, n: int) -> bytes:
        if n > self.remaining:
            raise TruncatedInput(
                f"Not enough data at offset {self.pos}: need {n}, have {self.remaining}"
            )
        result = self.data[self.pos:self.pos + n]
        self.pos += n
        return result

    def read_u8(self) -> int:
        return self.read_bytes(1)[0]

    def read_u32(self) -> int:
        return struct.unpack("<I", self.read_bytes(4))[0]

    def read_i32(self) -> int:
        return struct.unpack("<i", self.read_bytes(4))[0]

    def read_packed_int(self) -> int:
        """Read a 1-5 byte packed integer.

        The first byte holds the sign (0x80), a continuation flag (0x40) and
        the low 6 bits of the magnitude. Bytes 2-4 add 7 bits each with 0x80
        as their continuation flag; a 5th byte adds its full 8 bits.
        """
        a = self.read_u8()
        value = a & 0x3F
        negative = a & 0x80
        if a & 0x40:
            shift = 6
            for _ in range(PACKED_INT_MAX_BYTES - 2):
                b = self.read_u8()
                value |= (b & 0x7F) << shift
                shift += 7
                if not b & 0x80:
                    break
            else:
                value |= self.read_u8() << shift
        return -value if negative else value

    def read_pstr(self) -> str:
        """Read a packed-length string: negative length = UTF-8 bytes, otherwise UTF-16 units."""
        start = self.pos
        count = self.read_packed_int()
        if count < 0:
            raw = self.read_bytes(-count)
            encoding = "utf-8"
        else:
            raw = self.read_bytes(count * 2)
            encoding = "utf-16-le"
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError as e:
            raise InvalidText(f"Invalid {encoding} string at offset {start}: {e}") from e


class BinaryWriter:
    """Helper class for writing binary data in little-endian format."""

    def __init__(self):
        self.data = bytearray()

    def write_bytes(self, data: bytes):
        self.data.extend(data)

    def write_u32(self, value: int):
        self.data.extend(struct.pack("<I", value & 0xFFFFFFFF))

    def write_i32(self, value: int):
        self.data.extend(struct.pack("<i", value))

    def write_packed_int(self, value: int):
        self.data.extend(encode_packed_int(value))

    def write_pstr(self, value: str, utf16: bool = False):
        if utf16:
            raw = value.encode("utf-16-le")
            self.write_packed_int(len(raw) // 2)
        else:
            raw = value.encode("utf-8")
            self.write_packed_int(-len(raw))
        self.write_bytes(raw)

    def get_bytes(self) -> bytes:
        return bytes(self.data)


def encode_packed_int(value: int) -> bytes:
    """Encode value with the same 6/7/7/7/8-bit grouping read_packed_int expects."""
    magnitude = abs(value)
    if magnitude >= PACKED_INT_LIMIT:
        raise ValueError(f"{value} does not fit in a packed integer")
    first = magnitude & 0x3F
    if value < 0:
        first |= 0x80
    rest = magnitude >> 6
    if not rest:
        return bytes([first])
    out = bytearray([first | 0x40])
    for _ in range(PACKED_INT_MAX_BYTES - 2):
        group = rest & 0x7F
        rest >>= 7
        if not rest:
            out.append(group)
            return bytes(out)
        out.append(group | 0x80)
    out.append(rest)
    return bytes(out)


def decode_packed_int(data: bytes) -> tuple[int, int]:
    """Decode a packed integer from the start of data. Returns (value, bytes_used)."""
    reader = BinaryReader(data)
    value = reader.read_packed_int()
    return value, reader.pos


# ============================================================================
# Node Graph
# ============================================================================

@dataclass(frozen=True)
class Node:
    """One entry of the node table. Links are indices into SaveTree.nodes."""
    name: str
    next_idx: int
    child_idx: int
    data_offset: int
    data_size: int

    @property
    def has_children(self) -> bool:
        return self.child_idx != NO_NODE

    @property
    def has_next(self) -> bool:
        return self.next_idx != NO_NODE


@dataclass
class SaveTree:
    """A decoded save: the original buffer plus its node table in file order."""
    payload: bytes
    tree_offset: int
    nodes: list[Node] = field(default_factory=list)

    def children(self, index: int) -> list[int]:
        """Indices of the immediate children of node `index`, in chain order."""
        return list(iter_chain(self.nodes, self.nodes[index].child_idx))

    def root_indices(self) -> list[int]:
        """Nodes that are neither somebody's child nor somebody's next sibling."""
        linked = set()
        for node in self.nodes:
            linked.add(node.child_idx)
            linked.add(node.next_idx)
        return [i for i in range(len(self.nodes)) if i not in linked]

    def node_payload(self, index: int) -> bytes:
        node = self.nodes[index]
        end = node.data_offset + node.data_size
        if end > len(self.payload):
            raise TruncatedInput(
                f"Node {index} ({node.name!r}) data [{node.data_offset}, {end}) "
                f"exceeds the {len(self.payload)}-byte buffer"
            )
        return self.payload[node.data_offset:end]


def iter_chain(nodes: list[Node], start: int) -> Iterator[int]:
    """Yield start and every index reachable from it through next_idx.

    Links must already be range-checked. A chain longer than the node table
    can only be a loop and raises MalformedLink.
    """
    index = start
    steps = 0
    while index != NO_NODE:
        if steps >= len(nodes):
            raise MalformedLink(f"Sibling chain starting at node {start} never terminates")
        yield index
        index = nodes[index].next_idx
        steps += 1


def validate_links(nodes: list[Node]):
    """Check every next/child index and make sure every sibling chain terminates."""
    count = len(nodes)
    for i, node in enumerate(nodes):
        for label, target in (("next_idx", node.next_idx), ("child_idx", node.child_idx)):
            if target != NO_NODE and not 0 <= target < count:
                raise MalformedLink(
                    f"Node {i} ({node.name!r}) has {label}={target}, "
                    f"expected -1 or 0..{count - 1}"
                )

    # 0 = unseen, 1 = on the current walk, 2 = known to reach NO_NODE
    state = [0] * count
    for start in range(count):
        path = []
        index = start
        while index != NO_NODE and state[index] == 0:
            state[index] = 1
            path.append(index)
            index = nodes[index].next_idx
        if index != NO_NODE and state[index] == 1:
            raise MalformedLink(f"Sibling chain through node {index} loops back on itself")
        for visited in path:
            state[visited] = 2


# ============================================================================
# Save Structure Parsing
# ============================================================================

def locate_node_table(reader: BinaryReader) -> int:
    """Follow the trailer to the node table and leave the reader just past EDON."""
    if len(reader.data) < TRAILER_SIZE:
        raise TruncatedInput(
            f"File is too small ({len(reader.data)} bytes), expected at least {TRAILER_SIZE}"
        )
    reader.seek(len(reader.data) - TRAILER_SIZE)
    tree_offset = reader.read_u32()
    magic = reader.read_bytes(4)
    if magic != TRAILER_MAGIC:
        raise BadSignature(f"Expected trailer {TRAILER_MAGIC!r}, got {magic!r}")

    logger.info("tree offset: %d", tree_offset)
    reader.seek(tree_offset)
    magic = reader.read_bytes(4)
    if magic != TREE_MAGIC:
        raise BadSignature(
            f"Expected {TREE_MAGIC!r} at offset {tree_offset}, got {magic!r}"
        )
    return tree_offset


def parse_node_record(reader: BinaryReader) -> Node:
    name = reader.read_pstr()
    next_idx = reader.read_i32()
    child_idx = reader.read_i32()
    data_offset = reader.read_u32()
    data_size = reader.read_u32()
    return Node(name, next_idx, child_idx, data_offset, data_size)


def parse_node_table(reader: BinaryReader) -> list[Node]:
    """Parse the node count and node records that follow the EDON marker."""
    count_offset = reader.pos
    node_count = reader.read_packed_int()
    if node_count < 0:
        raise BadNodeCount(f"Negative node count {node_count} at offset {count_offset}")
    if node_count * MIN_RECORD_SIZE > reader.remaining:
        raise TruncatedInput(
            f"{node_count} nodes need at least {node_count * MIN_RECORD_SIZE} bytes, "
            f"only {reader.remaining} remain"
        )
    logger.info("node count: %d", node_count)

    nodes: list[Node] = []
    for _ in range(node_count):
        node = parse_node_record(reader)
        logger.debug("%r", node)
        nodes.append(node)
    return nodes


def read_save_structure(data: bytes) -> SaveTree:
    """Decode the node table of a sav.dat buffer.

    Raises a SaveParseError subclass on the first structural problem; a
    partially read table is never returned.
    """
    data = bytes(data)
    reader = BinaryReader(data)
    tree_offset = locate_node_table(reader)
    nodes = parse_node_table(reader)
    validate_links(nodes)
    return SaveTree(payload=data, tree_offset=tree_offset, nodes=nodes)


# ============================================================================
# Byte Accounting
# ============================================================================

@dataclass(frozen=True)
class NodeBytes:
    """Byte split for one node: declared size versus its immediate children."""
    index: int
    name: str
    own_bytes: int
    total_bytes: int
    child_bytes: int

    @property
    def inconsistent(self) -> bool:
        return self.child_bytes > self.total_bytes


def chain_sizes(nodes: list[Node]) -> list[int]:
    """For every node, the data_size total of itself and all its later siblings.

    Each node is summed once; chains shared by several parents reuse the
    totals already computed for their tail.
    """
    totals: list[Optional[int]] = [None] * len(nodes)
    for start in range(len(nodes)):
        path = []
        index = start
        while index != NO_NODE and totals[index] is None:
            if len(path) >= len(nodes):
                raise MalformedLink(f"Sibling chain starting at node {start} never terminates")
            path.append(index)
            index = nodes[index].next_idx
        running = 0 if index == NO_NODE else totals[index]
        for visited in reversed(path):
            running += nodes[visited].data_size
            totals[visited] = running
    return totals


def account_bytes(tree: SaveTree, strict: bool = False) -> list[NodeBytes]:
    """Compute own/total bytes for every node, in node order.

    Only immediate children (the chain from child_idx) are subtracted. A node
    whose children declare more than it does keeps a negative own_bytes and is
    logged, or raises InconsistentAccounting when strict is set.
    """
    nodes = tree.nodes
    chain_bytes = chain_sizes(nodes)
    entries: list[NodeBytes] = []
    for i, node in enumerate(nodes):
        child_bytes = chain_bytes[node.child_idx] if node.has_children else 0
        entry = NodeBytes(
            index=i,
            name=node.name,
            own_bytes=node.data_size - child_bytes,
            total_bytes=node.data_size,
            child_bytes=child_bytes,
        )
        if entry.inconsistent:
            if strict:
                raise InconsistentAccounting(i, node.name, node.data_size, child_bytes)
            logger.warning(
                "Node %d (%r): children declare %d bytes, node declares %d",
                i, node.name, child_bytes, node.data_size,
            )
        entries.append(entry)
    return entries


# ============================================================================
# Text Report
# ============================================================================

def format_entry(entry: NodeBytes) -> str:
    line = f"{entry.name}: {entry.own_bytes} own bytes, {entry.total_bytes} total bytes"
    if entry.inconsistent:
        line += f" (inconsistent: children declare {entry.child_bytes} bytes)"
    return line


def format_report(entries: Optional[list[NodeBytes]]) -> str:
    """One line per node, or the load failure message when there is no result."""
    if entries is None:
        return LOAD_FAILED_MESSAGE
    return "\n".join(format_entry(entry) for entry in entries)


def format_tree(tree: SaveTree, entries: list[NodeBytes]) -> str:
    """Indented hierarchy starting from the root nodes."""
    lines = []
    shown = set()

    def visit(start: int, depth: int):
        # Explicit stack: hierarchies can be deeper than the recursion limit
        stack = [(start, depth)]
        while stack:
            index, level = stack.pop()
            entry = entries[index]
            indent = "  " * level
            if index in shown:
                lines.append(f"{indent}{entry.name} (already shown)")
                continue
            shown.add(index)
            lines.append(f"{indent}{format_entry(entry)}")
            for child in reversed(tree.children(index)):
                stack.append((child, level + 1))

    for root in tree.root_indices():
        for index in iter_chain(tree.nodes, root):
            visit(index, 0)
    # Nodes only reachable through a loop of child links have no root
    for index in range(len(tree.nodes)):
        if index not in shown:
            visit(index, 0)
    return "\n".join(lines)


def load_report(data: bytes, strict: bool = False) -> str:
    """Decode, account and format in one go, for callers that only want text."""
    try:
        tree = read_save_structure(data)
        entries = account_bytes(tree, strict=strict)
    except SaveParseError as e:
        logger.warning("%s: %s", LOAD_FAILED_MESSAGE, e)
        return format_report(None)
    return format_report(entries)


# ============================================================================
# YAML Export
# ============================================================================

def export_to_yaml(tree: SaveTree, entries: list[NodeBytes]) -> str:
    """Export the node table and its byte accounting to YAML."""
    nodes = []
    for node, entry in zip(tree.nodes, entries):
        item = {
            "index": entry.index,
            "name": node.name,
            "next_idx": node.next_idx,
            "child_idx": node.child_idx,
            "data_offset": node.data_offset,
            "data_size": node.data_size,
            "own_bytes": entry.own_bytes,
        }
        if entry.inconsistent:
            item["inconsistent"] = True
        nodes.append(item)

    output = {
        "_format": "sav.dat node table",
        "file_size": len(tree.payload),
        "tree_offset": tree.tree_offset,
        "node_count": len(tree.nodes),
        "nodes": nodes,
    }

    return yaml.dump(output, allow_unicode=True, sort_keys=False, default_flow_style=False, width=120)


# ============================================================================
# CLI
# ============================================================================

def load_save(path: Path, strict: bool) -> tuple[SaveTree, list[NodeBytes]]:
    """Read and decode one save file. Lets OSError and SaveParseError through."""
    data = path.read_bytes()
    tree = read_save_structure(data)
    return tree, account_bytes(tree, strict=strict)


def report_failure(path: Path, error: Exception):
    if isinstance(error, SaveParseError):
        print(f"Error: {LOAD_FAILED_MESSAGE} {path}: {error}", file=sys.stderr)
    else:
        print(f"Error: {READ_FAILED_MESSAGE} {path}: {error}", file=sys.stderr)


def cmd_info(args):
    """Show the byte report for each save file."""
    status = 0
    for i, name in enumerate(args.inputs):
        save_path = Path(name)
        if len(args.inputs) > 1:
            if i:
                print()
            print(f"[{save_path}]")

        if not save_path.exists():
            print(f"Error: File not found: {save_path}", file=sys.stderr)
            status = 1
            continue

        try:
            _, entries = load_save(save_path, args.strict)
        except (SaveParseError, OSError) as e:
            report_failure(save_path, e)
            status = 1
            continue
        report = format_report(entries)
        if report:
            print(report)
    return status


def cmd_tree(args):
    """Show the node hierarchy of a save file."""
    save_path = Path(args.input)
    if not save_path.exists():
        print(f"Error: File not found: {save_path}", file=sys.stderr)
        return 1

    try:
        tree, entries = load_save(save_path, args.strict)
    except (SaveParseError, OSError) as e:
        report_failure(save_path, e)
        return 1
    output = format_tree(tree, entries)
    if output:
        print(output)
    return 0


def cmd_export(args):
    """Export the node table to YAML."""
    save_path = Path(args.input)
    output_path = Path(args.output)

    if not save_path.exists():
        print(f"Error: File not found: {save_path}", file=sys.stderr)
        return 1

    try:
        tree, entries = load_save(save_path, args.strict)
    except (SaveParseError, OSError) as e:
        report_failure(save_path, e)
        return 1

    try:
        output_path.write_text(export_to_yaml(tree, entries), encoding="utf-8")
    except OSError as e:
        print(f"Error: Could not write {output_path}: {e}", file=sys.stderr)
        return 1
    print(f"Exported to: {output_path}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="sav.dat node table inspector",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s info sav.dat                    Show own/total bytes per node
  %(prog)s info --strict a.dat b.dat       Fail on nodes whose children overflow them
  %(prog)s tree sav.dat                    Show the node hierarchy
  %(prog)s export sav.dat nodes.yaml       Export the node table to YAML
"""
    )
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Log offsets and every node record")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Shared by every command
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--strict", action="store_true",
                        help="Treat children larger than their parent as an error")

    # info command
    info_parser = subparsers.add_parser("info", parents=[common], help="Show byte report")
    info_parser.add_argument("inputs", nargs="+", help="Input sav.dat file(s)")
    info_parser.set_defaults(func=cmd_info)

    # tree command
    tree_parser = subparsers.add_parser("tree", parents=[common], help="Show node hierarchy")
    tree_parser.add_argument("input", help="Input sav.dat file")
    tree_parser.set_defaults(func=cmd_tree)

    # export command
    export_parser = subparsers.add_parser("export", parents=[common], help="Export node table to YAML")
    export_parser.add_argument("input", help="Input sav.dat file")
    export_parser.add_argument("output", help="Output YAML file")
    export_parser.set_defaults(func=cmd_export)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
