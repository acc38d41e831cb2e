import sys
from pathlib import Path

import pytest

# Ensure 'scripts' is on sys.path for test imports without installing the package
ROOT = Path(__file__).resolve().parents[1]
scripts = ROOT / "scripts"
if str(scripts) not in sys.path:
    sys.path.insert(0, str(scripts))

from cpsav_tree import TRAILER_MAGIC, TREE_MAGIC, BinaryWriter  # noqa: E402


def _build_save(
    records,
    prefix: bytes = b"",
    node_count=None,
    tree_magic: bytes = TREE_MAGIC,
    trailer_magic: bytes = TRAILER_MAGIC,
    tree_offset=None,
    utf16: bool = False,
) -> bytes:
    """Assemble a save buffer: prefix, node table, trailer pointing at the table."""
    writer = BinaryWriter()
    writer.write_bytes(prefix)
    table_start = len(writer.data)
    writer.write_bytes(tree_magic)
    writer.write_packed_int(len(records) if node_count is None else node_count)
    for name, next_idx, child_idx, data_offset, data_size in records:
        writer.write_pstr(name, utf16=utf16)
        writer.write_i32(next_idx)
        writer.write_i32(child_idx)
        writer.write_u32(data_offset)
        writer.write_u32(data_size)
    writer.write_u32(table_start if tree_offset is None else tree_offset)
    writer.write_bytes(trailer_magic)
    return writer.get_bytes()


@pytest.fixture
def build_save():
    return _build_save
