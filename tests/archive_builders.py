"""Builders for small synthetic archives used across the tests."""
from __future__ import annotations

import struct
import zlib
from typing import List, Optional, Sequence, Tuple


def align(n: int, to: int = 16) -> int:
    return (n + to - 1) // to * to


def texture_payload(width: int, height: int, format_code: int, pixels: bytes, prefix: bytes = b"") -> bytes:
    desc = struct.pack("<hh4hiihBii", width, height, 0, 0, 0, 0, format_code, 0, 0, 0, 0, len(pixels))
    assert len(desc) == 31
    return desc + prefix + pixels


def build_rp6l(
    sections: Sequence[Tuple[int, bytes, bool]],
    parts: Sequence[Tuple[int, int, int]],
    files: Sequence[Tuple[int, int, int]],
    names: Sequence[str],
    version: int = 3,
) -> bytes:
    """Build an RP6L archive.

    sections: (filetype, data, compressed)
    parts:    (section index, offset, size), offsets in multiplier units
    files:    (part count, filetype, first part)
    """
    mult = 16 if version == 4 else 1
    blob = b""
    name_offsets = []
    for n in names:
        name_offsets.append(len(blob))
        blob += n.encode("ascii") + b"\x00"

    table_end = 36 + 20 * len(sections) + 16 * len(parts) + 12 * len(files) + 4 * len(files) + len(blob)
    data = bytearray()
    pos = align(table_end)
    section_rows = []
    for filetype, raw, compressed in sections:
        payload = zlib.compress(raw) if compressed else raw
        section_rows.append(
            struct.pack("<4B4I", filetype, 0, 0, 0, pos // mult, len(raw), len(payload) if compressed else 0, 0)
        )
        data += b"\x00" * (pos - table_end - len(data))
        data += payload
        pos = align(table_end + len(data))

    out = bytearray(b"RP6L")
    out += struct.pack("<8I", version, 1, len(parts), len(sections), len(files), len(blob), len(names), 0x4000)
    for row in section_rows:
        out += row
    for i, (section_index, offset, size) in enumerate(parts):
        out += struct.pack("<BBH3I", section_index, 0, i, offset, size, 0)
    for i, (part_count, filetype, first_part) in enumerate(files):
        out += struct.pack("<4B2I", part_count, 0, filetype, 0, i, first_part)
    out += struct.pack(f"<{len(files)}I", *name_offsets[: len(files)] + [0] * max(0, len(files) - len(names)))
    out += blob
    assert len(out) == table_end
    out += data
    return bytes(out)


def build_legacy(
    elements: Sequence[Tuple[int, bytes, bool]],
    chunks: Sequence[Tuple[int, int, int]],
    entries: Sequence[Tuple[int, int, int, int]],
    names: Sequence[str],
    name_count: Optional[int] = None,
) -> bytes:
    """Build a legacy archive.

    elements: (type code, data, compressed); type 33 carries no payload
    chunks:   (element index, offset, size)
    entries:  (block count, type code, name index, chunk index)
    """
    blob = b""
    name_offsets = []
    for n in names:
        name_offsets.append(len(blob))
        blob += n.encode("ascii") + b"\x00"
    if name_count is None:
        name_count = len(names)

    table_end = 36 + 20 * len(elements) + 16 * len(chunks) + 12 * len(entries) + 4 * len(name_offsets) + len(blob)
    data = bytearray()
    element_rows = []
    for type_code, raw, compressed in elements:
        payload = zlib.compress(raw) if compressed else raw
        offset = table_end + len(data)
        element_rows.append(
            struct.pack("<hhIIihh", type_code, 0, offset, len(raw), len(payload) if compressed else 0, 0, 0)
        )
        data += payload

    out = bytearray(struct.pack("<3I", 0, 0, 0))
    out += struct.pack("<5i", len(chunks), len(elements), len(entries), len(blob), name_count)
    out += struct.pack("<I", 0)
    for row in element_rows:
        out += row
    for element_index, offset, size in chunks:
        out += struct.pack("<BBhIii", element_index, 0, 0, offset, size, 0)
    for block_count, type_code, name_index, chunk_index in entries:
        out += struct.pack("<hhii", block_count, type_code, name_index, chunk_index)
    out += struct.pack(f"<{len(name_offsets)}i", *name_offsets)
    out += blob
    assert len(out) == table_end
    out += data
    return bytes(out)


# vertex element rows: (type, semantic, channel)
POS_NORMAL_UV = [(2, 0, 0), (31, 3, 0), (15, 5, 0)]
POS_BLEND = [(2, 0, 0), (4, 1, 0), (4, 2, 0), (31, 3, 0), (15, 5, 0)]


def build_mesh_geometry(
    bones: Sequence[Tuple[str, int, Tuple[float, float, float]]],
    elements: Sequence[Tuple[int, int, int]],
    index_counts: Sequence[int],
    vertex_count: int,
    bone_map: Optional[List[int]] = None,
    base: int = 0,
    mesh_bone: int = 0,
) -> bytes:
    """Build a mesh geometry block with one submesh-carrying bone.

    bones: (name, parent, translation) with identity orientation.
    """
    size = 4096
    buf = bytearray(size)
    cursor = [base + 128]

    def alloc(n: int) -> int:
        at = cursor[0]
        cursor[0] = align(at + n, 4)
        return at

    def ref(absolute: int) -> int:
        return absolute - base + 1

    decl_table = alloc(16)
    decl_elements = alloc(4 * len(elements))
    bone_table = alloc(208 * len(bones))
    name_pos = []
    for name, _parent, _t in bones:
        at = alloc(len(name) + 1)
        buf[at : at + len(name)] = name.encode("ascii")
        name_pos.append(at)
    mesh_block = alloc(28)
    info = alloc(52)
    count_table = alloc(4 * len(index_counts))
    map_table = alloc(16 * len(index_counts))
    map_data = alloc(2 * len(bone_map or []) or 2)

    struct.pack_into("<i", buf, base + 8, ref(bone_table))
    struct.pack_into("<i", buf, base + 80, ref(decl_table))
    struct.pack_into("<i", buf, base + 100, len(bones))
    struct.pack_into("<i", buf, base + 124, 1)

    struct.pack_into("<iiii", buf, decl_table, ref(decl_elements), 0, len(elements), 0)
    for k, (type_code, semantic, channel) in enumerate(elements):
        struct.pack_into("<4B", buf, decl_elements + 4 * k, type_code, semantic, channel, 0)

    for i, (name, parent, t) in enumerate(bones):
        rec = bone_table + 208 * i
        struct.pack_into("<12f", buf, rec, 1, 0, 0, t[0], 0, 1, 0, t[1], 0, 0, 1, t[2])
        struct.pack_into("<i", buf, rec + 120, ref(name_pos[i]))
        struct.pack_into("<i", buf, rec + 136, ref(mesh_block) if i == mesh_bone else 0)
        struct.pack_into("<h", buf, rec + 198, parent)

    struct.pack_into("<i", buf, mesh_block + 8, ref(info))
    struct.pack_into("<i", buf, mesh_block + 24, ref(map_table))

    struct.pack_into("<i", buf, info, ref(count_table))
    struct.pack_into("<I", buf, info + 24, 0)
    struct.pack_into("<i", buf, info + 40, vertex_count)
    struct.pack_into("<I", buf, info + 44, 0)
    struct.pack_into("<hh", buf, info + 48, len(index_counts), 0)

    for k, n in enumerate(index_counts):
        struct.pack_into("<i", buf, count_table + 4 * k, n)
        if bone_map is not None:
            struct.pack_into("<iiii", buf, map_table + 16 * k, ref(map_data), 0, len(bone_map), 0)
    if bone_map:
        struct.pack_into(f"<{len(bone_map)}h", buf, map_data, *bone_map)

    return bytes(buf[: cursor[0]])


def pos_normal_uv_vertices(points: Sequence[Tuple[float, float, float]]) -> bytes:
    out = b""
    for i, (x, y, z) in enumerate(points):
        out += struct.pack("<3f", x, y, z)
        out += struct.pack("<4b", 0, 127, 0, 0)
        out += struct.pack("<2e", 0.5 * i, 1.0)
    return out


def pos_blend_vertices(points: Sequence[Tuple[float, float, float]], local_bone: int = 1) -> bytes:
    out = b""
    for x, y, z in points:
        out += struct.pack("<3f", x, y, z)
        out += struct.pack("<4B", 255, 0, 0, 0)
        out += struct.pack("<4B", local_bone, 0, 0, 0)
        out += struct.pack("<4b", 0, 0, 127, 0)
        out += struct.pack("<2e", 0.0, 0.0)
    return out


def indices(values: Sequence[int]) -> bytes:
    return struct.pack(f"<{len(values)}H", *values)
