"""
Skinned mesh reconstruction for legacy RPACK mesh records.

A mesh record spans three regions: the geometry block (bone table, vertex
declarations, submesh tables), the vertex data and the index data. Bones
carry a 3x3 orientation plus translation relative to their parent; vertex
streams are interleaved records described by (type, semantic, channel)
declarations.

Output is a Valve SMD skeleton and an XNALara-style ASCII mesh.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import IntEnum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

import numpy as np

from rpack_common import (
    ByteCursor,
    DiagnosticKind,
    DiagnosticLog,
    TruncatedArchive,
    read_cstring,
)
from rpack_math import (
    IDENTITY,
    ZERO,
    Quaternion,
    Vector3,
    matrix_to_quaternion,
    quaternion_to_euler,
)

logger = logging.getLogger(__name__)

BONE_RECORD_SIZE = 208
SKIP_WRITE_TOKEN = "buildterrain"


class VertexSemantic(IntEnum):
    POSITION = 0
    BLEND_WEIGHT = 1
    BLEND_INDICES = 2
    NORMAL = 3
    TEXCOORD = 5
    TANGENT = 6
    COLOR = 10


class VertexType(IntEnum):
    FLOAT3 = 2
    UBYTE4 = 4
    HALF2 = 15
    HALF4 = 16
    SBYTE4N = 31


TYPE_WIDTHS: Dict[int, int] = {
    VertexType.FLOAT3: 12,
    VertexType.UBYTE4: 4,
    VertexType.HALF2: 4,
    VertexType.HALF4: 8,
    VertexType.SBYTE4N: 4,
}

# (semantic, type) -> (role, numpy field format)
ATTRIBUTE_RULES: Dict[Tuple[int, int], Tuple[str, Tuple[str, Tuple[int, ...]] | str]] = {
    (VertexSemantic.POSITION, VertexType.FLOAT3): ("position", ("<f4", (3,))),
    (VertexSemantic.POSITION, VertexType.HALF4): ("position_half", ("<f2", (4,))),
    (VertexSemantic.BLEND_WEIGHT, VertexType.UBYTE4): ("weights", ("u1", (4,))),
    (VertexSemantic.BLEND_INDICES, VertexType.UBYTE4): ("indices", ("u1", (4,))),
    (VertexSemantic.NORMAL, VertexType.SBYTE4N): ("normal", ("i1", (4,))),
    (VertexSemantic.TANGENT, VertexType.SBYTE4N): ("tangent", "V4"),
    (VertexSemantic.TEXCOORD, VertexType.HALF2): ("uv", ("<f2", (2,))),
    (VertexSemantic.COLOR, VertexType.UBYTE4): ("color", "V4"),
}


def semantic_name(code: int) -> str:
    try:
        return VertexSemantic(code).name.lower()
    except ValueError:
        return f"unknown({code})"


def type_name(code: int) -> str:
    try:
        return VertexType(code).name.lower()
    except ValueError:
        return f"unknown({code})"


@dataclass(frozen=True)
class VertexElement:
    type_code: int
    semantic: int
    channel: int


@dataclass(frozen=True)
class VertexDeclaration:
    elements: Tuple[VertexElement, ...]

    @property
    def uv_count(self) -> int:
        return sum(1 for el in self.elements if el.semantic == VertexSemantic.TEXCOORD)

    @property
    def has_blend(self) -> bool:
        return any(el.semantic == VertexSemantic.BLEND_WEIGHT for el in self.elements)

    @property
    def uv_channels(self) -> int:
        channels = [el.channel + 1 for el in self.elements if el.semantic == VertexSemantic.TEXCOORD]
        return max([self.uv_count] + channels)


@dataclass(frozen=True)
class Bone:
    index: int
    name: str
    parent: int
    local_translation: Vector3
    local_rotation: Quaternion
    mesh_ref: int = 0
    world_translation: Vector3 = ZERO
    world_rotation: Quaternion = IDENTITY


@dataclass
class VertexArrays:
    positions: np.ndarray
    normals: np.ndarray
    uvs: np.ndarray
    bone_indices: np.ndarray
    weights: np.ndarray

    def __len__(self) -> int:
        return int(self.positions.shape[0])


@dataclass
class SubMesh:
    name: str
    bone_index: int
    part_index: int
    uv_count: int
    has_blend: bool
    positions: np.ndarray
    normals: np.ndarray
    uvs: np.ndarray
    bone_indices: np.ndarray
    weights: np.ndarray
    triangles: np.ndarray

    @property
    def vertex_count(self) -> int:
        return int(self.positions.shape[0])


@dataclass
class MeshModel:
    name: str
    bones: List[Bone]
    submeshes: List[SubMesh] = field(default_factory=list)
    declared_submesh_count: int = 0


# ---------------------------------------------------------------------------
# vertex streams
# ---------------------------------------------------------------------------

def vertex_layout(
    declaration: VertexDeclaration,
    diagnostics: DiagnosticLog | None = None,
    record: str = "",
    seen: Set[Tuple[int, int]] | None = None,
) -> Tuple[np.dtype, List[Tuple[str, str, int]]]:
    """Return the packed record dtype and (field, role, channel) list.

    Unknown (semantic, type) pairs become padding of the type's width, so the
    following attributes still land on the right bytes.
    """
    fields: List[Tuple] = []
    roles: List[Tuple[str, str, int]] = []
    for n, el in enumerate(declaration.elements):
        rule = ATTRIBUTE_RULES.get((el.semantic, el.type_code))
        name = f"a{n}"
        if rule is None:
            width = TYPE_WIDTHS.get(el.type_code, 0)
            key = (el.semantic, el.type_code)
            if diagnostics is not None and (seen is None or key not in seen):
                if seen is not None:
                    seen.add(key)
                diagnostics.add(
                    DiagnosticKind.UNKNOWN_FORMAT_CODE,
                    record or "vertex declaration",
                    f"unsupported vertex attribute semantic={semantic_name(el.semantic)} "
                    f"type={type_name(el.type_code)}, skipped {width} bytes",
                )
            if width:
                fields.append((name, f"V{width}"))
            continue
        role, fmt = rule
        if isinstance(fmt, str):
            fields.append((name, fmt))
        else:
            fields.append((name, fmt[0], fmt[1]))
        roles.append((name, role, el.channel))
    return np.dtype(fields), roles


def empty_vertices(count: int, uv_channels: int) -> VertexArrays:
    return VertexArrays(
        positions=np.zeros((count, 3), dtype=np.float64),
        normals=np.zeros((count, 3), dtype=np.float64),
        uvs=np.zeros((count, max(uv_channels, 1), 2), dtype=np.float64),
        bone_indices=np.zeros((count, 4), dtype=np.int64),
        weights=np.zeros((count, 4), dtype=np.float64),
    )


def decode_vertices(
    buf: bytes,
    offset: int,
    count: int,
    declaration: VertexDeclaration,
    diagnostics: DiagnosticLog | None = None,
    record: str = "",
    seen: Set[Tuple[int, int]] | None = None,
) -> VertexArrays:
    count = max(int(count), 0)
    dtype, roles = vertex_layout(declaration, diagnostics, record, seen)

    # bounds first: the output arrays are sized from the declared count
    if dtype.itemsize:
        fits = offset >= 0 and offset + dtype.itemsize * count <= len(buf)
    else:
        fits = count <= len(buf)
    if not fits:
        raise TruncatedArchive(
            f"{record or 'vertex data'}: {count} vertices of {dtype.itemsize} bytes at 0x{offset:X} "
            f"run past end of vertex data (size={len(buf)})"
        )

    out = empty_vertices(count, declaration.uv_channels)
    if count == 0 or dtype.itemsize == 0:
        return out
    rec = np.frombuffer(buf, dtype=dtype, count=count, offset=offset)

    for name, role, channel in roles:
        col = rec[name]
        if role == "position":
            out.positions = col.astype(np.float64)
        elif role == "position_half":
            out.positions = col[:, :3].astype(np.float64)
        elif role == "weights":
            out.weights = col.astype(np.float64) / 255.0
        elif role == "indices":
            out.bone_indices = col.astype(np.int64)
        elif role == "normal":
            out.normals = col[:, :3].astype(np.float64) / 127.0
        elif role == "uv":
            out.uvs[:, channel, :] = col.astype(np.float64)
        # tangent and color words are consumed and dropped
    return out


def read_indices(buf: bytes, offset: int, count: int, record: str = "") -> np.ndarray:
    count = max(int(count), 0)
    if offset < 0 or offset + count * 2 > len(buf):
        raise TruncatedArchive(
            f"{record or 'index data'}: {count} indices at 0x{offset:X} run past end of index data (size={len(buf)})"
        )
    return np.frombuffer(buf, dtype="<u2", count=count, offset=offset).astype(np.int64)


# ---------------------------------------------------------------------------
# skeleton
# ---------------------------------------------------------------------------

def read_declarations(cur: ByteCursor, base: int, table: int, count: int) -> List[VertexDeclaration]:
    cur.seek(table)
    entries: List[Tuple[int, int]] = []
    for _ in range(max(count, 0)):
        offset = cur.i32() - 1
        cur.skip(4)
        n = cur.i32()
        cur.skip(4)
        entries.append((offset, n))

    out: List[VertexDeclaration] = []
    for offset, n in entries:
        cur.seek(base + offset)
        elements = []
        for _ in range(max(n, 0)):
            type_code, semantic, channel, _pad = cur.many("4B")
            elements.append(VertexElement(type_code, semantic, channel))
        out.append(VertexDeclaration(tuple(elements)))
    return out


def read_bones(
    cur: ByteCursor,
    base: int,
    table: int,
    count: int,
    diagnostics: DiagnosticLog,
    record: str,
) -> Tuple[List[Bone], int]:
    """Read the bone table; returns the bones and the declared submesh total."""
    bones: List[Bone] = []
    declared = 0
    for i in range(max(count, 0)):
        rec = table + BONE_RECORD_SIZE * i

        name = ""
        name_offset = cur.seek(rec + 120).i32()
        if name_offset != 0:
            name, terminated = read_cstring(cur.data, base + name_offset - 1)
            if not terminated:
                diagnostics.add(
                    DiagnosticKind.UNRESOLVED_REFERENCE,
                    f"{record} bone {i}",
                    "bone name has no terminator",
                )

        f = cur.seek(rec).many("12f")
        m = (
            (f[0], f[4], f[8]),
            (f[1], f[5], f[9]),
            (f[2], f[6], f[10]),
        )
        translation = Vector3(f[3], f[7], f[11])
        parent = cur.seek(rec + 198).i16()
        mesh_ref = cur.seek(rec + 136).i32()

        if mesh_ref != 0:
            info = cur.seek(base + mesh_ref - 1 + 8).i32() - 1
            declared += cur.seek(base + info + 48).i16()

        bones.append(
            Bone(
                index=i,
                name=name,
                parent=parent,
                local_translation=translation,
                local_rotation=matrix_to_quaternion(m),
                mesh_ref=mesh_ref,
            )
        )
    return bones, declared


def compose_world_transforms(
    bones: Sequence[Bone],
    diagnostics: DiagnosticLog | None = None,
    record: str = "",
) -> List[Bone]:
    """Accumulate world transforms in index order.

    Parents must precede their children. A parent index that does not
    (self reference, forward reference, out of range) is reported and the
    bone is placed as a root.
    """
    out: List[Bone] = []
    for bone in bones:
        p = bone.parent
        if 0 <= p < bone.index and p < len(out):
            parent = out[p]
            out.append(
                replace(
                    bone,
                    world_rotation=parent.world_rotation * bone.local_rotation,
                    world_translation=parent.world_rotation.rotate(bone.local_translation)
                    + parent.world_translation,
                )
            )
            continue
        if p >= 0 and diagnostics is not None:
            diagnostics.add(
                DiagnosticKind.STRUCTURAL_MISMATCH,
                f"{record} bone {bone.index}",
                f"parent index {p} does not precede the bone, treated as root",
            )
        out.append(replace(bone, world_rotation=bone.local_rotation, world_translation=bone.local_translation))
    return out


# ---------------------------------------------------------------------------
# submeshes
# ---------------------------------------------------------------------------

def _map_bone_indices(
    local: np.ndarray,
    bone_map: Optional[List[int]],
    diagnostics: DiagnosticLog,
    record: str,
) -> np.ndarray:
    if bone_map is None:
        diagnostics.add(DiagnosticKind.UNRESOLVED_REFERENCE, record, "blended submesh has no bone map")
        return local.copy()
    table = np.asarray(bone_map, dtype=np.int64)
    if table.size == 0:
        diagnostics.add(DiagnosticKind.UNRESOLVED_REFERENCE, record, "bone map is empty")
        return local.copy()
    inside = local < table.size
    if not bool(inside.all()):
        diagnostics.add(
            DiagnosticKind.UNRESOLVED_REFERENCE,
            record,
            f"bone index {int(local[~inside].max())} outside bone map of {table.size}",
        )
    return np.where(inside, table[np.clip(local, 0, table.size - 1)], local)


def read_bone_submeshes(
    cur: ByteCursor,
    bone: Bone,
    base: int,
    declarations: Sequence[VertexDeclaration],
    vertex_data: bytes,
    vertex_base: int,
    index_data: bytes,
    index_base: int,
    diagnostics: DiagnosticLog,
    record: str,
    seen: Set[Tuple[int, int]],
) -> List[SubMesh]:
    ref = bone.mesh_ref - 1
    cur.seek(base + ref + 8)
    info = cur.i32() - 1
    cur.skip(12)
    bone_map_table = cur.i32() - 1

    count_table = cur.seek(base + info).i32() - 1
    cur.seek(base + info + 24)
    vertex_start = vertex_base + cur.u32()
    cur.skip(12)
    vertex_count = cur.i32()
    index_start = index_base + cur.u32()
    part_count = cur.i16()
    decl_index = cur.i16()

    cur.seek(base + bone_map_table)
    map_entries: List[Tuple[int, int]] = []
    for _ in range(max(part_count, 0)):
        offset = cur.i32()
        cur.skip(4)
        n = cur.i32()
        cur.skip(4)
        map_entries.append((offset, n))
    bone_maps: List[Optional[List[int]]] = []
    for offset, n in map_entries:
        if offset > 0:
            cur.seek(base + offset - 1)
            bone_maps.append(list(cur.many(f"{max(n, 0)}h")))
        else:
            bone_maps.append(None)

    bone_record = f"{record} bone {bone.index}"
    if decl_index < 0 or decl_index >= len(declarations):
        diagnostics.add(
            DiagnosticKind.STRUCTURAL_MISMATCH,
            bone_record,
            f"vertex declaration {decl_index} out of range ({len(declarations)} declared), submeshes skipped",
        )
        return []
    decl = declarations[decl_index]
    verts = decode_vertices(vertex_data, vertex_start, vertex_count, decl, diagnostics, record, seen)

    cur.seek(base + count_table)
    index_counts = [cur.i32() for _ in range(max(part_count, 0))]

    out: List[SubMesh] = []
    for k, n in enumerate(index_counts):
        indices = read_indices(index_data, index_start, n, record)
        index_start += max(n, 0) * 2
        part_record = f"{bone_record} part {k}"

        if indices.size:
            lo, hi = int(indices.min()), int(indices.max())
        else:
            lo, hi = 0, -1
        if hi >= len(verts):
            diagnostics.add(
                DiagnosticKind.UNRESOLVED_REFERENCE,
                part_record,
                f"index {hi} beyond {len(verts)} decoded vertices, submesh skipped",
            )
            continue

        rng = slice(lo, hi + 1)
        tri_count = indices.size // 3
        # reversed winding, rebased to the submesh's first vertex
        triangles = indices[: tri_count * 3].reshape(-1, 3)[:, ::-1] - lo

        bone_indices = verts.bone_indices[rng]
        if decl.has_blend:
            bone_map = bone_maps[k] if k < len(bone_maps) else None
            bone_indices = _map_bone_indices(bone_indices, bone_map, diagnostics, part_record)

        out.append(
            SubMesh(
                name=f"sm_{bone.index}_{bone.name}_{k}",
                bone_index=bone.index,
                part_index=k,
                uv_count=decl.uv_count,
                has_blend=decl.has_blend,
                positions=verts.positions[rng],
                normals=verts.normals[rng],
                uvs=verts.uvs[rng],
                bone_indices=bone_indices,
                weights=verts.weights[rng],
                triangles=triangles,
            )
        )
    return out


def decode_mesh(
    geometry: bytes,
    base: int,
    vertex_data: bytes,
    vertex_base: int,
    index_data: bytes,
    index_base: int,
    name: str,
    diagnostics: DiagnosticLog,
) -> MeshModel:
    """Decode one mesh record.

    ``base`` is the record's offset inside ``geometry``; ``vertex_base`` and
    ``index_base`` are the offsets of its vertex and index chunks.
    """
    record = f"mesh {name}"
    cur = ByteCursor(geometry, label=record)

    bone_table = base + cur.seek(base + 8).i32() - 1
    decl_table = base + cur.seek(base + 80).i32() - 1
    bone_count = cur.seek(base + 100).i32()
    decl_count = cur.seek(base + 124).i32()

    declarations = read_declarations(cur, base, decl_table, decl_count)
    bones, declared = read_bones(cur, base, bone_table, bone_count, diagnostics, record)
    bones = compose_world_transforms(bones, diagnostics, record)

    model = MeshModel(name=name, bones=bones, declared_submesh_count=declared)
    seen: Set[Tuple[int, int]] = set()
    for bone in bones:
        if bone.mesh_ref == 0:
            continue
        model.submeshes.extend(
            read_bone_submeshes(
                cur,
                bone,
                base,
                declarations,
                vertex_data,
                vertex_base,
                index_data,
                index_base,
                diagnostics,
                record,
                seen,
            )
        )

    logger.debug(
        "Decoded %s: %d bones, %d submeshes (%d declared)",
        record,
        len(bones),
        len(model.submeshes),
        declared,
    )
    return model


# ---------------------------------------------------------------------------
# writers
# ---------------------------------------------------------------------------

def fmt_fixed(value: float) -> str:
    text = f"{float(value):.6f}"
    if text == "-0.000000":
        return "0.000000"
    return text


def fmt_general(value: float) -> str:
    text = f"{float(value):.6f}".rstrip("0").rstrip(".")
    if text in ("", "-0"):
        return "0"
    return text


def write_smd(path: Path, model: MeshModel) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="\n") as f:
        f.write("version 1\n")
        f.write("nodes\n")
        for bone in model.bones:
            f.write(f'{bone.index} "{bone.name}" {bone.parent}\n')
        f.write("end\n")
        f.write("skeleton\n")
        f.write("time 0\n")
        for bone in model.bones:
            t = bone.local_translation
            r = quaternion_to_euler(bone.local_rotation)
            f.write(
                f"{bone.index}  {fmt_fixed(t.x)} {fmt_fixed(t.y)} {fmt_fixed(t.z)}"
                f"  {fmt_fixed(r.x)} {fmt_fixed(r.y)} {fmt_fixed(r.z)}\n"
            )
        f.write("end\n")
    return path


def write_ascii(path: Path, model: MeshModel) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    g = fmt_general
    with path.open("w", encoding="utf-8", newline="\n") as f:
        f.write(f"{len(model.bones)}\n")
        for bone in model.bones:
            t = bone.world_translation
            f.write(f"{bone.name}\n")
            f.write(f"{bone.parent}\n")
            f.write(f"{fmt_fixed(t.x)} {fmt_fixed(t.y)} {fmt_fixed(t.z)}\n")

        f.write(f"{len(model.submeshes)}\n")
        for sm in model.submeshes:
            f.write(f"{sm.name}\n")
            f.write(f"{sm.uv_count}\n")
            f.write("0\n")
            f.write(f"{sm.vertex_count}\n")
            for v in range(sm.vertex_count):
                px, py, pz = sm.positions[v]
                nx, ny, nz = sm.normals[v]
                f.write(f"{g(px)} {g(py)} {g(pz)}\n")
                f.write(f"{g(nx)} {g(ny)} {g(nz)}\n")
                f.write("0 0 0 0\n")
                for m in range(sm.uv_count):
                    u, w = sm.uvs[v, m]
                    f.write(f"{g(u)} {g(w)}\n")
                if sm.has_blend:
                    f.write(" ".join(str(int(b)) for b in sm.bone_indices[v]) + "\n")
                    f.write(" ".join(g(w) for w in sm.weights[v]) + "\n")
                else:
                    f.write("0 0 0 0\n")
                    f.write("1 0 0 0\n")
            f.write(f"{sm.triangles.shape[0]}\n")
            for a, b, c in sm.triangles:
                f.write(f"{int(a)} {int(b)} {int(c)}\n")
    return path


def write_mesh_files(model: MeshModel, models_dir: Path, stem: str | None = None) -> List[Path]:
    """Write ``<stem>.smd`` and ``<stem>.ascii``; terrain build meshes are not written."""
    if SKIP_WRITE_TOKEN in model.name:
        logger.debug("Skipping output for %s", model.name)
        return []
    stem = stem or model.name
    return [
        write_smd(models_dir / f"{stem}.smd", model),
        write_ascii(models_dir / f"{stem}.ascii", model),
    ]
