#!/usr/bin/env python3
"""
RPACK resource extractor.

Handles two container layouts:
  * RP6L (.rpack): sections -> parts -> files -> filenames. Selected file
    records are written raw (meshes, animations) or as DDS (textures).
  * Legacy: elements -> chunks -> name entries. Textures become DDS files
    and mesh records are rebuilt into SMD skeletons plus ASCII meshes.
"""
from __future__ import annotations

import argparse
import json
import logging
import mmap
import os
import re
import sys
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field, replace
from enum import IntEnum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence

from rpack_common import (
    ArchiveError,
    ByteCursor,
    DiagnosticKind,
    DiagnosticLog,
    InvalidSignature,
    MalformedContainer,
    TruncatedArchive,
    inflate,
    read_cstring,
)
from rpack_mesh import decode_mesh, write_mesh_files
from rpack_texture import read_texture_descriptor, write_dds, write_texture

logger = logging.getLogger(__name__)

RP6L_SIGNATURE = b"RP6L"
RP6L_EXTENSION = ".rpack"

LEGACY_NO_PAYLOAD = 33
LEGACY_MESH = 0x110
LEGACY_TEXTURE = 0x2120
LEGACY_MESH_BLOCKS = 5

SAFE_SEGMENT_RX = re.compile(r'[<>:"|?*\x00-\x1f]')


class ResourceType(IntEnum):
    MESH = 0x10
    SKIN = 0x12
    TEXTURE = 0x20
    MATERIAL = 0x30
    ANIMATION = 0x40
    ANIMATION_ID = 0x41
    ANIMATION_SCR = 0x42
    FX = 0x50
    LIGHTMAP = 0x60
    FLASH = 0x61
    SOUND = 0x65
    SOUND_MUSIC = 0x66
    SOUND_SPEECH = 0x67
    SOUND_STREAM = 0x68
    SOUND_LOCAL = 0x69
    DENSITY_MAP = 0x70
    HEIGHT_MAP = 0x80
    MIMIC = 0x90
    PATHMAP = 0xA0
    PHONEMES = 0xB0
    STATIC_GEOMETRY = 0xC0
    TEXT = 0xD0
    BINARY = 0xE0
    TINY_OBJECTS = 0xF8
    RESOURCE_LIST = 0xFF


UNKNOWN_CATEGORY = "unknown"
DEFAULT_TYPES: FrozenSet[int] = frozenset({ResourceType.MESH, ResourceType.TEXTURE, ResourceType.ANIMATION})
OUTPUT_EXTENSIONS: Dict[int, str] = {
    ResourceType.MESH: ".msh",
    ResourceType.TEXTURE: ".dds",
    ResourceType.ANIMATION: ".anm",
}


def category_for(code: int) -> str:
    try:
        return ResourceType(code).name.lower()
    except ValueError:
        return UNKNOWN_CATEGORY


def describe_type(code: int) -> str:
    try:
        return ResourceType(code).name.lower()
    except ValueError:
        return f"unknown(0x{code:02X})"


# ---------------------------------------------------------------------------
# RP6L tables
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Rp6lHeader:
    version: int
    compression_method: int
    part_count: int
    section_count: int
    file_count: int
    filename_chunk_length: int
    filename_count: int
    block_size: int

    @property
    def offset_multiplier(self) -> int:
        return 16 if self.version == 4 else 1


@dataclass(frozen=True)
class SectionInfo:
    filetype: int
    offset: int
    unpacked_size: int
    packed_size: int


@dataclass(frozen=True)
class PartInfo:
    section_index: int
    file_index: int
    offset: int
    size: int


@dataclass(frozen=True)
class FileInfo:
    part_count: int
    filetype: int
    file_index: int
    first_part: int


@dataclass(frozen=True)
class ArchiveIndex:
    header: Rp6lHeader
    sections: List[SectionInfo]
    parts: List[PartInfo]
    files: List[FileInfo]
    filename_offsets: List[int]
    filename_blob: bytes

    @property
    def offset_multiplier(self) -> int:
        return self.header.offset_multiplier

    def section_position(self, section: SectionInfo) -> int:
        return section.offset * self.offset_multiplier

    def filename(self, file_index: int, diagnostics: DiagnosticLog | None = None) -> str:
        record = f"file {file_index}"
        if file_index >= len(self.filename_offsets):
            if diagnostics is not None:
                diagnostics.add(DiagnosticKind.UNRESOLVED_REFERENCE, record, "no filename offset")
            return ""
        offset = self.filename_offsets[file_index]
        if offset > len(self.filename_blob):
            if diagnostics is not None:
                diagnostics.add(
                    DiagnosticKind.UNRESOLVED_REFERENCE,
                    record,
                    f"filename offset {offset} outside filename blob of {len(self.filename_blob)} bytes",
                )
            return ""
        name, terminated = read_cstring(self.filename_blob, offset)
        if not terminated and diagnostics is not None:
            diagnostics.add(DiagnosticKind.UNRESOLVED_REFERENCE, record, "filename has no terminator, cut at end of blob")
        return name


def parse_rp6l_index(data: bytes) -> ArchiveIndex:
    """Parse the RP6L header and tables.

    Raises ``InvalidSignature`` on a wrong magic and ``TruncatedArchive``
    when any table runs past the end of ``data``.
    """
    cur = ByteCursor(data, label="RP6L header")
    if len(data) < 4 or bytes(data[:4]) != RP6L_SIGNATURE:
        raise InvalidSignature(f"Not an RP6L archive (signature {bytes(data[:4])!r})")
    cur.skip(4)
    header = Rp6lHeader(*cur.many("8I"))

    cur.label = "RP6L section table"
    sections = []
    for _ in range(header.section_count):
        filetype, _r1, _r2, _r3, offset, unpacked, packed, _r4 = cur.many("4B4I")
        sections.append(SectionInfo(filetype, offset, unpacked, packed))

    cur.label = "RP6L part table"
    parts = []
    for _ in range(header.part_count):
        section_index, _r1, file_index, offset, size, _r2 = cur.many("BBH3I")
        parts.append(PartInfo(section_index, file_index, offset, size))

    cur.label = "RP6L file table"
    files = []
    for _ in range(header.file_count):
        part_count, _r1, filetype, _r2, file_index, first_part = cur.many("4B2I")
        files.append(FileInfo(part_count, filetype, file_index, first_part))

    cur.label = "RP6L filename offsets"
    filename_offsets = list(cur.many(f"{header.file_count}I"))

    cur.label = "RP6L filename blob"
    filename_blob = cur.read(header.filename_chunk_length)

    return ArchiveIndex(header, sections, parts, files, filename_offsets, filename_blob)


class SectionCache:
    """Inflated section buffers, filled on first access and never replaced."""

    def __init__(self, data: bytes, index: ArchiveIndex):
        self.data = data
        self.index = index
        self._buffers: Dict[int, bytes] = {}

    def __contains__(self, section_index: int) -> bool:
        return section_index in self._buffers

    def section(self, section_index: int) -> bytes:
        cached = self._buffers.get(section_index)
        if cached is not None:
            return cached

        sec = self.index.sections[section_index]
        start = self.index.section_position(sec)
        end = start + sec.packed_size
        if end > len(self.data):
            raise TruncatedArchive(
                f"section {section_index}: packed data at 0x{start:X}+{sec.packed_size} runs past end of archive"
            )
        raw = inflate(bytes(self.data[start:end]))
        if len(raw) != sec.unpacked_size:
            logger.debug(
                "section %d inflated to %d bytes (table says %d)", section_index, len(raw), sec.unpacked_size
            )
        self._buffers[section_index] = raw
        return raw

    def read_part(self, part: PartInfo, diagnostics: DiagnosticLog | None = None, record: str = "") -> bytes:
        record = record or f"part in section {part.section_index}"
        if part.section_index >= len(self.index.sections):
            if diagnostics is not None:
                diagnostics.add(
                    DiagnosticKind.UNRESOLVED_REFERENCE,
                    record,
                    f"section index {part.section_index} outside {len(self.index.sections)} sections",
                )
            return b""

        sec = self.index.sections[part.section_index]
        if sec.packed_size > 0:
            buf = self.section(part.section_index)
            if part.offset + part.size > len(buf):
                if diagnostics is not None:
                    diagnostics.add(
                        DiagnosticKind.UNRESOLVED_REFERENCE,
                        record,
                        f"part 0x{part.offset:X}+{part.size} exceeds section {part.section_index} "
                        f"of {len(buf)} bytes, emitted empty",
                    )
                return b""
            return buf[part.offset : part.offset + part.size]

        # stored section: read straight from the archive
        pos = (sec.offset + part.offset) * self.index.offset_multiplier
        out = bytes(self.data[pos : pos + part.size])
        if len(out) < part.size and diagnostics is not None:
            diagnostics.add(
                DiagnosticKind.UNRESOLVED_REFERENCE,
                record,
                f"stored part at 0x{pos:X} short by {part.size - len(out)} bytes",
            )
        return out


def read_file_payload(
    index: ArchiveIndex,
    cache: SectionCache,
    file_info: FileInfo,
    diagnostics: DiagnosticLog | None = None,
    record: str = "",
) -> bytes:
    """Concatenate a file's parts in ascending order starting at ``first_part``."""
    chunks: List[bytes] = []
    for k in range(file_info.part_count):
        part_index = file_info.first_part + k
        if part_index >= len(index.parts):
            if diagnostics is not None:
                diagnostics.add(
                    DiagnosticKind.UNRESOLVED_REFERENCE,
                    record or "file",
                    f"ran out of parts at {part_index} ({k}/{file_info.part_count} read)",
                )
            break
        chunks.append(cache.read_part(index.parts[part_index], diagnostics, f"{record} part {part_index}".strip()))
    return b"".join(chunks)


# ---------------------------------------------------------------------------
# Legacy tables
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ElementInfo:
    type_code: int
    offset: int
    unpacked_size: int
    packed_size: int

    @property
    def has_payload(self) -> bool:
        return self.type_code != LEGACY_NO_PAYLOAD


@dataclass(frozen=True)
class ChunkInfo:
    element_index: int
    offset: int
    size: int


@dataclass(frozen=True)
class NameEntry:
    block_count: int
    type_code: int
    name_index: int
    chunk_index: int


@dataclass(frozen=True)
class LegacyIndex:
    elements: List[ElementInfo]
    chunks: List[ChunkInfo]
    entries: List[NameEntry]
    name_offsets: List[int]
    name_blob: bytes

    def entry_name(self, entry_index: int, diagnostics: DiagnosticLog | None = None) -> str:
        entry = self.entries[entry_index]
        record = f"entry {entry_index}"
        if not 0 <= entry.name_index < len(self.name_offsets):
            if diagnostics is not None:
                diagnostics.add(
                    DiagnosticKind.UNRESOLVED_REFERENCE,
                    record,
                    f"name index {entry.name_index} outside {len(self.name_offsets)} names",
                )
            return ""
        offset = self.name_offsets[entry.name_index]
        if not 0 <= offset <= len(self.name_blob):
            if diagnostics is not None:
                diagnostics.add(
                    DiagnosticKind.UNRESOLVED_REFERENCE,
                    record,
                    f"name offset {offset} outside name blob of {len(self.name_blob)} bytes",
                )
            return ""
        name, terminated = read_cstring(self.name_blob, offset)
        if not terminated and diagnostics is not None:
            diagnostics.add(DiagnosticKind.UNRESOLVED_REFERENCE, record, "name has no terminator, cut at end of blob")
        return name


def parse_legacy_index(data: bytes, diagnostics: DiagnosticLog | None = None) -> LegacyIndex:
    cur = ByteCursor(data, label="legacy header")
    cur.skip(12)
    chunk_count, element_count, entry_count, names_length, name_count = cur.many("5i")
    cur.skip(4)
    if element_count <= 0:
        raise MalformedContainer(f"Invalid element count {element_count}")
    if name_count != entry_count and diagnostics is not None:
        # observed in shipped archives; kept as a report only
        diagnostics.add(
            DiagnosticKind.STRUCTURAL_MISMATCH,
            "header",
            f"names != assets ({name_count} names, {entry_count} entries)",
        )

    cur.label = "legacy element table"
    elements = []
    for _ in range(element_count):
        type_code, _r1, offset, unpacked, packed, _r2, _r3 = cur.many("hhIIihh")
        elements.append(ElementInfo(type_code, offset, unpacked, packed))

    cur.label = "legacy chunk table"
    chunks = []
    for _ in range(max(chunk_count, 0)):
        element_index, _r1, _r2, offset, size, _r3 = cur.many("BBhIii")
        chunks.append(ChunkInfo(element_index, offset, size))

    cur.label = "legacy name table"
    entries = []
    for _ in range(max(entry_count, 0)):
        entries.append(NameEntry(*cur.many("hhii")))

    cur.label = "legacy name offsets"
    name_offsets = list(cur.many(f"{max(name_count, 0)}i"))

    cur.label = "legacy name blob"
    name_blob = cur.read(max(names_length, 0))

    return LegacyIndex(elements, chunks, entries, name_offsets, name_blob)


class ElementCache:
    """Element payloads, inflated or copied on first access."""

    def __init__(self, data: bytes, index: LegacyIndex):
        self.data = data
        self.index = index
        self._buffers: Dict[int, bytes] = {}

    def element(self, element_index: int) -> Optional[bytes]:
        cached = self._buffers.get(element_index)
        if cached is not None:
            return cached
        if not 0 <= element_index < len(self.index.elements):
            return None
        el = self.index.elements[element_index]
        if not el.has_payload:
            return None

        size = el.packed_size if el.packed_size != 0 else el.unpacked_size
        end = el.offset + size
        if size < 0 or end > len(self.data):
            raise TruncatedArchive(f"element {element_index}: data at 0x{el.offset:X}+{size} runs past end of archive")
        raw = bytes(self.data[el.offset : end])
        if el.packed_size != 0:
            raw = inflate(raw)
        self._buffers[element_index] = raw
        return raw

    def chunk_buffer(self, chunk: ChunkInfo) -> Optional[bytes]:
        return self.element(chunk.element_index)


# ---------------------------------------------------------------------------
# extraction drivers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExtractOptions:
    types: Optional[FrozenSet[int]] = DEFAULT_TYPES
    output_root: Optional[Path] = None
    png_preview: bool = False
    workers: int = 1
    report: Optional[Path] = None

    def output_dir_for(self, source: Path, suffix: str = "") -> Path:
        parent = self.output_root if self.output_root is not None else source.parent
        return parent / f"{source.stem}{suffix}"


@dataclass
class ExtractionReport:
    source: str
    kind: str = ""
    output_dir: str = ""
    outputs: List[str] = field(default_factory=list)
    diagnostics: List[Dict[str, str]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def extracted(self) -> int:
        return len(self.outputs)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "kind": self.kind,
            "status": "ok" if self.ok else "error",
            "output_dir": self.output_dir,
            "extracted": self.extracted,
            "outputs": list(self.outputs),
            "diagnostics": list(self.diagnostics),
            "error": self.error,
        }


class MappedFile:
    """Read-only memory map of an archive."""

    def __init__(self, path: Path):
        self.path = path
        self._fh = path.open("rb")
        self.mm: Optional[mmap.mmap] = None
        try:
            if os.fstat(self._fh.fileno()).st_size > 0:
                self.mm = mmap.mmap(self._fh.fileno(), 0, access=mmap.ACCESS_READ)
        except Exception:
            self._fh.close()
            raise

    @property
    def data(self):
        return self.mm if self.mm is not None else b""

    def close(self) -> None:
        try:
            if self.mm is not None:
                self.mm.close()
        finally:
            self._fh.close()

    def __enter__(self) -> "MappedFile":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def safe_output_relpath(name: str, fallback: str) -> Path:
    cleaned = name.replace("\\", "/")
    parts = []
    for part in cleaned.split("/"):
        if part in {"", ".", ".."}:
            continue
        parts.append(SAFE_SEGMENT_RX.sub("_", part))
    if not parts:
        return Path(fallback)
    return Path(*parts)


def with_extension(rel: Path, ext: str) -> Path:
    return rel.with_name(rel.name + ext) if ext else rel


def is_rp6l(path: Path, data: bytes | None = None) -> bool:
    if path.suffix.lower() == RP6L_EXTENSION:
        return True
    if data is None:
        with path.open("rb") as f:
            head = f.read(4)
    else:
        head = bytes(data[:4])
    return head == RP6L_SIGNATURE


def extract_rp6l_data(
    data: bytes,
    out_dir: Path,
    options: ExtractOptions,
    report: ExtractionReport,
    diagnostics: DiagnosticLog,
) -> None:
    index = parse_rp6l_index(data)
    logger.debug(
        "RP6L v%d: %d sections, %d parts, %d files (compression %d, offset x%d)",
        index.header.version,
        len(index.sections),
        len(index.parts),
        len(index.files),
        index.header.compression_method,
        index.offset_multiplier,
    )
    cache = SectionCache(data, index)

    for i, file_info in enumerate(index.files):
        if options.types is not None and file_info.filetype not in options.types:
            continue

        category = category_for(file_info.filetype)
        name = index.filename(i, diagnostics)
        record = f"file {i} ({name or 'unnamed'})"
        payload = read_file_payload(index, cache, file_info, diagnostics, record)

        rel = with_extension(safe_output_relpath(name, f"file_{i}"), OUTPUT_EXTENSIONS.get(file_info.filetype, ""))
        target = out_dir / category / rel
        target.parent.mkdir(parents=True, exist_ok=True)

        if file_info.filetype == ResourceType.TEXTURE:
            write_texture(payload, target, diagnostics, record, png_preview=options.png_preview)
        else:
            target.write_bytes(payload)

        logger.debug("Extracted %s/%s", category, target.name)
        report.outputs.append(str(target))


def _legacy_mesh(
    index: LegacyIndex,
    cache: ElementCache,
    entry: NameEntry,
    name: str,
    out_dir: Path,
    diagnostics: DiagnosticLog,
) -> List[Path]:
    record = f"mesh {name}"
    if entry.block_count != LEGACY_MESH_BLOCKS:
        diagnostics.add(
            DiagnosticKind.STRUCTURAL_MISMATCH,
            record,
            f"unsupported block count {entry.block_count} (expected {LEGACY_MESH_BLOCKS}), skipped",
        )
        return []
    c = entry.chunk_index
    if c < 0 or c + 4 >= len(index.chunks):
        diagnostics.add(DiagnosticKind.UNRESOLVED_REFERENCE, record, f"chunk {c} (+4) outside {len(index.chunks)} chunks")
        return []

    geo, vtx, idx = index.chunks[c], index.chunks[c + 3], index.chunks[c + 4]
    geometry = cache.chunk_buffer(geo)
    vertex_data = cache.chunk_buffer(vtx)
    index_data = cache.chunk_buffer(idx)
    if geometry is None or vertex_data is None or index_data is None:
        diagnostics.add(DiagnosticKind.UNRESOLVED_REFERENCE, record, "mesh chunk points at an element without payload")
        return []

    try:
        model = decode_mesh(geometry, geo.offset, vertex_data, vtx.offset, index_data, idx.offset, name, diagnostics)
    except TruncatedArchive as exc:
        diagnostics.add(DiagnosticKind.STRUCTURAL_MISMATCH, record, f"mesh skipped: {exc}")
        return []

    stem = str(safe_output_relpath(name, "mesh"))
    return write_mesh_files(model, out_dir / "models", stem)


def _legacy_texture(
    data: bytes,
    index: LegacyIndex,
    cache: ElementCache,
    entry: NameEntry,
    name: str,
    out_dir: Path,
    options: ExtractOptions,
    diagnostics: DiagnosticLog,
) -> List[Path]:
    record = f"texture {name}"
    c = entry.chunk_index
    if c < 0 or c + 1 >= len(index.chunks):
        diagnostics.add(DiagnosticKind.UNRESOLVED_REFERENCE, record, f"chunk {c} (+1) outside {len(index.chunks)} chunks")
        return []

    head_chunk, data_chunk = index.chunks[c], index.chunks[c + 1]
    head = cache.chunk_buffer(head_chunk)
    if head is None:
        diagnostics.add(DiagnosticKind.UNRESOLVED_REFERENCE, record, "texture header chunk has no payload")
        return []
    try:
        desc = read_texture_descriptor(head, head_chunk.offset)
    except TruncatedArchive as exc:
        diagnostics.add(DiagnosticKind.STRUCTURAL_MISMATCH, record, f"texture skipped: {exc}")
        return []
    if entry.block_count == 2:
        desc = replace(desc, data_size=data_chunk.size)
    size = max(desc.data_size, 0)

    if entry.block_count > 2:
        if not 0 <= data_chunk.element_index < len(index.elements):
            diagnostics.add(DiagnosticKind.UNRESOLVED_REFERENCE, record, "pixel chunk element out of range")
            return []
        pos = index.elements[data_chunk.element_index].offset + data_chunk.offset
        pixels = bytes(data[pos : pos + size])
    else:
        buf = cache.chunk_buffer(data_chunk)
        if buf is None:
            diagnostics.add(DiagnosticKind.UNRESOLVED_REFERENCE, record, "pixel chunk has no payload")
            return []
        pixels = buf[data_chunk.offset : data_chunk.offset + size]
    if len(pixels) < size:
        diagnostics.add(DiagnosticKind.UNRESOLVED_REFERENCE, record, f"pixel data short by {size - len(pixels)} bytes")

    rel = with_extension(safe_output_relpath(name, "texture"), ".dds")
    target = out_dir / "textures" / rel
    return [write_dds(target, desc, pixels, diagnostics, record, png_preview=options.png_preview)]


def extract_legacy_data(
    data: bytes,
    out_dir: Path,
    options: ExtractOptions,
    report: ExtractionReport,
    diagnostics: DiagnosticLog,
) -> None:
    index = parse_legacy_index(data, diagnostics)
    cache = ElementCache(data, index)

    for j, entry in enumerate(index.entries):
        name = index.entry_name(j, diagnostics) or f"entry_{j}"
        logger.debug("%X\t%s", entry.type_code & 0xFFFF, name)
        if entry.type_code == LEGACY_MESH:
            written = _legacy_mesh(index, cache, entry, name, out_dir, diagnostics)
        elif entry.type_code == LEGACY_TEXTURE:
            written = _legacy_texture(data, index, cache, entry, name, out_dir, options, diagnostics)
        else:
            continue
        report.outputs.extend(str(p) for p in written)


def extract_archive(path: Path, options: ExtractOptions | None = None) -> ExtractionReport:
    """Extract one archive. Errors are captured in the report, never raised."""
    options = options or ExtractOptions()
    path = Path(path)
    report = ExtractionReport(source=str(path))
    diagnostics = DiagnosticLog(path.name)
    try:
        with MappedFile(path) as mf:
            if is_rp6l(path, mf.data):
                report.kind = "rp6l"
                out_dir = options.output_dir_for(path, "_extracted")
                report.output_dir = str(out_dir)
                extract_rp6l_data(mf.data, out_dir, options, report, diagnostics)
            else:
                report.kind = "legacy"
                out_dir = options.output_dir_for(path)
                report.output_dir = str(out_dir)
                extract_legacy_data(mf.data, out_dir, options, report, diagnostics)
    except (ArchiveError, OSError) as exc:
        report.error = f"{type(exc).__name__}: {exc}"
        logger.error("Failed %s: %s", path, report.error)
    report.diagnostics = [d.as_dict() for d in diagnostics]
    if report.ok:
        logger.info("Done %s -> %s (%d files)", path, report.output_dir, report.extracted)
    return report


def run_batch(paths: Sequence[Path], options: ExtractOptions) -> List[ExtractionReport]:
    """Extract archives independently; one failure never stops the rest."""
    workers = max(1, int(options.workers))
    if workers <= 1 or len(paths) <= 1:
        return [extract_archive(p, options) for p in paths]
    with ProcessPoolExecutor(max_workers=workers) as executor:
        return list(executor.map(extract_archive, paths, [options] * len(paths)))


# ---------------------------------------------------------------------------
# listing
# ---------------------------------------------------------------------------

def print_index(path: Path, limit: int | None = None) -> None:
    with MappedFile(path) as mf:
        diagnostics = DiagnosticLog(path.name)
        if is_rp6l(path, mf.data):
            index = parse_rp6l_index(mf.data)
            print(f"[INFO] RP6L v{index.header.version}: {len(index.files)} files, {len(index.sections)} sections")
            rows = []
            for i, fi in enumerate(index.files):
                parts = index.parts[fi.first_part : fi.first_part + fi.part_count]
                size = sum(p.size for p in parts)
                rows.append(
                    f"{i:5d}. {describe_type(fi.filetype):16s} parts={fi.part_count:3d} size={size:10d}  "
                    f"{index.filename(i, diagnostics)}"
                )
        else:
            index = parse_legacy_index(mf.data, diagnostics)
            print(f"[INFO] Legacy: {len(index.entries)} entries, {len(index.elements)} elements")
            rows = [
                f"{j:5d}. type=0x{e.type_code & 0xFFFF:04X} blocks={e.block_count:2d}  {index.entry_name(j, diagnostics)}"
                for j, e in enumerate(index.entries)
            ]
    show = rows if not limit or limit <= 0 else rows[:limit]
    for row in show:
        print(row)
    if len(show) < len(rows):
        print(f"... {len(rows) - len(show)} more")


# ---------------------------------------------------------------------------
# configuration
# ---------------------------------------------------------------------------

def parse_types(raw: Any) -> Optional[FrozenSet[int]]:
    """Parse category names / numeric codes. ``all`` (or ``*``) means no filter."""
    if raw is None:
        return DEFAULT_TYPES
    if isinstance(raw, str):
        items = [x.strip() for x in raw.split(",")]
    else:
        items = [str(x).strip() for x in raw]
    items = [x for x in items if x]
    if not items:
        raise ValueError("No resource types given")

    by_name = {t.name.lower(): int(t) for t in ResourceType}
    out = set()
    for item in items:
        low = item.lower()
        if low in {"all", "*"}:
            return None
        if low in by_name:
            out.add(by_name[low])
            continue
        try:
            code = int(low, 0)
        except ValueError:
            raise ValueError(f"Unknown resource type: {item}") from None
        if not 0 <= code <= 0xFF:
            raise ValueError(f"Resource type code out of range: {item}")
        out.add(code)
    return frozenset(out)


def load_config(path: Path) -> Dict[str, Any]:
    if not path.exists() or not path.is_file():
        raise ValueError(f"Config not found: {path}")
    try:
        raw = json.loads(path.read_text(encoding="utf-8-sig"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Config parse failed: {exc}") from None
    if not isinstance(raw, dict):
        raise ValueError(f"Config has invalid format: {path}")
    return raw


def options_from_config(raw: Dict[str, Any], base: ExtractOptions | None = None) -> ExtractOptions:
    base = base or ExtractOptions()

    def get_bool(key: str, default: bool) -> bool:
        val = raw.get(key, default)
        if isinstance(val, bool):
            return val
        if isinstance(val, (int, float)):
            return bool(val)
        if isinstance(val, str):
            low = val.strip().lower()
            if low in {"1", "true", "yes", "on", "y"}:
                return True
            if low in {"0", "false", "no", "off", "n"}:
                return False
        return default

    def get_int(key: str, default: int) -> int:
        try:
            return int(raw.get(key, default))
        except (TypeError, ValueError):
            return default

    def get_path(key: str, default: Optional[Path]) -> Optional[Path]:
        val = str(raw.get(key, "") or "").strip()
        return Path(val) if val else default

    types = parse_types(raw["types"]) if "types" in raw else base.types
    return ExtractOptions(
        types=types,
        output_root=get_path("output_root", base.output_root),
        png_preview=get_bool("png_preview", base.png_preview),
        workers=max(1, get_int("workers", base.workers)),
        report=get_path("report", base.report),
    )


def resolve_options(args: argparse.Namespace) -> ExtractOptions:
    options = ExtractOptions()
    if args.config is not None:
        options = options_from_config(load_config(args.config), options)
    if args.all_types:
        options = replace(options, types=None)
    elif args.types is not None:
        options = replace(options, types=parse_types(args.types))
    if args.out is not None:
        options = replace(options, output_root=args.out)
    if args.png:
        options = replace(options, png_preview=True)
    if args.workers is not None:
        options = replace(options, workers=max(1, args.workers))
    if args.report is not None:
        options = replace(options, report=args.report)
    return options


def write_report(path: Path, reports: Iterable[ExtractionReport]) -> None:
    items = [r.as_dict() for r in reports]
    payload = {
        "archives": len(items),
        "failed": sum(1 for r in items if r["status"] != "ok"),
        "extracted": sum(r["extracted"] for r in items),
        "items": items,
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Extract textures, meshes and animations from RPACK archives")
    ap.add_argument("inputs", nargs="+", type=Path, help="Input archive(s): .rpack (RP6L) or legacy pack")
    ap.add_argument("--out", type=Path, help="Output root (default: next to each input)")
    ap.add_argument(
        "--types",
        help="RP6L types to extract, comma separated names or codes (default: mesh,texture,animation)",
    )
    ap.add_argument("--all-types", action="store_true", help="Extract every RP6L file type")
    ap.add_argument("--png", action="store_true", help="Also write PNG previews of decoded textures")
    ap.add_argument("--workers", type=int, default=None, help="Parallel worker processes for several inputs")
    ap.add_argument("--report", type=Path, help="Write a JSON run report")
    ap.add_argument("--config", type=Path, help="JSON config with default options")
    ap.add_argument("--list", action="store_true", help="Only list archive contents and exit")
    ap.add_argument("--limit", type=int, default=0, help="List limit (default: no limit)")
    ap.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return ap


def main(argv: Sequence[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)-8s %(name)s: %(message)s",
    )

    try:
        options = resolve_options(args)
    except ValueError as exc:
        print(f"[ERROR] {exc}")
        return 2

    paths: List[Path] = []
    missing = 0
    for p in args.inputs:
        if not p.is_file():
            print(f"[ERROR] File not found: {p}")
            missing += 1
        else:
            paths.append(p)

    if args.list:
        failed = missing
        for p in paths:
            try:
                print_index(p, args.limit)
            except (ArchiveError, OSError) as exc:
                print(f"[ERROR] {p}: {exc}")
                failed += 1
        return 1 if failed else 0

    reports = run_batch(paths, options)
    total = 0
    for r in reports:
        total += r.extracted
        if r.ok and r.diagnostics:
            print(f"[WARN] {r.source} -> {r.output_dir} ({r.extracted} files, {len(r.diagnostics)} warnings)")
        elif r.ok:
            print(f"[OK] {r.source} -> {r.output_dir} ({r.extracted} files)")
        else:
            print(f"[ERROR] {r.source}: {r.error}")

    if options.report is not None:
        write_report(options.report, reports)
        print(f"[OK] Wrote report: {options.report}")

    failed = missing + sum(1 for r in reports if not r.ok)
    print(f"[INFO] Extracted {total} files from {len(reports) - (failed - missing)}/{len(args.inputs)} archives")
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
