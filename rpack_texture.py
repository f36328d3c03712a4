"""
Texture synthesis for RPACK archives.

Texture records carry a small descriptor (size, engine format code, pixel
data size) in front of raw GPU data. This module turns that into a DDS file
and optionally a PNG preview.
"""
from __future__ import annotations

import io
import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Tuple

from PIL import Image

from rpack_common import (
    ArchiveError,
    ByteCursor,
    DiagnosticKind,
    DiagnosticLog,
)

logger = logging.getLogger(__name__)

DDS_MAGIC = b"DDS "
DDS_HEADER_SIZE = 124
DDS_FILE_HEADER_SIZE = 128
DDS_PF_SIZE = 32
DDS_PF_OFFSET = 76

DDSD_CAPS = 0x1
DDSD_HEIGHT = 0x2
DDSD_WIDTH = 0x4
DDSD_PIXELFORMAT = 0x1000
DDPF_FOURCC = 0x4

DX10 = b"DX10"
DXT1 = b"DXT1"
DXT3 = b"DXT3"
DXT5 = b"DXT5"

DXGI_R16G16B16A16_FLOAT = 10
DXGI_R8G8B8A8_UNORM = 28
DXGI_R8_UNORM = 61

DX10_DIMENSION_TEXTURE2D = 3

TEXTURE_DESCRIPTOR_SIZE = 31

# engine format code -> (fourCC, dxgi format for the DX10 variant)
TEXTURE_FORMATS: Dict[int, Tuple[bytes, int | None]] = {
    2: (DX10, DXGI_R8G8B8A8_UNORM),
    14: (DX10, DXGI_R8_UNORM),
    17: (DXT1, None),
    18: (DXT3, None),
    19: (DXT5, None),
    33: (DX10, DXGI_R16G16B16A16_FLOAT),
}


@dataclass(frozen=True)
class TextureDescriptor:
    width: int
    height: int
    format_code: int
    data_size: int


@dataclass(frozen=True)
class TextureFormat:
    code: int
    fourcc: bytes
    dxgi_format: int | None
    known: bool

    @property
    def is_dx10(self) -> bool:
        return self.fourcc == DX10


def resolve_texture_format(code: int, diagnostics: DiagnosticLog | None = None, record: str = "") -> TextureFormat:
    entry = TEXTURE_FORMATS.get(int(code))
    if entry is not None:
        return TextureFormat(int(code), entry[0], entry[1], True)
    if diagnostics is not None:
        diagnostics.add(
            DiagnosticKind.UNKNOWN_FORMAT_CODE,
            record or "texture",
            f"unknown texture format code {code}, passed through as DX10 format",
        )
    return TextureFormat(int(code), DX10, int(code), False)


def read_texture_descriptor(buf: bytes, offset: int = 0) -> TextureDescriptor:
    cur = ByteCursor(buf, offset, label="texture descriptor")
    width = cur.i16()
    height = cur.i16()
    cur.skip(8)
    format_code = cur.i32()
    cur.skip(4 + 2 + 1 + 4)
    data_size = cur.i32()
    return TextureDescriptor(width, height, format_code, data_size)


def build_dds_header(width: int, height: int, linear_size: int, fmt: TextureFormat) -> bytes:
    flags = DDSD_CAPS | DDSD_HEIGHT | DDSD_WIDTH | DDSD_PIXELFORMAT

    header = DDS_MAGIC
    header += struct.pack("<I", DDS_HEADER_SIZE)
    header += struct.pack("<I", flags)
    header += struct.pack("<I", height & 0xFFFFFFFF)
    header += struct.pack("<I", width & 0xFFFFFFFF)
    header += struct.pack("<I", linear_size & 0xFFFFFFFF)
    header += struct.pack("<I", 0)
    header += struct.pack("<I", 1)
    header += struct.pack("<11I", *([0] * 11))

    pf = struct.pack("<I", DDS_PF_SIZE)
    pf += struct.pack("<I", DDPF_FOURCC)
    pf += fmt.fourcc
    if fmt.is_dx10:
        pf += struct.pack("<5I", fmt.dxgi_format & 0xFFFFFFFF, DX10_DIMENSION_TEXTURE2D, 0, 1, 0)
    else:
        pf += struct.pack("<5I", 0, 0, 0, 0, 0)
    header += pf

    header += b"\x00" * (DDS_FILE_HEADER_SIZE - len(header))
    return header


def synthesize_dds(payload: bytes, diagnostics: DiagnosticLog | None = None, record: str = "") -> Tuple[bytes, TextureDescriptor, TextureFormat]:
    """Build a DDS from a self-describing texture payload.

    The pixel data is the trailing ``data_size`` bytes of the payload.
    """
    desc = read_texture_descriptor(payload, 0)
    if desc.data_size < 0 or desc.data_size > len(payload):
        raise ValueError(f"texture data size {desc.data_size} exceeds payload of {len(payload)} bytes")
    fmt = resolve_texture_format(desc.format_code, diagnostics, record)
    pixels = payload[len(payload) - desc.data_size :]
    return build_dds_header(desc.width, desc.height, desc.data_size, fmt) + pixels, desc, fmt


def write_texture(
    payload: bytes,
    target: Path,
    diagnostics: DiagnosticLog,
    record: str = "",
    png_preview: bool = False,
) -> Path:
    """Write ``payload`` as DDS, or untouched if the descriptor cannot be used."""
    target.parent.mkdir(parents=True, exist_ok=True)
    try:
        blob, desc, fmt = synthesize_dds(payload, diagnostics, record)
    except (ArchiveError, ValueError, struct.error) as exc:
        diagnostics.add(
            DiagnosticKind.STRUCTURAL_MISMATCH,
            record or target.name,
            f"DDS synthesis failed ({exc}), wrote raw payload",
        )
        target.write_bytes(payload)
        return target

    target.write_bytes(blob)
    if png_preview:
        write_png_preview(blob[DDS_FILE_HEADER_SIZE:], desc, fmt, target.with_suffix(".png"), diagnostics, record)
    return target


def write_dds(
    target: Path,
    desc: TextureDescriptor,
    pixels: bytes,
    diagnostics: DiagnosticLog,
    record: str = "",
    png_preview: bool = False,
) -> Path:
    target.parent.mkdir(parents=True, exist_ok=True)
    fmt = resolve_texture_format(desc.format_code, diagnostics, record)
    with target.open("wb") as f:
        f.write(build_dds_header(desc.width, desc.height, desc.data_size, fmt))
        f.write(pixels)
    if png_preview:
        write_png_preview(pixels, desc, fmt, target.with_suffix(".png"), diagnostics, record)
    return target


def decode_preview_image(pixels: bytes, desc: TextureDescriptor, fmt: TextureFormat) -> Image.Image | None:
    width, height = desc.width, desc.height
    if width <= 0 or height <= 0:
        raise ValueError(f"invalid texture size {width}x{height}")

    if fmt.fourcc in (DXT1, DXT3, DXT5):
        dds_blob = build_dds_header(width, height, len(pixels), fmt) + pixels
        image = Image.open(io.BytesIO(dds_blob))
        image.load()
        return image.convert("RGBA")

    if fmt.dxgi_format == DXGI_R8G8B8A8_UNORM:
        expected = width * height * 4
        if len(pixels) < expected:
            raise ValueError(f"RGBA size mismatch: got {len(pixels)}, expected {expected}")
        return Image.frombytes("RGBA", (width, height), pixels[:expected])

    if fmt.dxgi_format == DXGI_R8_UNORM:
        expected = width * height
        if len(pixels) < expected:
            raise ValueError(f"R8 size mismatch: got {len(pixels)}, expected {expected}")
        return Image.frombytes("L", (width, height), pixels[:expected])

    return None


def write_png_preview(
    pixels: bytes,
    desc: TextureDescriptor,
    fmt: TextureFormat,
    target: Path,
    diagnostics: DiagnosticLog,
    record: str = "",
) -> Path | None:
    try:
        image = decode_preview_image(pixels, desc, fmt)
        if image is None:
            logger.debug("No PNG preview for %s (format code %d)", record or target.name, fmt.code)
            return None
        image.save(target)
    except (Image.DecompressionBombError, OSError, ValueError) as exc:
        diagnostics.add(DiagnosticKind.UNKNOWN_FORMAT_CODE, record or target.name, f"PNG preview failed: {exc}")
        return None
    return target
