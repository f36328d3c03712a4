"""
Shared pieces for the RPACK tools: bounded binary reader, error taxonomy,
per-record diagnostics and the DEFLATE wrapper.
"""
from __future__ import annotations

import logging
import struct
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import List, Tuple

logger = logging.getLogger(__name__)


class ArchiveError(Exception):
    """Base for conditions that abort the extraction of one archive."""


class MalformedContainer(ArchiveError):
    pass


class InvalidSignature(MalformedContainer):
    pass


class TruncatedArchive(MalformedContainer):
    pass


class DecompressionError(ArchiveError):
    pass


class DiagnosticKind(str, Enum):
    UNRESOLVED_REFERENCE = "unresolved_reference"
    UNKNOWN_FORMAT_CODE = "unknown_format_code"
    STRUCTURAL_MISMATCH = "structural_mismatch"


@dataclass(frozen=True)
class Diagnostic:
    kind: DiagnosticKind
    record: str
    message: str

    def as_dict(self) -> dict:
        return {"kind": self.kind.value, "record": self.record, "message": self.message}


class DiagnosticLog:
    """Collects diagnostics for one archive and mirrors them to the logger."""

    def __init__(self, source: str = ""):
        self.source = source
        self.items: List[Diagnostic] = []

    def add(self, kind: DiagnosticKind, record: str, message: str) -> Diagnostic:
        diag = Diagnostic(kind, record, message)
        self.items.append(diag)
        if self.source:
            logger.warning("[%s] %s: %s (%s)", self.source, record, message, kind.value)
        else:
            logger.warning("%s: %s (%s)", record, message, kind.value)
        return diag

    def of_kind(self, kind: DiagnosticKind) -> List[Diagnostic]:
        return [d for d in self.items if d.kind is kind]

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)


def inflate(data: bytes) -> bytes:
    for wbits in (zlib.MAX_WBITS, -zlib.MAX_WBITS):
        try:
            return zlib.decompress(data, wbits)
        except zlib.error:
            pass
    raise DecompressionError("Failed to inflate buffer")


def read_cstring(buf: bytes, pos: int) -> Tuple[str, bool]:
    """Return the NUL-terminated ASCII string at ``pos`` and whether it was terminated."""
    if pos < 0 or pos > len(buf):
        return "", False
    end = buf.find(b"\x00", pos)
    if end == -1:
        return buf[pos:].decode("ascii", errors="replace"), False
    return buf[pos:end].decode("ascii", errors="replace"), True


class ByteCursor:
    """Sequential little-endian reader over an in-memory buffer.

    Every read is bounded by the buffer length; a short read raises
    ``TruncatedArchive`` instead of returning partial data.
    """

    def __init__(self, data: bytes, pos: int = 0, label: str = "buffer"):
        self.data = data
        self.pos = int(pos)
        self.label = label

    def seek(self, pos: int) -> "ByteCursor":
        self.pos = int(pos)
        return self

    def skip(self, n: int) -> None:
        self.pos += int(n)

    def _unpack(self, fmt: str, size: int):
        if self.pos < 0 or self.pos + size > len(self.data):
            raise TruncatedArchive(
                f"{self.label}: read of {size} bytes at 0x{self.pos:X} runs past end (size={len(self.data)})"
            )
        value = struct.unpack_from(fmt, self.data, self.pos)
        self.pos += size
        return value

    def i16(self) -> int:
        return self._unpack("<h", 2)[0]

    def u32(self) -> int:
        return self._unpack("<I", 4)[0]

    def i32(self) -> int:
        return self._unpack("<i", 4)[0]

    def many(self, fmt: str) -> Tuple:
        return self._unpack("<" + fmt, struct.calcsize("<" + fmt))

    def read(self, n: int) -> bytes:
        n = int(n)
        if n < 0 or self.pos < 0 or self.pos + n > len(self.data):
            raise TruncatedArchive(
                f"{self.label}: read of {n} bytes at 0x{self.pos:X} runs past end (size={len(self.data)})"
            )
        out = self.data[self.pos : self.pos + n]
        self.pos += n
        return bytes(out)
