#!/usr/bin/env python3
"""Utility helpers for reading, patching and rebuilding DBPF 2.1 packages.

A DBPF package is a fixed 96 byte header, a stream of (usually zlib
compressed) resources and an index table that maps every resource key
``(type, group, instance)`` to its storage.  This module decodes the header and
index, hands the payloads of one resource type to a pluggable transform and,
when the transform changed anything, writes a completely fresh package: every
resource is copied into a new stream, the index is rewritten from scratch and
the header is patched to point at it.

Three subcommands are provided:

```
python dbpf.py patch <package-or-directory> [...]
python dbpf.py list <archive.package>
python dbpf.py extract <archive.package> <output_dir>
```

*patch* runs the CASP part-flag transform from :mod:`casp` over every
``*.package`` file it is given (directories are searched recursively).  A
``.bak`` copy of the original is created once before a package is overwritten
and is never replaced afterwards.  *list* prints the header and index of one
package and *extract* dumps each live resource next to a ``manifest.json``.
"""

from __future__ import annotations

import argparse
import contextlib
import enum
import json
import logging
import mmap
import os
import shutil
import struct
import tempfile
import threading
import zlib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

# ---- DBPF format table ----
DBPF_MAGIC = b"DBPF"
DBPF_VERSION = (2, 1)
HEADER_SIZE = 0x60

HEADER_MAJOR_OFFSET = 0x04
HEADER_MINOR_OFFSET = 0x08
HEADER_INDEX_COUNT_OFFSET = 0x24
HEADER_INDEX_OFFSET_SHORT = 0x28
HEADER_INDEX_SIZE_OFFSET = 0x2C
HEADER_INDEX_MINOR_OFFSET = 0x3C
HEADER_INDEX_OFFSET_LONG = 0x40

# Index minor version written by the game for packages with a long index offset.
INDEX_MINOR_VERSION = 3

INDEX_CONST_TYPE = 0x1
INDEX_CONST_GROUP = 0x2
INDEX_CONST_INSTANCE_HIGH = 0x4

EXTENDED_FLAG = 0x80000000
SIZE_MASK = 0x7FFFFFFF

COMPRESSION_NONE = 0x0000
COMPRESSION_ZLIB = 0x5A42
COMPRESSION_DELETED = 0xFFE0

COMPRESSION_NAMES = {
    COMPRESSION_NONE: "none",
    COMPRESSION_ZLIB: "zlib",
    COMPRESSION_DELETED: "deleted",
}

# Committed flag written for entries whose original index record had no tail.
DEFAULT_COMMITTED = 1

TYPE_CASP = 0x034AEECB

U16 = struct.Struct("<H")
U32 = struct.Struct("<I")
U64 = struct.Struct("<Q")
EXTENDED_TAIL = struct.Struct("<HH")  # compression type, committed
# type, group, instance high, instance low, offset, size|flag, uncompressed, compression, committed
INDEX_ENTRY_STRUCT = struct.Struct("<7IHH")

# Files above this size will be memory-mapped instead of fully loaded into RAM.
MEMORY_MAP_THRESHOLD = int(os.environ.get("DBPF_MEMORY_MAP_THRESHOLD", 256 * 1024 * 1024))
ZLIB_LEVEL = int(os.environ.get("DBPF_ZLIB_LEVEL", zlib.Z_DEFAULT_COMPRESSION))

PACKAGE_SUFFIX = ".package"
BACKUP_SUFFIX = ".bak"


class DBPFError(RuntimeError):
    """Base class for everything that can go wrong while handling a package."""


class FormatError(DBPFError):
    """Raised when the package layout does not match expectations.

    Format errors are fatal for the whole archive: nothing is written.
    """


class TooSmallError(FormatError):
    pass


class NotContainerError(FormatError):
    pass


class UnsupportedVersionError(FormatError):
    pass


class InvalidIndexOffsetError(FormatError):
    pass


class TruncatedIndexError(FormatError):
    pass


class CodecError(DBPFError):
    """Raised when a single resource cannot be (de)compressed."""


class DecompressionFailedError(CodecError):
    pass


class CompressionFailedError(CodecError):
    pass


class BoundsError(DBPFError):
    """Raised when a read or a resource range falls outside the buffer."""


class TransformError(DBPFError):
    """Raised when a payload transform fails on one resource."""


# =========================
# Little-endian helpers
# =========================


def _check_range(buffer: object, offset: int, size: int) -> None:
    if offset < 0 or offset + size > len(buffer):
        raise BoundsError(
            f"{size} byte access at 0x{offset:X} exceeds buffer of {len(buffer)} bytes"
        )


def read_u16(buffer: bytes | bytearray | mmap.mmap, offset: int) -> int:
    _check_range(buffer, offset, U16.size)
    return U16.unpack_from(buffer, offset)[0]


def read_u32(buffer: bytes | bytearray | mmap.mmap, offset: int) -> int:
    _check_range(buffer, offset, U32.size)
    return U32.unpack_from(buffer, offset)[0]


def read_u64(buffer: bytes | bytearray | mmap.mmap, offset: int) -> int:
    _check_range(buffer, offset, U64.size)
    return U64.unpack_from(buffer, offset)[0]


def write_u32(buffer: bytearray, offset: int, value: int) -> None:
    _check_range(buffer, offset, U32.size)
    U32.pack_into(buffer, offset, value)


def write_u64(buffer: bytearray, offset: int, value: int) -> None:
    _check_range(buffer, offset, U64.size)
    U64.pack_into(buffer, offset, value)


# =========================
# Zlib helpers
# =========================


def compress(data: bytes) -> bytes:
    """Return *data* as a zlib stream (header + deflate + adler32)."""

    try:
        return zlib.compress(bytes(data), ZLIB_LEVEL)
    except zlib.error as exc:
        raise CompressionFailedError(f"failed to compress resource: {exc}") from exc


def decompress(data: bytes) -> bytes:
    try:
        return zlib.decompress(data)
    except zlib.error as exc:
        raise DecompressionFailedError(f"failed to decompress resource: {exc}") from exc


# =========================
# Data model
# =========================


class ResourceKey(NamedTuple):
    type_id: int
    group_id: int
    instance: int

    def __str__(self) -> str:
        return f"T=0x{self.type_id:08X} G=0x{self.group_id:08X} I=0x{self.instance:016X}"


@dataclass
class Header:
    major: int
    minor: int
    index_count: int
    index_offset_short: int
    index_size: int
    index_offset_long: int
    index_minor_version: int = 0
    magic: bytes = DBPF_MAGIC

    @property
    def index_offset(self) -> int:
        """The short offset wins whenever it is set."""

        return self.index_offset_short or self.index_offset_long


@dataclass
class Entry:
    type_id: int
    group_id: int
    instance: int
    data_offset: int
    compressed_size: int
    uncompressed_size: int
    compression: int = COMPRESSION_NONE
    committed: int = 0
    extended: bool = False
    # Set by the patch step: new stored bytes and their decompressed length.
    replacement: Optional[bytes] = field(default=None, repr=False, compare=False)
    replacement_size: int = field(default=0, repr=False, compare=False)

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.type_id, self.group_id, self.instance)

    @property
    def deleted(self) -> bool:
        return self.compression == COMPRESSION_DELETED

    def in_bounds(self, length: int) -> bool:
        return self.data_offset + self.compressed_size <= length


@dataclass(frozen=True)
class IndexLayout:
    """Per-archive decode configuration derived from the index flag word."""

    flags: int
    constants: Dict[str, int]
    fields: Tuple[str, ...]
    entry_struct: struct.Struct
    entries_offset: int

    @property
    def entry_size(self) -> int:
        """Bytes of one entry without the optional extended tail."""

        return self.entry_struct.size


class TransformResult(NamedTuple):
    """What a payload transform reports back to the pipeline."""

    changed: bool
    candidates: int = 0
    patched: int = 0


# A payload transform mutates the decompressed payload in place.
PayloadTransform = Callable[[bytearray, ResourceKey], TransformResult]


def compression_name(tag: int) -> str:
    return COMPRESSION_NAMES.get(tag, f"0x{tag:04X}")


# =========================
# Header
# =========================


def read_header(buffer: bytes | bytearray | mmap.mmap) -> Header:
    """Parse and validate the fixed DBPF header at the start of *buffer*."""

    if len(buffer) < HEADER_SIZE:
        raise TooSmallError(
            f"file is too small to be a DBPF package ({len(buffer)} < {HEADER_SIZE} bytes)"
        )

    magic = bytes(buffer[: len(DBPF_MAGIC)])
    if magic != DBPF_MAGIC:
        raise NotContainerError("file is not a DBPF package")

    header = Header(
        major=read_u32(buffer, HEADER_MAJOR_OFFSET),
        minor=read_u32(buffer, HEADER_MINOR_OFFSET),
        index_count=read_u32(buffer, HEADER_INDEX_COUNT_OFFSET),
        index_offset_short=read_u32(buffer, HEADER_INDEX_OFFSET_SHORT),
        index_size=read_u32(buffer, HEADER_INDEX_SIZE_OFFSET),
        index_offset_long=read_u64(buffer, HEADER_INDEX_OFFSET_LONG),
        index_minor_version=read_u32(buffer, HEADER_INDEX_MINOR_OFFSET),
        magic=magic,
    )

    if (header.major, header.minor) != DBPF_VERSION:
        raise UnsupportedVersionError(
            f"unexpected DBPF version {header.major}.{header.minor} "
            f"(expected {DBPF_VERSION[0]}.{DBPF_VERSION[1]})"
        )

    resolve_index_offset(header, len(buffer))
    return header


def resolve_index_offset(header: Header, length: int) -> int:
    """Return the effective index offset, validated against the buffer length."""

    offset = header.index_offset
    if offset == 0 or offset >= length:
        raise InvalidIndexOffsetError(
            f"invalid index offset 0x{offset:X} in header (file is {length} bytes)"
        )
    return offset


# =========================
# Index
# =========================


def read_index_layout(buffer: bytes | bytearray | mmap.mmap, offset: int) -> IndexLayout:
    """Read the flag word and constant block that precede the index entries."""

    try:
        flags = read_u32(buffer, offset)
    except BoundsError as exc:
        raise TruncatedIndexError("index flag word lies outside of the file") from exc

    cursor = offset + U32.size
    constants: Dict[str, int] = {}
    fields: List[str] = []
    for bit, name in (
        (INDEX_CONST_TYPE, "type_id"),
        (INDEX_CONST_GROUP, "group_id"),
        (INDEX_CONST_INSTANCE_HIGH, "instance_high"),
    ):
        if not flags & bit:
            fields.append(name)
            continue
        try:
            constants[name] = read_u32(buffer, cursor)
        except BoundsError as exc:
            raise TruncatedIndexError(f"index constant {name} lies outside of the file") from exc
        cursor += U32.size

    fields.extend(("instance_low", "data_offset", "size_and_flag", "uncompressed_size"))
    entry_struct = struct.Struct("<" + "I" * len(fields))
    return IndexLayout(flags, constants, tuple(fields), entry_struct, cursor)


def read_index(
    buffer: bytes | bytearray | mmap.mmap, offset: int, count: int
) -> List[Entry]:
    """Decode up to *count* index entries starting at *offset*.

    Decoding stops quietly once the remaining bytes cannot hold another full
    entry; the entries read so far are returned.
    """

    layout = read_index_layout(buffer, offset)
    length = len(buffer)
    cursor = layout.entries_offset
    entries: List[Entry] = []

    for _ in range(count):
        if cursor + layout.entry_size > length:
            break
        values = dict(layout.constants)
        values.update(zip(layout.fields, layout.entry_struct.unpack_from(buffer, cursor)))
        cursor += layout.entry_size

        size_and_flag = values["size_and_flag"]
        extended = bool(size_and_flag & EXTENDED_FLAG)
        compression = COMPRESSION_NONE
        committed = 0
        if extended:
            if cursor + EXTENDED_TAIL.size > length:
                break
            compression, committed = EXTENDED_TAIL.unpack_from(buffer, cursor)
            cursor += EXTENDED_TAIL.size

        entries.append(
            Entry(
                type_id=values["type_id"],
                group_id=values["group_id"],
                instance=(values["instance_high"] << 32) | values["instance_low"],
                data_offset=values["data_offset"],
                compressed_size=size_and_flag & SIZE_MASK,
                uncompressed_size=values["uncompressed_size"],
                compression=compression,
                committed=committed,
                extended=extended,
            )
        )

    if len(entries) < count:
        logger.debug("index holds %d of %d declared entries", len(entries), count)
    return entries


def _committed_flag(entry: Entry) -> int:
    return entry.committed if entry.extended else DEFAULT_COMMITTED


def write_index(entries: Sequence[Entry]) -> bytes:
    """Serialise *entries* as a flat index (no constant fields, always extended)."""

    index = bytearray(U32.pack(0))
    for entry in entries:
        if entry.compressed_size > SIZE_MASK:
            raise DBPFError(f"resource {entry.key} is too large for the index size field")
        index.extend(
            INDEX_ENTRY_STRUCT.pack(
                entry.type_id,
                entry.group_id,
                entry.instance >> 32,
                entry.instance & 0xFFFFFFFF,
                entry.data_offset,
                entry.compressed_size | EXTENDED_FLAG,
                entry.uncompressed_size,
                entry.compression,
                _committed_flag(entry),
            )
        )
    return bytes(index)


# =========================
# Resources
# =========================


def stored_bytes(buffer: bytes | bytearray | mmap.mmap, entry: Entry) -> bytes:
    """Return the raw bytes of *entry* exactly as they are stored in *buffer*."""

    if not entry.in_bounds(len(buffer)):
        raise BoundsError(
            f"resource {entry.key} at 0x{entry.data_offset:X} (+{entry.compressed_size}) "
            "points outside of the file"
        )
    return bytes(buffer[entry.data_offset : entry.data_offset + entry.compressed_size])


def extract_payload(
    buffer: bytes | bytearray | mmap.mmap, entry: Entry
) -> Optional[bytearray]:
    """Return the decompressed payload of *entry*.

    ``None`` is returned for deleted entries and for compression types this
    module does not understand; such entries must be left untouched.
    """

    if entry.deleted:
        return None
    stored = stored_bytes(buffer, entry)
    if entry.compression == COMPRESSION_NONE:
        return bytearray(stored)
    if entry.compression == COMPRESSION_ZLIB:
        try:
            return bytearray(decompress(stored))
        except DecompressionFailedError as exc:
            raise DecompressionFailedError(f"resource {entry.key}: {exc}") from exc
    return None


def rebuild(
    buffer: bytes | bytearray | mmap.mmap,
    header: Header,
    entries: Sequence[Entry],
) -> Tuple[bytes, List[Entry]]:
    """Return a self-contained package built from *entries*.

    Every live resource, replaced or not, is copied into a fresh stream right
    after the header and receives a new offset.  Deleted entries keep their
    original index record and contribute no bytes.  Out-of-bounds entries
    contribute no bytes either and are pointed past the end of the new file,
    so they stay out of bounds.  The returned entries describe the new layout.
    """

    length = len(buffer)
    output = bytearray(buffer[:HEADER_SIZE])
    rebuilt: List[Entry] = []
    orphans: List[int] = []

    for entry in entries:
        if entry.deleted:
            rebuilt.append(replace(entry, replacement=None, replacement_size=0))
            continue
        if entry.replacement is None and not entry.in_bounds(length):
            orphans.append(len(rebuilt))
            rebuilt.append(replace(entry, replacement=None, replacement_size=0))
            continue

        if entry.replacement is not None:
            stored = entry.replacement
            uncompressed_size = entry.replacement_size
        else:
            stored = stored_bytes(buffer, entry)
            uncompressed_size = entry.uncompressed_size

        new_offset = len(output)
        if new_offset > 0xFFFFFFFF:
            raise DBPFError(f"resource {entry.key} exceeds 32-bit offset capacity")
        output.extend(stored)
        rebuilt.append(
            replace(
                entry,
                data_offset=new_offset,
                compressed_size=len(stored),
                uncompressed_size=uncompressed_size,
                committed=_committed_flag(entry),
                extended=True,
                replacement=None,
                replacement_size=0,
            )
        )

    index_offset = len(output)
    # Index records have a fixed width, so the final length is known up front.
    past_end = index_offset + U32.size + INDEX_ENTRY_STRUCT.size * len(rebuilt) + 1
    if orphans and past_end > 0xFFFFFFFF:
        raise DBPFError("rebuilt package exceeds 32-bit offset capacity")
    for position in orphans:
        rebuilt[position] = replace(rebuilt[position], data_offset=past_end)

    index = write_index(rebuilt)
    output.extend(index)

    output[: len(DBPF_MAGIC)] = header.magic
    write_u32(output, HEADER_MAJOR_OFFSET, header.major)
    write_u32(output, HEADER_MINOR_OFFSET, header.minor)
    write_u32(output, HEADER_INDEX_COUNT_OFFSET, len(rebuilt))
    write_u32(output, HEADER_INDEX_OFFSET_SHORT, 0)  # the long offset is authoritative
    write_u32(output, HEADER_INDEX_SIZE_OFFSET, len(index))
    write_u32(output, HEADER_INDEX_MINOR_OFFSET, INDEX_MINOR_VERSION)
    write_u64(output, HEADER_INDEX_OFFSET_LONG, index_offset)
    return bytes(output), rebuilt


# =========================
# Patch pipeline
# =========================


class ArchiveState(enum.Enum):
    LOADED = "loaded"
    INDEXED = "indexed"
    SCANNED = "scanned"
    NO_CHANGE = "no change"
    REBUILT = "rebuilt"
    WRITTEN = "written"
    FAILED = "failed"


@dataclass
class EntryReport:
    key: ResourceKey
    candidates: int
    patched: int
    applied: bool
    note: str = ""


@dataclass
class PatchResult:
    header: Header
    entries: List[Entry]
    state: ArchiveState
    data: Optional[bytes] = None
    reports: List[EntryReport] = field(default_factory=list)
    errors: List[Tuple[ResourceKey, DBPFError]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.data is not None


def _patch_entry(
    buffer: bytes | bytearray | mmap.mmap,
    entry: Entry,
    transform: PayloadTransform,
    strict_size: bool,
) -> Optional[EntryReport]:
    payload = extract_payload(buffer, entry)
    if payload is None:
        logger.debug("leaving %s untouched (%s)", entry.key, compression_name(entry.compression))
        return None

    try:
        outcome = transform(payload, entry.key)
    except Exception as exc:
        raise TransformError(f"transform failed on resource {entry.key}: {exc}") from exc
    report = EntryReport(entry.key, outcome.candidates, outcome.patched, applied=False)
    if not outcome.changed:
        return report

    if entry.compression == COMPRESSION_ZLIB:
        new_stored = compress(payload)
    else:
        new_stored = bytes(payload)

    if strict_size and len(new_stored) != entry.compressed_size:
        report.note = (
            f"stored size would change from {entry.compressed_size} to {len(new_stored)}"
        )
        logger.warning("refusing patch of %s: %s", entry.key, report.note)
        return report

    entry.replacement = new_stored
    entry.replacement_size = len(payload)
    report.applied = True
    logger.info(
        "patched %s (candidates=%d, patched=%d)", entry.key, outcome.candidates, outcome.patched
    )
    return report


def patch_archive(
    buffer: bytes | bytearray | mmap.mmap,
    transform: PayloadTransform,
    *,
    resource_type: int = TYPE_CASP,
    strict_size: bool = False,
) -> PatchResult:
    """Run *transform* over every resource of *resource_type* in *buffer*.

    Nothing is written here.  When at least one payload changed the result
    carries the rebuilt package in ``data`` and the state ``REBUILT``;
    otherwise the state is ``NO_CHANGE``.  Entry scoped failures, including
    exceptions raised by the transform, are collected in ``errors`` and never
    abort the archive.
    """

    header = read_header(buffer)
    entries = read_index(buffer, header.index_offset, header.index_count)
    result = PatchResult(header=header, entries=entries, state=ArchiveState.INDEXED)

    for entry in entries:
        if entry.type_id != resource_type or entry.deleted:
            continue
        try:
            report = _patch_entry(buffer, entry, transform, strict_size)
        except BoundsError as exc:
            logger.debug("skipping %s", exc)
            continue
        except (CodecError, TransformError) as exc:
            logger.warning("%s", exc)
            result.errors.append((entry.key, exc))
            continue
        if report is not None:
            result.reports.append(report)

    result.state = ArchiveState.SCANNED
    if not any(entry.replacement is not None for entry in entries):
        result.state = ArchiveState.NO_CHANGE
        return result

    result.data, _ = rebuild(buffer, header, entries)
    result.state = ArchiveState.REBUILT
    return result


# =========================
# Files
# =========================


@contextlib.contextmanager
def open_package(path: Path) -> Iterator[bytes | mmap.mmap]:
    """Yield the contents of *path*.

    Packages of at least ``MEMORY_MAP_THRESHOLD`` bytes are mapped read-only
    and unmapped when the block exits; smaller ones are read into memory.
    """

    size = path.stat().st_size
    if not size or size < MEMORY_MAP_THRESHOLD:
        yield path.read_bytes()
        return
    with open(path, "rb") as handle:
        with mmap.mmap(handle.fileno(), 0, access=mmap.ACCESS_READ) as view:
            yield view


def backup_path(path: Path) -> Path:
    return path.with_name(path.name + BACKUP_SUFFIX)


def create_backup(path: Path) -> Path:
    """Copy *path* next to itself once; an existing backup is never replaced."""

    backup = backup_path(path)
    if not backup.exists():
        shutil.copy2(path, backup)
        logger.info("backup written to %s", backup)
    return backup


def _write_bytes_atomic(path: Path, data: bytes, *, chunk_size: int = 2 * 1024 * 1024) -> None:
    """Write *data* to a sibling temp file and move it over *path*.

    The temp file is removed if anything fails, leaving *path* untouched.
    """

    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            for start in range(0, len(data), chunk_size):
                handle.write(data[start : start + chunk_size])
            handle.flush()
            os.fsync(handle.fileno())
        if path.exists():
            shutil.copymode(path, tmp_path)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        raise


@dataclass
class ArchiveReport:
    path: Path
    state: ArchiveState
    reports: List[EntryReport] = field(default_factory=list)
    errors: List[Tuple[ResourceKey, DBPFError]] = field(default_factory=list)
    backup: Optional[Path] = None
    error: Optional[BaseException] = None

    @property
    def patched_entries(self) -> List[EntryReport]:
        return [report for report in self.reports if report.applied]


def process_package(
    path: Path,
    transform: PayloadTransform,
    *,
    resource_type: int = TYPE_CASP,
    strict_size: bool = False,
    dry_run: bool = False,
) -> ArchiveReport:
    """Patch one package on disk.

    The rebuilt package is produced entirely in memory first.  Only then is a
    backup created (if none exists yet) and the original replaced.  Format
    errors propagate to the caller and leave the file untouched.
    """

    with open_package(path) as buffer:
        report = ArchiveReport(path, ArchiveState.LOADED)
        logger.debug("%s %s (%d bytes)", path, report.state.value, len(buffer))
        result = patch_archive(
            buffer, transform, resource_type=resource_type, strict_size=strict_size
        )

    report.state = result.state
    report.reports = result.reports
    report.errors = result.errors
    if result.data is None or dry_run:
        return report

    report.backup = create_backup(path)
    _write_bytes_atomic(path, result.data)
    report.state = ArchiveState.WRITTEN
    logger.info("rebuilt package written to %s", path)
    return report


def find_packages(paths: Iterable[Path]) -> List[Path]:
    """Expand directories into the ``*.package`` files they contain."""

    found: List[Path] = []
    for path in paths:
        if path.is_dir():
            found.extend(
                sorted(p for p in path.rglob("*" + PACKAGE_SUFFIX) if p.is_file())
            )
        else:
            found.append(path)
    return found


@dataclass
class BatchSummary:
    reports: List[ArchiveReport] = field(default_factory=list)

    def count(self, state: ArchiveState) -> int:
        return sum(1 for report in self.reports if report.state is state)

    @property
    def failed(self) -> int:
        return self.count(ArchiveState.FAILED)

    @property
    def patched(self) -> int:
        return self.count(ArchiveState.WRITTEN) + self.count(ArchiveState.REBUILT)


def process_packages(
    paths: Sequence[Path],
    transform: PayloadTransform,
    *,
    resource_type: int = TYPE_CASP,
    strict_size: bool = False,
    dry_run: bool = False,
    cancel_event: threading.Event | None = None,
    progress_callback: Callable[[ArchiveReport], None] | None = None,
) -> BatchSummary:
    """Process *paths* one after another.

    A failing package is recorded with state ``FAILED`` and the batch moves on.
    Setting *cancel_event* stops scheduling further packages; the package in
    flight is always finished.
    """

    summary = BatchSummary()
    for path in paths:
        if cancel_event is not None and cancel_event.is_set():
            break
        try:
            report = process_package(
                path,
                transform,
                resource_type=resource_type,
                strict_size=strict_size,
                dry_run=dry_run,
            )
        except (DBPFError, OSError) as exc:
            logger.debug("failed to process %s", path, exc_info=True)
            report = ArchiveReport(path, ArchiveState.FAILED, error=exc)
        summary.reports.append(report)
        if progress_callback is not None:
            progress_callback(report)
    return summary


def load_archive(path: Path) -> Tuple[Header, List[Entry]]:
    """Return the header and index of the package at *path*."""

    with open_package(path) as buffer:
        header = read_header(buffer)
        return header, read_index(buffer, header.index_offset, header.index_count)


def _entry_manifest(entry: Entry) -> Dict[str, object]:
    return {
        "type": f"0x{entry.type_id:08X}",
        "group": f"0x{entry.group_id:08X}",
        "instance": f"0x{entry.instance:016X}",
        "offset": entry.data_offset,
        "compressed_size": entry.compressed_size,
        "uncompressed_size": entry.uncompressed_size,
        "compression": compression_name(entry.compression),
        "committed": entry.committed,
        "extended": entry.extended,
    }


def resource_file_name(key: ResourceKey) -> str:
    return f"{key.type_id:08X}_{key.group_id:08X}_{key.instance:016X}.bin"


def extract_archive(archive_path: Path, output_dir: Path) -> Path:
    """Extract every live resource and write a manifest.

    Returns the path to the generated manifest file.  Resources with an
    unknown compression type are written as stored; resources that cannot be
    read are listed in the manifest with an ``error``.
    """

    files: List[Dict[str, object]] = []
    with open_package(archive_path) as buffer:
        header = read_header(buffer)
        entries = read_index(buffer, header.index_offset, header.index_count)
        output_dir.mkdir(parents=True, exist_ok=True)

        for entry in entries:
            item = _entry_manifest(entry)
            files.append(item)
            if entry.deleted:
                continue
            try:
                payload = extract_payload(buffer, entry)
                if payload is None:
                    payload = stored_bytes(buffer, entry)
                    item["raw"] = True
            except (BoundsError, CodecError) as exc:
                item["error"] = str(exc)
                continue
            name = resource_file_name(entry.key)
            (output_dir / name).write_bytes(payload)
            item["file"] = name

    manifest = {
        "archive": archive_path.name,
        "header": {
            "version": f"{header.major}.{header.minor}",
            "index_count": header.index_count,
            "index_offset": header.index_offset,
            "index_size": header.index_size,
        },
        "files": files,
    }
    manifest_path = output_dir / "manifest.json"
    manifest_path.write_text(json.dumps(manifest, indent=2))
    return manifest_path


# =========================
# Command line
# =========================


def _parse_hex(value: str) -> int:
    try:
        return int(value, 16)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not a hexadecimal number: {value!r}") from exc


def build_cli() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Patch resources inside DBPF 2.1 packages")
    parser.add_argument("-v", "--verbose", action="store_true", help="show debug output")
    parser.add_argument("-q", "--quiet", action="store_true", help="only show warnings and errors")
    subparsers = parser.add_subparsers(dest="command", required=True)

    patch_parser = subparsers.add_parser(
        "patch", help="clear a CASP part flag in every package found"
    )
    patch_parser.add_argument(
        "paths", type=Path, nargs="+", help="package files or directories to search"
    )
    patch_parser.add_argument(
        "--type",
        dest="resource_type",
        type=_parse_hex,
        default=TYPE_CASP,
        help="resource type to patch, in hex (default: %(default)#010x)",
    )
    patch_parser.add_argument(
        "--flag",
        type=_parse_hex,
        default=None,
        help="part flag bit to clear, in hex (default: restrict opposite gender)",
    )
    patch_parser.add_argument(
        "--strict-size",
        action="store_true",
        help="refuse patches whose stored size would change",
    )
    patch_parser.add_argument(
        "--dry-run", action="store_true", help="report what would change without writing"
    )

    list_parser = subparsers.add_parser("list", help="print the header and index of a package")
    list_parser.add_argument("archive", type=Path, help="path to the .package file")

    extract_parser = subparsers.add_parser(
        "extract", help="extract resources and emit a manifest"
    )
    extract_parser.add_argument("archive", type=Path, help="path to the .package file")
    extract_parser.add_argument(
        "output", type=Path, help="directory that will receive the extracted resources"
    )

    return parser


def _print_archive_report(report: ArchiveReport) -> None:
    name = report.path.name
    if report.state is ArchiveState.FAILED:
        print(f"Failed: {name}")
        print(f"  {report.error}")
        return
    for entry_report in report.patched_entries:
        print(
            f"  patched (candidates={entry_report.candidates}, "
            f"patched={entry_report.patched})  I=0x{entry_report.key.instance:016X}"
        )
    for key, error in report.errors:
        print(f"  skipped {key}: {error}")
    if report.state is ArchiveState.WRITTEN:
        print(f"Patched: {name}")
    elif report.state is ArchiveState.REBUILT:
        print(f"Would patch: {name}")
    else:
        print(f"No change: {name}")


def _list_archive(path: Path) -> None:
    header, entries = load_archive(path)
    print(
        f"DBPF {header.major}.{header.minor}: {header.index_count} entries, "
        f"index at 0x{header.index_offset:X} ({header.index_size} bytes)"
    )
    for entry in entries:
        print(
            f"{entry.key}  offset=0x{entry.data_offset:08X}  "
            f"size={entry.compressed_size}/{entry.uncompressed_size}  "
            f"{compression_name(entry.compression)}"
        )


def main(argv: Iterable[str] | None = None) -> None:
    parser = build_cli()
    args = parser.parse_args(argv)

    level = logging.INFO
    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    if args.command == "patch":
        from casp import FlagClearPatch

        transform = FlagClearPatch() if args.flag is None else FlagClearPatch(args.flag)
        packages = find_packages(args.paths)
        print(f"Found {len(packages)} package(s)")
        summary = process_packages(
            packages,
            transform,
            resource_type=args.resource_type,
            strict_size=args.strict_size,
            dry_run=args.dry_run,
            progress_callback=_print_archive_report,
        )
        print(
            f"Done. Patched: {summary.patched}, Failed: {summary.failed}, "
            f"Total: {len(summary.reports)}"
        )
        if summary.failed:
            raise SystemExit(1)
    elif args.command == "list":
        _list_archive(args.archive)
    elif args.command == "extract":
        manifest = extract_archive(args.archive, args.output)
        print(f"Extraction complete. Manifest written to {manifest}")
    else:
        parser.error("unknown command")


if __name__ == "__main__":
    main()
