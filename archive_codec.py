"""
Container codecs.

Two container types make up the game data:

* ``DatCodec`` handles the outer tier (``.dat``). Entries are keyed by
  path-hash only; no names are stored. Extraction names each entry through a
  ``PathDictionary`` and falls back to a hash-only name.
* ``PakCodec`` handles sub-containers (``.pak``) that live as single entries
  inside a ``.dat``. Entries carry their relative path.

Both codecs extract to a directory and return the ordered list of logical
paths, and rebuild a container from a directory plus an ordered list. Writes
go to a temporary sibling file which then replaces the destination.

Outer layout::

    "DATC" u32 base_offset  u32 count  u32 reserved
    count x (u64 hash  u32 flags  u32 reserved  u64 offset  u64 size)
    payloads, 16-byte aligned; flag bit 0 marks a zlib-compressed payload

Inner layout::

    "PAKC" u32 count
    count x (u32 name_len  u64 offset  u64 size  name bytes)
    payloads, 16-byte aligned
"""

from __future__ import annotations

import logging
import struct
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Protocol

from errors import ContainerFormatError, ContainerWriteError
from fs_utils import write_atomically
from path_hash import hash_name, is_subcontainer, normalize_path, path_hash

_log = logging.getLogger(__name__)

DAT_MAGIC = b"DATC"
DAT_HEADER = struct.Struct("<4sIII")
DAT_ENTRY = struct.Struct("<QIIQQ")

PAK_MAGIC = b"PAKC"
PAK_HEADER = struct.Struct("<4sI")
PAK_ENTRY = struct.Struct("<IQQ")

ENTRY_COMPRESSED = 0x1
DATA_ALIGN = 0x10


def _align(value: int) -> int:
    return (value + DATA_ALIGN - 1) & ~(DATA_ALIGN - 1)


def _layout_payloads(start: int, payloads: list[bytes]) -> tuple[list[int], bytes]:
    """Place payloads back to back from ``start``; return offsets and the data block."""
    offsets = []
    block = bytearray()
    cursor = _align(start)
    for payload in payloads:
        offsets.append(cursor)
        block.extend(payload)
        padding = _align(len(payload)) - len(payload)
        block.extend(b"\x00" * padding)
        cursor += len(payload) + padding
    return offsets, bytes(block)


def _read_sources(source_dir: Path, files: list[str], label: Path) -> list[tuple[str, bytes]]:
    seen: dict[int, str] = {}
    sources = []
    for name in files:
        logical = normalize_path(name)
        file_hash = path_hash(logical)
        if file_hash in seen:
            raise ContainerWriteError(
                f"Cannot write {label}: {logical!r} and {seen[file_hash]!r} share path-hash "
                f"0x{file_hash:016x}"
            )
        seen[file_hash] = logical
        try:
            data = (source_dir / logical).read_bytes()
        except OSError as exc:
            raise ContainerWriteError(f"Cannot write {label}: {exc}") from exc
        sources.append((logical, data))
    return sources


def _commit(container_path: Path, data: bytes):
    try:
        write_atomically(container_path, data)
    except OSError as exc:
        raise ContainerWriteError(f"Could not write {container_path}: {exc}") from exc


def _read_container(container_path: Path) -> bytes:
    try:
        return Path(container_path).read_bytes()
    except OSError as exc:
        raise ContainerFormatError(f"Could not read {container_path}: {exc}") from exc


class ContainerCodec(Protocol):
    def extract(self, container_path: Path, dest_dir: Path) -> list[str]: ...

    def list_contents(self, container_path: Path) -> list[str]: ...

    def write(
        self,
        container_path: Path,
        source_dir: Path,
        files: list[str],
        base_offset: int = 0,
    ) -> None: ...


class PathDictionary:
    """Known logical paths, looked up by path-hash."""

    def __init__(self, paths: Iterable[str] = ()):
        self._by_hash: dict[int, str] = {}
        for path in paths:
            self.add(path)

    @classmethod
    def from_file(cls, path: Path) -> PathDictionary:
        lines = Path(path).read_text(encoding="utf-8").splitlines()
        return cls(
            line.strip() for line in lines
            if line.strip() and not line.lstrip().startswith("#")
        )

    def add(self, path: str):
        normalized = normalize_path(path)
        self._by_hash.setdefault(path_hash(normalized), normalized)

    def resolve(self, file_hash: int) -> str:
        return self._by_hash.get(file_hash) or hash_name(file_hash)

    def __contains__(self, file_hash: int) -> bool:
        return file_hash in self._by_hash

    def __len__(self) -> int:
        return len(self._by_hash)


@dataclass(frozen=True)
class DatEntry:
    hash: int
    offset: int
    size: int
    compressed: bool


class DatCodec:
    def __init__(self, dictionary: PathDictionary | None = None):
        self.dictionary = dictionary if dictionary is not None else PathDictionary()

    @staticmethod
    def _parse(data: bytes, label: Path) -> tuple[int, list[DatEntry]]:
        if len(data) < DAT_HEADER.size:
            raise ContainerFormatError(f"{label}: truncated header")
        magic, base_offset, count, _reserved = DAT_HEADER.unpack_from(data, 0)
        if magic != DAT_MAGIC:
            raise ContainerFormatError(f"{label}: bad magic {magic!r}")
        entries = []
        pos = DAT_HEADER.size
        for _ in range(count):
            if pos + DAT_ENTRY.size > len(data):
                raise ContainerFormatError(f"{label}: truncated entry table")
            file_hash, flags, _reserved, offset, size = DAT_ENTRY.unpack_from(data, pos)
            if offset + size > len(data):
                raise ContainerFormatError(f"{label}: entry 0x{file_hash:016x} out of range")
            entries.append(DatEntry(file_hash, offset, size, bool(flags & ENTRY_COMPRESSED)))
            pos += DAT_ENTRY.size
        return base_offset, entries

    @staticmethod
    def _payload(data: bytes, entry: DatEntry, label: Path) -> bytes:
        raw = data[entry.offset:entry.offset + entry.size]
        if not entry.compressed:
            return raw
        try:
            return zlib.decompress(raw)
        except zlib.error as exc:
            raise ContainerFormatError(
                f"{label}: entry 0x{entry.hash:016x} does not decompress: {exc}"
            ) from exc

    def read_base_offset(self, container_path: Path) -> int:
        base_offset, _ = self._parse(_read_container(container_path), container_path)
        return base_offset

    def list_entries(self, container_path: Path) -> list[DatEntry]:
        _, entries = self._parse(_read_container(container_path), container_path)
        return entries

    def list_contents(self, container_path: Path) -> list[str]:
        return [self.dictionary.resolve(entry.hash) for entry in self.list_entries(container_path)]

    def extract(self, container_path: Path, dest_dir: Path) -> list[str]:
        data = _read_container(container_path)
        _, entries = self._parse(data, container_path)
        files = []
        for entry in entries:
            name = self.dictionary.resolve(entry.hash)
            dst = Path(dest_dir) / name
            dst.parent.mkdir(parents=True, exist_ok=True)
            dst.write_bytes(self._payload(data, entry, container_path))
            files.append(name)
        _log.debug("Extracted %d entries from %s", len(files), container_path)
        return files

    def extract_by_hash(self, container_path: Path, file_hash: int, dest_file: Path) -> bool:
        data = _read_container(container_path)
        _, entries = self._parse(data, container_path)
        for entry in entries:
            if entry.hash == file_hash:
                dest_file = Path(dest_file)
                dest_file.parent.mkdir(parents=True, exist_ok=True)
                dest_file.write_bytes(self._payload(data, entry, container_path))
                return True
        return False

    def write(
        self,
        container_path: Path,
        source_dir: Path,
        files: list[str],
        base_offset: int = 0,
    ):
        sources = _read_sources(Path(source_dir), files, container_path)
        payloads = []
        flags = []
        for name, data in sources:
            if is_subcontainer(name):
                payloads.append(zlib.compress(data))
                flags.append(ENTRY_COMPRESSED)
            else:
                payloads.append(data)
                flags.append(0)

        table_end = DAT_HEADER.size + DAT_ENTRY.size * len(sources)
        offsets, block = _layout_payloads(table_end, payloads)

        out = bytearray(DAT_HEADER.pack(DAT_MAGIC, base_offset, len(sources), 0))
        for (name, _), flag, offset, payload in zip(sources, flags, offsets, payloads):
            out.extend(DAT_ENTRY.pack(path_hash(name), flag, 0, offset, len(payload)))
        out.extend(b"\x00" * (_align(table_end) - table_end))
        out.extend(block)
        _commit(Path(container_path), bytes(out))
        _log.debug("Wrote %d entries to %s", len(sources), container_path)


class PakCodec:
    @staticmethod
    def _parse(data: bytes, label: Path) -> list[tuple[str, int, int]]:
        if len(data) < PAK_HEADER.size:
            raise ContainerFormatError(f"{label}: truncated header")
        magic, count = PAK_HEADER.unpack_from(data, 0)
        if magic != PAK_MAGIC:
            raise ContainerFormatError(f"{label}: bad magic {magic!r}")
        entries = []
        pos = PAK_HEADER.size
        for _ in range(count):
            if pos + PAK_ENTRY.size > len(data):
                raise ContainerFormatError(f"{label}: truncated entry table")
            name_len, offset, size = PAK_ENTRY.unpack_from(data, pos)
            pos += PAK_ENTRY.size
            raw_name = data[pos:pos + name_len]
            if len(raw_name) != name_len or offset + size > len(data):
                raise ContainerFormatError(f"{label}: corrupt entry table")
            pos += name_len
            entries.append((normalize_path(raw_name.decode("utf-8")), offset, size))
        return entries

    def list_contents(self, container_path: Path) -> list[str]:
        return [name for name, _, _ in self._parse(_read_container(container_path), container_path)]

    def extract(self, container_path: Path, dest_dir: Path) -> list[str]:
        data = _read_container(container_path)
        files = []
        for name, offset, size in self._parse(data, container_path):
            dst = Path(dest_dir) / name
            dst.parent.mkdir(parents=True, exist_ok=True)
            dst.write_bytes(data[offset:offset + size])
            files.append(name)
        return files

    def write(
        self,
        container_path: Path,
        source_dir: Path,
        files: list[str],
        base_offset: int = 0,
    ):
        # Sub-containers have no loader header; base_offset is accepted for
        # interface parity only.
        sources = _read_sources(Path(source_dir), files, container_path)
        encoded = [name.encode("utf-8") for name, _ in sources]
        table_end = PAK_HEADER.size + sum(PAK_ENTRY.size + len(raw) for raw in encoded)
        offsets, block = _layout_payloads(table_end, [data for _, data in sources])

        out = bytearray(PAK_HEADER.pack(PAK_MAGIC, len(sources)))
        for raw, offset, (_, data) in zip(encoded, offsets, sources):
            out.extend(PAK_ENTRY.pack(len(raw), offset, len(data)))
            out.extend(raw)
        out.extend(b"\x00" * (_align(table_end) - table_end))
        out.extend(block)
        _commit(Path(container_path), bytes(out))
