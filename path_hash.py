"""
Path hashing for container lookups.

Outer containers store no file names, only a 64-bit path-hash per entry, so
every membership test in the engine goes through ``path_hash``. The hash is
split the same way the game loader splits it: the low 51 bits identify the
path without its extension, the high 13 bits identify the extension.

Entries whose name cannot be recovered are extracted under a hash-only name
(16 lowercase hex digits, no directory, no extension). ``path_hash`` maps such
a name straight back to the hash it was derived from, so a hash-only name and
the real path it stands for always compare equal.
"""

from __future__ import annotations

import hashlib
import posixpath
import re
import zlib

NAME_BITS = 51
NAME_MASK = (1 << NAME_BITS) - 1
EXTENSION_MASK = 0x1FFF

SUBCONTAINER_EXTENSIONS = (".pak",)

HASH_NAME_RE = re.compile(r"^[0-9a-f]{16}$")


def normalize_path(path: str) -> str:
    """Return the canonical logical form of ``path``: forward slashes, relative."""
    normalized = str(path).replace("\\", "/").strip("/")
    while "//" in normalized:
        normalized = normalized.replace("//", "/")
    return normalized


def is_hash_name(path: str) -> bool:
    return bool(HASH_NAME_RE.match(normalize_path(path)))


def hash_name(file_hash: int) -> str:
    return f"{file_hash:016x}"


def _extension_code(extension: str) -> int:
    if not extension:
        return 0
    return zlib.crc32(extension.lower().encode("utf-8")) & EXTENSION_MASK


def path_hash(path: str) -> int:
    """Deterministic 64-bit identifier of a logical path."""
    normalized = normalize_path(path)
    if HASH_NAME_RE.match(normalized):
        return int(normalized, 16)
    stem, extension = posixpath.splitext(normalized)
    digest = hashlib.blake2b(stem.encode("utf-8"), digest_size=8).digest()
    name_part = int.from_bytes(digest, "little") & NAME_MASK
    return (_extension_code(extension) << NAME_BITS) | name_part


def is_subcontainer(path: str) -> bool:
    return normalize_path(path).lower().endswith(SUBCONTAINER_EXTENSIONS)
