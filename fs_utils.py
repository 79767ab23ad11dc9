"""
Filesystem helpers shared by the codecs, the manifest store and the gate.
"""

from __future__ import annotations

import hashlib
import os
import shutil
import tempfile
from pathlib import Path

DIGEST_CHUNK_SIZE = 1024 * 1024


def write_atomically(path: Path, data: bytes):
    """Write ``data`` to a sibling temporary file, then replace ``path`` with it.

    A failure leaves the previous content of ``path`` untouched.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def copy_into(src: Path, dst: Path):
    dst.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(src, dst)


def file_digest(path: Path) -> str:
    """MD5 hex digest of a file, read in chunks."""
    md5 = hashlib.md5()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(DIGEST_CHUNK_SIZE), b""):
            md5.update(chunk)
    return md5.hexdigest()
