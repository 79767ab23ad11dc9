"""
Scratch working directories shared by every top-level operation.
"""

from __future__ import annotations

import logging
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

_log = logging.getLogger(__name__)


class ScratchArena:
    """Well-known working directories under one root.

    ``session()`` clears them on entry and again on a clean exit. A failed
    operation leaves them as they are; the next session's clear is the
    recovery. Sessions do not nest.
    """

    NAMES = ("_working", "_bundle", "_gamepak", "_modpak", "_base", "_restore")

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self._active = False

    @property
    def working(self) -> Path:
        """Patch-tier extraction."""
        return self.root / "_working"

    @property
    def bundle(self) -> Path:
        return self.root / "_bundle"

    @property
    def game_pak(self) -> Path:
        return self.root / "_gamepak"

    @property
    def mod_pak(self) -> Path:
        return self.root / "_modpak"

    @property
    def base(self) -> Path:
        """Primary base tier extraction (tier migration)."""
        return self.root / "_base"

    @property
    def restore(self) -> Path:
        return self.root / "_restore"

    def clear(self):
        for name in self.NAMES:
            path = self.root / name
            if path.exists():
                shutil.rmtree(path)

    def reset(self, path: Path) -> Path:
        """Empty one scratch directory and recreate it."""
        if path.exists():
            shutil.rmtree(path)
        path.mkdir(parents=True)
        return path

    @property
    def active(self) -> bool:
        return self._active

    @contextmanager
    def session(self) -> Iterator[ScratchArena]:
        if self._active:
            raise RuntimeError("Scratch arena is already in use by another operation")
        self.clear()
        for name in self.NAMES:
            (self.root / name).mkdir(parents=True, exist_ok=True)
        self._active = True
        try:
            yield self
        finally:
            self._active = False
        self.clear()
        if self.root.exists() and not any(self.root.iterdir()):
            self.root.rmdir()
        _log.debug("Released scratch arena %s", self.root)
