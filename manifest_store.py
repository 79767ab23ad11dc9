"""
Persistence of the installation manifest (``datmerge.json``).

The file's presence marks an install root as configured. Saves replace the
whole document through a temporary sibling file.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from errors import ManifestStoreError
from fs_utils import write_atomically
from manifest_schema import Manifest

_log = logging.getLogger(__name__)


class ManifestStore:
    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Manifest:
        if not self.path.exists():
            raise ManifestStoreError(
                f"No installation manifest at {self.path}; run setup first"
            )
        try:
            manifest = Manifest.model_validate(json.loads(self.path.read_text(encoding="utf-8")))
        except (OSError, ValueError, ValidationError) as exc:
            raise ManifestStoreError(f"Could not load {self.path}: {exc}") from exc
        _log.debug("Loaded manifest: %d mod(s) recorded", len(manifest.mods))
        return manifest

    def save(self, manifest: Manifest):
        data = json.dumps(manifest.model_dump(mode="json"), indent=2, ensure_ascii=False)
        try:
            write_atomically(self.path, data.encode("utf-8"))
        except OSError as exc:
            raise ManifestStoreError(f"Could not save {self.path}: {exc}") from exc

    def delete(self):
        if self.path.exists():
            self.path.unlink()
