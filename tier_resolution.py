"""
Shared helpers for locating a logical file across the container tiers.

Install, uninstall and tier migration all need the same three things:

* a working file list for an extracted outer container with path-hash lookup
  (``WorkingSet``),
* recovery of real names for entries that were extracted under a hash-only
  name (``recover_mod_filenames``),
* a first-match-wins search over the tiers (``TierResolver``).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator

from archive_codec import DatCodec
from errors import MissingSourceError
from layout import GameLayout
from manifest_schema import BaselineEntry, BaselineIndex, ModRecord
from path_hash import hash_name, normalize_path, path_hash

_log = logging.getLogger(__name__)


def dedupe_by_hash(files: Iterable[str]) -> list[str]:
    """Keep the first file of every path-hash, preserving order."""
    seen: set[int] = set()
    unique = []
    for name in files:
        file_hash = path_hash(name)
        if file_hash in seen:
            continue
        seen.add(file_hash)
        unique.append(name)
    return unique


def recover_mod_filenames(
    files: list[str],
    source_dir: Path,
    mods: Iterable[ModRecord],
) -> list[str]:
    """Rename extracted entries back to the paths installed mods recorded for them.

    The outer container stores hashes only, so a file a mod added comes back
    under a hash-only name unless the path dictionary knows it. The first pass
    collects every recorded path by hash, the second relabels the list and
    moves the files inside ``source_dir``.
    """
    known: dict[int, str] = {}
    for mod in mods:
        for entry in mod.entries:
            known.setdefault(entry.hash, normalize_path(entry.path))

    recovered = []
    for name in files:
        real = known.get(path_hash(name))
        if real is None or real == name:
            recovered.append(name)
            continue
        src = source_dir / name
        dst = source_dir / real
        if src.exists():
            dst.parent.mkdir(parents=True, exist_ok=True)
            os.replace(src, dst)
        _log.debug("Recovered %s -> %s", name, real)
        recovered.append(real)
    return recovered


class WorkingSet:
    """Ordered member list of an outer container being rebuilt.

    Members are unique by path-hash; duplicates in the input are dropped.
    """

    def __init__(self, files: Iterable[str] = ()):
        self.files: list[str] = []
        self._index: dict[int, str] = {}
        dropped = 0
        for name in files:
            if not self.add(name):
                dropped += 1
        if dropped:
            _log.warning("Dropped %d duplicate container entr(ies)", dropped)

    def find(self, file_hash: int) -> str | None:
        return self._index.get(file_hash)

    def add(self, name: str) -> bool:
        name = normalize_path(name)
        file_hash = path_hash(name)
        if file_hash in self._index:
            return False
        self._index[file_hash] = name
        self.files.append(name)
        return True

    def remove(self, file_hash: int) -> str | None:
        name = self._index.pop(file_hash, None)
        if name is not None:
            self.files.remove(name)
        return name

    def __contains__(self, file_hash: int) -> bool:
        return file_hash in self._index

    def __iter__(self) -> Iterator[str]:
        return iter(self.files)

    def __len__(self) -> int:
        return len(self.files)


@dataclass(frozen=True)
class TierSource:
    """Where a logical file was found.

    ``tier`` is the container path relative to the install root. ``in_scratch``
    means the file is already present in the current patch-tier extraction.
    """

    tier: str
    path: str
    in_scratch: bool = False


class TierResolver:
    def __init__(self, layout: GameLayout, codec: DatCodec, baseline: BaselineIndex):
        self.layout = layout
        self.codec = codec
        self._by_tier: dict[str, dict[int, BaselineEntry]] = {}
        for entry in baseline.entries:
            self._by_tier.setdefault(entry.tier, {}).setdefault(entry.hash, entry)

    def locate(self, file_hash: int, working: WorkingSet | None = None) -> TierSource | None:
        """First match wins: the patch-tier scratch (when given), then each base tier in order."""
        if working is not None:
            name = working.find(file_hash)
            if name is not None:
                return TierSource(tier=self.layout.patch_container, path=name, in_scratch=True)
        for tier in self.layout.base_containers:
            entry = self._by_tier.get(tier, {}).get(file_hash)
            if entry is not None:
                return TierSource(tier=tier, path=entry.path)
        return None

    def in_tier(self, file_hash: int, tier: str) -> bool:
        return file_hash in self._by_tier.get(tier, {})

    def materialize(self, source: TierSource, file_hash: int, dest_file: Path):
        """Copy the located file out of its base-tier container into ``dest_file``."""
        if source.in_scratch:
            raise ValueError("File is already in the patch-tier scratch")
        container = self.layout.container_path(source.tier)
        if not container.exists() or not self.codec.extract_by_hash(container, file_hash, dest_file):
            raise MissingSourceError(
                f"{source.path or hash_name(file_hash)} is indexed in {source.tier} "
                "but is not in the container"
            )
        _log.debug("Materialized %s from %s", source.path, source.tier)
