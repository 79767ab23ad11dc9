"""
Merge engine: installs mod bundles into the patch-tier container and removes
them again.

Install works entirely inside the scratch arena and rebuilds the patch-tier
container once at the end:

1. extract the patch tier and recover mod-added file names
2. extract the bundle
3. for every sub-container the bundle merges into, find its current copy
   (patch tier first, then the base tiers in order) and merge the bundle's
   files over it
4. copy the bundle's remaining direct files into the patch-tier scratch
5. rebuild the patch tier and append a ModRecord

Uninstall reverses this using the ModRecord: the mod's files are removed from
each sub-container it touched and from the patch tier, and sub-containers are
rebased on their base-tier original so files the mod overwrote come back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from archive_codec import DatCodec, PakCodec
from errors import BundleFormatError, MissingSourceError
from fs_utils import copy_into
from layout import PATCH_BASE_OFFSET, GameLayout
from manifest_schema import (
    DirectEntry,
    Manifest,
    ModBundleManifest,
    ModRecord,
    NestedEntry,
    Provenance,
)
from mod_bundle import extract_bundle, read_bundle_metadata
from path_hash import is_subcontainer, path_hash
from scratch import ScratchArena
from tier_resolution import TierResolver, WorkingSet, recover_mod_filenames

_log = logging.getLogger(__name__)


@dataclass
class OperationResult:
    """The manifest after an operation plus the non-fatal problems it skipped."""

    manifest: Manifest
    warnings: list[MissingSourceError] = field(default_factory=list)
    record: ModRecord | None = None


class MergeEngine:
    def __init__(
        self,
        layout: GameLayout,
        arena: ScratchArena,
        outer_codec: DatCodec,
        inner_codec: PakCodec,
    ):
        self.layout = layout
        self.arena = arena
        self.outer_codec = outer_codec
        self.inner_codec = inner_codec

    def _warn(self, warnings: list[MissingSourceError], message: str):
        _log.warning(message)
        warnings.append(MissingSourceError(message))

    def extract_patch_tier(self, manifest: Manifest) -> WorkingSet:
        files = self.outer_codec.extract(self.layout.patch_path, self.arena.working)
        return WorkingSet(recover_mod_filenames(files, self.arena.working, manifest.mods))

    def _rebuild_patch_tier(self, working: WorkingSet):
        self.outer_codec.write(
            self.layout.patch_path, self.arena.working, working.files, PATCH_BASE_OFFSET
        )

    # ── Install ───────────────────────────────────────────────────────

    def _check_payload(self, bundle: ModBundleManifest, bundle_files: list[str]):
        present = {path_hash(name) for name in bundle_files}
        missing = [entry.path for entry in bundle.entries if entry.hash not in present]
        missing += [
            container for container in bundle.nested_containers()
            if path_hash(container) not in present
        ]
        if missing:
            raise BundleFormatError(
                f"Bundle '{bundle.name}' is missing payload file(s): {', '.join(missing)}"
            )

    def _merge_subcontainer(self, game_name: str, mod_name: str) -> list[str]:
        """Merge the bundle's copy of a sub-container over the scratch copy in place."""
        game_dir = self.arena.reset(self.arena.game_pak)
        mod_dir = self.arena.reset(self.arena.mod_pak)
        game_file = self.arena.working / game_name

        game_files = self.inner_codec.extract(game_file, game_dir)
        mod_files = self.inner_codec.extract(self.arena.bundle / mod_name, mod_dir)
        present = {path_hash(name) for name in game_files}
        for name in mod_files:
            copy_into(mod_dir / name, game_dir / name)
            if path_hash(name) not in present:
                game_files.append(name)
                present.add(path_hash(name))

        self.inner_codec.write(game_file, game_dir, game_files)
        return mod_files

    def install(self, bundle_path: str | Path, manifest: Manifest) -> OperationResult:
        bundle = read_bundle_metadata(bundle_path)
        warnings: list[MissingSourceError] = []

        with self.arena.session():
            working = self.extract_patch_tier(manifest)
            bundle_files = extract_bundle(bundle_path, self.arena.bundle)
            self._check_payload(bundle, bundle_files)

            resolver = TierResolver(self.layout, self.outer_codec, manifest.baseline)
            # container hash -> (name in patch scratch, name in bundle)
            merge_targets: dict[int, tuple[str, str]] = {}
            for container in bundle.nested_containers():
                container_hash = path_hash(container)
                source = resolver.locate(container_hash, working)
                if source is None:
                    self._warn(
                        warnings,
                        f"Sub-container {container} is not in any tier; installing the "
                        f"bundle's copy as a new file",
                    )
                    continue
                if source.in_scratch:
                    merge_targets[container_hash] = (source.path, container)
                    _log.info("Merging into %s from the patch tier", container)
                    continue
                try:
                    resolver.materialize(source, container_hash, self.arena.working / container)
                except MissingSourceError as exc:
                    self._warn(warnings, f"{exc}; installing the bundle's copy as a new file")
                    continue
                working.add(container)
                merge_targets[container_hash] = (container, container)
                _log.info("Merging into %s from %s", container, source.tier)

            for game_name, mod_name in merge_targets.values():
                self._merge_subcontainer(game_name, mod_name)

            for entry in bundle.entries:
                if entry.hash in merge_targets:
                    continue
                existing = working.find(entry.hash)
                if existing is not None and existing != entry.path:
                    (self.arena.working / existing).unlink(missing_ok=True)
                    working.remove(entry.hash)
                copy_into(self.arena.bundle / entry.path, self.arena.working / entry.path)
                working.add(entry.path)

            self._rebuild_patch_tier(working)

        record = ModRecord(
            name=bundle.name,
            version=bundle.version,
            author=bundle.author,
            website=bundle.website,
            description=bundle.description,
            entries=[
                DirectEntry(
                    hash=entry.hash,
                    path=entry.path,
                    compressed=is_subcontainer(entry.path),
                    provenance=Provenance.MERGED if entry.hash in merge_targets else Provenance.MOD,
                    source_name=bundle.name,
                )
                for entry in bundle.entries
            ],
            nested_entries=[
                NestedEntry(
                    container=entry.container,
                    path=entry.path,
                    hash=path_hash(entry.path),
                    source_name=bundle.name,
                )
                for entry in bundle.nested_entries
            ],
        )
        updated = manifest.model_copy(deep=True)
        updated.mods.append(record)
        _log.info(
            "Installed %s: %d direct, %d nested entr(ies)",
            bundle.name, len(record.entries), len(record.nested_entries),
        )
        return OperationResult(manifest=updated, warnings=warnings, record=record)

    # ── Uninstall ─────────────────────────────────────────────────────

    def _rebase_subcontainer(
        self,
        resolver: TierResolver,
        game_name: str,
        container_hash: int,
        kept: list[str],
        warnings: list[MissingSourceError],
    ):
        """Rebuild a sub-container as its base-tier original overlaid with ``kept``.

        ``kept`` files are in the mod-pak scratch directory. Without a base-tier
        original the sub-container is rebuilt from ``kept`` alone.
        """
        game_file = self.arena.working / game_name
        source = resolver.locate(container_hash)
        if source is not None:
            restore_file = self.arena.reset(self.arena.restore) / "original.pak"
            try:
                resolver.materialize(source, container_hash, restore_file)
            except MissingSourceError as exc:
                self._warn(warnings, str(exc))
                source = None
        if source is None:
            self.inner_codec.write(game_file, self.arena.mod_pak, kept)
            return

        game_dir = self.arena.reset(self.arena.game_pak)
        base_files = self.inner_codec.extract(restore_file, game_dir)
        present = {path_hash(name) for name in base_files}
        for name in kept:
            copy_into(self.arena.mod_pak / name, game_dir / name)
            if path_hash(name) not in present:
                base_files.append(name)
                present.add(path_hash(name))
        self.inner_codec.write(game_file, game_dir, base_files)

    def uninstall(self, mod_name: str, manifest: Manifest) -> OperationResult:
        record = manifest.find_mod(mod_name)
        if record is None:
            raise ValueError(f"No installed mod named {mod_name!r}")
        remaining = [mod for mod in manifest.mods if mod.name != record.name]
        warnings: list[MissingSourceError] = []

        with self.arena.session():
            working = self.extract_patch_tier(manifest)
            resolver = TierResolver(self.layout, self.outer_codec, manifest.baseline)
            containers = record.nested_containers()

            for container in containers:
                container_hash = path_hash(container)
                game_name = working.find(container_hash)
                if game_name is None:
                    self._warn(warnings, f"{container} is no longer in the patch tier; skipped")
                    continue

                owned = {
                    path_hash(entry.path) for entry in record.nested_entries
                    if entry.container_hash == container_hash
                }
                mod_dir = self.arena.reset(self.arena.mod_pak)
                files = self.inner_codec.extract(self.arena.working / game_name, mod_dir)
                kept = [name for name in files if path_hash(name) not in owned]
                if len(kept) == len(files):
                    self._warn(warnings, f"{container} holds none of {record.name}'s files")

                if not kept:
                    _log.info("Removing emptied sub-container %s", container)
                    (self.arena.working / game_name).unlink(missing_ok=True)
                    working.remove(container_hash)
                    continue

                still_merged = any(
                    entry.container_hash == container_hash
                    for mod in remaining for entry in mod.nested_entries
                )
                from_base_only = (
                    not resolver.in_tier(container_hash, self.layout.patch_container)
                    and resolver.locate(container_hash) is not None
                )
                if not still_merged and from_base_only:
                    # Nothing else patches it: the loader falls back to the base tier copy
                    _log.info("Dropping %s from the patch tier, base copy takes over", container)
                    (self.arena.working / game_name).unlink(missing_ok=True)
                    working.remove(container_hash)
                    continue

                self._rebase_subcontainer(resolver, game_name, container_hash, kept, warnings)

            nested_hashes = {path_hash(container) for container in containers}
            other_claims = {entry.hash for mod in remaining for entry in mod.entries}
            for entry in record.entries:
                if entry.hash in nested_hashes:
                    continue
                if entry.hash in other_claims:
                    _log.info("Keeping %s, another installed mod also provides it", entry.path)
                    continue
                name = working.remove(entry.hash)
                if name is None:
                    self._warn(warnings, f"{entry.path} is no longer in the patch tier; skipped")
                    continue
                (self.arena.working / name).unlink(missing_ok=True)

            self._rebuild_patch_tier(working)

        updated = manifest.model_copy(deep=True)
        updated.mods = [mod for mod in updated.mods if mod.name != record.name]
        _log.info("Uninstalled %s", record.name)
        return OperationResult(manifest=updated, warnings=warnings, record=record)
