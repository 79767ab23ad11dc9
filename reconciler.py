"""
Manifest reconciliation and tier migration.

``reconcile`` is an fsck for the manifest: it reads what the patch tier really
holds, prunes mod claims that no longer match it and rebuilds the baseline
index of system files from every tier. Running it twice in a row yields the
same manifest.

``migrate_to_base`` folds system files that ended up in the patch tier into the
primary base tier and re-records the base tier digest.
"""

from __future__ import annotations

import logging
import os
from typing import Iterable

from archive_codec import DatCodec, PakCodec
from errors import ContainerFormatError, MissingSourceError
from integrity import base_tier_digest
from layout import BASE_BASE_OFFSET, PATCH_BASE_OFFSET, GameLayout
from manifest_schema import (
    BaselineEntry,
    BaselineIndex,
    Manifest,
    NestedEntry,
    Provenance,
)
from merge_engine import OperationResult
from path_hash import hash_name, is_subcontainer, path_hash
from scratch import ScratchArena
from tier_resolution import WorkingSet, recover_mod_filenames

_log = logging.getLogger(__name__)


def merged_container_hashes(manifest: Manifest) -> set[int]:
    """Sub-containers holding mod content, by path-hash."""
    merged = set()
    for mod in manifest.mods:
        merged.update(entry.container_hash for entry in mod.nested_entries)
        merged.update(
            entry.hash for entry in mod.entries if entry.provenance == Provenance.MERGED
        )
    return merged


class ManifestReconciler:
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

    def _extract_patch_tier(self, manifest: Manifest) -> tuple[WorkingSet, int]:
        files = self.outer_codec.extract(self.layout.patch_path, self.arena.working)
        files = recover_mod_filenames(files, self.arena.working, manifest.mods)
        working = WorkingSet(files)
        return working, len(files) - len(working)

    def _index_subcontainers(
        self, working: WorkingSet, warnings: list[MissingSourceError]
    ) -> dict[int, list[str]]:
        """Map every live sub-container's path-hash to its member paths."""
        index: dict[int, list[str]] = {}
        for name in working:
            if not is_subcontainer(name):
                continue
            try:
                index[path_hash(name)] = self.inner_codec.list_contents(self.arena.working / name)
            except ContainerFormatError as exc:
                self._warn(warnings, f"Could not index {name}: {exc}")
                index[path_hash(name)] = []
        return index

    def _base_tier_entries(self) -> list[BaselineEntry]:
        entries = []
        for tier in self.layout.base_containers:
            container = self.layout.container_path(tier)
            if not container.exists():
                _log.info("Base tier %s not present, skipped", tier)
                continue
            for entry in self.outer_codec.list_entries(container):
                entries.append(
                    BaselineEntry(
                        hash=entry.hash,
                        path=self.outer_codec.dictionary.resolve(entry.hash),
                        tier=tier,
                        compressed=entry.compressed,
                    )
                )
        return entries

    # ── Reconcile ─────────────────────────────────────────────────────

    def reconcile(self, manifest: Manifest) -> OperationResult:
        warnings: list[MissingSourceError] = []
        updated = manifest.model_copy(deep=True)

        with self.arena.session():
            working, dropped = self._extract_patch_tier(manifest)
            if dropped:
                _log.warning("Rewriting %s without %d duplicate entr(ies)",
                             self.layout.patch_container, dropped)
                self.outer_codec.write(
                    self.layout.patch_path, self.arena.working, working.files, PATCH_BASE_OFFSET
                )
            nested_index = self._index_subcontainers(working, warnings)

        live = {path_hash(name) for name in working}
        live_nested = {
            container_hash: {path_hash(member) for member in members}
            for container_hash, members in nested_index.items()
        }

        kept_mods = []
        for mod in updated.mods:
            entries = [entry for entry in mod.entries if entry.hash in live]
            nested = [
                entry for entry in mod.nested_entries
                if entry.hash in live_nested.get(entry.container_hash, ())
            ]
            pruned = len(mod.entries) - len(entries) + len(mod.nested_entries) - len(nested)
            if pruned:
                _log.info("Pruned %d stale entr(ies) from %s", pruned, mod.name)
            mod.entries = entries
            mod.nested_entries = nested
            if mod.is_empty:
                _log.info("Dropping %s, none of its files remain", mod.name)
                continue
            kept_mods.append(mod)
        updated.mods = kept_mods

        merged = merged_container_hashes(updated)
        claimed = {
            entry.hash for mod in updated.mods for entry in mod.entries
            if entry.provenance == Provenance.MOD
        }
        claimed_nested = {
            (entry.container_hash, entry.hash)
            for mod in updated.mods for entry in mod.nested_entries
        }
        previous_patch = {
            entry.hash for entry in manifest.baseline.tier_entries(self.layout.patch_container)
        }

        baseline = BaselineIndex()
        for name in working:
            file_hash = path_hash(name)
            if file_hash in claimed:
                continue
            # A merged sub-container is system content only if the patch tier shipped it
            if file_hash in merged and file_hash not in previous_patch:
                continue
            baseline.entries.append(
                BaselineEntry(
                    hash=file_hash,
                    path=name,
                    tier=self.layout.patch_container,
                    compressed=is_subcontainer(name),
                )
            )
        for name in working:
            container_hash = path_hash(name)
            for member in nested_index.get(container_hash, ()):
                member_hash = path_hash(member)
                if (container_hash, member_hash) in claimed_nested:
                    continue
                baseline.nested_entries.append(
                    NestedEntry(
                        container=name,
                        path=member,
                        hash=member_hash,
                        provenance=Provenance.SYSTEM,
                    )
                )
        baseline.entries.extend(self._base_tier_entries())
        baseline.digest = base_tier_digest(self.layout)
        updated.baseline = baseline

        _log.info(
            "Reconciled: %d baseline entr(ies), %d nested, %d mod(s)",
            len(baseline.entries), len(baseline.nested_entries), len(updated.mods),
        )
        return OperationResult(manifest=updated, warnings=warnings)

    # ── Tier migration ────────────────────────────────────────────────

    def migratable_hashes(self, manifest: Manifest) -> list[int]:
        """Patch-tier system files that hold no mod content."""
        merged = merged_container_hashes(manifest)
        return [
            entry.hash
            for entry in manifest.baseline.tier_entries(self.layout.patch_container)
            if entry.hash not in merged
        ]

    def migrate_to_base(
        self, manifest: Manifest, hashes: Iterable[int] | None = None
    ) -> OperationResult:
        """Move patch-tier system files into the primary base tier."""
        warnings: list[MissingSourceError] = []
        allowed = set(self.migratable_hashes(manifest))
        if hashes is None:
            designated = list(allowed)
        else:
            designated = []
            for file_hash in hashes:
                if file_hash in allowed:
                    designated.append(file_hash)
                else:
                    self._warn(
                        warnings,
                        f"{hash_name(file_hash)} is not a patch-tier system file; not migrated",
                    )

        primary = self.layout.primary_base_container
        moved: set[int] = set()
        with self.arena.session():
            base = WorkingSet(
                self.outer_codec.extract(self.layout.primary_base_path, self.arena.base)
            )
            working, _ = self._extract_patch_tier(manifest)

            for file_hash in designated:
                name = working.find(file_hash)
                if name is None:
                    self._warn(warnings, f"{hash_name(file_hash)} is not in the patch tier; skipped")
                    continue
                # Same hash under another name (hash-only vs. real) keeps the base name
                target = base.find(file_hash) or name
                dst = self.arena.base / target
                dst.parent.mkdir(parents=True, exist_ok=True)
                os.replace(self.arena.working / name, dst)
                base.add(target)
                working.remove(file_hash)
                moved.add(file_hash)
                _log.debug("Migrating %s to %s", name, primary)

            self.outer_codec.write(
                self.layout.primary_base_path, self.arena.base, base.files, BASE_BASE_OFFSET
            )
            self.outer_codec.write(
                self.layout.patch_path, self.arena.working, working.files, PATCH_BASE_OFFSET
            )

        updated = manifest.model_copy(deep=True)
        entries = []
        in_primary = {entry.hash for entry in updated.baseline.tier_entries(primary)}
        for entry in updated.baseline.entries:
            if entry.hash in moved and entry.tier == self.layout.patch_container:
                if entry.hash in in_primary:
                    continue
                entry.tier = primary
            entries.append(entry)
        updated.baseline.entries = entries
        updated.baseline.digest = base_tier_digest(self.layout)

        _log.info("Migrated %d file(s) to %s", len(moved), primary)
        return OperationResult(manifest=updated, warnings=warnings)
