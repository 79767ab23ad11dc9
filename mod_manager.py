"""
datmerge - Core Logic

Front door for every operation on an install root: loads the manifest, runs
the integrity gate, hands the manifest to the merge engine or reconciler and
persists what comes back. Every public operation returns ``(ok, message)``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from archive_codec import DatCodec, PakCodec, PathDictionary
from conflict_detection import find_conflicts
from errors import ContainerWriteError, DatMergeError, MissingSourceError
from integrity import verify_base_integrity
from layout import PATCH_BASE_OFFSET, GameLayout
from manifest_schema import Manifest, ModRecord, Provenance
from manifest_store import ManifestStore
from merge_engine import MergeEngine, OperationResult
from mod_bundle import SUPPORTED_EXTENSIONS, read_bundle_metadata
from path_hash import is_hash_name, path_hash
from reconciler import ManifestReconciler
from scratch import ScratchArena


def _write_failed(exc: ContainerWriteError) -> str:
    return (
        f"{exc}\n\nContainer state is unknown. Run reconcile before making further changes."
    )


class ModManager:
    """
    Main mod manager controller.

    Workflow:
        1. setup() once per install root to record the baseline
        2. install_mod() / uninstall_mod() to manage mods
        3. reconcile() whenever the containers were touched by something else
    """

    def __init__(
        self,
        game_dir: str | Path,
        scratch_dir: str | Path | None = None,
        log_callback: Optional[Callable[[str], None]] = None,
        layout: GameLayout | None = None,
    ):
        self.layout = layout or GameLayout(
            Path(game_dir), scratch_dir=Path(scratch_dir) if scratch_dir else None
        )
        self.store = ManifestStore(self.layout.manifest_path)
        self.arena = ScratchArena(self.layout.scratch_root)
        self._log_cb = log_callback or print

        # Non-fatal problems reported by the last operation
        self.last_warnings: list[MissingSourceError] = []

    # ── Logging ───────────────────────────────────────────────────────

    def log(self, msg: str):
        self._log_cb(msg)

    def _report(self, result: OperationResult):
        self.last_warnings = list(result.warnings)
        for warning in result.warnings:
            self.log(f"  WARNING: {warning}")

    # ── Collaborators ─────────────────────────────────────────────────

    def _dictionary(self) -> PathDictionary:
        path = self.layout.dictionary_path
        if not path.exists():
            return PathDictionary()
        dictionary = PathDictionary.from_file(path)
        self.log(f"Loaded {len(dictionary)} known path(s) from {path.name}")
        return dictionary

    def _engine(self) -> MergeEngine:
        return MergeEngine(self.layout, self.arena, DatCodec(self._dictionary()), PakCodec())

    def _reconciler(self) -> ManifestReconciler:
        return ManifestReconciler(self.layout, self.arena, DatCodec(self._dictionary()), PakCodec())

    # ── Manifest ──────────────────────────────────────────────────────

    def is_configured(self) -> bool:
        return self.store.exists()

    def load_manifest(self) -> Manifest:
        return self.store.load()

    def installed(self) -> list[ModRecord]:
        if not self.is_configured():
            return []
        return self.load_manifest().mods

    def _load_gated(self) -> Manifest:
        manifest = self.store.load()
        verify_base_integrity(self.layout, manifest)
        return manifest

    def provenance_of(self, path: str) -> Provenance | None:
        file_hash = int(path, 16) if is_hash_name(path) else path_hash(path)
        return self.load_manifest().provenance_of(file_hash)

    # ── Setup ─────────────────────────────────────────────────────────

    def setup(self, migrate: bool = False, force: bool = False) -> tuple[bool, str]:
        if self.is_configured() and not force:
            return (
                False,
                f"{self.layout.game_dir} is already configured. "
                "Use reconcile to resynchronize, or force setup to start over.",
            )
        if not self.layout.primary_base_path.exists():
            return False, f"Primary base container not found: {self.layout.primary_base_path}"

        self.log(f"Setting up {self.layout.game_dir}...")
        reconciler = self._reconciler()
        try:
            if not self.layout.patch_path.exists():
                self.log(f"  Creating empty {self.layout.patch_container}")
                reconciler.outer_codec.write(
                    self.layout.patch_path, self.layout.game_dir, [], PATCH_BASE_OFFSET
                )
            result = reconciler.reconcile(Manifest())
            if migrate:
                self.log("  Migrating patch-tier system files to the base tier...")
                migrated = reconciler.migrate_to_base(result.manifest)
                migrated.warnings[:0] = result.warnings
                result = migrated
            self.store.save(result.manifest)
        except ContainerWriteError as e:
            return False, _write_failed(e)
        except DatMergeError as e:
            return False, f"Setup failed: {e}"

        self._report(result)
        baseline = result.manifest.baseline
        self.log(f"  Recorded {len(baseline.entries)} baseline entr(ies)")
        return True, f"Configured {self.layout.game_dir}"

    # ── Install ───────────────────────────────────────────────────────

    def install_mod(
        self, bundle_path: str | Path, allow_conflicts: bool = False
    ) -> tuple[bool, str]:
        bundle_path = Path(bundle_path)
        self.log(f"Installing {bundle_path.name}...")

        if bundle_path.suffix.lower() not in SUPPORTED_EXTENSIONS:
            return False, f"Unsupported bundle format: {bundle_path.suffix or bundle_path.name}"

        try:
            manifest = self._load_gated()
            bundle = read_bundle_metadata(bundle_path)
        except DatMergeError as e:
            return False, str(e)

        if manifest.find_mod(bundle.name) is not None:
            return False, f"'{bundle.name}' is already installed. Uninstall it first."

        # Conflict check: block install if any installed mod owns the same files
        conflicts = find_conflicts(bundle, manifest.mods)
        if conflicts and not allow_conflicts:
            lines = []
            for name, overlap in conflicts:
                samples = ", ".join(sorted(f"0x{h:016x}" for h in list(overlap)[:5]))
                suffix = f" (+{len(overlap) - 5} more)" if len(overlap) > 5 else ""
                lines.append(f"  • {name}  ({len(overlap)} file(s): {samples}{suffix})")
            msg = "Cannot install: conflicts with installed mod(s):\n\n"
            msg += "\n".join(lines)
            msg += "\n\nUninstall the conflicting mod(s) before proceeding."
            return False, msg
        for name, overlap in conflicts:
            self.log(f"  WARNING: overriding {len(overlap)} file(s) of '{name}'")

        try:
            result = self._engine().install(bundle_path, manifest)
            self.store.save(result.manifest)
        except ContainerWriteError as e:
            return False, _write_failed(e)
        except DatMergeError as e:
            return False, f"Install failed: {e}"

        self._report(result)
        record = result.record
        self.log(f"  Successfully installed '{record.name}'")
        return (
            True,
            f"Installed {len(record.entries)} file(s), "
            f"{len(record.nested_entries)} nested file(s)",
        )

    # ── Uninstall ─────────────────────────────────────────────────────

    def uninstall_mod(self, name: str) -> tuple[bool, str]:
        try:
            manifest = self._load_gated()
        except DatMergeError as e:
            return False, str(e)

        record = manifest.find_mod(name)
        if record is None:
            return False, f"No installed mod named '{name}'"

        self.log(f"Uninstalling '{record.name}'...")
        try:
            result = self._engine().uninstall(record.name, manifest)
            self.store.save(result.manifest)
        except ContainerWriteError as e:
            return False, _write_failed(e)
        except DatMergeError as e:
            return False, f"Uninstall failed: {e}"

        self._report(result)
        self.log(f"  Successfully uninstalled '{record.name}'")
        return True, f"Removed '{record.name}'"

    # ── Maintenance ───────────────────────────────────────────────────

    def reconcile(self) -> tuple[bool, str]:
        self.log("Reconciling manifest with the patch tier...")
        try:
            manifest = self.store.load()
            result = self._reconciler().reconcile(manifest)
            self.store.save(result.manifest)
        except ContainerWriteError as e:
            return False, _write_failed(e)
        except DatMergeError as e:
            return False, f"Reconcile failed: {e}"

        self._report(result)
        dropped = [mod.name for mod in manifest.mods if result.manifest.find_mod(mod.name) is None]
        for name in dropped:
            self.log(f"  Dropped '{name}': none of its files remain")
        return True, f"Manifest synchronized ({len(result.manifest.mods)} mod(s) installed)"

    def migrate_to_base(self, paths: list[str] | None = None) -> tuple[bool, str]:
        try:
            manifest = self._load_gated()
        except DatMergeError as e:
            return False, str(e)

        hashes = None
        if paths:
            hashes = [int(p, 16) if is_hash_name(p) else path_hash(p) for p in paths]

        self.log(f"Migrating to {self.layout.primary_base_container}...")
        try:
            result = self._reconciler().migrate_to_base(manifest, hashes)
            self.store.save(result.manifest)
        except ContainerWriteError as e:
            return False, _write_failed(e)
        except DatMergeError as e:
            return False, f"Migration failed: {e}"

        self._report(result)
        before = len(manifest.baseline.tier_entries(self.layout.patch_container))
        after = len(result.manifest.baseline.tier_entries(self.layout.patch_container))
        return True, f"Migrated {before - after} file(s)"

    # ── Validation ────────────────────────────────────────────────────

    def validate_paths(self) -> list[str]:
        issues = []

        if not self.layout.game_dir.exists():
            issues.append(f"Game directory does not exist: {self.layout.game_dir}")
            return issues

        for container in self.layout.base_containers:
            if not self.layout.container_path(container).exists():
                issues.append(f"Base container not found: {container}")

        if not self.layout.patch_path.exists():
            issues.append(
                f"Patch container not found: {self.layout.patch_container} "
                f"(will be created by setup)"
            )

        if not self.is_configured():
            issues.append(f"Not configured: {self.layout.manifest_filename} not found (run setup)")

        return issues
