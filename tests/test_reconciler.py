"""
Tests for setup, manifest reconciliation, tier migration and the integrity gate.
"""

import pytest

from archive_codec import DatCodec
from conftest import ARMOR_PAK, CONFIG_BIN, PATCH_NOTE, WEAPON_PAK
from errors import IntegrityMismatchError
from integrity import verify_base_integrity
from layout import PATCH_CONTAINER, PRIMARY_BASE_CONTAINER, SECONDARY_BASE_CONTAINER
from manifest_schema import Manifest
from mod_manager import ModManager
from path_hash import path_hash


def baseline_tiers(manifest):
    return {entry.path: entry.tier for entry in manifest.baseline.entries}


# ── Setup ────────────────────────────────────────────────────────────────────

def test_setup_records_every_tier(manager, game):
    manifest = manager.load_manifest()
    assert baseline_tiers(manifest) == {
        PATCH_NOTE: PATCH_CONTAINER,
        WEAPON_PAK: PRIMARY_BASE_CONTAINER,
        CONFIG_BIN: PRIMARY_BASE_CONTAINER,
        ARMOR_PAK: SECONDARY_BASE_CONTAINER,
    }
    assert manifest.baseline.find(path_hash(WEAPON_PAK)).compressed
    assert not manifest.baseline.find(path_hash(CONFIG_BIN)).compressed
    assert manifest.baseline.digest is not None
    assert manifest.mods == []
    verify_base_integrity(game.layout, manifest)


def test_setup_refuses_when_configured(manager):
    ok, msg = manager.setup()
    assert not ok
    assert "already configured" in msg
    ok, msg = manager.setup(force=True)
    assert ok, msg


def test_setup_creates_missing_patch_container(game):
    game.layout.patch_path.unlink()
    mgr = ModManager(game.root, log_callback=lambda _: None)
    assert "Patch container not found" in " ".join(mgr.validate_paths())

    ok, msg = mgr.setup()
    assert ok, msg
    assert game.patch_files() == {}
    assert DatCodec().read_base_offset(game.layout.patch_path) == 3150048
    assert mgr.validate_paths() == []


def test_setup_requires_primary_base(game):
    game.layout.primary_base_path.unlink()
    ok, msg = ModManager(game.root, log_callback=lambda _: None).setup()
    assert not ok
    assert "Primary base container not found" in msg


def test_setup_with_migration(game):
    mgr = ModManager(game.root, log_callback=lambda _: None)
    ok, msg = mgr.setup(migrate=True)
    assert ok, msg

    assert game.patch_files() == {}
    assert game.dat_files(PRIMARY_BASE_CONTAINER)[PATCH_NOTE] == b"patch 1.01"
    manifest = mgr.load_manifest()
    assert baseline_tiers(manifest)[PATCH_NOTE] == PRIMARY_BASE_CONTAINER
    verify_base_integrity(game.layout, manifest)


# ── Reconcile ────────────────────────────────────────────────────────────────

def test_reconcile_is_idempotent(manager, make_bundle):
    assert manager.install_mod(make_bundle("M1", nested={WEAPON_PAK: {"c.dat": b"C"}}))[0]
    assert manager.install_mod(make_bundle("M2", files={"Assets/new_item.dat": b"n"}))[0]

    assert manager.reconcile()[0]
    first = manager.load_manifest()
    assert manager.reconcile()[0]
    assert manager.load_manifest() == first
    assert [mod.name for mod in first.mods] == ["M1", "M2"]


def test_reconcile_keeps_merged_subcontainer_out_of_baseline(manager, make_bundle):
    assert manager.install_mod(make_bundle("M1", nested={WEAPON_PAK: {"c.dat": b"C"}}))[0]
    assert manager.reconcile()[0]

    manifest = manager.load_manifest()
    weapon = path_hash(WEAPON_PAK)
    assert manifest.baseline.find(weapon, tier=PATCH_CONTAINER) is None
    assert manifest.baseline.find(weapon, tier=PRIMARY_BASE_CONTAINER) is not None
    # Base members of the merged copy are system members
    nested = {(e.container, e.path) for e in manifest.baseline.nested_entries}
    assert nested == {(WEAPON_PAK, "a.dat"), (WEAPON_PAK, "b.dat")}


def test_reconcile_prunes_stale_entries(manager, game, make_bundle, messages):
    files = {"Assets/one.bin": b"1", "Assets/two.bin": b"2"}
    assert manager.install_mod(make_bundle("Pair", files=files))[0]
    assert manager.install_mod(make_bundle("Gone", nested={WEAPON_PAK: {"c.dat": b"C"}}))[0]

    # External tooling drops one of Pair's files and the merged weapon.pak
    live = game.patch_files()
    del live[WEAPON_PAK]
    del live[next(name for name, data in live.items() if data == b"2")]
    game.write_dat(PATCH_CONTAINER, live, 0)

    ok, msg = manager.reconcile()
    assert ok, msg
    manifest = manager.load_manifest()
    assert [mod.name for mod in manifest.mods] == ["Pair"]
    assert [entry.path for entry in manifest.mods[0].entries] == ["Assets/one.bin"]
    assert any("Dropped 'Gone'" in line for line in messages)


def test_reconcile_prunes_nested_entries(manager, game, make_bundle):
    assert manager.install_mod(make_bundle("Two", nested={WEAPON_PAK: {"c.dat": b"C", "d.dat": b"D"}}))[0]
    members = game.pak_members(WEAPON_PAK)
    del members["d.dat"]
    live = game.patch_files()
    live[WEAPON_PAK] = game.pak_bytes(members)
    game.write_dat(PATCH_CONTAINER, live, 0)

    assert manager.reconcile()[0]
    record = manager.load_manifest().find_mod("Two")
    assert [entry.path for entry in record.nested_entries] == ["c.dat"]


def test_reconcile_drops_duplicate_entries(manager, game, tmp_path):
    src = tmp_path / "dups"
    src.mkdir()
    (src / "Assets").mkdir()
    (src / PATCH_NOTE).write_bytes(b"patch 1.01")
    # Hand-assemble a container with the same hash twice
    codec = DatCodec()
    codec.write(game.layout.patch_path, src, [PATCH_NOTE])
    single = codec.list_entries(game.layout.patch_path)
    data = bytearray(game.layout.patch_path.read_bytes())
    data[8:12] = (2).to_bytes(4, "little")
    entry = data[16:48]
    # Both table rows point at the one payload, which moves down by one row
    offset = single[0].offset
    row = entry[:16] + (offset + 32).to_bytes(8, "little") + entry[24:]
    rebuilt = data[:16] + row + row + data[offset:]
    game.layout.patch_path.write_bytes(bytes(rebuilt))
    assert len(codec.list_entries(game.layout.patch_path)) == 2

    ok, msg = manager.reconcile()
    assert ok, msg
    assert len(codec.list_entries(game.layout.patch_path)) == 1
    assert game.patch_files() == {PATCH_NOTE: b"patch 1.01"}


def test_reconcile_requires_setup(game):
    ok, msg = ModManager(game.root, log_callback=lambda _: None).reconcile()
    assert not ok
    assert "run setup" in msg


# ── Tier migration ───────────────────────────────────────────────────────────

def test_migrate_selected_paths(manager, game, make_bundle):
    assert manager.install_mod(make_bundle("M1", nested={WEAPON_PAK: {"c.dat": b"C"}}))[0]

    ok, msg = manager.migrate_to_base([PATCH_NOTE, WEAPON_PAK])
    assert ok, msg
    assert msg == "Migrated 1 file(s)"
    # Merged content stays in the patch tier
    assert len(manager.last_warnings) == 1
    assert set(game.patch_files()) == {WEAPON_PAK}
    assert game.dat_files(PRIMARY_BASE_CONTAINER)[PATCH_NOTE] == b"patch 1.01"

    manifest = manager.load_manifest()
    assert baseline_tiers(manifest)[PATCH_NOTE] == PRIMARY_BASE_CONTAINER
    verify_base_integrity(game.layout, manifest)

    # Uninstall still works against the new base tier
    ok, msg = manager.uninstall_mod("M1")
    assert ok, msg
    assert game.patch_files() == {}


def test_migrate_keeps_base_offset(manager, game):
    assert manager.migrate_to_base()[0]
    codec = DatCodec()
    assert codec.read_base_offset(game.layout.primary_base_path) == 3150304
    assert codec.read_base_offset(game.layout.patch_path) == 3150048


# ── Integrity gate ───────────────────────────────────────────────────────────

def test_integrity_gate(manager, game):
    manifest = manager.load_manifest()
    verify_base_integrity(game.layout, manifest)

    game.write_dat(PRIMARY_BASE_CONTAINER, {CONFIG_BIN: b"patched by the game"}, 0)
    with pytest.raises(IntegrityMismatchError, match="changed since the last reconcile"):
        verify_base_integrity(game.layout, manifest)

    with pytest.raises(IntegrityMismatchError, match="No base tier digest"):
        verify_base_integrity(game.layout, Manifest())
