"""
Conflict detection for datmerge.

A "conflict" means two mods both claim the same logical file: the same direct
entry of the patch-tier container, or the same member of the same
sub-container. Whichever mod installed last would silently win, and
uninstalling either one would take the other's file with it.

Merging into the same sub-container is not a conflict by itself; mods that add
distinct members to one sub-container coexist.

Public API
----------
find_conflicts(bundle, mods)
    -> list of (mod_name, set_of_overlapping_path_hashes)
"""

from __future__ import annotations

import logging
from typing import Iterable

from manifest_schema import ModBundleManifest, ModRecord, Provenance
from path_hash import path_hash

_log = logging.getLogger(__name__)


def _bundle_claims(bundle: ModBundleManifest) -> tuple[set[int], set[tuple[int, int]]]:
    merged = {path_hash(container) for container in bundle.nested_containers()}
    direct = {entry.hash for entry in bundle.entries if entry.hash not in merged}
    nested = {
        (path_hash(entry.container), path_hash(entry.path)) for entry in bundle.nested_entries
    }
    return direct, nested


def _record_claims(mod: ModRecord) -> tuple[set[int], set[tuple[int, int]]]:
    direct = {entry.hash for entry in mod.entries if entry.provenance == Provenance.MOD}
    nested = {(entry.container_hash, entry.hash) for entry in mod.nested_entries}
    return direct, nested


def find_conflicts(
    bundle: ModBundleManifest,
    mods: Iterable[ModRecord],
) -> list[tuple[str, set[int]]]:
    """Check whether installing ``bundle`` would overwrite files of installed mods.

    Returns a list of ``(mod_name, overlapping_path_hashes)`` tuples, one per
    conflicting installed mod. Nested overlaps are reported by member hash.
    An empty list means no conflicts.
    """
    direct, nested = _bundle_claims(bundle)
    if not direct and not nested:
        return []

    conflicts: list[tuple[str, set[int]]] = []
    for mod in mods:
        mod_direct, mod_nested = _record_claims(mod)
        overlap = direct & mod_direct
        overlap |= {member for _, member in nested & mod_nested}
        if overlap:
            _log.debug("%s overlaps %s on %d file(s)", bundle.name, mod.name, len(overlap))
            conflicts.append((mod.name, overlap))

    return conflicts
