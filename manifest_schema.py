"""
Document schemas for datmerge.

Two documents are modelled here:

``modmetadata.json`` ships at the root of every mod bundle and tells the
installer which files attach directly to the patch-tier container and which
belong inside a sub-container::

    {
        "tool_version": "1.0",
        "name": "Better Weapons",
        "version": "1.2",
        "author": "someone",
        "website": "https://example.invalid/better-weapons",
        "description": "Rebalanced weapon tables",
        "entries": [
            {"path": "Assets/config.bin"},
            {"path": "Assets/weapon.pak"}
        ],
        "nested_entries": [
            {"container": "Assets/weapon.pak", "path": "tables/c.dat"}
        ]
    }

``datmerge.json`` is the installation manifest kept next to the game data: the
baseline index of system files, the installed mods with every entry they own,
and the digest of the primary base tier. It is loaded fresh and replaced whole
by every mutating operation.
"""

from __future__ import annotations

import json
import logging
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from path_hash import is_subcontainer, normalize_path, path_hash

BUNDLE_METADATA_FILENAME = "modmetadata.json"
CURRENT_VERSION = (1, 0)  # (major, minor) supported by this build
TOOL_VERSION = f"{CURRENT_VERSION[0]}.{CURRENT_VERSION[1]}"
SCHEMA_VERSION = 1

_log = logging.getLogger(__name__)


class Provenance(str, Enum):
    SYSTEM = "System"
    MERGED = "Merged"
    MOD = "Mod"


def _normalize_required(v: str) -> str:
    normalized = normalize_path(v)
    if not normalized:
        raise ValueError("path must not be empty")
    return normalized


# ── Bundle metadata ──────────────────────────────────────────────────


class BundleEntry(BaseModel):
    path: str

    @field_validator("path")
    @classmethod
    def _normalize(cls, v: str) -> str:
        return _normalize_required(v)

    @property
    def hash(self) -> int:
        return path_hash(self.path)


class BundleNestedEntry(BaseModel):
    container: str
    path: str

    @field_validator("container", "path")
    @classmethod
    def _normalize(cls, v: str) -> str:
        return _normalize_required(v)

    @field_validator("container")
    @classmethod
    def _must_be_subcontainer(cls, v: str) -> str:
        if not is_subcontainer(v):
            raise ValueError(f"{v!r} is not a sub-container path")
        return v


class ModBundleManifest(BaseModel):
    """Parsed contents of a bundle's modmetadata.json."""

    tool_version: str
    name: str
    version: str = ""
    author: str = ""
    website: str = ""
    description: str = ""
    game_version: str | None = None
    entries: list[BundleEntry] = Field(default_factory=list)
    nested_entries: list[BundleNestedEntry] = Field(default_factory=list)

    @field_validator("tool_version")
    @classmethod
    def _check_version(cls, v: str) -> str:
        try:
            major, minor = (int(x) for x in v.split("."))
        except ValueError:
            raise ValueError(
                f"Invalid tool_version {v!r}, expected 'major.minor' (e.g. '1.0')"
            )
        cur_major, cur_minor = CURRENT_VERSION
        if major > cur_major:
            raise ValueError(
                f"tool_version {v!r} requires a newer datmerge "
                f"(this build supports up to version {cur_major}.x)"
            )
        if major == cur_major and minor > cur_minor:
            _log.warning(
                "Bundle tool_version %s is newer than this build supports (%d.%d); "
                "some metadata may be ignored.",
                v, cur_major, cur_minor,
            )
        return v

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be empty")
        return v

    @model_validator(mode="after")
    def _no_duplicate_entries(self) -> ModBundleManifest:
        seen: dict[int, str] = {}
        for entry in self.entries:
            if entry.hash in seen:
                raise ValueError(f"Duplicate entry: {entry.path!r} (same path-hash as {seen[entry.hash]!r})")
            seen[entry.hash] = entry.path
        nested = set()
        for entry in self.nested_entries:
            key = (path_hash(entry.container), path_hash(entry.path))
            if key in nested:
                raise ValueError(f"Duplicate nested entry: {entry.container}:{entry.path}")
            nested.add(key)
        return self

    def nested_containers(self) -> list[str]:
        """Distinct sub-containers referenced by nested entries, in first-seen order."""
        containers: dict[int, str] = {}
        for entry in self.nested_entries:
            containers.setdefault(path_hash(entry.container), entry.container)
        return list(containers.values())


def parse_bundle_metadata(data: bytes) -> ModBundleManifest:
    """Parse raw JSON bytes into a ModBundleManifest.

    Raises ``pydantic.ValidationError`` if the data is invalid.
    Raises ``json.JSONDecodeError`` if the bytes are not valid JSON.
    """
    return ModBundleManifest.model_validate(json.loads(data))


# ── Installation manifest ────────────────────────────────────────────


class DirectEntry(BaseModel):
    """An entry of the patch-tier container owned by a mod."""

    hash: int
    path: str
    compressed: bool = False
    provenance: Provenance = Provenance.MOD
    source_name: str | None = None


class NestedEntry(BaseModel):
    """An entry inside a sub-container."""

    container: str
    path: str
    hash: int
    provenance: Provenance = Provenance.MOD
    source_name: str | None = None

    @property
    def container_hash(self) -> int:
        return path_hash(self.container)


class BaselineEntry(BaseModel):
    """A system file and the tier (container path) holding it."""

    hash: int
    path: str
    tier: str
    compressed: bool = False


class BaselineIndex(BaseModel):
    digest: str | None = None
    entries: list[BaselineEntry] = Field(default_factory=list)
    nested_entries: list[NestedEntry] = Field(default_factory=list)

    def tier_entries(self, tier: str) -> list[BaselineEntry]:
        return [entry for entry in self.entries if entry.tier == tier]

    def find(self, file_hash: int, tier: str | None = None) -> BaselineEntry | None:
        for entry in self.entries:
            if entry.hash == file_hash and (tier is None or entry.tier == tier):
                return entry
        return None


class ModRecord(BaseModel):
    name: str
    version: str = ""
    author: str = ""
    website: str = ""
    description: str = ""
    entries: list[DirectEntry] = Field(default_factory=list)
    nested_entries: list[NestedEntry] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.entries and not self.nested_entries

    def nested_containers(self) -> list[str]:
        containers: dict[int, str] = {}
        for entry in self.nested_entries:
            containers.setdefault(entry.container_hash, entry.container)
        return list(containers.values())


class Manifest(BaseModel):
    schema_version: int = SCHEMA_VERSION
    tool_version: str = TOOL_VERSION
    baseline: BaselineIndex = Field(default_factory=BaselineIndex)
    mods: list[ModRecord] = Field(default_factory=list)

    @field_validator("schema_version")
    @classmethod
    def _check_schema(cls, v: int) -> int:
        if v != SCHEMA_VERSION:
            raise ValueError(f"Unsupported manifest schema version: {v!r}")
        return v

    def find_mod(self, name: str) -> ModRecord | None:
        return next((mod for mod in self.mods if mod.name == name), None)

    def provenance_of(self, file_hash: int) -> Provenance | None:
        for mod in self.mods:
            for entry in mod.entries:
                if entry.hash == file_hash:
                    return entry.provenance
        for mod in self.mods:
            if any(entry.container_hash == file_hash for entry in mod.nested_entries):
                return Provenance.MERGED
        if self.baseline.find(file_hash) is not None:
            return Provenance.SYSTEM
        return None
