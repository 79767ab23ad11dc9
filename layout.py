"""
On-disk layout of a game install handled by datmerge.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

PATCH_CONTAINER = "master/0/01.dat"
PRIMARY_BASE_CONTAINER = "master/0/00.dat"
SECONDARY_BASE_CONTAINER = "master/chunk0.dat"

# Loader header words the game expects in each tier's container.
PATCH_BASE_OFFSET = 3150048
BASE_BASE_OFFSET = 3150304

MANIFEST_FILENAME = "datmerge.json"
DICTIONARY_FILENAME = "datmerge_dictionary.txt"
SCRATCH_DIRNAME = "_datmerge"


@dataclass(frozen=True)
class GameLayout:
    """Container locations relative to an install root.

    ``base_containers`` is ordered by lookup priority; the first one is the
    primary base tier guarded by the integrity digest.
    """

    game_dir: Path
    patch_container: str = PATCH_CONTAINER
    base_containers: tuple[str, ...] = (PRIMARY_BASE_CONTAINER, SECONDARY_BASE_CONTAINER)
    manifest_filename: str = MANIFEST_FILENAME
    dictionary_filename: str = DICTIONARY_FILENAME
    scratch_dir: Path | None = field(default=None)

    def __post_init__(self):
        object.__setattr__(self, "game_dir", Path(self.game_dir))
        if not self.base_containers:
            raise ValueError("At least one base container is required")

    @property
    def primary_base_container(self) -> str:
        return self.base_containers[0]

    @property
    def patch_path(self) -> Path:
        return self.container_path(self.patch_container)

    @property
    def primary_base_path(self) -> Path:
        return self.container_path(self.primary_base_container)

    @property
    def manifest_path(self) -> Path:
        return self.game_dir / self.manifest_filename

    @property
    def dictionary_path(self) -> Path:
        return self.game_dir / self.dictionary_filename

    @property
    def scratch_root(self) -> Path:
        if self.scratch_dir is not None:
            return Path(self.scratch_dir)
        return self.game_dir / SCRATCH_DIRNAME

    def container_path(self, container: str) -> Path:
        return self.game_dir / container
