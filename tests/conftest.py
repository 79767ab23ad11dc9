"""
Shared fixtures and helpers for the datmerge test suite.

The ``game`` fixture builds a small install root with the real codecs:

    master/0/00.dat     Assets/weapon.pak {a.dat, b.dat}, Assets/config.bin
    master/chunk0.dat   Assets/armor.pak {x.dat}
    master/0/01.dat     Assets/patch_note.txt
    datmerge_dictionary.txt   the four outer paths above
"""

import itertools
import json
import zipfile
from pathlib import Path

import pytest

from archive_codec import DatCodec, PakCodec, PathDictionary
from layout import (
    BASE_BASE_OFFSET,
    PATCH_BASE_OFFSET,
    PATCH_CONTAINER,
    PRIMARY_BASE_CONTAINER,
    SECONDARY_BASE_CONTAINER,
    GameLayout,
)
from mod_manager import ModManager
from path_hash import path_hash

WEAPON_PAK = "Assets/weapon.pak"
ARMOR_PAK = "Assets/armor.pak"
CONFIG_BIN = "Assets/config.bin"
PATCH_NOTE = "Assets/patch_note.txt"


def write_tree(dest: Path, members: dict[str, bytes]) -> list[str]:
    for name, data in members.items():
        path = dest / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    return list(members)


class Game:
    """A synthetic install root plus helpers to look inside its containers."""

    def __init__(self, root: Path, work: Path):
        self.root = root
        self.layout = GameLayout(root)
        self._work = work
        self._counter = itertools.count()

    def workdir(self) -> Path:
        path = self._work / f"w{next(self._counter)}"
        path.mkdir(parents=True)
        return path

    @property
    def outer(self) -> DatCodec:
        return DatCodec(PathDictionary.from_file(self.layout.dictionary_path))

    def pak_bytes(self, members: dict[str, bytes]) -> bytes:
        src = self.workdir()
        files = write_tree(src, members)
        out = src / "out.pak"
        PakCodec().write(out, src, files)
        return out.read_bytes()

    def write_dat(self, container: str, members: dict[str, bytes], base_offset: int):
        src = self.workdir()
        files = write_tree(src, members)
        DatCodec().write(self.layout.container_path(container), src, files, base_offset)

    def dat_files(self, container: str) -> dict[str, bytes]:
        dest = self.workdir()
        names = self.outer.extract(self.layout.container_path(container), dest)
        return {name: (dest / name).read_bytes() for name in names}

    def patch_files(self) -> dict[str, bytes]:
        return self.dat_files(PATCH_CONTAINER)

    def pak_members(self, container: str, tier: str = PATCH_CONTAINER) -> dict[str, bytes]:
        # Containers missing from the dictionary come back under their hash name
        by_hash = {path_hash(name): data for name, data in self.dat_files(tier).items()}
        data = by_hash[path_hash(container)]
        dest = self.workdir()
        (dest / "in.pak").write_bytes(data)
        names = PakCodec().extract(dest / "in.pak", dest / "out")
        return {name: (dest / "out" / name).read_bytes() for name in names}


@pytest.fixture
def game(tmp_path):
    root = tmp_path / "game"
    root.mkdir()
    g = Game(root, tmp_path / "work")

    g.write_dat(
        PRIMARY_BASE_CONTAINER,
        {
            WEAPON_PAK: g.pak_bytes({"a.dat": b"A-base", "b.dat": b"B-base"}),
            CONFIG_BIN: b"config-base",
        },
        BASE_BASE_OFFSET,
    )
    g.write_dat(
        SECONDARY_BASE_CONTAINER,
        {ARMOR_PAK: g.pak_bytes({"x.dat": b"X-base"})},
        BASE_BASE_OFFSET,
    )
    g.write_dat(PATCH_CONTAINER, {PATCH_NOTE: b"patch 1.01"}, PATCH_BASE_OFFSET)
    g.layout.dictionary_path.write_text(
        "# known outer paths\n" + "\n".join([WEAPON_PAK, ARMOR_PAK, CONFIG_BIN, PATCH_NOTE]) + "\n",
        encoding="utf-8",
    )
    return g


@pytest.fixture
def messages():
    return []


@pytest.fixture
def manager(game, messages):
    """A ModManager on a configured install root."""
    mgr = ModManager(game.root, log_callback=messages.append)
    ok, msg = mgr.setup()
    assert ok, msg
    return mgr


@pytest.fixture
def make_bundle(tmp_path, game):
    """Build a .zip mod bundle.

    ``files`` are direct entries (path -> bytes). ``nested`` maps a
    sub-container path to its members (path -> bytes); the container is
    shipped at its own path and listed as a direct entry as well.
    """
    bundles = tmp_path / "bundles"
    bundles.mkdir()

    def _make(name, files=None, nested=None, metadata=None, filename=None):
        files = dict(files or {})
        nested = nested or {}
        entries = list(files)
        nested_entries = []
        for container, members in nested.items():
            files[container] = game.pak_bytes(members)
            entries.append(container)
            nested_entries += [{"container": container, "path": member} for member in members]

        doc = {
            "tool_version": "1.0",
            "name": name,
            "version": "1.0",
            "author": "tester",
            "entries": [{"path": path} for path in entries],
            "nested_entries": nested_entries,
        }
        doc.update(metadata or {})

        out = bundles / (filename or f"{name.replace(' ', '_')}.zip")
        with zipfile.ZipFile(out, "w") as zf:
            zf.writestr("modmetadata.json", json.dumps(doc))
            for path, data in files.items():
                zf.writestr(path, data)
        return out

    return _make
