"""
Tests for the outer (.dat) and inner (.pak) container codecs.
"""

import struct

import pytest

from archive_codec import DAT_HEADER, DatCodec, PakCodec, PathDictionary
from errors import ContainerFormatError, ContainerWriteError
from layout import PATCH_BASE_OFFSET
from path_hash import hash_name, path_hash


def write_tree(root, members):
    for name, data in members.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    return list(members)


# ── DatCodec ─────────────────────────────────────────────────────────────────

def test_dat_write_preserves_order_and_membership(tmp_path):
    src = tmp_path / "src"
    files = write_tree(src, {
        "b/second.bin": b"2" * 33,
        "a/first.txt": b"first",
        "c/third.pak": b"nested blob",
    })
    container = tmp_path / "out.dat"
    codec = DatCodec(PathDictionary(files))
    codec.write(container, src, files, PATCH_BASE_OFFSET)

    assert codec.list_contents(container) == files
    assert codec.read_base_offset(container) == PATCH_BASE_OFFSET

    dest = tmp_path / "dest"
    assert codec.extract(container, dest) == files
    for name in files:
        assert (dest / name).read_bytes() == (src / name).read_bytes()


def test_dat_header_records_base_offset(tmp_path):
    src = tmp_path / "src"
    files = write_tree(src, {"x.bin": b"x"})
    container = tmp_path / "out.dat"
    DatCodec().write(container, src, files, 1234)
    magic, base_offset, count, _ = DAT_HEADER.unpack_from(container.read_bytes(), 0)
    assert (magic, base_offset, count) == (b"DATC", 1234, 1)


def test_dat_payloads_are_aligned(tmp_path):
    src = tmp_path / "src"
    files = write_tree(src, {"a.bin": b"1", "b.bin": b"22", "c.bin": b"333"})
    container = tmp_path / "out.dat"
    codec = DatCodec()
    codec.write(container, src, files)
    assert all(entry.offset % 16 == 0 for entry in codec.list_entries(container))


def test_dat_without_dictionary_uses_hash_names(tmp_path):
    src = tmp_path / "src"
    files = write_tree(src, {"Assets/new_item.dat": b"new"})
    container = tmp_path / "out.dat"
    DatCodec().write(container, src, files)

    dest = tmp_path / "dest"
    names = DatCodec().extract(container, dest)
    expected = hash_name(path_hash("Assets/new_item.dat"))
    assert names == [expected]
    assert (dest / expected).read_bytes() == b"new"


def test_dat_compresses_subcontainers_only(tmp_path):
    src = tmp_path / "src"
    files = write_tree(src, {"w.pak": b"\x00" * 4096, "plain.bin": b"\x00" * 4096})
    container = tmp_path / "out.dat"
    codec = DatCodec(PathDictionary(files))
    codec.write(container, src, files)

    entries = {entry.hash: entry for entry in codec.list_entries(container)}
    pak = entries[path_hash("w.pak")]
    plain = entries[path_hash("plain.bin")]
    assert pak.compressed and pak.size < 4096
    assert not plain.compressed and plain.size == 4096

    dest = tmp_path / "dest"
    codec.extract(container, dest)
    assert (dest / "w.pak").read_bytes() == b"\x00" * 4096


def test_dat_extract_by_hash(tmp_path):
    src = tmp_path / "src"
    files = write_tree(src, {"a.bin": b"A", "b.bin": b"B"})
    container = tmp_path / "out.dat"
    codec = DatCodec()
    codec.write(container, src, files)

    dest = tmp_path / "one" / "b.bin"
    assert codec.extract_by_hash(container, path_hash("b.bin"), dest)
    assert dest.read_bytes() == b"B"
    assert not codec.extract_by_hash(container, path_hash("missing.bin"), tmp_path / "nope")
    assert not (tmp_path / "nope").exists()


def test_dat_write_rejects_duplicate_hashes(tmp_path):
    src = tmp_path / "src"
    files = write_tree(src, {"Assets/a.bin": b"A"})
    alias = hash_name(path_hash("Assets/a.bin"))
    (src / alias).write_bytes(b"A again")
    with pytest.raises(ContainerWriteError, match="share path-hash"):
        DatCodec().write(tmp_path / "out.dat", src, files + [alias])


def test_failed_write_leaves_existing_container_untouched(tmp_path):
    src = tmp_path / "src"
    files = write_tree(src, {"a.bin": b"A"})
    container = tmp_path / "out.dat"
    DatCodec().write(container, src, files)
    before = container.read_bytes()

    with pytest.raises(ContainerWriteError):
        DatCodec().write(container, src, files + ["missing.bin"])
    assert container.read_bytes() == before
    assert [p.name for p in tmp_path.iterdir() if p.name.endswith(".tmp")] == []


def test_dat_rejects_bad_magic(tmp_path):
    container = tmp_path / "bad.dat"
    container.write_bytes(b"NOPE" + b"\x00" * 12)
    with pytest.raises(ContainerFormatError, match="bad magic"):
        DatCodec().list_entries(container)


def test_dat_rejects_truncated_table(tmp_path):
    container = tmp_path / "short.dat"
    container.write_bytes(DAT_HEADER.pack(b"DATC", 0, 3, 0))
    with pytest.raises(ContainerFormatError, match="truncated"):
        DatCodec().list_entries(container)


def test_dat_missing_container_is_format_error(tmp_path):
    with pytest.raises(ContainerFormatError):
        DatCodec().list_entries(tmp_path / "absent.dat")


def test_dat_empty_container(tmp_path):
    container = tmp_path / "empty.dat"
    DatCodec().write(container, tmp_path, [], PATCH_BASE_OFFSET)
    assert DatCodec().list_contents(container) == []


# ── PakCodec ─────────────────────────────────────────────────────────────────

def test_pak_write_and_extract_keeps_names(tmp_path):
    src = tmp_path / "src"
    files = write_tree(src, {"tables/c.dat": b"C" * 17, "a.dat": b"A", "deep/x/y.bin": b""})
    container = tmp_path / "w.pak"
    codec = PakCodec()
    codec.write(container, src, files)

    assert codec.list_contents(container) == files
    dest = tmp_path / "dest"
    assert codec.extract(container, dest) == files
    assert (dest / "tables/c.dat").read_bytes() == b"C" * 17
    assert (dest / "deep/x/y.bin").read_bytes() == b""


def test_pak_rejects_corrupt_table(tmp_path):
    container = tmp_path / "bad.pak"
    container.write_bytes(b"PAKC" + struct.pack("<I", 1) + struct.pack("<IQQ", 50, 0, 0))
    with pytest.raises(ContainerFormatError, match="corrupt"):
        PakCodec().list_contents(container)


# ── PathDictionary ───────────────────────────────────────────────────────────

def test_path_dictionary_from_file(tmp_path):
    path = tmp_path / "dict.txt"
    path.write_text("# comment\n\nAssets\\weapon.pak\n  Assets/config.bin  \n", encoding="utf-8")
    dictionary = PathDictionary.from_file(path)

    assert len(dictionary) == 2
    assert path_hash("Assets/weapon.pak") in dictionary
    assert dictionary.resolve(path_hash("Assets/weapon.pak")) == "Assets/weapon.pak"
    unknown = path_hash("Assets/other.bin")
    assert dictionary.resolve(unknown) == hash_name(unknown)
