"""
Reading mod bundles (.zip / .7z / .rar).
"""

from __future__ import annotations

import logging
import sys
import tempfile
import zipfile
from pathlib import Path

import py7zr
import rarfile

from errors import BundleFormatError
from manifest_schema import BUNDLE_METADATA_FILENAME, ModBundleManifest, parse_bundle_metadata

_log = logging.getLogger(__name__)

# Point rarfile at a bundled UnRAR when running frozen
if getattr(sys, "frozen", False):
    _unrar = Path(sys._MEIPASS) / "UnRAR.exe"
    if _unrar.exists():
        rarfile.UNRAR_TOOL = str(_unrar)

SUPPORTED_EXTENSIONS = {".zip", ".7z", ".rar"}

_ARCHIVE_ERRORS = (OSError, KeyError, zipfile.BadZipFile, py7zr.Bad7zFile, rarfile.Error)


def _normalize_names(names: list[str]) -> list[str]:
    return [name.replace("\\", "/") for name in names]


def list_bundle_names(filepath: Path) -> list[str]:
    ext = filepath.suffix.lower()
    if ext == ".zip":
        with zipfile.ZipFile(filepath, "r") as zf:
            return _normalize_names(zf.namelist())
    if ext == ".7z":
        with py7zr.SevenZipFile(filepath, "r") as sz:
            return _normalize_names(sz.getnames())
    if ext == ".rar":
        with rarfile.RarFile(filepath, "r") as rf:
            return _normalize_names([info.filename for info in rf.infolist()])
    raise BundleFormatError(f"Unsupported bundle format: {ext}")


def _read_bundle_member(filepath: Path, member: str) -> bytes:
    ext = filepath.suffix.lower()
    if ext == ".zip":
        with zipfile.ZipFile(filepath, "r") as zf:
            return zf.read(member)
    if ext == ".7z":
        with tempfile.TemporaryDirectory() as tmpdir:
            with py7zr.SevenZipFile(filepath, "r") as sz:
                sz.extract(path=tmpdir, targets=[member])
            return (Path(tmpdir) / member).read_bytes()
    if ext == ".rar":
        with rarfile.RarFile(filepath, "r") as rf:
            return rf.read(member)
    raise BundleFormatError(f"Unsupported bundle format: {ext}")


def read_bundle_metadata(filepath: str | Path) -> ModBundleManifest:
    """Read and validate the bundle's metadata document without extracting anything."""
    filepath = Path(filepath)
    if not filepath.is_file():
        raise BundleFormatError(f"Mod bundle not found: {filepath}")
    try:
        names = list_bundle_names(filepath)
        if BUNDLE_METADATA_FILENAME not in names:
            raise BundleFormatError(f"{filepath.name} has no {BUNDLE_METADATA_FILENAME}")
        return parse_bundle_metadata(_read_bundle_member(filepath, BUNDLE_METADATA_FILENAME))
    except BundleFormatError:
        raise
    except (ValueError, *_ARCHIVE_ERRORS) as exc:
        raise BundleFormatError(f"Could not read metadata from {filepath.name}: {exc}") from exc


def extract_bundle(filepath: str | Path, dest: Path) -> list[str]:
    """Extract every member of the bundle into ``dest``; return the file names."""
    filepath = Path(filepath)
    ext = filepath.suffix.lower()
    try:
        if ext == ".zip":
            with zipfile.ZipFile(filepath, "r") as zf:
                zf.extractall(dest)
        elif ext == ".7z":
            with py7zr.SevenZipFile(filepath, "r") as sz:
                sz.extractall(path=dest)
        elif ext == ".rar":
            with rarfile.RarFile(filepath, "r") as rf:
                rf.extractall(dest)
        else:
            raise BundleFormatError(f"Unsupported bundle format: {ext}")
        names = list_bundle_names(filepath)
    except _ARCHIVE_ERRORS as exc:
        raise BundleFormatError(f"Extraction of {filepath.name} failed: {exc}") from exc
    files = [name for name in names if not name.endswith("/")]
    _log.debug("Extracted %d file(s) from %s", len(files), filepath.name)
    return files
