from __future__ import annotations

import enum
import io
import os
import shutil
import tempfile
import xml.etree.ElementTree as ET
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigurationError, PackageArchiveError
from .references import PackageIdentity
from .versions import PackageVersion, VersionRange

NUPKG_EXTENSION = ".nupkg"
NUSPEC_EXTENSION = ".nuspec"
STAGING_DIRNAME = ".tmp"

# Raised by zipfile while reading entries of a damaged archive.
_CORRUPT_ARCHIVE_ERRORS = (zipfile.BadZipFile, zlib.error, EOFError)

# Packaging parts that are never extracted as payload.
_PACKAGE_METADATA_PREFIXES = ("_rels/", "package/")
_PACKAGE_METADATA_FILES = ("[content_types].xml",)


class PackageSaveMode(enum.Flag):
    NONE = 0
    NUSPEC = enum.auto()
    NUPKG = enum.auto()
    FILES = enum.auto()


DEFAULT_SAVE_MODE = PackageSaveMode.NUPKG | PackageSaveMode.FILES


def parse_save_mode(value: str | None) -> PackageSaveMode:
    if value is None or not value.strip():
        return DEFAULT_SAVE_MODE
    mode = PackageSaveMode.NONE
    for token in value.replace(",", ";").split(";"):
        name = token.strip()
        if not name:
            continue
        try:
            mode |= PackageSaveMode[name.upper()]
        except KeyError as e:
            raise ConfigurationError(
                f"Invalid package save mode {name!r}. Expected a combination of nuspec, nupkg, files."
            ) from e
    if mode == PackageSaveMode.NONE:
        raise ConfigurationError(f"Invalid package save mode {value!r}.")
    return mode


@dataclass(frozen=True)
class DependencySpec:
    name: str
    version_range: VersionRange | None = None


@dataclass(frozen=True)
class NuspecMetadata:
    identity: PackageIdentity
    dependencies: tuple[DependencySpec, ...]


def package_directory_name(identity: PackageIdentity) -> str:
    return f"{identity.name}.{identity.version}"


def nupkg_file_name(identity: PackageIdentity) -> str:
    return f"{identity.name}.{identity.version}{NUPKG_EXTENSION}"


def _open_zip(data: bytes) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(data), "r")
    except zipfile.BadZipFile as e:
        raise PackageArchiveError(f"Not a valid package archive: {e}") from e


def _nuspec_entry(zf: zipfile.ZipFile) -> zipfile.ZipInfo | None:
    for info in zf.infolist():
        if "/" not in info.filename and info.filename.lower().endswith(NUSPEC_EXTENSION):
            return info
    return None


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_nuspec(xml_bytes: bytes) -> NuspecMetadata:
    try:
        root = ET.fromstring(xml_bytes)
    except ET.ParseError as e:
        raise PackageArchiveError(f"Invalid nuspec: {e}") from e

    package_id = ""
    version_s = ""
    dependencies: list[DependencySpec] = []
    seen: set[str] = set()
    for el in root.iter():
        tag = _local_name(el.tag)
        if tag == "id" and not package_id:
            package_id = (el.text or "").strip()
        elif tag == "version" and not version_s:
            version_s = (el.text or "").strip()
        elif tag == "dependency":
            dep_id = (el.get("id") or "").strip()
            # Dependencies may be repeated per framework group; the first range wins.
            if not dep_id or dep_id.lower() in seen:
                continue
            seen.add(dep_id.lower())
            range_s = (el.get("version") or "").strip()
            try:
                version_range = VersionRange.parse(range_s) if range_s else None
            except ValueError as e:
                raise PackageArchiveError(f"Invalid dependency range for {dep_id}: {e}") from e
            dependencies.append(DependencySpec(name=dep_id, version_range=version_range))

    if not package_id or not version_s:
        raise PackageArchiveError("nuspec is missing id or version.")
    try:
        version = PackageVersion.parse(version_s)
    except ValueError as e:
        raise PackageArchiveError(f"Invalid version in nuspec: {e}") from e
    return NuspecMetadata(identity=PackageIdentity(name=package_id, version=version), dependencies=tuple(dependencies))


def _read_member(zf: zipfile.ZipFile, info: zipfile.ZipInfo) -> bytes:
    try:
        return zf.read(info)
    except _CORRUPT_ARCHIVE_ERRORS as e:
        raise PackageArchiveError(f"Corrupt package archive entry {info.filename!r}: {e}") from e


def read_nuspec(data: bytes) -> NuspecMetadata:
    with _open_zip(data) as zf:
        info = _nuspec_entry(zf)
        if info is None:
            raise PackageArchiveError("Package archive does not contain a nuspec at its root.")
        return parse_nuspec(_read_member(zf, info))


def read_entry(data: bytes, name: str) -> bytes | None:
    """Bytes of one archive entry, matched case-insensitively; None when absent."""
    wanted = name.replace("\\", "/").lower()
    with _open_zip(data) as zf:
        for info in zf.infolist():
            if info.filename.lower() == wanted:
                return _read_member(zf, info)
    return None


def _is_payload(name: str) -> bool:
    lower = name.lower()
    if lower in _PACKAGE_METADATA_FILES:
        return False
    if lower.startswith(_PACKAGE_METADATA_PREFIXES):
        return False
    if "/" not in lower and lower.endswith(NUSPEC_EXTENSION):
        return False
    return True


def _safe_extract_payload(zf: zipfile.ZipFile, dest: Path) -> None:
    base = dest.resolve()
    for info in zf.infolist():
        name = info.filename
        if not name or not _is_payload(name):
            continue
        if name.startswith("/") or "\\" in name:
            raise PackageArchiveError(f"Archive contains an invalid path entry: {name!r}")
        target = (dest / name).resolve()
        if not str(target).startswith(str(base) + os.sep) and target != base:
            raise PackageArchiveError(f"Archive contains an invalid path entry: {name!r}")

        if info.is_dir():
            target.mkdir(parents=True, exist_ok=True)
            continue

        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            with zf.open(info, "r") as src, target.open("wb") as out:
                shutil.copyfileobj(src, out)
        except _CORRUPT_ARCHIVE_ERRORS as e:
            raise PackageArchiveError(f"Corrupt package archive entry {name!r}: {e}") from e


def extract_package(
    data: bytes,
    *,
    identity: PackageIdentity,
    install_dir: Path,
    save_mode: PackageSaveMode = DEFAULT_SAVE_MODE,
) -> tuple[Path, bool]:
    """
    Materialize one package under install_dir/<Id>.<Version>.

    Everything is written into a staging directory first and renamed into place in one step, so a
    package directory that exists is always complete. Returns (path, created); created is False when
    another writer finished the same identity first.
    """
    if identity.version is None:
        raise PackageArchiveError(f"Cannot extract {identity.name} without a concrete version.")
    dest = install_dir / package_directory_name(identity)
    if dest.exists():
        return dest, False

    staging_root = install_dir / STAGING_DIRNAME
    try:
        with _staging_directory(staging_root) as td:
            staged = Path(td) / "package"
            staged.mkdir()
            with _open_zip(data) as zf:
                if save_mode & PackageSaveMode.NUSPEC:
                    info = _nuspec_entry(zf)
                    if info is None:
                        raise PackageArchiveError(f"Package {identity} does not contain a nuspec.")
                    (staged / f"{identity.name}{NUSPEC_EXTENSION}").write_bytes(_read_member(zf, info))
                if save_mode & PackageSaveMode.FILES:
                    _safe_extract_payload(zf, staged)
            if save_mode & PackageSaveMode.NUPKG:
                (staged / nupkg_file_name(identity)).write_bytes(data)

            created = True
            try:
                staged.rename(dest)
            except OSError:
                if not dest.exists():
                    raise
                created = False
    finally:
        _remove_staging_root(staging_root)
    return dest, created


def _staging_directory(staging_root: Path) -> tempfile.TemporaryDirectory:
    while True:
        staging_root.mkdir(parents=True, exist_ok=True)
        try:
            return tempfile.TemporaryDirectory(prefix="pkgrestore-", dir=staging_root)
        except FileNotFoundError:
            # A concurrent extraction removed the empty staging root in between.
            continue


def _remove_staging_root(staging_root: Path) -> None:
    # Other extractions may still be using it; only an empty folder goes.
    try:
        staging_root.rmdir()
    except OSError:
        pass


def read_installed_nuspec(package_dir: Path) -> NuspecMetadata | None:
    """Metadata of an installed package from its nuspec or archive; None when neither was saved."""
    for p in sorted(package_dir.glob(f"*{NUSPEC_EXTENSION}")):
        return parse_nuspec(p.read_bytes())
    for p in sorted(package_dir.glob(f"*{NUPKG_EXTENSION}")):
        return read_nuspec(p.read_bytes())
    return None
