from __future__ import annotations

import os
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator

from .errors import AmbiguousSolutionError, ConfigurationError, ScopeReadError, SolutionNotFoundError
from .versions import PackageVersion, VersionRange

PACKAGES_CONFIG = "packages.config"
CONFIG_EXTENSION = ".config"
SOLUTION_EXTENSIONS = (".sln", ".slnx")


@dataclass(frozen=True, eq=False)
class PackageIdentity:
    name: str
    version: PackageVersion | None = None

    @property
    def key(self) -> tuple[str, PackageVersion | None]:
        return (self.name.lower(), self.version)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PackageIdentity):
            return NotImplemented
        return self.key == other.key

    def __lt__(self, other: "PackageIdentity") -> bool:
        if self.name.lower() != other.name.lower():
            return self.name.lower() < other.name.lower()
        if self.version is None or other.version is None:
            return self.version is None and other.version is not None
        return self.version < other.version

    def __hash__(self) -> int:
        return hash(self.key)

    def __str__(self) -> str:
        if self.version is None:
            return self.name
        return f"{self.name} {self.version}"


@dataclass(frozen=True)
class PackageReference:
    identity: PackageIdentity
    allowed_versions: VersionRange | None = None
    target_framework: str | None = None
    development_dependency: bool = False


def reference_key(reference: PackageReference) -> tuple[str, PackageVersion | None]:
    """Aggregation key: two references naming the same identity are the same installed entry."""
    return reference.identity.key


@dataclass(frozen=True)
class InstalledReference:
    reference: PackageReference
    scopes: tuple[str, ...]

    @property
    def identity(self) -> PackageIdentity:
        return self.reference.identity


class InstalledReferenceMap:
    def __init__(self) -> None:
        self._entries: dict[tuple[str, PackageVersion | None], tuple[PackageReference, list[str]]] = {}

    def add(self, scope: str, reference: PackageReference) -> None:
        key = reference_key(reference)
        entry = self._entries.get(key)
        if entry is None:
            self._entries[key] = (reference, [scope])
            return
        scopes = entry[1]
        if scope not in scopes:
            scopes.append(scope)

    def scopes_for(self, reference: PackageReference) -> tuple[str, ...]:
        entry = self._entries.get(reference_key(reference))
        return tuple(entry[1]) if entry else ()

    def __contains__(self, reference: object) -> bool:
        return isinstance(reference, PackageReference) and reference_key(reference) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[InstalledReference]:
        for reference, scopes in self._entries.values():
            yield InstalledReference(reference=reference, scopes=tuple(scopes))


def aggregate_references(scopes: Iterable[tuple[str, Iterable[PackageReference]]]) -> InstalledReferenceMap:
    refmap = InstalledReferenceMap()
    for scope, references in scopes:
        for reference in references:
            refmap.add(scope, reference)
    return refmap


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_packages_config(text: str, *, scope: str, path: Path | None = None) -> list[PackageReference]:
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise ScopeReadError(f"Invalid XML in {path or scope}: {e}", scope=scope, path=path) from e
    if _local_name(root.tag) != "packages":
        raise ScopeReadError(f"Expected <packages> root in {path or scope}", scope=scope, path=path)

    refs: list[PackageReference] = []
    for el in root:
        if _local_name(el.tag) != "package":
            continue
        package_id = (el.get("id") or "").strip()
        if not package_id:
            raise ScopeReadError(f"Package entry without id in {path or scope}", scope=scope, path=path)
        version_s = (el.get("version") or "").strip()
        allowed_s = (el.get("allowedVersions") or "").strip()
        try:
            version = PackageVersion.parse(version_s) if version_s else None
            allowed = VersionRange.parse(allowed_s) if allowed_s else None
        except ValueError as e:
            raise ScopeReadError(f"{package_id} in {path or scope}: {e}", scope=scope, path=path) from e
        target_framework = (el.get("targetFramework") or "").strip() or None
        refs.append(
            PackageReference(
                identity=PackageIdentity(name=package_id, version=version),
                allowed_versions=allowed,
                target_framework=target_framework,
                development_dependency=(el.get("developmentDependency") or "").strip().lower() == "true",
            )
        )
    return refs


def read_packages_config(path: Path, *, scope: str) -> list[PackageReference]:
    try:
        text = path.read_text(encoding="utf-8-sig")
    except FileNotFoundError as e:
        raise ScopeReadError(f"File not found: {path}", scope=scope, path=path) from e
    except OSError as e:
        raise ScopeReadError(f"Could not read {path}: {e}", scope=scope, path=path) from e
    return parse_packages_config(text, scope=scope, path=path)


SolutionParser = Callable[[Path], list[Path]]

# Project("{type-guid}") = "Name", "relative\path.csproj", "{project-guid}"
_SLN_PROJECT_RE = re.compile(r'^Project\("\{[^}]*\}"\)\s*=\s*"([^"]*)"\s*,\s*"([^"]*)"\s*,', re.MULTILINE)


def _project_path(solution_dir: Path, raw: str) -> Path:
    rel = raw.replace("\\", os.sep).replace("/", os.sep)
    return Path(os.path.normpath(str(solution_dir / rel)))


def parse_sln(solution_file: Path) -> list[Path]:
    text = solution_file.read_text(encoding="utf-8-sig")
    out: list[Path] = []
    for m in _SLN_PROJECT_RE.finditer(text):
        raw_path = m.group(2).strip()
        # Solution folders repeat their name as the path and have no project extension.
        if not raw_path.lower().endswith("proj"):
            continue
        out.append(_project_path(solution_file.parent, raw_path))
    return out


def parse_slnx(solution_file: Path) -> list[Path]:
    try:
        root = ET.fromstring(solution_file.read_text(encoding="utf-8-sig"))
    except ET.ParseError as e:
        raise ConfigurationError(f"Invalid solution file {solution_file}: {e}") from e
    out: list[Path] = []
    for el in root.iter():
        if _local_name(el.tag) != "Project":
            continue
        raw_path = (el.get("Path") or "").strip()
        if raw_path:
            out.append(_project_path(solution_file.parent, raw_path))
    return out


def select_solution_parser(solution_file: Path) -> SolutionParser:
    if solution_file.suffix.lower() == ".slnx":
        return parse_slnx
    return parse_sln


def find_solution_file(file_or_directory: Path) -> Path | None:
    """
    Return the solution file itself, or the single solution file in the directory.

    More than one candidate is ambiguous; none returns None.
    """
    if file_or_directory.is_file():
        return file_or_directory.resolve()

    directory = file_or_directory if file_or_directory.is_dir() else file_or_directory.parent
    if not directory.is_dir():
        return None
    matches = sorted(p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in SOLUTION_EXTENSIONS)
    if len(matches) > 1:
        names = ", ".join(p.name for p in matches)
        raise AmbiguousSolutionError(f"Multiple solution files found in {directory}: {names}")
    if matches:
        return matches[0].resolve()
    return None


@dataclass(frozen=True)
class RestoreTarget:
    solution_file: Path | None = None
    packages_config: Path | None = None

    @property
    def for_solution(self) -> bool:
        return self.solution_file is not None

    @property
    def solution_directory(self) -> Path | None:
        return self.solution_file.parent if self.solution_file is not None else None


def determine_restore_target(path_arg: str | None, *, cwd: Path) -> RestoreTarget:
    if not path_arg:
        sln = find_solution_file(cwd)
        if sln is not None:
            return RestoreTarget(solution_file=sln)
        cfg = cwd / PACKAGES_CONFIG
        if cfg.is_file():
            return RestoreTarget(packages_config=cfg.resolve())
        raise ConfigurationError(f"No solution file nor {PACKAGES_CONFIG} found in {cwd}.")

    target = Path(path_arg).expanduser()
    if not target.is_absolute():
        target = cwd / target
    if target.suffix.lower() == CONFIG_EXTENSION:
        return RestoreTarget(packages_config=Path(os.path.normpath(str(target))))

    sln = find_solution_file(target)
    if sln is None:
        raise SolutionNotFoundError(f"Cannot locate a solution file at {target}.")
    return RestoreTarget(solution_file=sln)


def read_solution_scopes(
    solution_file: Path,
    *,
    parser: SolutionParser,
) -> tuple[list[tuple[str, list[PackageReference]]], list[str]]:
    """
    Declared references of every project in a solution, in solution order.

    Missing projects and unreadable packages.config files only produce warnings.
    """
    try:
        project_files = parser(solution_file)
    except OSError as e:
        raise ConfigurationError(f"Could not read solution file {solution_file}: {e}") from e

    scopes: list[tuple[str, list[PackageReference]]] = []
    warnings: list[str] = []
    for project_file in project_files:
        if not project_file.is_file():
            warnings.append(f"Project not found: {project_file}")
            continue
        config_path = project_file.parent / PACKAGES_CONFIG
        scope = project_file.stem
        if not config_path.exists():
            continue
        try:
            refs = read_packages_config(config_path, scope=scope)
        except ScopeReadError as e:
            warnings.append(f"Skipping {scope}: {e}")
            continue
        scopes.append((scope, refs))
    return scopes, warnings
