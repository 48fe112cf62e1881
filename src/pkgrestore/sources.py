from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator, Protocol
from urllib.parse import quote, urlsplit

from .client import FeedClient
from .errors import FeedError, FeedHTTPError, PackageArchiveError
from .config import Config, PackageSource
from .package_archive import NUPKG_EXTENSION, read_nuspec
from .references import PackageIdentity
from .versions import PackageVersion, VersionCandidate

PACKAGE_BASE_ADDRESS = "PackageBaseAddress/3.0.0"
REGISTRATIONS_BASE_URL = "RegistrationsBaseUrl/3.6.0"
_REGISTRATION_TYPES = (REGISTRATIONS_BASE_URL, "RegistrationsBaseUrl/3.4.0", "RegistrationsBaseUrl/3.0.0", "RegistrationsBaseUrl")

PRIMARY = "primary"
SECONDARY = "secondary"


class Feed(Protocol):
    name: str
    supports_metadata: bool
    supports_content: bool

    async def list_versions(self, package_id: str) -> list[VersionCandidate]:
        """Every known version of one package. An unknown package yields []."""
        ...

    async def fetch_content(self, identity: PackageIdentity) -> bytes | None:
        """The package archive, or None when this feed does not have that identity."""
        ...


def _auth_headers(token: str | None) -> dict[str, str] | None:
    if not token:
        return None
    return {"Authorization": f"Bearer {token}"}


class HttpFeed:
    """
    Remote feed speaking the V3 protocol: the service index names the flat container (package base
    address) and the registration base url.
    """

    supports_metadata = True
    supports_content = True

    def __init__(self, source: PackageSource, client: FeedClient) -> None:
        self.name = source.name
        self.url = source.url
        self._client = client
        self._headers = _auth_headers(source.token)
        self._index: dict[str, str] | None = None
        self._index_lock = asyncio.Lock()

    async def _resources(self) -> dict[str, str]:
        async with self._index_lock:
            if self._index is None:
                data = await self._client.get_json(self.url, headers=self._headers)
                resources: dict[str, str] = {}
                items = data.get("resources") if isinstance(data, dict) else None
                for item in items if isinstance(items, list) else []:
                    if not isinstance(item, dict):
                        continue
                    rtype = item.get("@type")
                    rid = item.get("@id")
                    types = rtype if isinstance(rtype, list) else [rtype]
                    for t in types:
                        if isinstance(t, str) and isinstance(rid, str) and t not in resources:
                            resources[t] = rid
                self._index = resources
            return self._index

    async def _base_address(self) -> str:
        resources = await self._resources()
        base = resources.get(PACKAGE_BASE_ADDRESS)
        if not base:
            raise FeedError(f"Feed {self.name} does not expose {PACKAGE_BASE_ADDRESS}.")
        return base.rstrip("/") + "/"

    async def _get_json_or_none(self, url: str) -> Any:
        try:
            return await self._client.get_json(url, headers=self._headers)
        except FeedHTTPError as e:
            if e.status_code == 404:
                return None
            raise

    async def _registration_versions(self, registration_base: str, package_id: str) -> list[VersionCandidate]:
        url = f"{registration_base.rstrip('/')}/{quote(package_id.lower(), safe='')}/index.json"
        data = await self._get_json_or_none(url)
        if not isinstance(data, dict):
            return []

        out: list[VersionCandidate] = []
        for page in data.get("items") or []:
            if not isinstance(page, dict):
                continue
            leaves = page.get("items")
            if leaves is None and isinstance(page.get("@id"), str):
                # Large registrations are paged out of the index.
                page_data = await self._get_json_or_none(page["@id"])
                leaves = page_data.get("items") if isinstance(page_data, dict) else None
            for leaf in leaves if isinstance(leaves, list) else []:
                entry = leaf.get("catalogEntry") if isinstance(leaf, dict) else None
                if not isinstance(entry, dict) or not isinstance(entry.get("version"), str):
                    continue
                try:
                    version = PackageVersion.parse(entry["version"])
                except ValueError:
                    continue
                out.append(VersionCandidate(version=version, listed=entry.get("listed", True) is not False))
        return out

    async def _flat_container_versions(self, package_id: str) -> list[VersionCandidate]:
        base = await self._base_address()
        data = await self._get_json_or_none(f"{base}{quote(package_id.lower(), safe='')}/index.json")
        if not isinstance(data, dict):
            return []
        out: list[VersionCandidate] = []
        for v in data.get("versions") or []:
            if not isinstance(v, str):
                continue
            try:
                out.append(VersionCandidate(version=PackageVersion.parse(v)))
            except ValueError:
                continue
        return out

    async def list_versions(self, package_id: str) -> list[VersionCandidate]:
        resources = await self._resources()
        for rtype in _REGISTRATION_TYPES:
            if rtype in resources:
                return await self._registration_versions(resources[rtype], package_id)
        return await self._flat_container_versions(package_id)

    async def fetch_content(self, identity: PackageIdentity) -> bytes | None:
        if identity.version is None:
            raise FeedError(f"Cannot download {identity.name} without a version.")
        base = await self._base_address()
        lower_id = quote(identity.name.lower(), safe="")
        lower_version = quote(identity.version.normalized.lower(), safe="")
        url = f"{base}{lower_id}/{lower_version}/{lower_id}.{lower_version}{NUPKG_EXTENSION}"
        try:
            return await self._client.get_bytes(url, headers=self._headers)
        except FeedHTTPError as e:
            if e.status_code == 404:
                return None
            raise


class LocalFeed:
    """
    Folder of .nupkg files, flat (<id>.<version>.nupkg) or nested (<id>/<version>/<id>.<version>.nupkg).

    Identities are read from each archive's nuspec since file names alone are ambiguous.
    """

    supports_metadata = True
    supports_content = True

    def __init__(self, root: Path, *, name: str | None = None) -> None:
        self.root = root
        self.name = name or str(root)
        self._packages: dict[tuple[str, PackageVersion], Path] | None = None
        self._lock = asyncio.Lock()

    def _scan(self) -> dict[tuple[str, PackageVersion], Path]:
        if not self.root.is_dir():
            raise FeedError(f"Local feed {self.root} does not exist.")
        found: dict[tuple[str, PackageVersion], Path] = {}
        for path in sorted(self.root.rglob(f"*{NUPKG_EXTENSION}")):
            try:
                meta = read_nuspec(path.read_bytes())
            except (OSError, PackageArchiveError):
                continue
            version = meta.identity.version
            if version is None:
                continue
            found.setdefault((meta.identity.name.lower(), version), path)
        return found

    async def _index(self) -> dict[tuple[str, PackageVersion], Path]:
        async with self._lock:
            if self._packages is None:
                self._packages = await asyncio.to_thread(self._scan)
            return self._packages

    async def list_versions(self, package_id: str) -> list[VersionCandidate]:
        index = await self._index()
        lower = package_id.lower()
        return [VersionCandidate(version=v) for (pid, v) in index if pid == lower]

    async def fetch_content(self, identity: PackageIdentity) -> bytes | None:
        if identity.version is None:
            raise FeedError(f"Cannot read {identity.name} without a version.")
        index = await self._index()
        path = index.get((identity.name.lower(), identity.version))
        if path is None:
            return None
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise FeedError(f"Could not read {path}: {e}") from e


def is_local_source(url: str) -> bool:
    parts = urlsplit(url)
    if parts.scheme in ("http", "https"):
        return False
    return True


def create_feed(source: PackageSource, client: FeedClient) -> Feed:
    if is_local_source(source.url):
        parts = urlsplit(source.url)
        path = Path(parts.path) if parts.scheme == "file" else Path(source.url)
        return LocalFeed(path.expanduser(), name=source.name)
    return HttpFeed(source, client)


@dataclass(frozen=True)
class SourceRegistry:
    """Ordered feeds in two tiers; the secondary tier is only consulted when the primary has nothing."""

    primary: tuple[Feed, ...]
    secondary: tuple[Feed, ...] = ()

    def tiers(self) -> Iterator[tuple[str, tuple[Feed, ...]]]:
        yield PRIMARY, self.primary
        if self.secondary:
            yield SECONDARY, self.secondary

    def metadata_tiers(self) -> Iterator[tuple[str, tuple[Feed, ...]]]:
        for tier, feeds in self.tiers():
            yield tier, tuple(f for f in feeds if f.supports_metadata)

    def content_feeds(self) -> Iterator[Feed]:
        for _, feeds in self.tiers():
            for feed in feeds:
                if feed.supports_content:
                    yield feed

    @property
    def primary_feed(self) -> Feed:
        if not self.primary:
            raise FeedError("No primary package source configured.")
        return self.primary[0]


def _dedupe(sources: Iterable[PackageSource]) -> list[PackageSource]:
    seen: set[str] = set()
    out: list[PackageSource] = []
    for s in sources:
        key = s.url.rstrip("/").lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(s)
    return out


def _resolve_named(value: str, configured: tuple[PackageSource, ...]) -> PackageSource:
    for s in configured:
        if s.name.lower() == value.lower() or s.url.rstrip("/").lower() == value.rstrip("/").lower():
            return s
    return PackageSource(name=value, url=value)


def build_source_registry(
    settings: Config,
    client: FeedClient,
    *,
    sources: Iterable[str] = (),
    fallback_sources: Iterable[str] = (),
) -> SourceRegistry:
    """
    Explicit sources form the primary tier (configured sources otherwise). The secondary tier holds
    fallback sources followed by any configured source not already primary.
    """
    configured = settings.enabled_sources()
    explicit = [_resolve_named(v, configured) for v in sources if v.strip()]
    primary = _dedupe(explicit or configured)
    primary_keys = {s.url.rstrip("/").lower() for s in primary}

    fallback = [_resolve_named(v, configured) for v in [*fallback_sources, *settings.fallback_sources] if v.strip()]
    secondary = [s for s in _dedupe([*fallback, *configured]) if s.url.rstrip("/").lower() not in primary_keys]
    return SourceRegistry(
        primary=tuple(create_feed(s, client) for s in primary),
        secondary=tuple(create_feed(s, client) for s in secondary),
    )
