from __future__ import annotations

import asyncio
import enum
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Hashable, Iterable, TypeVar

from .errors import AcquisitionError, ConfigurationError, FeedError, PackageUnavailableError, PkgRestoreError
from .config import DEFAULT_MAX_CONCURRENCY, Config, packages_folder
from .console import Console, NullConsole
from .package_archive import (
    DEFAULT_SAVE_MODE,
    NuspecMetadata,
    PackageSaveMode,
    extract_package,
    package_directory_name,
    read_installed_nuspec,
    read_nuspec,
)
from .references import InstalledReference, InstalledReferenceMap, PackageIdentity, PackageReference, aggregate_references
from .sources import SourceRegistry
from .versions import DependencyBehavior, PackageVersion, PolicyResolver, ResolutionPolicy, VersionRange, VersionResolver

T = TypeVar("T")

OPT_OUT_MESSAGE = (
    "Restoring missing packages. To stop packages from being downloaded automatically, "
    "set package_restore_enabled to false in your pkgrestore settings."
)


class RunOutcome(enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RunResult:
    outcome: RunOutcome
    installed: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    fatal_error: PkgRestoreError | None = None
    opt_out_message_shown: bool = False
    install_dir: Path | None = None

    @property
    def installed_count(self) -> int:
        return len(self.installed)

    @property
    def ok(self) -> bool:
        return self.outcome is RunOutcome.SUCCEEDED


@dataclass(frozen=True)
class MissingSet:
    entries: tuple[InstalledReference, ...]

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @property
    def identities(self) -> tuple[PackageIdentity, ...]:
        return tuple(e.identity for e in self.entries)


def _native_path(value: str) -> Path:
    foreign = "\\" if os.sep == "/" else "/"
    return Path(os.path.abspath(os.path.normpath(os.path.expanduser(value.replace(foreign, os.sep)))))


def resolve_packages_directory(
    *,
    output_directory: str | None,
    solution_directory: Path | None,
    settings_for: Callable[[Path], Config],
) -> Path:
    """
    Target directory for restore: explicit output directory, else the packages folder from the settings
    of the (effective) solution directory. There is no working-directory fallback.
    """
    if output_directory and output_directory.strip():
        return _native_path(output_directory.strip())
    if solution_directory is not None:
        folder = packages_folder(settings_for(solution_directory), solution_directory)
        if folder:
            return _native_path(folder)
    raise ConfigurationError(
        "Cannot determine the packages folder. Pass --packages-directory or --solution-directory."
    )


def resolve_install_directory(*, output_directory: str | None, settings: Config, cwd: Path) -> Path:
    if output_directory and output_directory.strip():
        return _native_path(output_directory.strip())
    if settings.repository_path:
        return _native_path(settings.repository_path)
    return _native_path(str(cwd))


def _installed_versions(install_dir: Path, name: str) -> list[tuple[PackageVersion, Path]]:
    prefix = name.lower() + "."
    out: list[tuple[PackageVersion, Path]] = []
    try:
        children = list(install_dir.iterdir())
    except FileNotFoundError:
        return []
    for child in children:
        if not child.is_dir() or not child.name.lower().startswith(prefix):
            continue
        try:
            out.append((PackageVersion.parse(child.name[len(prefix):]), child))
        except ValueError:
            continue
    return out


def find_installed_package(install_dir: Path, identity: PackageIdentity) -> Path | None:
    """Directory of an installed identity; an unversioned identity matches its highest installed version."""
    if identity.version is not None:
        exact = install_dir / package_directory_name(identity)
        if exact.is_dir():
            return exact
        for version, path in _installed_versions(install_dir, identity.name):
            if version == identity.version:
                return path
        return None
    installed = _installed_versions(install_dir, identity.name)
    if not installed:
        return None
    return max(installed, key=lambda item: item[0])[1]


def is_package_installed(install_dir: Path) -> Callable[[PackageIdentity], bool]:
    def _present(identity: PackageIdentity) -> bool:
        return find_installed_package(install_dir, identity) is not None

    return _present


def compute_missing(refmap: InstalledReferenceMap, is_present: Callable[[PackageIdentity], bool]) -> MissingSet:
    return MissingSet(entries=tuple(entry for entry in refmap if not is_present(entry.identity)))


class SingleFlight:
    """
    Collapses concurrent calls for the same key into one task. Results are kept for the lifetime of the
    instance, so every later caller observes the same outcome.
    """

    def __init__(self) -> None:
        self._calls: dict[Hashable, asyncio.Future[Any]] = {}

    def __len__(self) -> int:
        return len(self._calls)

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        fut = self._calls.get(key)
        if fut is None:
            fut = asyncio.ensure_future(fn())
            self._calls[key] = fut
        # One waiter being cancelled must not cancel the shared call.
        return await asyncio.shield(fut)

    async def cancel_all(self) -> None:
        pending = [f for f in self._calls.values() if not f.done()]
        for f in pending:
            f.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        # Retrieve exceptions no waiter consumed.
        for f in self._calls.values():
            if f.done() and not f.cancelled():
                f.exception()


@dataclass
class RunState:
    """Mutable bookkeeping for one run, passed explicitly through the call chain."""

    console: Console
    opt_out_message: str | None = None
    opt_out_message_shown: bool = False
    installed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def warn(self, message: str) -> None:
        self.warnings.append(message)
        self.console.warning(message)

    def announce_download(self) -> None:
        if self.opt_out_message and not self.opt_out_message_shown:
            self.opt_out_message_shown = True
            self.console.info(self.opt_out_message)


@dataclass(frozen=True)
class AcquiredPackage:
    identity: PackageIdentity
    path: Path
    data: bytes | None = None  # None when it was already installed


class AcquisitionOrchestrator:
    def __init__(
        self,
        registry: SourceRegistry,
        *,
        install_dir: Path,
        save_mode: PackageSaveMode = DEFAULT_SAVE_MODE,
        policy: ResolutionPolicy | None = None,
        resolver: VersionResolver | None = None,
        console: Console | None = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> None:
        self.registry = registry
        self.install_dir = install_dir
        self.save_mode = save_mode
        self.policy = policy or ResolutionPolicy()
        self.resolver = resolver or PolicyResolver()
        self.console = console or NullConsole()
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._resolutions = SingleFlight()
        self._materialized = SingleFlight()
        self._expanded: set[tuple[str, PackageVersion | None]] = set()

    async def resolve(self, name: str, version_range: VersionRange | None, state: RunState) -> PackageIdentity:
        key = (name.lower(), str(version_range) if version_range is not None else None)
        return await self._resolutions.do(key, lambda: self._resolve(name, version_range, state))

    async def _resolve(self, name: str, version_range: VersionRange | None, state: RunState) -> PackageIdentity:
        errors: list[str] = []
        for tier, feeds in self.registry.metadata_tiers():
            candidates = []
            for feed in feeds:
                try:
                    async with self._semaphore:
                        candidates.extend(await feed.list_versions(name))
                except FeedError as e:
                    errors.append(f"{feed.name}: {e}")
                    state.warn(f"Source {feed.name} failed to list versions of {name}: {e}")
            version = self.resolver.select(name, candidates, self.policy, version_range)
            if version is not None:
                self.console.detail(f"Resolved {name} to {version} from {tier} sources")
                return PackageIdentity(name=name, version=version)

        wanted = f"{name} {version_range}" if version_range is not None else name
        message = f"Unable to find a version of {wanted} in any source."
        if errors:
            message += " Source errors: " + "; ".join(errors)
        raise PackageUnavailableError(message)

    async def _fetch(self, identity: PackageIdentity, state: RunState) -> bytes:
        errors: list[str] = []
        for feed in self.registry.content_feeds():
            try:
                async with self._semaphore:
                    data = await feed.fetch_content(identity)
            except FeedError as e:
                errors.append(f"{feed.name}: {e}")
                state.warn(f"Source {feed.name} failed to download {identity}: {e}")
                continue
            if data is not None:
                self.console.detail(f"Downloaded {identity} from {feed.name}")
                return data

        message = f"Unable to find package {identity} in any source."
        if errors:
            message += " Source errors: " + "; ".join(errors)
        raise PackageUnavailableError(message)

    async def _materialize(self, identity: PackageIdentity, state: RunState) -> AcquiredPackage:
        existing = await asyncio.to_thread(find_installed_package, self.install_dir, identity)
        if existing is not None:
            state.skipped.append(str(identity))
            self.console.detail(f"Package {identity} is already installed.")
            return AcquiredPackage(identity=identity, path=existing)

        state.announce_download()
        data = await self._fetch(identity, state)
        path, created = await asyncio.to_thread(
            extract_package,
            data,
            identity=identity,
            install_dir=self.install_dir,
            save_mode=self.save_mode,
        )
        if created:
            state.installed.append(str(identity))
            self.console.info(f"Added package {identity} to {self.install_dir}")
        else:
            state.skipped.append(str(identity))
        return AcquiredPackage(identity=identity, path=path, data=data)

    async def acquire(
        self,
        identity: PackageIdentity,
        state: RunState,
        *,
        version_range: VersionRange | None = None,
    ) -> AcquiredPackage:
        if identity.version is None:
            identity = await self.resolve(identity.name, version_range, state)
        return await self._materialized.do(identity.key, lambda: self._materialize(identity, state))

    async def acquire_closure(
        self,
        identity: PackageIdentity,
        state: RunState,
        *,
        version_range: VersionRange | None = None,
    ) -> AcquiredPackage:
        acquired = await self.acquire(identity, state, version_range=version_range)
        if self.policy.dependency_behavior is DependencyBehavior.IGNORE:
            return acquired
        if acquired.identity.key in self._expanded:
            return acquired
        self._expanded.add(acquired.identity.key)

        meta = await asyncio.to_thread(_package_metadata, acquired)
        if meta is None:
            state.warn(f"No manifest saved for {acquired.identity}; its dependencies were not checked.")
            return acquired
        await _all_or_nothing(
            [
                self.acquire_closure(PackageIdentity(name=dep.name), state, version_range=dep.version_range)
                for dep in meta.dependencies
            ]
        )
        return acquired

    async def run(
        self,
        targets: Iterable[tuple[PackageIdentity, VersionRange | None]],
        state: RunState,
        *,
        expand: bool,
        cancel: asyncio.Event | None = None,
    ) -> RunOutcome | AcquisitionError:
        acquire = self.acquire_closure if expand else self.acquire
        tasks: dict[asyncio.Future[Any], str] = {}
        for identity, version_range in targets:
            tasks[asyncio.ensure_future(acquire(identity, state, version_range=version_range))] = str(identity)

        watcher = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
        pending = set(tasks)
        failures: dict[str, str] = {}
        cancelled = False
        try:
            while pending and not failures:
                wait_for = pending | ({watcher} if watcher is not None else set())
                done, _ = await asyncio.wait(wait_for, return_when=asyncio.FIRST_COMPLETED)
                if watcher is not None and watcher in done:
                    cancelled = True
                    break
                for task in done:
                    pending.discard(task)
                    exc = task.exception()
                    if exc is None:
                        continue
                    if isinstance(exc, (PkgRestoreError, OSError)):
                        failures[tasks[task]] = str(exc)
                        continue
                    raise exc
        finally:
            for task in pending:
                task.cancel()
            if watcher is not None:
                watcher.cancel()
            await asyncio.gather(*pending, *([watcher] if watcher is not None else []), return_exceptions=True)
            await self._resolutions.cancel_all()
            await self._materialized.cancel_all()

        if cancelled:
            return RunOutcome.CANCELLED
        if failures:
            return AcquisitionError(failures)
        return RunOutcome.SUCCEEDED


def _package_metadata(acquired: AcquiredPackage) -> NuspecMetadata | None:
    if acquired.data is not None:
        return read_nuspec(acquired.data)
    return read_installed_nuspec(acquired.path)


async def _all_or_nothing(coros: list[Awaitable[Any]]) -> None:
    """Await every coroutine; on the first failure cancel the rest and re-raise it."""
    if not coros:
        return
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        for task in done:
            if task.exception() is not None:
                raise task.exception()  # type: ignore[misc]
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def _result(outcome: RunOutcome | AcquisitionError, state: RunState, install_dir: Path) -> RunResult:
    if isinstance(outcome, AcquisitionError):
        return RunResult(
            outcome=RunOutcome.FAILED,
            installed=tuple(state.installed),
            skipped=tuple(state.skipped),
            warnings=tuple(state.warnings),
            fatal_error=outcome,
            opt_out_message_shown=state.opt_out_message_shown,
            install_dir=install_dir,
        )
    return RunResult(
        outcome=outcome,
        installed=tuple(state.installed),
        skipped=tuple(state.skipped),
        warnings=tuple(state.warnings),
        opt_out_message_shown=state.opt_out_message_shown,
        install_dir=install_dir,
    )


async def restore(
    scopes: Iterable[tuple[str, Iterable[PackageReference]]],
    registry: SourceRegistry,
    install_dir: Path,
    save_mode: PackageSaveMode = DEFAULT_SAVE_MODE,
    *,
    console: Console | None = None,
    cancel: asyncio.Event | None = None,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    warnings: Iterable[str] = (),
) -> RunResult:
    """
    Bring install_dir up to date with the references declared by scopes.

    Only missing identities are acquired; declared references are installed as-is without walking
    their dependencies. Unversioned references take the highest eligible version.
    """
    console = console or NullConsole()
    state = RunState(console=console, opt_out_message=OPT_OUT_MESSAGE, warnings=list(warnings))

    started = time.perf_counter()
    refmap = aggregate_references(scopes)
    missing = await asyncio.to_thread(compute_missing, refmap, is_package_installed(install_dir))
    console.timing("Computed missing packages", time.perf_counter() - started)

    if not missing:
        console.detail("All packages listed in packages.config are already installed.")
        return _result(RunOutcome.SUCCEEDED, state, install_dir)

    for entry in missing:
        console.detail(f"Missing {entry.identity} (referenced by {', '.join(entry.scopes)})")

    orchestrator = AcquisitionOrchestrator(
        registry,
        install_dir=install_dir,
        save_mode=save_mode,
        policy=ResolutionPolicy(dependency_behavior=DependencyBehavior.HIGHEST),
        console=console,
        max_concurrency=max_concurrency,
    )
    started = time.perf_counter()
    outcome = await orchestrator.run(
        [(e.identity, e.reference.allowed_versions) for e in missing],
        state,
        expand=False,
        cancel=cancel,
    )
    console.timing("Restored packages", time.perf_counter() - started)
    return _result(outcome, state, install_dir)


async def install(
    package_id: str,
    version: PackageVersion | None,
    policy: ResolutionPolicy,
    registry: SourceRegistry,
    install_dir: Path,
    save_mode: PackageSaveMode = DEFAULT_SAVE_MODE,
    *,
    console: Console | None = None,
    cancel: asyncio.Event | None = None,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    resolver: VersionResolver | None = None,
) -> RunResult:
    console = console or NullConsole()
    state = RunState(console=console)
    orchestrator = AcquisitionOrchestrator(
        registry,
        install_dir=install_dir,
        save_mode=save_mode,
        policy=policy,
        resolver=resolver,
        console=console,
        max_concurrency=max_concurrency,
    )
    started = time.perf_counter()
    outcome = await orchestrator.run(
        [(PackageIdentity(name=package_id, version=version), None)],
        state,
        expand=policy.dependency_behavior is not DependencyBehavior.IGNORE,
        cancel=cancel,
    )
    console.timing("Installed packages", time.perf_counter() - started)
    return _result(outcome, state, install_dir)
