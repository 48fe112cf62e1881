"""
Replace the running executable with the newest published build of the tool's own package.

Sequence: check version -> (up to date | download -> rename running file to <exe>.old -> write new file).
The new bytes are fully in memory before the filesystem is touched, and a cancel signal seen up to that
point ends the run with the executable untouched. If writing the new file fails, the
backup is moved back into place. If the process dies or is cancelled between the rename and the write,
nothing is rolled back: <exe>.old is the previous build and can be renamed back by hand.
"""

from __future__ import annotations

import asyncio
import enum
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Protocol, TypeVar

from . import _version
from .console import Console, NullConsole
from .errors import FeedError, PackageArchiveError, SelfUpdateError
from .package_archive import read_entry
from .references import PackageIdentity
from .sources import Feed
from .versions import DependencyBehavior, PackageVersion, ResolutionPolicy, select_version

SELF_PACKAGE_ID = "PkgRestore.CommandLine"
BACKUP_SUFFIX = ".old"
TOOLS_FOLDER = "tools"

T = TypeVar("T")


class FileOps(Protocol):
    def delete(self, path: Path) -> None:
        ...

    def move(self, src: Path, dst: Path) -> None:
        ...

    def write(self, path: Path, data: bytes) -> None:
        ...


class LocalFileOps:
    def delete(self, path: Path) -> None:
        os.remove(path)

    def move(self, src: Path, dst: Path) -> None:
        os.rename(src, dst)

    def write(self, path: Path, data: bytes) -> None:
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp, 0o755)
        os.replace(tmp, path)


class SelfUpdateStatus(enum.Enum):
    UP_TO_DATE = "up_to_date"
    UPDATED = "updated"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SelfUpdateResult:
    status: SelfUpdateStatus
    version: PackageVersion | None = None
    reason: str | None = None
    stage: str | None = None
    backup_path: Path | None = None


def read_running_version() -> PackageVersion | None:
    """The version stamped into the build; None (unknown) if it is missing or malformed."""
    raw = getattr(_version, "__version__", None)
    if not isinstance(raw, str):
        return None
    try:
        return PackageVersion.parse(raw)
    except ValueError:
        return None


def backup_path_for(exe_path: Path) -> Path:
    return exe_path.with_name(exe_path.name + BACKUP_SUFFIX)


class _UpdateCancelled(Exception):
    pass


class SelfUpdater:
    def __init__(
        self,
        feed: Feed,
        *,
        file_ops: FileOps | None = None,
        console: Console | None = None,
        package_id: str = SELF_PACKAGE_ID,
        policy: ResolutionPolicy | None = None,
    ) -> None:
        self.feed = feed
        self.file_ops = file_ops or LocalFileOps()
        self.console = console or NullConsole()
        self.package_id = package_id
        # Same prerelease/unlisted defaults as any resolution, always taking the newest.
        base = policy or ResolutionPolicy()
        self.policy = ResolutionPolicy(
            dependency_behavior=DependencyBehavior.HIGHEST,
            include_prerelease=base.include_prerelease,
            include_unlisted=base.include_unlisted,
        )

    async def latest_version(self) -> PackageVersion | None:
        try:
            candidates = await self.feed.list_versions(self.package_id)
        except FeedError as e:
            raise SelfUpdateError(f"Checking for updates failed: {e}", stage="check") from e
        return select_version(candidates, self.policy)

    async def download_executable(self, version: PackageVersion, exe_name: str) -> bytes:
        identity = PackageIdentity(name=self.package_id, version=version)
        try:
            data = await self.feed.fetch_content(identity)
        except FeedError as e:
            raise SelfUpdateError(f"Downloading {identity} failed: {e}", stage="fetch") from e
        if data is None:
            raise SelfUpdateError(f"Package {identity} was not found on {self.feed.name}.", stage="fetch")
        try:
            exe_bytes = read_entry(data, f"{TOOLS_FOLDER}/{exe_name}")
        except PackageArchiveError as e:
            raise SelfUpdateError(f"Package {identity} is not a valid archive: {e}", stage="fetch") from e
        if not exe_bytes:
            raise SelfUpdateError(f"Unable to locate {exe_name} in package {identity}.", stage="fetch")
        return exe_bytes

    def _move_to_backup(self, exe_path: Path) -> Path:
        backup = backup_path_for(exe_path)
        try:
            self.file_ops.delete(backup)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise SelfUpdateError(f"Could not remove old backup {backup}: {e}", stage="backup") from e

        try:
            self.file_ops.move(exe_path, backup)
        except OSError as e:
            raise SelfUpdateError(f"Could not move {exe_path} to {backup}: {e}", stage="rename") from e
        return backup

    def _write_new(self, exe_path: Path, backup: Path, data: bytes) -> None:
        try:
            self.file_ops.write(exe_path, data)
        except OSError as e:
            try:
                self.file_ops.move(backup, exe_path)
            except OSError as rollback_error:
                raise SelfUpdateError(
                    f"Could not write {exe_path}: {e}. Restoring the backup also failed ({rollback_error}); "
                    f"rename {backup} to {exe_path} to recover.",
                    stage="write",
                    backup_path=backup,
                ) from e
            raise SelfUpdateError(
                f"Could not write {exe_path}: {e}. The previous version was restored.",
                stage="write",
            ) from e

    async def _unless_cancelled(self, coro: Awaitable[T], cancel: asyncio.Event | None) -> T:
        if cancel is None:
            return await coro
        task = asyncio.ensure_future(coro)
        watcher = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({task, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not task.done():
                task.cancel()
            watcher.cancel()
            await asyncio.gather(task, watcher, return_exceptions=True)
        if task.cancelled():
            raise _UpdateCancelled()
        return task.result()

    async def update(
        self,
        exe_path: Path,
        running_version: PackageVersion | None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> SelfUpdateResult:
        self.console.info(f"Checking for updates from {self.feed.name}.")
        try:
            latest = await self._unless_cancelled(self.latest_version(), cancel)
            if latest is None:
                return SelfUpdateResult(
                    status=SelfUpdateStatus.FAILED,
                    reason=f"No published version of {self.package_id} found on {self.feed.name}.",
                    stage="check",
                )
            if running_version is not None and running_version >= latest:
                self.console.info("pkgrestore is up to date.")
                return SelfUpdateResult(status=SelfUpdateStatus.UP_TO_DATE, version=running_version)

            self.console.info(f"Updating pkgrestore to version {latest}.")
            exe_bytes = await self._unless_cancelled(self.download_executable(latest, exe_path.name), cancel)
            # Last point where cancelling leaves the running executable untouched.
            if cancel is not None and cancel.is_set():
                raise _UpdateCancelled()
            backup = self._move_to_backup(exe_path)
            self._write_new(exe_path, backup, exe_bytes)
        except _UpdateCancelled:
            self.console.info("Update cancelled.")
            return SelfUpdateResult(status=SelfUpdateStatus.CANCELLED, reason="Update cancelled.")
        except SelfUpdateError as e:
            return SelfUpdateResult(
                status=SelfUpdateStatus.FAILED,
                reason=str(e),
                stage=e.stage,
                backup_path=e.backup_path,
            )

        self.console.info("Update successful.")
        return SelfUpdateResult(status=SelfUpdateStatus.UPDATED, version=latest, backup_path=backup)


async def self_update(
    exe_path: Path,
    running_version: PackageVersion | None,
    primary_feed: Feed,
    *,
    file_ops: FileOps | None = None,
    console: Console | None = None,
    cancel: asyncio.Event | None = None,
) -> SelfUpdateResult:
    updater = SelfUpdater(primary_feed, file_ops=file_ops, console=console)
    return await updater.update(exe_path, running_version, cancel=cancel)
