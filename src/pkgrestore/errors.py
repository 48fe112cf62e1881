from __future__ import annotations

from pathlib import Path


class PkgRestoreError(RuntimeError):
    pass


class ConfigurationError(PkgRestoreError):
    pass


class AmbiguousSolutionError(ConfigurationError):
    pass


class SolutionNotFoundError(ConfigurationError):
    pass


class ScopeReadError(PkgRestoreError):
    def __init__(self, message: str, *, scope: str, path: Path | None = None) -> None:
        super().__init__(message)
        self.scope = scope
        self.path = path


class FeedError(PkgRestoreError):
    pass


class FeedHTTPError(FeedError):
    def __init__(self, status_code: int, url: str, body: str) -> None:
        super().__init__(f"HTTP {status_code} for {url}: {body[:200]}")
        self.status_code = status_code
        self.url = url
        self.body = body


class PackageArchiveError(PkgRestoreError):
    pass


class PackageUnavailableError(PkgRestoreError):
    """No feed in any tier could satisfy one identity."""


class AcquisitionError(PkgRestoreError):
    def __init__(self, failures: dict[str, str]) -> None:
        self.failures = dict(failures)
        details = "; ".join(f"{key}: {reason}" for key, reason in sorted(self.failures.items()))
        super().__init__(f"Unable to acquire {len(self.failures)} package(s): {details}")


class SelfUpdateError(PkgRestoreError):
    """
    Raised inside the self-update sequence.

    stage is one of "check", "fetch", "backup", "rename", "write". A non-None backup_path means
    the running executable has been moved aside and was not restored.
    """

    def __init__(self, message: str, *, stage: str, backup_path: Path | None = None) -> None:
        super().__init__(message)
        self.stage = stage
        self.backup_path = backup_path
