from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

from .errors import ConfigurationError

DEFAULT_SOURCE_URL = "https://api.nuget.org/v3/index.json"
DEFAULT_TIMEOUT_S = 100.0
DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_PACKAGES_FOLDER = "packages"

# Per-solution settings live in <solution dir>/.pkgrestore/config.json
SOLUTION_SETTINGS_FOLDER = ".pkgrestore"
CONFIG_FILENAME = "config.json"


@dataclass(frozen=True)
class PackageSource:
    name: str
    url: str
    enabled: bool = True
    token: str | None = None


@dataclass(frozen=True)
class Config:
    sources: tuple[PackageSource, ...] = ()
    fallback_sources: tuple[str, ...] = ()
    repository_path: str | None = None  # absolute once loaded
    package_save_mode: str | None = None  # e.g. "nupkg;files"
    package_restore_enabled: bool = True
    timeout_s: float = DEFAULT_TIMEOUT_S
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    origins: tuple[str, ...] = field(default=(), compare=False)  # files that contributed

    def enabled_sources(self) -> tuple[PackageSource, ...]:
        srcs = tuple(s for s in self.sources if s.enabled)
        if srcs:
            return srcs
        return (PackageSource(name="default", url=DEFAULT_SOURCE_URL),)


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("PKGRESTORE_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("pkgrestore") / CONFIG_FILENAME


def solution_config_path(solution_dir: Path, config_file: str | None = None) -> Path:
    settings_folder = solution_dir / SOLUTION_SETTINGS_FOLDER
    if config_file:
        # An explicit config file is resolved relative to the solution settings folder.
        return (settings_folder / Path(config_file).expanduser()).resolve()
    return settings_folder / CONFIG_FILENAME


def _parse_sources(raw: Any) -> tuple[PackageSource, ...]:
    if not isinstance(raw, list):
        return ()
    out: list[PackageSource] = []
    for i, item in enumerate(raw):
        if isinstance(item, str) and item.strip():
            out.append(PackageSource(name=f"source{i + 1}", url=item.strip()))
            continue
        if not isinstance(item, dict):
            continue
        url = item.get("url")
        if not isinstance(url, str) or not url.strip():
            continue
        name = item.get("name")
        token = item.get("token")
        out.append(
            PackageSource(
                name=name.strip() if isinstance(name, str) and name.strip() else url.strip(),
                url=url.strip(),
                enabled=item.get("enabled", True) is not False,
                token=token if isinstance(token, str) and token else None,
            )
        )
    return tuple(out)


def _normalize_path(value: str, *, base: Path) -> str:
    p = Path(value.replace("/", os.sep)).expanduser()
    if not p.is_absolute():
        p = base / p
    return os.path.normpath(str(p))


def _read_raw(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Could not read settings file {path}: {e}") from e
    if not isinstance(raw, dict):
        return None
    return raw


def _apply_raw(cfg: Config, raw: dict[str, Any], *, origin: Path) -> Config:
    updates: dict[str, Any] = {}
    if "sources" in raw:
        updates["sources"] = _parse_sources(raw["sources"])
    if isinstance(raw.get("fallback_sources"), list):
        updates["fallback_sources"] = tuple(s.strip() for s in raw["fallback_sources"] if isinstance(s, str) and s.strip())
    if isinstance(raw.get("repository_path"), str) and raw["repository_path"].strip():
        # Relative paths are relative to the file that declared them.
        updates["repository_path"] = _normalize_path(raw["repository_path"].strip(), base=origin.parent)
    if isinstance(raw.get("package_save_mode"), str):
        updates["package_save_mode"] = raw["package_save_mode"]
    if isinstance(raw.get("package_restore_enabled"), bool):
        updates["package_restore_enabled"] = raw["package_restore_enabled"]
    if isinstance(raw.get("timeout_s"), (int, float)) and not isinstance(raw["timeout_s"], bool):
        updates["timeout_s"] = float(raw["timeout_s"])
    if isinstance(raw.get("max_concurrency"), int) and not isinstance(raw["max_concurrency"], bool):
        updates["max_concurrency"] = max(1, raw["max_concurrency"])
    updates["origins"] = cfg.origins + (str(origin),)
    return replace(cfg, **updates)


def _apply_env(cfg: Config) -> Config:
    updates: dict[str, Any] = {}
    if env := os.getenv("PKGRESTORE_TIMEOUT_S"):
        try:
            updates["timeout_s"] = float(env)
        except ValueError:
            pass
    if env := os.getenv("PKGRESTORE_PACKAGE_RESTORE_ENABLED"):
        updates["package_restore_enabled"] = env.strip().lower() in ("1", "true", "yes", "on")
    return replace(cfg, **updates) if updates else cfg


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    raw = _read_raw(path)
    if raw is None:
        return _apply_env(Config())
    return _apply_env(_apply_raw(Config(), raw, origin=path))


def load_settings(directory: Path | None, *, config_file: str | None = None) -> Config:
    """
    Settings visible from one directory: user config, then the directory's solution-level file (or the
    explicit config file), then environment overrides. Later layers win key by key.
    """
    cfg = Config()
    user_path = config_path()
    if (raw := _read_raw(user_path)) is not None:
        cfg = _apply_raw(cfg, raw, origin=user_path)

    if directory is not None:
        sol_path = solution_config_path(directory, config_file)
        if config_file and not sol_path.exists():
            raise ConfigurationError(f"Config file not found: {sol_path}")
        if (raw := _read_raw(sol_path)) is not None:
            cfg = _apply_raw(cfg, raw, origin=sol_path)
    elif config_file:
        explicit = Path(config_file).expanduser().resolve()
        if (raw := _read_raw(explicit)) is None:
            raise ConfigurationError(f"Config file not found: {explicit}")
        cfg = _apply_raw(cfg, raw, origin=explicit)

    return _apply_env(cfg)


def packages_folder(settings: Config, solution_dir: Path) -> str:
    if settings.repository_path:
        return settings.repository_path
    return os.path.normpath(str(solution_dir / DEFAULT_PACKAGES_FOLDER))


def _to_json(cfg: Config) -> dict[str, Any]:
    data = asdict(cfg)
    data.pop("origins", None)
    data["sources"] = [asdict(s) for s in cfg.sources]
    data["fallback_sources"] = list(cfg.fallback_sources)
    return data


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(_to_json(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # Best-effort permissions hardening (feed tokens).
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def redact_token(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 10:
        return token[:2] + "..." + token[-2:]
    return token[:6] + "..." + token[-4:]


def redacted(cfg: Config) -> dict[str, Any]:
    data = _to_json(cfg)
    for src in data["sources"]:
        src["token"] = redact_token(src.get("token"))
    return data
