from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
import textwrap
from dataclasses import replace
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

from ._version import __version__
from .acquisition import RunOutcome, RunResult, install, resolve_install_directory, resolve_packages_directory, restore
from .client import FeedClient
from .errors import ConfigurationError, PkgRestoreError, ScopeReadError
from .config import PackageSource, config_path, load_config, load_settings, redacted, save_config
from .console import Console, Verbosity
from .package_archive import parse_save_mode
from .references import (
    PACKAGES_CONFIG,
    PackageReference,
    determine_restore_target,
    read_packages_config,
    read_solution_scopes,
    select_solution_parser,
)
from .self_update import SelfUpdateStatus, read_running_version, self_update
from .sources import build_source_registry
from .versions import DependencyBehavior, PackageVersion, ResolutionPolicy

T = TypeVar("T")

EXIT_CANCELLED = 2


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="pkgrestore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Restore and install packages from package feeds into a local packages folder.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              PKGRESTORE_CONFIG_PATH, PKGRESTORE_TIMEOUT_S, PKGRESTORE_PACKAGE_RESTORE_ENABLED
            """
        ),
    )
    p.add_argument("--version", action="version", version=f"pkgrestore {__version__}")

    def _add_common(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--config-file", help="Settings file to use instead of the solution settings file")
        parser.add_argument(
            "--verbosity",
            choices=["quiet", "normal", "detailed"],
            default="normal",
            help="Output detail (default: normal)",
        )
        parser.add_argument(
            "--source",
            action="append",
            default=[],
            help="Package source (name, URL or folder) to use as primary source; repeatable",
        )

    def _add_fetch_options(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--fallback-source",
            action="append",
            default=[],
            help="Source consulted only when the primary sources have nothing; repeatable",
        )
        parser.add_argument("--package-save-mode", help="Semicolon separated: nuspec, nupkg, files (default: nupkg;files)")
        parser.add_argument("--json", action="store_true", help="Output JSON")

    sub = p.add_subparsers(dest="cmd", required=True)

    rst = sub.add_parser("restore", help="Download packages referenced by a solution or packages.config that are missing")
    _add_common(rst)
    _add_fetch_options(rst)
    rst.add_argument("path", nargs="?", help="Solution file, directory containing one, or a packages.config file")
    rst.add_argument(
        "--packages-directory",
        "--output-directory",
        dest="packages_directory",
        help="Folder packages are restored into",
    )
    rst.add_argument("--solution-directory", help="Solution directory (only valid when restoring a packages.config)")
    rst.add_argument(
        "--require-consent",
        action="store_true",
        help="Refuse to restore unless package restore is enabled in settings",
    )

    ins = sub.add_parser("install", aliases=["i"], help="Install one package (and its dependencies) into a folder")
    _add_common(ins)
    _add_fetch_options(ins)
    ins.add_argument("package", help="Package id, optionally as id@version")
    ins.add_argument("--version", dest="package_version", help="Exact version to install (default: resolved)")
    ins.add_argument("--prerelease", action="store_true", help="Allow pre-release versions")
    ins.add_argument("--output-directory", help="Folder to install into (default: repository_path or current directory)")
    ins.add_argument(
        "--dependency-behavior",
        default="lowest",
        choices=[b.value for b in DependencyBehavior],
        help=(
            "How versions are chosen when no exact version is given; applies to the named package "
            "as well as its dependencies (default: lowest)"
        ),
    )

    upd = sub.add_parser("update", help="Update pkgrestore itself")
    _add_common(upd)
    upd.add_argument("--self", dest="self_update", action="store_true", required=True, help="Update the running executable")
    upd.add_argument("--exe-path", help=argparse.SUPPRESS)

    cfg = sub.add_parser("config", help="Manage user settings")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print settings path")
    cfg_sub.add_parser("show", help="Show settings (tokens redacted)")
    cfg_set = cfg_sub.add_parser("set", help="Set settings fields")
    cfg_set.add_argument("--repository-path")
    cfg_set.add_argument("--package-save-mode")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--max-concurrency", type=int)
    cfg_set.add_argument("--package-restore-enabled", choices=["true", "false"])
    cfg_add = cfg_sub.add_parser("add-source", help="Add or replace a package source")
    cfg_add.add_argument("name")
    cfg_add.add_argument("url")
    cfg_add.add_argument("--token", help="Bearer token sent to this source")
    cfg_add.add_argument("--disabled", action="store_true", help="Add the source disabled")
    cfg_rm = cfg_sub.add_parser("remove-source", help="Remove a package source by name")
    cfg_rm.add_argument("name")

    return p


def _console(args: argparse.Namespace) -> Console:
    verbosity = Verbosity.parse(getattr(args, "verbosity", "normal") or "normal")
    # Keep stdout clean for the JSON document.
    if getattr(args, "json", False):
        return Console(verbosity, out=sys.stderr)
    return Console(verbosity)


def _run_cancellable(fn: Callable[[asyncio.Event], Awaitable[T]]) -> T:
    async def _main() -> T:
        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()
        handled = False
        try:
            loop.add_signal_handler(signal.SIGINT, cancel.set)
            handled = True
        except (NotImplementedError, RuntimeError, ValueError):
            pass
        try:
            return await fn(cancel)
        finally:
            if handled:
                loop.remove_signal_handler(signal.SIGINT)

    return asyncio.run(_main())


def _report(result: RunResult, *, as_json: bool, console: Console) -> int:
    if as_json:
        payload = {
            "outcome": result.outcome.value,
            "installed": list(result.installed),
            "skipped": list(result.skipped),
            "warnings": list(result.warnings),
            "error": str(result.fatal_error) if result.fatal_error else None,
            "install_dir": str(result.install_dir) if result.install_dir else None,
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
    elif console.verbosity >= Verbosity.NORMAL:
        print(f"packages_dir: {result.install_dir}")
        _print_table(
            [
                ["ACTION", "COUNT"],
                ["installed", str(result.installed_count)],
                ["skipped", str(len(result.skipped))],
                ["warnings", str(len(result.warnings))],
            ]
        )

    if result.outcome is RunOutcome.CANCELLED:
        console.error("Operation cancelled.")
        return EXIT_CANCELLED
    if result.outcome is RunOutcome.FAILED:
        console.error(str(result.fatal_error))
        return 1
    return 0


def cmd_restore(args: argparse.Namespace) -> int:
    console = _console(args)
    cwd = Path.cwd()
    target = determine_restore_target(args.path, cwd=cwd)
    if target.for_solution and args.solution_directory:
        raise ConfigurationError("--solution-directory is not valid when restoring packages for a solution.")

    if target.for_solution:
        solution_dir = target.solution_directory
        console.detail(f"Restoring packages for solution {target.solution_file}")
    else:
        solution_dir = Path(args.solution_directory).expanduser().resolve() if args.solution_directory else None
        console.detail(f"Restoring packages listed in {target.packages_config}")

    settings = load_settings(solution_dir or cwd, config_file=args.config_file)
    save_mode = parse_save_mode(args.package_save_mode or settings.package_save_mode)
    if args.require_consent and not settings.package_restore_enabled:
        raise ConfigurationError(
            "Package restore is disabled. Set package_restore_enabled to true in settings "
            "or PKGRESTORE_PACKAGE_RESTORE_ENABLED=true to give consent."
        )
    install_dir = resolve_packages_directory(
        output_directory=args.packages_directory,
        solution_directory=solution_dir,
        settings_for=lambda _directory: settings,
    )

    warnings: list[str] = []
    scopes: list[tuple[str, list[PackageReference]]]
    if target.solution_file is not None:
        parser = select_solution_parser(target.solution_file)
        scopes, warnings = read_solution_scopes(target.solution_file, parser=parser)
    else:
        assert target.packages_config is not None
        if not target.packages_config.is_file():
            raise ScopeReadError(
                f"File not found: {target.packages_config}",
                scope=PACKAGES_CONFIG,
                path=target.packages_config,
            )
        scopes = [(PACKAGES_CONFIG, read_packages_config(target.packages_config, scope=PACKAGES_CONFIG))]
    for warning in warnings:
        console.warning(warning)

    async def _go(cancel: asyncio.Event) -> RunResult:
        async with FeedClient(timeout_s=settings.timeout_s) as client:
            registry = build_source_registry(
                settings,
                client,
                sources=args.source,
                fallback_sources=args.fallback_source,
            )
            return await restore(
                scopes,
                registry,
                install_dir,
                save_mode,
                console=console,
                cancel=cancel,
                max_concurrency=settings.max_concurrency,
                warnings=warnings,
            )

    return _report(_run_cancellable(_go), as_json=args.json, console=console)


def _split_install_package_and_version(package_arg: str, version_arg: str | None) -> tuple[str, str | None]:
    package = package_arg.strip()
    if not package:
        raise ConfigurationError("A package id must be provided.")

    at_idx = package.rfind("@")
    if at_idx > 0:
        shorthand_id = package[:at_idx].strip()
        shorthand_version = package[at_idx + 1 :].strip()
        if shorthand_id and shorthand_version:
            if version_arg:
                raise ConfigurationError("Specify version either as @<version> or --version, not both.")
            return shorthand_id, shorthand_version
    return package, version_arg


def cmd_install(args: argparse.Namespace) -> int:
    console = _console(args)
    cwd = Path.cwd()
    package_id, version_s = _split_install_package_and_version(args.package, args.package_version)
    try:
        version = PackageVersion.parse(version_s) if version_s else None
    except ValueError as e:
        raise ConfigurationError(f"Invalid version {version_s!r}: {e}") from e
    policy = ResolutionPolicy(
        dependency_behavior=DependencyBehavior.parse(args.dependency_behavior),
        include_prerelease=args.prerelease,
    )

    settings = load_settings(cwd, config_file=args.config_file)
    save_mode = parse_save_mode(args.package_save_mode or settings.package_save_mode)
    install_dir = resolve_install_directory(output_directory=args.output_directory, settings=settings, cwd=cwd)

    async def _go(cancel: asyncio.Event) -> RunResult:
        async with FeedClient(timeout_s=settings.timeout_s) as client:
            registry = build_source_registry(
                settings,
                client,
                sources=args.source,
                fallback_sources=args.fallback_source,
            )
            return await install(
                package_id,
                version,
                policy,
                registry,
                install_dir,
                save_mode,
                console=console,
                cancel=cancel,
                max_concurrency=settings.max_concurrency,
            )

    return _report(_run_cancellable(_go), as_json=args.json, console=console)


def cmd_update(args: argparse.Namespace) -> int:
    console = _console(args)
    settings = load_settings(Path.cwd(), config_file=args.config_file)
    exe_path = Path(args.exe_path or sys.argv[0]).expanduser().resolve()
    running = read_running_version()
    if running is None:
        console.detail("Running version is unknown; assuming an update is available.")

    async def _go(cancel: asyncio.Event):
        async with FeedClient(timeout_s=settings.timeout_s) as client:
            registry = build_source_registry(settings, client, sources=args.source)
            return await self_update(exe_path, running, registry.primary_feed, console=console, cancel=cancel)

    result = _run_cancellable(_go)
    if result.status is SelfUpdateStatus.CANCELLED:
        console.error("Update cancelled; the executable was not changed.")
        return EXIT_CANCELLED
    if result.status is SelfUpdateStatus.FAILED:
        console.error(result.reason or "Update failed.")
        if result.backup_path is not None:
            console.error(f"The previous executable was left at {result.backup_path}.")
        return 1
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        print(json.dumps(redacted(load_config()), indent=2, sort_keys=True))
        return 0

    cfg = load_config()
    if args.subcmd == "set":
        updates: dict[str, Any] = {}
        if args.repository_path is not None:
            updates["repository_path"] = str(Path(args.repository_path).expanduser().resolve())
        if args.package_save_mode is not None:
            parse_save_mode(args.package_save_mode)
            updates["package_save_mode"] = args.package_save_mode
        if args.timeout_s is not None:
            updates["timeout_s"] = args.timeout_s
        if args.max_concurrency is not None:
            updates["max_concurrency"] = max(1, args.max_concurrency)
        if args.package_restore_enabled is not None:
            updates["package_restore_enabled"] = args.package_restore_enabled == "true"
        path = save_config(replace(cfg, **updates))
        print(f"Saved: {path}")
        return 0

    if args.subcmd == "add-source":
        others = tuple(s for s in cfg.sources if s.name.lower() != args.name.lower())
        source = PackageSource(name=args.name, url=args.url, enabled=not args.disabled, token=args.token)
        path = save_config(replace(cfg, sources=others + (source,)))
        print(f"Saved: {path}")
        return 0

    if args.subcmd == "remove-source":
        remaining = tuple(s for s in cfg.sources if s.name.lower() != args.name.lower())
        if len(remaining) == len(cfg.sources):
            raise ConfigurationError(f"No package source named {args.name!r}.")
        path = save_config(replace(cfg, sources=remaining))
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if args.cmd == "restore":
            return cmd_restore(args)
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd == "update":
            return cmd_update(args)
        if args.cmd == "config":
            return cmd_config(args)
        raise AssertionError("unreachable")
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except PkgRestoreError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("error: Operation cancelled.", file=sys.stderr)
        return EXIT_CANCELLED


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
