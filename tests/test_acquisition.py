import asyncio
import io
import tempfile
import unittest
import zipfile
from pathlib import Path

from pkgrestore.acquisition import (
    OPT_OUT_MESSAGE,
    AcquisitionOrchestrator,
    RunOutcome,
    RunState,
    SingleFlight,
    compute_missing,
    find_installed_package,
    install,
    is_package_installed,
    resolve_install_directory,
    resolve_packages_directory,
    restore,
)
from pkgrestore.errors import AcquisitionError, ConfigurationError, FeedError
from pkgrestore.config import Config
from pkgrestore.console import Console, NullConsole, Verbosity
from pkgrestore.references import PackageIdentity, PackageReference, aggregate_references
from pkgrestore.sources import SourceRegistry
from pkgrestore.versions import DependencyBehavior, PackageVersion, ResolutionPolicy, VersionCandidate


def _nupkg(package_id: str, version: str, deps: tuple[tuple[str, str], ...] = ()) -> bytes:
    dep_xml = "".join(f'<dependency id="{d}" version="{r}" />' for d, r in deps)
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr(
            f"{package_id}.nuspec",
            f"<package><metadata><id>{package_id}</id><version>{version}</version>"
            f"<dependencies>{dep_xml}</dependencies></metadata></package>",
        )
        zf.writestr("content/readme.txt", f"{package_id} {version}")
    return buf.getvalue()


def _id(name: str, version: str | None = None) -> PackageIdentity:
    return PackageIdentity(name=name, version=PackageVersion.parse(version) if version else None)


def _ref(name: str, version: str | None = None) -> PackageReference:
    return PackageReference(identity=_id(name, version))


class FakeFeed:
    supports_metadata = True
    supports_content = True

    def __init__(
        self,
        name: str,
        packages: dict[str, dict[str, bytes]] | None = None,
        *,
        fail: bool = False,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.name = name
        self.packages = {k.lower(): v for k, v in (packages or {}).items()}
        self.fail = fail
        self.gate = gate
        self.fetch_started = asyncio.Event()
        self.list_calls: list[str] = []
        self.fetch_calls: list[str] = []

    async def list_versions(self, package_id: str) -> list[VersionCandidate]:
        self.list_calls.append(package_id)
        await asyncio.sleep(0)
        if self.fail:
            raise FeedError("feed offline")
        return [VersionCandidate(version=PackageVersion.parse(v)) for v in self.packages.get(package_id.lower(), {})]

    async def fetch_content(self, identity: PackageIdentity) -> bytes | None:
        self.fetch_calls.append(str(identity))
        self.fetch_started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise FeedError("feed offline")
        for version, data in self.packages.get(identity.name.lower(), {}).items():
            if PackageVersion.parse(version) == identity.version:
                return data
        return None


def _packages(*entries: tuple[str, str], deps: dict[str, tuple[tuple[str, str], ...]] | None = None):
    out: dict[str, dict[str, bytes]] = {}
    for name, version in entries:
        out.setdefault(name, {})[version] = _nupkg(name, version, (deps or {}).get(f"{name}/{version}", ()))
    return out


class _TempDirCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        td = tempfile.TemporaryDirectory()
        self.addCleanup(td.cleanup)
        self.install_dir = Path(td.name) / "packages"


class TestRestore(_TempDirCase):
    async def test_second_run_fetches_nothing(self) -> None:
        feed = FakeFeed("primary", _packages(("Serilog", "2.10.0"), ("Dapper", "2.0.0")))
        registry = SourceRegistry(primary=(feed,))
        scopes = [("App", [_ref("Serilog", "2.10.0"), _ref("Dapper", "2.0.0")]), ("Lib", [_ref("serilog", "2.10.0")])]

        first = await restore(scopes, registry, self.install_dir)
        self.assertIs(first.outcome, RunOutcome.SUCCEEDED)
        self.assertEqual(sorted(first.installed), ["Dapper 2.0.0", "Serilog 2.10.0"])
        self.assertTrue(first.opt_out_message_shown)
        self.assertTrue((self.install_dir / "Serilog.2.10.0" / "content" / "readme.txt").is_file())
        self.assertTrue((self.install_dir / "Serilog.2.10.0" / "Serilog.2.10.0.nupkg").is_file())
        self.assertEqual(len(feed.fetch_calls), 2)

        second = await restore(scopes, registry, self.install_dir)
        self.assertIs(second.outcome, RunOutcome.SUCCEEDED)
        self.assertEqual(second.installed_count, 0)
        self.assertFalse(second.opt_out_message_shown)
        self.assertEqual(len(feed.fetch_calls), 2)

    async def test_opt_out_message_is_printed_once(self) -> None:
        out = io.StringIO()
        console = Console(Verbosity.NORMAL, out=out, err=io.StringIO())
        feed = FakeFeed("primary", _packages(("A", "1.0.0"), ("B", "1.0.0"), ("C", "1.0.0")))
        scopes = [("App", [_ref("A", "1.0.0"), _ref("B", "1.0.0"), _ref("C", "1.0.0")])]

        result = await restore(scopes, SourceRegistry(primary=(feed,)), self.install_dir, console=console)

        self.assertTrue(result.ok)
        self.assertEqual(out.getvalue().count(OPT_OUT_MESSAGE), 1)

    async def test_unversioned_reference_takes_highest(self) -> None:
        feed = FakeFeed("primary", _packages(("A", "1.0.0"), ("A", "1.5.0")))
        result = await restore([("App", [_ref("A")])], SourceRegistry(primary=(feed,)), self.install_dir)

        self.assertEqual(result.installed, ("A 1.5.0",))
        self.assertIsNotNone(find_installed_package(self.install_dir, _id("A")))

    async def test_secondary_tier_is_used_when_primary_lacks_package(self) -> None:
        primary = FakeFeed("primary", {})
        secondary = FakeFeed("secondary", _packages(("A", "1.0.0")))
        registry = SourceRegistry(primary=(primary,), secondary=(secondary,))

        result = await restore([("App", [_ref("A")])], registry, self.install_dir)

        self.assertTrue(result.ok)
        self.assertEqual(result.installed, ("A 1.0.0",))
        self.assertEqual(primary.list_calls, ["A"])
        self.assertEqual(secondary.list_calls, ["A"])

    async def test_secondary_tier_is_not_consulted_when_primary_resolves(self) -> None:
        primary = FakeFeed("primary", _packages(("A", "1.0.0")))
        secondary = FakeFeed("secondary", _packages(("A", "9.0.0")))
        registry = SourceRegistry(primary=(primary,), secondary=(secondary,))

        result = await restore([("App", [_ref("A")])], registry, self.install_dir)

        self.assertEqual(result.installed, ("A 1.0.0",))
        self.assertEqual(secondary.list_calls, [])

    async def test_failing_feed_is_a_warning_when_another_has_the_package(self) -> None:
        broken = FakeFeed("broken", fail=True)
        healthy = FakeFeed("healthy", _packages(("A", "1.0.0")))
        registry = SourceRegistry(primary=(broken, healthy))

        result = await restore([("App", [_ref("A", "1.0.0")])], registry, self.install_dir)

        self.assertTrue(result.ok)
        self.assertEqual(result.installed, ("A 1.0.0",))
        self.assertEqual(len(result.warnings), 1)
        self.assertIn("broken", result.warnings[0])

    async def test_unavailable_package_fails_the_run(self) -> None:
        feed = FakeFeed("primary", _packages(("A", "1.0.0")))
        result = await restore(
            [("App", [_ref("A", "1.0.0"), _ref("Missing", "1.0.0")])],
            SourceRegistry(primary=(feed,)),
            self.install_dir,
        )

        self.assertIs(result.outcome, RunOutcome.FAILED)
        self.assertIsInstance(result.fatal_error, AcquisitionError)
        self.assertIn("Missing 1.0.0", result.fatal_error.failures)
        self.assertFalse((self.install_dir / "Missing.1.0.0").exists())

    async def test_corrupt_package_fails_the_run(self) -> None:
        packages = _packages(("A", "1.0.0"))
        # Stored entries keep the payload verbatim, so the edit breaks its CRC.
        packages["A"]["1.0.0"] = packages["A"]["1.0.0"].replace(b"A 1.0.0", b"A 1.0.1")
        feed = FakeFeed("primary", packages)

        result = await restore([("App", [_ref("A", "1.0.0")])], SourceRegistry(primary=(feed,)), self.install_dir)

        self.assertIs(result.outcome, RunOutcome.FAILED)
        self.assertIn("A 1.0.0", result.fatal_error.failures)
        self.assertIn("Corrupt", result.fatal_error.failures["A 1.0.0"])
        self.assertFalse((self.install_dir / "A.1.0.0").exists())

    async def test_nothing_missing_touches_no_feed(self) -> None:
        feed = FakeFeed("primary", fail=True)
        (self.install_dir / "A.1.0.0").mkdir(parents=True)

        result = await restore([("App", [_ref("A", "1.0.0")])], SourceRegistry(primary=(feed,)), self.install_dir)

        self.assertTrue(result.ok)
        self.assertEqual(feed.list_calls + feed.fetch_calls, [])

    async def test_cancellation_leaves_no_partial_package(self) -> None:
        gate = asyncio.Event()
        feed = FakeFeed("primary", _packages(("A", "1.0.0")), gate=gate)
        cancel = asyncio.Event()

        task = asyncio.ensure_future(
            restore([("App", [_ref("A", "1.0.0")])], SourceRegistry(primary=(feed,)), self.install_dir, cancel=cancel)
        )
        await feed.fetch_started.wait()
        cancel.set()
        result = await task

        self.assertIs(result.outcome, RunOutcome.CANCELLED)
        self.assertEqual(result.installed_count, 0)
        self.assertFalse((self.install_dir / "A.1.0.0").exists())


class TestInstall(_TempDirCase):
    def _registry(self) -> tuple[FakeFeed, SourceRegistry]:
        feed = FakeFeed(
            "primary",
            _packages(
                ("App", "1.0.0"),
                ("Core", "1.0.0"),
                ("Core", "1.5.0"),
                ("Core", "2.0.0"),
                deps={"App/1.0.0": (("Core", "[1.0,2.0)"),)},
            ),
        )
        return feed, SourceRegistry(primary=(feed,))

    async def _install(self, behavior: DependencyBehavior, version: str | None = None):
        feed, registry = self._registry()
        policy = ResolutionPolicy(dependency_behavior=behavior)
        version_v = PackageVersion.parse(version) if version else None
        return feed, await install("App", version_v, policy, registry, self.install_dir)

    async def test_lowest_dependency_behavior(self) -> None:
        _, result = await self._install(DependencyBehavior.LOWEST)
        self.assertTrue(result.ok)
        self.assertEqual(sorted(result.installed), ["App 1.0.0", "Core 1.0.0"])

    async def test_highest_dependency_behavior_respects_range(self) -> None:
        _, result = await self._install(DependencyBehavior.HIGHEST)
        self.assertEqual(sorted(result.installed), ["App 1.0.0", "Core 1.5.0"])

    async def test_ignore_skips_dependencies(self) -> None:
        feed, result = await self._install(DependencyBehavior.IGNORE)
        self.assertEqual(result.installed, ("App 1.0.0",))
        self.assertNotIn("Core", feed.list_calls)

    async def test_exact_version_skips_resolution(self) -> None:
        feed, result = await self._install(DependencyBehavior.LOWEST, version="1.0.0")
        self.assertTrue(result.ok)
        self.assertNotIn("App", feed.list_calls)

    async def test_dependency_cycle_terminates(self) -> None:
        feed = FakeFeed(
            "primary",
            _packages(("A", "1.0.0"), ("B", "1.0.0"), deps={"A/1.0.0": (("B", "1.0.0"),), "B/1.0.0": (("A", "1.0.0"),)}),
        )
        result = await install("A", None, ResolutionPolicy(), SourceRegistry(primary=(feed,)), self.install_dir)

        self.assertTrue(result.ok)
        self.assertEqual(sorted(result.installed), ["A 1.0.0", "B 1.0.0"])

    async def test_missing_dependency_fails_install(self) -> None:
        feed = FakeFeed("primary", _packages(("A", "1.0.0"), deps={"A/1.0.0": (("Ghost", "1.0.0"),)}))
        result = await install("A", None, ResolutionPolicy(), SourceRegistry(primary=(feed,)), self.install_dir)

        self.assertIs(result.outcome, RunOutcome.FAILED)
        self.assertIn("Ghost", str(result.fatal_error))


class TestSingleFlight(_TempDirCase):
    async def test_concurrent_acquires_share_one_download(self) -> None:
        gate = asyncio.Event()
        feed = FakeFeed("primary", _packages(("A", "1.0.0")), gate=gate)
        orchestrator = AcquisitionOrchestrator(SourceRegistry(primary=(feed,)), install_dir=self.install_dir)
        state = RunState(console=NullConsole())

        first = asyncio.ensure_future(orchestrator.acquire(_id("A", "1.0.0"), state))
        second = asyncio.ensure_future(orchestrator.acquire(_id("a", "1.0.0"), state))
        await feed.fetch_started.wait()
        gate.set()
        a, b = await asyncio.gather(first, second)

        self.assertEqual(feed.fetch_calls, ["A 1.0.0"])
        self.assertEqual(a.path, b.path)
        self.assertEqual(state.installed, ["A 1.0.0"])

    async def test_waiter_cancellation_does_not_cancel_shared_call(self) -> None:
        flight = SingleFlight()
        release = asyncio.Event()
        calls: list[int] = []

        async def work() -> str:
            calls.append(1)
            await release.wait()
            return "done"

        cancelled = asyncio.ensure_future(flight.do("k", work))
        survivor = asyncio.ensure_future(flight.do("k", work))
        await asyncio.sleep(0)
        cancelled.cancel()
        release.set()

        self.assertEqual(await survivor, "done")
        self.assertEqual(calls, [1])
        with self.assertRaises(asyncio.CancelledError):
            await cancelled


class TestMissingSet(unittest.TestCase):
    def test_only_absent_identities_are_missing(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            install_dir = Path(td)
            (install_dir / "A.1.0.0").mkdir()
            refmap = aggregate_references([("App", [_ref("A", "1.0.0"), _ref("B", "1.0.0")]), ("Lib", [_ref("B", "1.0.0")])])
            missing = compute_missing(refmap, is_package_installed(install_dir))

        self.assertEqual([str(i) for i in missing.identities], ["B 1.0.0"])
        self.assertEqual(missing.entries[0].scopes, ("App", "Lib"))

    def test_installed_lookup_is_case_insensitive(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            install_dir = Path(td)
            (install_dir / "serilog.2.10.0").mkdir()
            self.assertIsNotNone(find_installed_package(install_dir, _id("Serilog", "2.10.0")))
            self.assertIsNone(find_installed_package(install_dir, _id("Serilog", "2.11.0")))


class TestInstallPaths(unittest.TestCase):
    def test_explicit_output_directory_wins(self) -> None:
        path = resolve_packages_directory(
            output_directory="/opt/pkgs",
            solution_directory=Path("/src/app"),
            settings_for=lambda _: Config(repository_path="/elsewhere"),
        )
        self.assertEqual(path, Path("/opt/pkgs"))

    def test_settings_repository_path_then_solution_packages(self) -> None:
        path = resolve_packages_directory(
            output_directory=None,
            solution_directory=Path("/src/app"),
            settings_for=lambda _: Config(repository_path="/shared/pkgs"),
        )
        self.assertEqual(path, Path("/shared/pkgs"))

        path = resolve_packages_directory(
            output_directory=None,
            solution_directory=Path("/src/app"),
            settings_for=lambda _: Config(),
        )
        self.assertEqual(path, Path("/src/app/packages"))

    def test_no_directory_is_a_configuration_error(self) -> None:
        with self.assertRaises(ConfigurationError):
            resolve_packages_directory(output_directory=None, solution_directory=None, settings_for=lambda _: Config())

    def test_install_directory_falls_back_to_cwd(self) -> None:
        self.assertEqual(
            resolve_install_directory(output_directory=None, settings=Config(), cwd=Path("/work")),
            Path("/work"),
        )
        self.assertEqual(
            resolve_install_directory(output_directory=None, settings=Config(repository_path="/repo"), cwd=Path("/work")),
            Path("/repo"),
        )


if __name__ == "__main__":
    unittest.main()
