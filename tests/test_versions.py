import unittest

from pkgrestore.versions import (
    DependencyBehavior,
    PackageVersion,
    PolicyResolver,
    ResolutionPolicy,
    VersionCandidate,
    VersionRange,
    eligible_versions,
    select_version,
)


def _candidates(*versions: str, unlisted: tuple[str, ...] = ()) -> list[VersionCandidate]:
    return [VersionCandidate(version=PackageVersion.parse(v), listed=v not in unlisted) for v in versions]


def _v(value: str) -> PackageVersion:
    return PackageVersion.parse(value)


class TestPackageVersion(unittest.TestCase):
    def test_release_parts_are_compared_numerically(self) -> None:
        self.assertLess(_v("1.2.0"), _v("1.10.0"))
        self.assertEqual(_v("1.0"), _v("1.0.0.0"))
        self.assertEqual(str(_v("1.0")), "1.0.0")
        self.assertEqual(str(_v("1.2.3.4")), "1.2.3.4")

    def test_prerelease_sorts_before_release(self) -> None:
        self.assertLess(_v("2.1.0-beta"), _v("2.1.0"))
        self.assertLess(_v("1.0.0-alpha.2"), _v("1.0.0-alpha.10"))
        self.assertLess(_v("1.0.0-alpha"), _v("1.0.0-beta"))
        self.assertEqual(_v("1.0.0-BETA"), _v("1.0.0-beta"))
        self.assertTrue(_v("1.0.0-rc.1").is_prerelease)

    def test_equal_versions_hash_alike(self) -> None:
        self.assertEqual(len({_v("1.0"), _v("1.0.0"), _v("1.0.0.0")}), 1)

    def test_invalid_version_raises(self) -> None:
        with self.assertRaises(ValueError):
            PackageVersion.parse("not-a-version")


class TestVersionRange(unittest.TestCase):
    def test_interval_notation(self) -> None:
        self.assertTrue(VersionRange.parse("1.0").satisfies(_v("3.0")))
        self.assertFalse(VersionRange.parse("1.0").satisfies(_v("0.9")))
        self.assertTrue(VersionRange.parse("[1.0]").is_exact)
        self.assertFalse(VersionRange.parse("(1.0,)").satisfies(_v("1.0")))

        bounded = VersionRange.parse("[1.0,2.0)")
        self.assertTrue(bounded.satisfies(_v("1.0")))
        self.assertTrue(bounded.satisfies(_v("1.9.9")))
        self.assertFalse(bounded.satisfies(_v("2.0")))

        self.assertTrue(VersionRange.parse("(,1.0]").satisfies(_v("1.0")))

    def test_malformed_range_raises(self) -> None:
        for raw in ("[1.0", "(1.0)", "[2.0,1.0]"):
            with self.subTest(raw=raw):
                with self.assertRaises(ValueError):
                    VersionRange.parse(raw)

    def test_str_round_trips_common_forms(self) -> None:
        self.assertEqual(str(VersionRange.parse("[1.0]")), "[1.0.0]")
        self.assertEqual(str(VersionRange.parse("[1.0,2.0)")), "[1.0.0, 2.0.0)")


class TestResolutionPolicy(unittest.TestCase):
    def setUp(self) -> None:
        self.candidates = _candidates("1.0.0", "1.2.0", "2.0.0", "2.1.0-beta")

    def _select(self, behavior: DependencyBehavior, **kwargs) -> str | None:
        picked = select_version(self.candidates, ResolutionPolicy(dependency_behavior=behavior, **kwargs))
        return str(picked) if picked is not None else None

    def test_behaviors_without_prerelease(self) -> None:
        self.assertEqual(self._select(DependencyBehavior.LOWEST), "1.0.0")
        self.assertEqual(self._select(DependencyBehavior.HIGHEST), "2.0.0")
        self.assertEqual(self._select(DependencyBehavior.HIGHEST_MINOR), "1.2.0")
        self.assertEqual(self._select(DependencyBehavior.HIGHEST_PATCH), "1.0.0")
        self.assertEqual(self._select(DependencyBehavior.IGNORE), "2.0.0")

    def test_prerelease_only_when_allowed(self) -> None:
        self.assertEqual(self._select(DependencyBehavior.HIGHEST, include_prerelease=True), "2.1.0-beta")

    def test_unlisted_versions_are_skipped_by_default(self) -> None:
        candidates = _candidates("1.0.0", "1.1.0", unlisted=("1.1.0",))
        self.assertEqual(
            str(select_version(candidates, ResolutionPolicy(dependency_behavior=DependencyBehavior.HIGHEST))),
            "1.0.0",
        )
        policy = ResolutionPolicy(dependency_behavior=DependencyBehavior.HIGHEST, include_unlisted=True)
        self.assertEqual(str(select_version(candidates, policy)), "1.1.0")

    def test_range_filters_before_selection(self) -> None:
        picked = select_version(
            self.candidates,
            ResolutionPolicy(dependency_behavior=DependencyBehavior.HIGHEST),
            VersionRange.parse("[1.0,2.0)"),
        )
        self.assertEqual(str(picked), "1.2.0")

    def test_nothing_eligible_returns_none(self) -> None:
        self.assertIsNone(select_version([], ResolutionPolicy()))
        self.assertIsNone(select_version(_candidates("3.0.0-rc"), ResolutionPolicy()))

    def test_eligible_versions_are_sorted_and_unique(self) -> None:
        versions = eligible_versions(_candidates("2.0", "1.0", "2.0.0"), ResolutionPolicy())
        self.assertEqual([str(v) for v in versions], ["1.0.0", "2.0.0"])

    def test_policy_resolver_delegates(self) -> None:
        picked = PolicyResolver().select("Pkg", self.candidates, ResolutionPolicy(), None)
        self.assertEqual(str(picked), "1.0.0")

    def test_dependency_behavior_parse(self) -> None:
        self.assertIs(DependencyBehavior.parse("HighestMinor"), DependencyBehavior.HIGHEST_MINOR)
        self.assertIs(DependencyBehavior.parse("highest-patch"), DependencyBehavior.HIGHEST_PATCH)
        with self.assertRaises(ValueError):
            DependencyBehavior.parse("newest")


if __name__ == "__main__":
    unittest.main()
