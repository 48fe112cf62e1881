from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from functools import total_ordering
from typing import Iterable, Protocol


def _split_version(version: str) -> tuple[tuple[int, ...], tuple[str, ...]]:
    if not isinstance(version, str):
        raise ValueError("version must be str")
    raw = version.strip()
    if not raw:
        raise ValueError("empty version")
    raw = raw.split("+", 1)[0]  # ignore build metadata
    if "-" in raw:
        main_s, pre_s = raw.split("-", 1)
        pre_parts = tuple(p for p in pre_s.split(".") if p != "")
        if not pre_parts:
            raise ValueError(f"Unsupported version format: {version!r}")
    else:
        main_s = raw
        pre_parts = ()
    main_parts = main_s.split(".")
    if len(main_parts) > 4 or any(not p.isdigit() for p in main_parts):
        raise ValueError(f"Unsupported version format: {version!r}")
    nums = [int(p) for p in main_parts]
    while len(nums) < 4:
        nums.append(0)
    return tuple(nums), pre_parts


def _compare_labels(pa: tuple[str, ...], pb: tuple[str, ...]) -> int:
    if not pa and not pb:
        return 0
    if not pa:
        return 1
    if not pb:
        return -1

    for i in range(max(len(pa), len(pb))):
        if i >= len(pa):
            return -1
        if i >= len(pb):
            return 1
        x = pa[i]
        y = pb[i]
        x_num = x.isdigit()
        y_num = y.isdigit()
        if x_num and y_num:
            xi = int(x)
            yi = int(y)
            if xi < yi:
                return -1
            if xi > yi:
                return 1
            continue
        if x_num and not y_num:
            return -1
        if not x_num and y_num:
            return 1
        xl = x.lower()
        yl = y.lower()
        if xl < yl:
            return -1
        if xl > yl:
            return 1
    return 0


@total_ordering
class PackageVersion:
    """
    Semantic version with up to four numeric release parts.

    Pre-release labels compare per dot-separated segment (numeric segments numerically,
    alphanumeric ones case-insensitively); build metadata never takes part in comparison.
    """

    __slots__ = ("original", "release", "labels")

    def __init__(self, original: str, release: tuple[int, ...], labels: tuple[str, ...]) -> None:
        self.original = original
        self.release = release
        self.labels = labels

    @classmethod
    def parse(cls, value: str) -> "PackageVersion":
        release, labels = _split_version(value)
        return cls(value.strip(), release, labels)

    @property
    def major(self) -> int:
        return self.release[0]

    @property
    def minor(self) -> int:
        return self.release[1]

    @property
    def patch(self) -> int:
        return self.release[2]

    @property
    def is_prerelease(self) -> bool:
        return bool(self.labels)

    @property
    def normalized(self) -> str:
        parts = list(self.release)
        if parts[3] == 0:
            parts = parts[:3]
        out = ".".join(str(p) for p in parts)
        if self.labels:
            out += "-" + ".".join(self.labels)
        return out

    def compare(self, other: "PackageVersion") -> int:
        if self.release < other.release:
            return -1
        if self.release > other.release:
            return 1
        return _compare_labels(self.labels, other.labels)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PackageVersion):
            return NotImplemented
        return self.compare(other) == 0

    def __lt__(self, other: "PackageVersion") -> bool:
        if not isinstance(other, PackageVersion):
            return NotImplemented
        return self.compare(other) < 0

    def __hash__(self) -> int:
        return hash((self.release, tuple(label.lower() for label in self.labels)))

    def __str__(self) -> str:
        return self.normalized

    def __repr__(self) -> str:
        return f"PackageVersion({self.original!r})"


_RANGE_RE = re.compile(r"^([\[(])\s*([^,\s]*)\s*(?:,\s*([^,\s]*)\s*)?([\])])$")


@dataclass(frozen=True)
class VersionRange:
    """
    Interval of acceptable versions.

    Accepts the interval notation used in package manifests:
      1.0          -> 1.0 <= v
      [1.0]        -> v == 1.0
      (1.0,)       -> 1.0 < v
      [1.0,2.0)    -> 1.0 <= v < 2.0
      (,1.0]       -> v <= 1.0
    """

    min_version: PackageVersion | None = None
    min_inclusive: bool = True
    max_version: PackageVersion | None = None
    max_inclusive: bool = False

    @classmethod
    def parse(cls, value: str) -> "VersionRange":
        raw = value.strip()
        if not raw or raw == "*":
            return cls()
        if raw[0] not in "[(":
            return cls(min_version=PackageVersion.parse(raw), min_inclusive=True)

        m = _RANGE_RE.match(raw)
        if not m:
            raise ValueError(f"Unsupported version range: {value!r}")
        open_b, low, high, close_b = m.group(1), m.group(2), m.group(3), m.group(4)
        if high is None:
            # "[1.0]" is the only single-version bracket form.
            if open_b != "[" or close_b != "]" or not low:
                raise ValueError(f"Unsupported version range: {value!r}")
            exact = PackageVersion.parse(low)
            return cls(min_version=exact, min_inclusive=True, max_version=exact, max_inclusive=True)

        min_v = PackageVersion.parse(low) if low else None
        max_v = PackageVersion.parse(high) if high else None
        if min_v is not None and max_v is not None and max_v < min_v:
            raise ValueError(f"Unsupported version range: {value!r}")
        return cls(
            min_version=min_v,
            min_inclusive=open_b == "[",
            max_version=max_v,
            max_inclusive=close_b == "]",
        )

    @classmethod
    def exact(cls, version: PackageVersion) -> "VersionRange":
        return cls(min_version=version, min_inclusive=True, max_version=version, max_inclusive=True)

    @property
    def is_exact(self) -> bool:
        return (
            self.min_version is not None
            and self.min_version == self.max_version
            and self.min_inclusive
            and self.max_inclusive
        )

    def satisfies(self, version: PackageVersion) -> bool:
        if self.min_version is not None:
            cmp = version.compare(self.min_version)
            if cmp < 0 or (cmp == 0 and not self.min_inclusive):
                return False
        if self.max_version is not None:
            cmp = version.compare(self.max_version)
            if cmp > 0 or (cmp == 0 and not self.max_inclusive):
                return False
        return True

    def __str__(self) -> str:
        if self.is_exact:
            return f"[{self.min_version}]"
        if self.max_version is None and self.min_inclusive:
            return str(self.min_version) if self.min_version is not None else "*"
        low = str(self.min_version) if self.min_version is not None else ""
        high = str(self.max_version) if self.max_version is not None else ""
        return f"{'[' if self.min_inclusive else '('}{low}, {high}{']' if self.max_inclusive else ')'}"


class DependencyBehavior(enum.Enum):
    LOWEST = "lowest"
    HIGHEST = "highest"
    HIGHEST_MINOR = "highestminor"
    HIGHEST_PATCH = "highestpatch"
    IGNORE = "ignore"

    @classmethod
    def parse(cls, value: str) -> "DependencyBehavior":
        key = value.strip().lower().replace("_", "").replace("-", "")
        for member in cls:
            if member.value == key:
                return member
        choices = ", ".join(m.value for m in cls)
        raise ValueError(f"Unknown dependency behavior {value!r}. Expected one of: {choices}")


@dataclass(frozen=True)
class ResolutionPolicy:
    dependency_behavior: DependencyBehavior = DependencyBehavior.LOWEST
    include_prerelease: bool = False
    include_unlisted: bool = False


@dataclass(frozen=True)
class VersionCandidate:
    version: PackageVersion
    listed: bool = True


def eligible_versions(
    candidates: Iterable[VersionCandidate],
    policy: ResolutionPolicy,
    version_range: VersionRange | None = None,
) -> list[PackageVersion]:
    seen: set[PackageVersion] = set()
    out: list[PackageVersion] = []
    for c in candidates:
        if not c.listed and not policy.include_unlisted:
            continue
        if c.version.is_prerelease and not policy.include_prerelease:
            continue
        if version_range is not None and not version_range.satisfies(c.version):
            continue
        if c.version in seen:
            continue
        seen.add(c.version)
        out.append(c.version)
    out.sort()
    return out


def select_version(
    candidates: Iterable[VersionCandidate],
    policy: ResolutionPolicy,
    version_range: VersionRange | None = None,
) -> PackageVersion | None:
    eligible = eligible_versions(candidates, policy, version_range)
    if not eligible:
        return None

    behavior = policy.dependency_behavior
    if behavior is DependencyBehavior.LOWEST:
        return eligible[0]
    if behavior in (DependencyBehavior.HIGHEST, DependencyBehavior.IGNORE):
        return eligible[-1]

    # The window is anchored on the lowest eligible candidate.
    baseline = eligible[0]
    if behavior is DependencyBehavior.HIGHEST_MINOR:
        window = [v for v in eligible if v.major == baseline.major]
    else:
        window = [v for v in eligible if (v.major, v.minor) == (baseline.major, baseline.minor)]
    return window[-1]


class VersionResolver(Protocol):
    def select(
        self,
        package_id: str,
        candidates: list[VersionCandidate],
        policy: ResolutionPolicy,
        version_range: VersionRange | None,
    ) -> PackageVersion | None:
        ...


class PolicyResolver:
    def select(
        self,
        package_id: str,
        candidates: list[VersionCandidate],
        policy: ResolutionPolicy,
        version_range: VersionRange | None,
    ) -> PackageVersion | None:
        return select_version(candidates, policy, version_range)
