"""Dependency constraint parsing and version selection.

Pubspec constraints use Dart's semver syntax and SemVer 2.0 precedence, so
``1.0.0-0 < 1.0.0-nullsafety.0 < 1.0.0``. They are parsed into a
`VersionConstraint` over `semver.Version` bounds:

  ``^1.2.3``              → ``>=1.2.3 <2.0.0-0``
  ``^0.2.3``              → ``>=0.2.3 <0.3.0-0``
  ``^0.0.3``              → ``>=0.0.3 <0.0.4-0``
  ``>=1.0.0 <2.0.0``      → ``>=1.0.0 <2.0.0-0``
  ``>=2.0.0-dev <2.0.0``  → unchanged
  ``1.0.0``               → ``==1.0.0``
  ``any`` / empty / None  → no restriction

A ``<`` bound on a release excludes that release's pre-releases unless the
lower bound is itself a pre-release of the same version, matching how pub
reads ``<2.0.0``.
"""

import operator
import re
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Union

import semver

from worker.core.errors import DependencyResolutionError

_TOKEN = re.compile(r"(>=|<=|>|<)?\s*([^\s<>=]+)")

_COMPARE: dict[str, Callable[[semver.Version, semver.Version], bool]] = {
    "==": operator.eq,
    ">=": operator.ge,
    ">": operator.gt,
    "<=": operator.le,
    "<": operator.lt,
}


def _parse_version(raw: str) -> semver.Version:
    try:
        return semver.Version.parse(raw)
    except ValueError as exc:
        raise DependencyResolutionError(f"Invalid version '{raw}' in constraint") from exc


def _first_prerelease(version: semver.Version) -> semver.Version:
    return semver.Version(version.major, version.minor, version.patch, prerelease="0")


def _next_breaking(version: semver.Version) -> semver.Version:
    if version.major > 0:
        return semver.Version(version.major + 1, 0, 0)
    if version.minor > 0:
        return semver.Version(0, version.minor + 1, 0)
    return semver.Version(0, 0, version.patch + 1)


def _same_release(a: semver.Version, b: semver.Version) -> bool:
    return (a.major, a.minor, a.patch) == (b.major, b.minor, b.patch)


@dataclass(frozen=True)
class VersionConstraint:
    """Conjunction of ``(operator, version)`` bounds; no bounds allows anything."""

    bounds: tuple[tuple[str, semver.Version], ...] = ()

    def allows(self, version: Union[str, semver.Version]) -> bool:
        if isinstance(version, str):
            try:
                version = semver.Version.parse(version)
            except ValueError:
                return False
        return all(_COMPARE[op](version, bound) for op, bound in self.bounds)

    def __contains__(self, version: Union[str, semver.Version]) -> bool:
        return self.allows(version)

    def __str__(self) -> str:
        return " ".join(f"{op}{bound}" for op, bound in self.bounds) or "any"


def _exclude_upper_prereleases(
    bounds: list[tuple[str, semver.Version]],
) -> list[tuple[str, semver.Version]]:
    lower_prereleases = [
        bound for op, bound in bounds if op in (">=", ">", "==") and bound.prerelease
    ]
    rewritten = []
    for op, bound in bounds:
        if (
            op == "<"
            and bound.prerelease is None
            and bound.build is None
            and not any(_same_release(bound, low) for low in lower_prereleases)
        ):
            bound = _first_prerelease(bound)
        rewritten.append((op, bound))
    return rewritten


def parse_constraint(constraint: Union[str, dict, None]) -> VersionConstraint:
    """Parse a pubspec dependency constraint.

    Mapping constraints (``{"version": "^1.0.0", "hosted": ...}``) use their
    ``version`` key.

    Raises:
        DependencyResolutionError: the constraint cannot be parsed.
    """
    if isinstance(constraint, dict):
        constraint = constraint.get("version")
    if constraint is None:
        return VersionConstraint()
    if not isinstance(constraint, str):
        raise DependencyResolutionError(f"Unsupported constraint: {constraint!r}")

    text = constraint.strip()
    if not text or text == "any":
        return VersionConstraint()

    if text.startswith("^"):
        lower = _parse_version(text[1:].strip())
        upper = _first_prerelease(_next_breaking(lower))
        return VersionConstraint(((">=", lower), ("<", upper)))

    bounds: list[tuple[str, semver.Version]] = []
    position = 0
    for match in _TOKEN.finditer(text):
        if text[position:match.start()].strip():
            break
        op, raw = match.groups()
        bounds.append((op or "==", _parse_version(raw)))
        position = match.end()
    if not bounds or text[position:].strip():
        raise DependencyResolutionError(f"Invalid constraint '{constraint}'")

    return VersionConstraint(tuple(_exclude_upper_prereleases(bounds)))


def select_version(available: Iterable[str], constraint: VersionConstraint) -> Optional[str]:
    """Return the highest available version ``constraint`` allows.

    Pre-releases are only considered when no release is allowed. Versions the
    registry lists that are not valid semver are ignored. Returns the
    registry's original version string.
    """
    releases: list[tuple[semver.Version, str]] = []
    prereleases: list[tuple[semver.Version, str]] = []
    for raw in available:
        try:
            version = semver.Version.parse(raw)
        except ValueError:
            continue
        if constraint.allows(version):
            (prereleases if version.prerelease else releases).append((version, raw))

    candidates = releases or prereleases
    if not candidates:
        return None
    return max(candidates, key=lambda item: item[0])[1]


def is_hosted_dependency(constraint: Union[str, dict, None]) -> bool:
    """Return False for sdk, path and git dependencies.

    Those are not served by the registry and are left to the resolver.
    """
    if isinstance(constraint, dict):
        return not any(key in constraint for key in ("sdk", "path", "git"))
    return True
