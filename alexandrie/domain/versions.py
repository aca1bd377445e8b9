"""
Semver handling for crate versions and Cargo version requirements.

Versions are parsed with ``semver`` (strict semver 2.0). Requirements follow
Cargo's grammar: comma separated comparators, each one of ``=``, ``>``,
``>=``, ``<``, ``<=``, ``~``, ``^`` (the default when no operator is given)
or a wildcard (``*``, ``1.*``, ``1.2.x``).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional

import semver

_COMPARATOR_RE = re.compile(
    r"""
    ^\s*
    (?P<op>=|>=|<=|>|<|~|\^)?
    \s*
    (?P<major>\*|x|X|\d+)
    (?:\.(?P<minor>\*|x|X|\d+))?
    (?:\.(?P<patch>\*|x|X|\d+))?
    (?:-(?P<pre>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?
    (?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?
    \s*$
    """,
    re.VERBOSE,
)

_WILDCARDS = {"*", "x", "X"}


def parse_version(value: str) -> semver.Version:
    """Parse a crate version, raising ValueError when it is not semver 2.0."""
    return semver.Version.parse(value)


def is_valid_version(value: str) -> bool:
    try:
        parse_version(value)
    except (ValueError, TypeError):
        return False
    return True


@dataclass(frozen=True)
class Comparator:
    op: str
    major: int
    minor: Optional[int] = None
    patch: Optional[int] = None
    pre: Optional[str] = None

    def _full(self) -> semver.Version:
        return semver.Version(self.major, self.minor or 0, self.patch or 0, prerelease=self.pre)

    def _exact(self, v: semver.Version) -> bool:
        if v.major != self.major:
            return False
        if self.minor is None:
            return True
        if v.minor != self.minor:
            return False
        if self.patch is None:
            return True
        return v.patch == self.patch and v.prerelease == self.pre

    def _greater(self, v: semver.Version) -> bool:
        if self.minor is None:
            return v.major > self.major
        if self.patch is None:
            return (v.major, v.minor) > (self.major, self.minor)
        return v.compare(self._full()) > 0

    def _less(self, v: semver.Version) -> bool:
        if self.minor is None:
            return v.major < self.major
        if self.patch is None:
            return (v.major, v.minor) < (self.major, self.minor)
        return v.compare(self._full()) < 0

    def _tilde(self, v: semver.Version) -> bool:
        if v.major != self.major:
            return False
        if self.minor is None:
            return True
        if v.minor != self.minor:
            return False
        if self.patch is None:
            return True
        return v.compare(self._full()) >= 0

    def _caret(self, v: semver.Version) -> bool:
        if v.major != self.major:
            return False
        if self.minor is None:
            return True
        if self.patch is None:
            if self.major > 0:
                return v.minor >= self.minor
            return v.minor == self.minor
        if self.major > 0:
            return v.compare(self._full()) >= 0
        if v.minor != self.minor:
            return False
        if self.minor > 0:
            return v.compare(self._full()) >= 0
        return v.patch == self.patch and v.compare(self._full()) >= 0

    def matches(self, v: semver.Version) -> bool:
        if self.op == "*":
            return True
        if self.op == "=":
            return self._exact(v)
        if self.op == ">":
            return self._greater(v)
        if self.op == ">=":
            return self._greater(v) or self._exact(v)
        if self.op == "<":
            return self._less(v)
        if self.op == "<=":
            return self._less(v) or self._exact(v)
        if self.op == "~":
            return self._tilde(v)
        return self._caret(v)

    def allows_prerelease_of(self, v: semver.Version) -> bool:
        return (
            self.pre is not None
            and self.patch is not None
            and (v.major, v.minor, v.patch) == (self.major, self.minor, self.patch)
        )


class VersionReq:
    """A parsed Cargo version requirement (all comparators must match)."""

    def __init__(self, comparators: List[Comparator], source: str) -> None:
        self.comparators = comparators
        self.source = source

    def __repr__(self) -> str:
        return f"VersionReq({self.source!r})"

    @classmethod
    def parse(cls, value: str) -> "VersionReq":
        if not isinstance(value, str) or not value.strip():
            raise ValueError("empty version requirement")
        comparators = [_parse_comparator(part) for part in value.split(",")]
        return cls(comparators, value)

    def matches(self, version: semver.Version | str) -> bool:
        v = parse_version(version) if isinstance(version, str) else version
        if not all(c.matches(v) for c in self.comparators):
            return False
        # Pre-releases only match when a comparator names the same release.
        if v.prerelease:
            return any(c.allows_prerelease_of(v) for c in self.comparators)
        return True


def _parse_comparator(text: str) -> Comparator:
    m = _COMPARATOR_RE.match(text)
    if m is None:
        raise ValueError(f"invalid version requirement `{text.strip()}`")

    op = m.group("op")
    parts = [m.group("major"), m.group("minor"), m.group("patch")]
    pre = m.group("pre")

    wildcard_at = next((i for i, p in enumerate(parts) if p in _WILDCARDS), None)
    if wildcard_at is not None:
        if op not in (None, "="):
            raise ValueError(f"wildcard cannot be combined with `{op}` in `{text.strip()}`")
        if any(p is not None and p not in _WILDCARDS for p in parts[wildcard_at:]):
            raise ValueError(f"unexpected version after wildcard in `{text.strip()}`")
        if pre is not None:
            raise ValueError(f"wildcard cannot have a pre-release in `{text.strip()}`")
        if wildcard_at == 0:
            return Comparator(op="*", major=0)
        numbers = [int(p) for p in parts[:wildcard_at]]
        return Comparator("=", numbers[0], numbers[1] if len(numbers) > 1 else None)

    major = int(parts[0])
    minor = int(parts[1]) if parts[1] is not None else None
    patch = int(parts[2]) if parts[2] is not None else None
    if pre is not None and patch is None:
        raise ValueError(f"pre-release requires a full version in `{text.strip()}`")
    return Comparator(op or "^", major, minor, patch, pre)


def is_valid_requirement(value: str) -> bool:
    try:
        VersionReq.parse(value)
    except ValueError:
        return False
    return True
