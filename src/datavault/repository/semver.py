"""Semantic version labels for dataset versions."""

from __future__ import annotations

import re
from dataclasses import dataclass

from datavault.exceptions import InvalidVersionError, VersionConflictError

# No build metadata (``+build.1``): labels double as tag names.
_SEMVER_RE = re.compile(
    r"(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<pre>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
)

ROOT_VERSION = "1.0.0"
TAG_PREFIX = "v"


@dataclass(frozen=True, order=False)
class SemVer:
    major: int
    minor: int
    patch: int
    prerelease: tuple[str, ...] = ()

    @classmethod
    def parse(cls, label: str) -> SemVer:
        """Parse *label*; raises :class:`InvalidVersionError` when malformed."""
        match = _SEMVER_RE.fullmatch(label) if isinstance(label, str) else None
        if match is None:
            raise InvalidVersionError(
                f"Invalid semantic version: {label!r}", details={"version": label}
            )
        pre = match.group("pre")
        return cls(
            major=int(match.group("major")),
            minor=int(match.group("minor")),
            patch=int(match.group("patch")),
            prerelease=tuple(pre.split(".")) if pre else (),
        )

    def _key(self) -> tuple[object, ...]:
        # A release sorts after all of its prereleases; numeric identifiers
        # sort before alphanumeric ones.
        pre: tuple[object, ...] = tuple(
            (0, int(p), "") if p.isdigit() else (1, 0, p) for p in self.prerelease
        )
        return (self.major, self.minor, self.patch, not self.prerelease, pre)

    def __lt__(self, other: SemVer) -> bool:
        return self._key() < other._key()

    def __le__(self, other: SemVer) -> bool:
        return self._key() <= other._key()

    def __gt__(self, other: SemVer) -> bool:
        return self._key() > other._key()

    def __ge__(self, other: SemVer) -> bool:
        return self._key() >= other._key()

    def bump_patch(self) -> SemVer:
        return SemVer(self.major, self.minor, self.patch + 1)

    def __str__(self) -> str:
        label = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            label += "-" + ".".join(self.prerelease)
        return label


def is_valid(label: str) -> bool:
    try:
        SemVer.parse(label)
    except InvalidVersionError:
        return False
    return True


def tag_name(version: str) -> str:
    """Annotated tag name for a version label (``1.2.0`` -> ``v1.2.0``)."""
    return f"{TAG_PREFIX}{version}"


def ensure_successor(candidate: str, head: str | None) -> SemVer:
    """Validate that *candidate* strictly succeeds *head*.

    Raises :class:`InvalidVersionError` for a malformed label and
    :class:`VersionConflictError` for a label that does not move the
    history forward.
    """
    parsed = SemVer.parse(candidate)
    if head is not None and not parsed > SemVer.parse(head):
        raise VersionConflictError(
            f"Version {candidate} must be greater than current version {head}",
            details={"version": candidate, "head": head},
        )
    return parsed
