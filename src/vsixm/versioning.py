from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, TypeVar

_VERSION_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)(?:\.(\d+))?(?:-(.+))?$")


@dataclass(frozen=True)
class ParsedVersion:
    major: int
    minor: int
    patch: int
    build: int = 0
    prerelease: str | None = None

    @property
    def numbers(self) -> tuple[int, int, int, int]:
        return (self.major, self.minor, self.patch, self.build)


def parse_version(value: str) -> ParsedVersion | None:
    """Parse ``major.minor.patch[.build][-prerelease]``, or return None."""
    if not isinstance(value, str):
        return None
    match = _VERSION_RE.match(value.strip())
    if not match:
        return None
    major, minor, patch, build, prerelease = match.groups()
    return ParsedVersion(
        major=int(major),
        minor=int(minor),
        patch=int(patch),
        build=int(build) if build else 0,
        prerelease=prerelease or None,
    )


def compare_versions(left: str, right: str) -> int:
    """Return 1 if left is newer, -1 if right is newer, 0 otherwise."""
    if is_newer(left, right):
        return 1
    if is_newer(right, left):
        return -1
    return 0


def is_newer(candidate: str, current: str) -> bool:
    """Decide whether ``candidate`` supersedes ``current``.

    Unparseable input falls back to plain inequality, so anything that is not
    identical counts as newer and forces a conservative update.
    """
    if candidate == current:
        return False

    new = parse_version(candidate)
    old = parse_version(current)
    if new is None or old is None:
        return candidate != current

    if new.numbers != old.numbers:
        return new.numbers > old.numbers

    # same numbers: a release beats any prerelease of it
    if new.prerelease is None and old.prerelease is not None:
        return True
    if new.prerelease is not None and old.prerelease is None:
        return False
    if new.prerelease is not None and old.prerelease is not None:
        return new.prerelease > old.prerelease
    return False


_Item = TypeVar("_Item")


def deduplicate(items: Iterable[_Item]) -> list[_Item]:
    """Collapse items sharing an ``id`` to the one with the highest ``version``.

    Ties keep the first item seen; first-seen order of ids is preserved.
    """
    selected: dict[str, _Item] = {}
    for item in items:
        item_id: str = getattr(item, "id")
        existing = selected.get(item_id)
        if existing is None or is_newer(
            getattr(item, "version"), getattr(existing, "version")
        ):
            selected[item_id] = item
    return list(selected.values())
