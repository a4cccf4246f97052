from __future__ import annotations

import functools
import itertools

import pytest

from vsixm.models import InstalledItem
from vsixm.versioning import compare_versions, deduplicate, is_newer, parse_version


def test_parse_version_handles_build_and_prerelease() -> None:
    parsed = parse_version("1.2.3.4-beta.1")

    assert parsed is not None
    assert parsed.numbers == (1, 2, 3, 4)
    assert parsed.prerelease == "beta.1"


def test_parse_version_defaults_build_to_zero() -> None:
    parsed = parse_version("2.0.1")

    assert parsed is not None
    assert parsed.build == 0
    assert parsed.prerelease is None


@pytest.mark.parametrize("value", ["", "1.2", "v1.2.3", "latest", "1.2.x"])
def test_parse_version_rejects_malformed_input(value: str) -> None:
    assert parse_version(value) is None


@pytest.mark.parametrize(
    ("candidate", "current", "expected"),
    [
        ("1.2.0", "1.1.9", True),
        ("1.10.0", "1.9.0", True),
        ("2.0.0", "10.0.0", False),
        ("1.0.0.1", "1.0.0", True),
        ("1.0.0", "1.0.0-rc.1", True),
        ("1.0.0-rc.1", "1.0.0", False),
        ("1.0.0-rc.2", "1.0.0-rc.1", True),
        ("1.0.0", "1.0.0.0", False),
    ],
)
def test_is_newer_compares_fields_in_order(
    candidate: str, current: str, expected: bool
) -> None:
    assert is_newer(candidate, current) is expected


def test_is_newer_falls_back_to_inequality_for_unparseable_versions() -> None:
    assert is_newer("nightly", "1.0.0") is True
    assert is_newer("1.0.0", "unknown") is True
    assert is_newer("nightly", "nightly") is False


def test_is_newer_is_antisymmetric_for_distinct_versions() -> None:
    versions = ["0.0.1", "0.1.0", "1.0.0", "1.0.1", "1.2.0", "2.0.0", "10.0.0"]

    for left, right in itertools.permutations(versions, 2):
        assert is_newer(left, right) != is_newer(right, left), (left, right)


@pytest.mark.parametrize("value", ["0.0.0", "1.2.3", "1.2.3.4", "1.0.0-alpha"])
def test_is_newer_is_irreflexive(value: str) -> None:
    assert is_newer(value, value) is False


def test_compare_versions_sorts_release_lists() -> None:
    versions = ["1.0.0", "1.10.0", "1.2.0", "1.2.0-pre"]

    ordered = sorted(versions, key=functools.cmp_to_key(compare_versions))

    assert ordered == ["1.0.0", "1.2.0-pre", "1.2.0", "1.10.0"]


def test_deduplicate_keeps_highest_version() -> None:
    items = [
        InstalledItem(id="pub.a", version="1.0.0"),
        InstalledItem(id="pub.b", version="0.1.0"),
        InstalledItem(id="pub.a", version="1.2.0"),
    ]

    result = deduplicate(items)

    assert result == [
        InstalledItem(id="pub.a", version="1.2.0"),
        InstalledItem(id="pub.b", version="0.1.0"),
    ]


def test_deduplicate_keeps_first_item_on_ties() -> None:
    first = InstalledItem(id="pub.a", version="1.0.0", path=None)
    second = InstalledItem(id="pub.a", version="1.0.0.0", path=None)

    assert deduplicate([first, second]) == [first]


def test_deduplicate_is_idempotent() -> None:
    items = [
        InstalledItem(id="pub.a", version="1.0.0"),
        InstalledItem(id="pub.a", version="2.0.0"),
        InstalledItem(id="pub.c", version="0.3.0"),
        InstalledItem(id="pub.c", version="0.2.0"),
    ]

    once = deduplicate(items)

    assert deduplicate(once) == once
