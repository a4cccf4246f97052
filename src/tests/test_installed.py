from __future__ import annotations

from pathlib import Path

from vsixm.installed import (
    dirname_matches_id,
    find_install_dir,
    is_valid_extension_id,
    list_installed,
    parse_dirname,
    read_manifest,
)
from vsixm.models import InstalledItem


def test_is_valid_extension_id() -> None:
    assert is_valid_extension_id("ms-python.python")
    assert is_valid_extension_id("pub.name.with.dots")
    assert not is_valid_extension_id("nodot")
    assert not is_valid_extension_id(".leading")
    assert not is_valid_extension_id("pub.")
    assert not is_valid_extension_id("pub name.x")


def test_read_manifest_accepts_comments_and_trailing_commas(tmp_path: Path) -> None:
    tmp_path.joinpath("package.json").write_text(
        '{\n  // generated\n  "publisher": "pub",\n  "name": "a",\n}\n', encoding="utf-8"
    )

    assert read_manifest(tmp_path) == {"publisher": "pub", "name": "a"}


def test_read_manifest_returns_none_for_garbage(tmp_path: Path) -> None:
    tmp_path.joinpath("package.json").write_text("{not json", encoding="utf-8")

    assert read_manifest(tmp_path) is None
    assert read_manifest(tmp_path.joinpath("missing")) is None


def test_parse_dirname() -> None:
    assert parse_dirname("ms-python.python-2024.1.0") == ("ms-python.python", "2024.1.0")
    assert parse_dirname("pub.some-name-1.2.3-universal") == ("pub.some-name", "1.2.3-universal")
    assert parse_dirname("not-an-extension") == ("", "")


def test_dirname_matches_id_requires_version_suffix() -> None:
    assert dirname_matches_id("Pub.A-1.0.0", "pub.a")
    assert not dirname_matches_id("pub.a-extra-1.0.0", "pub.a")
    assert not dirname_matches_id("pub.ab-1.0.0", "pub.a")


def test_list_installed_reads_manifests(extensions_dir: Path, make_extension) -> None:
    make_extension(extensions_dir, "pub.b", "2.0.0")
    make_extension(extensions_dir, "pub.a", "1.0.0")
    make_extension(extensions_dir, "pub.a", "1.2.0")
    extensions_dir.joinpath(".hidden-dir").mkdir()
    extensions_dir.joinpath("no-manifest").mkdir()
    extensions_dir.joinpath("extensions.json").write_text("[]", encoding="utf-8")

    installed = list_installed(extensions_dir)

    assert [(item.id, item.version) for item in installed] == [
        ("pub.a", "1.0.0"),
        ("pub.a", "1.2.0"),
        ("pub.b", "2.0.0"),
    ]
    assert installed[0].path == extensions_dir.joinpath("pub.a-1.0.0")


def test_list_installed_falls_back_to_dirname(extensions_dir: Path, make_extension) -> None:
    make_extension(
        extensions_dir, "pub.c", "3.1.0", manifest={"version": "3.1.0", "displayName": "C"}
    )

    assert list_installed(extensions_dir) == [
        InstalledItem(id="pub.c", version="3.1.0", path=extensions_dir.joinpath("pub.c-3.1.0"))
    ]


def test_list_installed_missing_dir(tmp_path: Path) -> None:
    assert list_installed(tmp_path.joinpath("nope")) == []


def test_find_install_dir_prefers_exact_version(extensions_dir: Path, make_extension) -> None:
    older = make_extension(extensions_dir, "pub.a", "1.0.0")
    newer = make_extension(extensions_dir, "pub.a", "1.2.0")

    assert find_install_dir(extensions_dir, "pub.a", "1.2.0") == newer
    assert find_install_dir(extensions_dir, "pub.a", "9.9.9") == older
    assert find_install_dir(extensions_dir, "PUB.A") == older
    assert find_install_dir(extensions_dir, "pub.zzz") is None
