from __future__ import annotations

import json
import zipfile
from pathlib import Path
from typing import Callable

import pytest

from vsixm.editor_paths import EditorPaths


def write_extension(
    extensions_dir: Path,
    extension_id: str,
    version: str,
    dirname: str = "",
    manifest: dict | None = None,
) -> Path:
    """Create ``<extensions_dir>/<id>-<version>`` with a package.json."""
    publisher, name = extension_id.split(".", 1)
    folder = extensions_dir.joinpath(dirname or f"{extension_id}-{version}")
    folder.mkdir(parents=True, exist_ok=True)
    payload = (
        manifest
        if manifest is not None
        else {"publisher": publisher, "name": name, "version": version}
    )
    folder.joinpath("package.json").write_text(json.dumps(payload), encoding="utf-8")
    return folder


def write_vsix(path: Path, extension_id: str, version: str) -> Path:
    publisher, name = extension_id.split(".", 1)
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr(
            "extension/package.json",
            json.dumps({"publisher": publisher, "name": name, "version": version}),
        )
        archive.writestr("extension/out/extension.js", "module.exports = {};\n")
        archive.writestr("extension.vsixmanifest", "<PackageManifest/>")
    return path


@pytest.fixture
def extensions_dir(tmp_path: Path) -> Path:
    path = tmp_path.joinpath("extensions")
    path.mkdir()
    return path


@pytest.fixture
def paths(tmp_path: Path, extensions_dir: Path) -> EditorPaths:
    return EditorPaths(
        editor="vscode",
        extensions_dir=extensions_dir,
        backup_dir=tmp_path.joinpath("backups"),
    )


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]) -> Callable[[float], None]:
    return sleeps.append


@pytest.fixture
def make_extension() -> Callable[..., Path]:
    return write_extension


@pytest.fixture
def make_vsix() -> Callable[[Path, str, str], Path]:
    return write_vsix
