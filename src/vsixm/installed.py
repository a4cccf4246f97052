from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

# for parsing package.json manifests (if they include comments or trailing commas)
import json5

from vsixm.models import InstalledItem

logger: logging.Logger = logging.getLogger(__name__)

EXTENSION_ID_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9\-]*\.[a-zA-Z0-9][a-zA-Z0-9\-.]*$")
# publisher.name-version, version starting with a digit
_DIRNAME_PATTERN = re.compile(r"^(?P<id>[^.]+\..+?)-(?P<version>\d.*)$")

MANIFEST_NAME = "package.json"


def is_valid_extension_id(extension_id: str) -> bool:
    return bool(EXTENSION_ID_PATTERN.match(extension_id))


def read_manifest(extension_dir: Path) -> dict[str, Any] | None:
    """Return the parsed manifest of an extension directory, or None."""
    manifest_path = extension_dir.joinpath(MANIFEST_NAME)
    if not manifest_path.is_file():
        return None
    try:
        manifest = json5.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.debug(f"Unreadable manifest {manifest_path}: {exc}")
        return None
    return manifest if isinstance(manifest, dict) else None


def manifest_id(manifest: dict[str, Any]) -> str:
    publisher = str(manifest.get("publisher") or "")
    name = str(manifest.get("name") or "")
    if not publisher or not name:
        return ""
    return f"{publisher}.{name}"


def parse_dirname(dirname: str) -> tuple[str, str]:
    """Split ``publisher.name-version`` into ``(id, version)``."""
    match = _DIRNAME_PATTERN.match(dirname)
    if not match:
        return ("", "")
    return (match.group("id"), match.group("version"))


def describe_extension_dir(extension_dir: Path) -> InstalledItem | None:
    if extension_dir.name.startswith(".") or not extension_dir.is_dir():
        return None

    manifest = read_manifest(extension_dir)
    if manifest is None:
        return None

    extension_id = manifest_id(manifest)
    if extension_id:
        version = str(manifest.get("version") or "unknown")
    else:
        extension_id, version = parse_dirname(extension_dir.name)
        if not extension_id:
            return None

    if not is_valid_extension_id(extension_id):
        logger.debug(f"Ignoring {extension_dir.name}: invalid extension id {extension_id!r}")
        return None
    return InstalledItem(id=extension_id, version=version, path=extension_dir)


def list_installed(extensions_dir: Path) -> list[InstalledItem]:
    """Return every extension found under ``extensions_dir``, duplicates included."""
    if not extensions_dir.is_dir():
        return []

    installed: list[InstalledItem] = []
    for entry in sorted(extensions_dir.iterdir(), key=lambda p: p.name):
        item = describe_extension_dir(entry)
        if item is not None:
            installed.append(item)
    logger.debug(f"Found {len(installed)} extension(s) in {extensions_dir}")
    return installed


def dirname_matches_id(dirname: str, extension_id: str) -> bool:
    """True for `<id>-<version>` folder names, compared case-insensitively."""
    prefix = f"{extension_id.lower()}-"
    lowered = dirname.lower()
    return lowered.startswith(prefix) and lowered[len(prefix) : len(prefix) + 1].isdigit()


def find_install_dir(extensions_dir: Path, extension_id: str, version: str = "") -> Path | None:
    """Locate the directory currently holding ``extension_id``."""
    if not extensions_dir.is_dir():
        return None

    exact = extensions_dir.joinpath(f"{extension_id}-{version}")
    if version and exact.is_dir():
        return exact

    for entry in sorted(extensions_dir.iterdir(), key=lambda p: p.name):
        if entry.is_dir() and dirname_matches_id(entry.name, extension_id):
            return entry
    return None
