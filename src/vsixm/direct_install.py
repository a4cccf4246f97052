from __future__ import annotations

import logging
import shutil
import stat
import tempfile
import zipfile
from pathlib import Path, PurePosixPath

from vsixm.exceptions import InstallError, ValidationError
from vsixm.installed import dirname_matches_id

logger: logging.Logger = logging.getLogger(__name__)

VSIX_PAYLOAD_DIR = "extension"


def _check_member(member: zipfile.ZipInfo) -> None:
    name = PurePosixPath(member.filename)
    if name.is_absolute() or ".." in name.parts:
        raise ValidationError(f"Refusing unsafe archive member: {member.filename}")
    mode = member.external_attr >> 16
    if stat.S_ISLNK(mode):
        raise ValidationError(f"Refusing symlink archive member: {member.filename}")


def extract_vsix(vsix_path: Path, target_path: Path) -> Path:
    """Unpack the ``extension/`` payload of a VSIX into ``target_path``."""
    try:
        archive = zipfile.ZipFile(vsix_path, "r")
    except (OSError, zipfile.BadZipFile) as exc:
        raise InstallError(f"Cannot open VSIX {vsix_path.name}: {exc}") from exc

    with archive, tempfile.TemporaryDirectory(
        prefix=".vsixm-extract.", dir=target_path.parent
    ) as tmp_dir:
        members = [
            member
            for member in archive.infolist()
            if member.filename.startswith(f"{VSIX_PAYLOAD_DIR}/")
        ]
        if not members:
            raise InstallError(f"{vsix_path.name} has no '{VSIX_PAYLOAD_DIR}/' folder")
        for member in members:
            _check_member(member)
        archive.extractall(tmp_dir, members=members)

        if target_path.exists():
            shutil.rmtree(target_path)
        shutil.move(Path(tmp_dir, VSIX_PAYLOAD_DIR), target_path)
    return target_path


def remove_sibling_versions(extensions_dir: Path, extension_id: str, keep: Path) -> list[Path]:
    """Delete other version folders of ``extension_id`` next to ``keep``."""
    removed: list[Path] = []
    for entry in extensions_dir.iterdir():
        if entry == keep or not entry.is_dir():
            continue
        if dirname_matches_id(entry.name, extension_id):
            shutil.rmtree(entry, ignore_errors=True)
            removed.append(entry)
            logger.debug(f"Removed previous version folder {entry}")
    return removed


def install_direct(
    extensions_dir: Path, extension_id: str, version: str, vsix_path: Path
) -> Path:
    """Install by extracting the VSIX, bypassing the editor CLI.

    Only the extension folder is written; ``extensions.json`` is left for
    the reconciler to rebuild once the batch is done.
    """
    extensions_dir.mkdir(parents=True, exist_ok=True)
    target_path = extensions_dir.joinpath(f"{extension_id}-{version}")
    logger.info(f"Installing {extension_id}@{version} directly into {target_path}")
    extract_vsix(vsix_path, target_path)
    remove_sibling_versions(extensions_dir, extension_id, keep=target_path)
    return target_path
