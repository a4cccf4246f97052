from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from vsixm.exceptions import ValidationError

REGISTRY_FILE_NAME = "extensions.json"
TOMBSTONE_FILE_NAME = ".obsolete"
LOCK_FILE_NAME = ".ext-lock"

SUPPORTED_EDITORS = ("vscode", "cursor", "vscode-server", "vscode-remote")

_EDITOR_DATA_DIRS = {
    "vscode": ".vscode",
    "cursor": ".cursor",
    "vscode-server": ".vscode-server",
    "vscode-remote": ".vscode-remote",
}


@dataclass(frozen=True)
class EditorPaths:
    """Every on-disk location a batch touches, resolved once per batch."""

    editor: str
    extensions_dir: Path
    backup_dir: Path

    @property
    def registry_file(self) -> Path:
        return self.extensions_dir.joinpath(REGISTRY_FILE_NAME)

    @property
    def tombstone_file(self) -> Path:
        return self.extensions_dir.joinpath(TOMBSTONE_FILE_NAME)

    @property
    def lock_file(self) -> Path:
        return self.extensions_dir.joinpath(LOCK_FILE_NAME)


def detect_editor() -> str:
    """Return the editor whose extensions are managed when none is requested."""
    explicit_editor = os.environ.get("VSIXM_EDITOR", "").strip().lower()
    if explicit_editor:
        return explicit_editor

    if os.environ.get("VSCODE_AGENT_FOLDER", "").strip():
        return "vscode-remote"

    home = Path.home()
    # prefer Cursor when both are present
    for editor in ("cursor", "vscode", "vscode-server", "vscode-remote"):
        if home.joinpath(_EDITOR_DATA_DIRS[editor], "extensions").exists():
            return editor
    return "vscode"


def resolve_extensions_dir(editor: str) -> Path:
    explicit_dir = os.environ.get("VSIXM_EXTENSIONS_DIR", "").strip()
    if explicit_dir:
        return Path(explicit_dir).expanduser().resolve()

    agent_root = os.environ.get("VSCODE_AGENT_FOLDER", "").strip()
    if agent_root and editor == "vscode-remote":
        return Path(agent_root).expanduser().resolve().joinpath("extensions")

    if editor not in _EDITOR_DATA_DIRS:
        raise ValidationError(
            f"Unsupported editor {editor!r}, expected one of {', '.join(SUPPORTED_EDITORS)}"
        )
    return Path.home().joinpath(_EDITOR_DATA_DIRS[editor], "extensions").resolve()


def resolve_backup_dir() -> Path:
    explicit_dir = os.environ.get("VSIXM_BACKUP_DIR", "").strip()
    if explicit_dir:
        return Path(explicit_dir).expanduser().resolve()
    return Path.home().joinpath(".vsix-backups").resolve()


def resolve_editor_paths(
    editor: str = "auto",
    extensions_dir: str = "",
    backup_dir: str = "",
) -> EditorPaths:
    """Build the :class:`EditorPaths` for one batch from options and environment."""
    chosen = detect_editor() if editor in ("", "auto") else editor.lower()
    resolved_extensions = (
        Path(os.path.expandvars(extensions_dir)).expanduser().resolve()
        if extensions_dir
        else resolve_extensions_dir(chosen)
    )
    resolved_backups = (
        Path(os.path.expandvars(backup_dir)).expanduser().resolve()
        if backup_dir
        else resolve_backup_dir()
    )
    return EditorPaths(
        editor=chosen,
        extensions_dir=resolved_extensions,
        backup_dir=resolved_backups,
    )
