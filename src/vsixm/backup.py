from __future__ import annotations

import datetime
import json
import logging
import shutil
import threading
import time
from pathlib import Path
from typing import Any

from vsixm.exceptions import ExtensionNotFoundError, InstallError, ValidationError
from vsixm.models import BackupRecord

logger: logging.Logger = logging.getLogger(__name__)

HISTORY_FILE_NAME = "backup-history.json"
HISTORY_VERSION = "1.0"


def _empty_history() -> dict[str, Any]:
    return {"version": HISTORY_VERSION, "backups": []}


class BackupService(object):
    """Copies extension folders aside before they are replaced.

    Layout: ``<root>/<editor>/<id>-<version>-<ms>`` plus one
    ``backup-history.json`` at the root listing every copy.
    """

    def __init__(self, backup_root: Path) -> None:
        self.backup_root = backup_root
        self.history_file = backup_root.joinpath(HISTORY_FILE_NAME)
        # history is read-modify-write, workers back up concurrently
        self._lock = threading.Lock()

    def _load_history(self) -> dict[str, Any]:
        self.backup_root.mkdir(parents=True, exist_ok=True)
        if not self.history_file.is_file():
            history = _empty_history()
            self._save_history(history)
            return history

        try:
            with open(self.history_file, "r", encoding="utf-8") as f:
                history = json.load(f)
        except (OSError, ValueError) as exc:
            logger.warning(
                f"Backup history {self.history_file} is corrupt ({exc}), starting fresh"
            )
            history = None

        if (
            not isinstance(history, dict)
            or history.get("version") != HISTORY_VERSION
            or not isinstance(history.get("backups"), list)
        ):
            history = _empty_history()
            self._save_history(history)
        return history

    def _save_history(self, history: dict[str, Any]) -> None:
        with open(self.history_file, "w", encoding="utf-8") as f:
            json.dump(history, f, indent=2)

    def _records(self, history: dict[str, Any]) -> list[BackupRecord]:
        records: list[BackupRecord] = []
        for entry in history["backups"]:
            try:
                records.append(BackupRecord.from_dict(entry))
            except (KeyError, TypeError):
                logger.debug(f"Ignoring malformed backup entry: {entry!r}")
        return records

    def backup(
        self,
        install_path: Path,
        extension_id: str,
        version: str,
        editor: str,
        note: str = "",
    ) -> BackupRecord:
        """Copy ``install_path`` into the backup root and record it."""
        if not install_path.is_dir():
            raise ExtensionNotFoundError(f"Nothing to back up at {install_path}")

        backup_id = f"{extension_id}-{version}-{time.time_ns() // 1_000_000}"
        backup_path = self.backup_root.joinpath(editor, backup_id)
        backup_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            # copytree refuses to overwrite an existing backup
            shutil.copytree(install_path, backup_path, symlinks=True)
        except (OSError, shutil.Error) as exc:
            shutil.rmtree(backup_path, ignore_errors=True)
            raise InstallError(f"Failed to create backup: {exc}") from exc

        record = BackupRecord(
            id=backup_id,
            extension_id=extension_id,
            extension_version=version,
            editor=editor,
            backup_path=f"{backup_path}",
            original_path=f"{install_path}",
            timestamp=datetime.datetime.now(datetime.timezone.utc).isoformat(),
            reason=note or "Manual backup",
        )

        with self._lock:
            history = self._load_history()
            history["backups"].append(record.to_dict())
            self._save_history(history)

        logger.info(f"Backed up {extension_id}@{version} to {backup_path}")
        return record

    def list_backups(self, extension_id: str | None = None) -> list[BackupRecord]:
        """Return recorded backups, newest first."""
        with self._lock:
            records = self._records(self._load_history())
        if extension_id:
            records = [r for r in records if r.extension_id.lower() == extension_id.lower()]
        return sorted(records, key=lambda r: r.timestamp, reverse=True)

    def latest_backup(self, extension_id: str) -> BackupRecord | None:
        records = self.list_backups(extension_id)
        return records[0] if records else None

    def restore(self, backup_id: str, force: bool = False) -> BackupRecord:
        """Copy a backup back to where it was taken from."""
        with self._lock:
            records = self._records(self._load_history())

        record = next((r for r in records if r.id == backup_id), None)
        if record is None:
            raise ExtensionNotFoundError(f"Backup not found: {backup_id}")

        source = Path(record.backup_path)
        target = Path(record.original_path)
        if not source.is_dir():
            raise ExtensionNotFoundError(f"Backup files missing: {source}")

        if target.exists():
            if not force:
                raise ValidationError(
                    f"Extension already exists at {target}. Use --force to overwrite."
                )
            shutil.rmtree(target)

        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(source, target, symlinks=True)
        logger.info(
            f"Restored {record.extension_id}@{record.extension_version} from {backup_id}"
        )
        return record
