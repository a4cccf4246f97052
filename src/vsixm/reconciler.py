"""Keeps ``extensions.json`` and ``.obsolete`` in line with the folders on disk.

Workers only ever add or remove extension folders. Everything touching the
editor's bookkeeping files happens here, once the pool has drained, so the
registry is rebuilt from what is actually installed instead of being patched
entry by entry.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import re
import shutil
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Callable, Iterable, Iterator

from vsixm.editor_paths import TOMBSTONE_FILE_NAME, EditorPaths
from vsixm.exceptions import StateLockError
from vsixm.installed import dirname_matches_id, manifest_id, read_manifest
from vsixm.internal_config import STATE_LOCK_ATTEMPTS, STATE_LOCK_DELAY_SECONDS

logger: logging.Logger = logging.getLogger(__name__)

TEMP_FILE_SUFFIXES = (".tmp", ".temp", ".vsctmp")
_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I
)


@dataclass
class ReconcileReport:
    recreated: list[str] = field(default_factory=list)
    removed_temporary: list[str] = field(default_factory=list)
    removed_corrupted: list[str] = field(default_factory=list)
    entries: int = 0


def _is_temporary_dir(name: str) -> bool:
    if name.startswith(".") and len(name) > 8 and not name.startswith(TOMBSTONE_FILE_NAME):
        return True
    return bool(_UUID_PATTERN.match(name))


def _has_important_files(path: Path) -> bool:
    try:
        return any(
            child.name == "package.json" or child.suffix in (".js", ".json")
            for child in path.iterdir()
        )
    except OSError:
        return True


class StateReconciler(object):
    """Owns every write to the bookkeeping files of one extensions directory."""

    def __init__(
        self,
        paths: EditorPaths,
        lock_attempts: int = STATE_LOCK_ATTEMPTS,
        lock_delay: float = STATE_LOCK_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.extensions_dir = paths.extensions_dir
        self.registry_file = paths.registry_file
        self.tombstone_file = paths.tombstone_file
        self.lock_file = paths.lock_file
        self.lock_attempts = lock_attempts
        self.lock_delay = lock_delay
        self.sleep = sleep
        self._thread_lock = threading.Lock()

    @contextlib.contextmanager
    def _locked(self) -> Iterator[None]:
        """Serialize bookkeeping changes within and across processes."""
        with self._thread_lock:
            self.extensions_dir.mkdir(parents=True, exist_ok=True)
            acquired = False
            for _ in range(self.lock_attempts):
                try:
                    fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                except FileExistsError:
                    self.sleep(self.lock_delay)
                    continue
                with os.fdopen(fd, "w") as f:
                    f.write(f"{os.getpid()}")
                acquired = True
                break
            if not acquired:
                raise StateLockError(
                    f"Could not acquire extensions metadata lock {self.lock_file}"
                )
            try:
                yield
            finally:
                self.lock_file.unlink(missing_ok=True)

    def _write_json_atomic(self, path: Path, data: Any) -> None:
        with NamedTemporaryFile(
            "w",
            encoding="utf-8",
            delete=False,
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
        ) as tmp_file:
            tmp_path = Path(tmp_file.name)
            tmp_file.write(json.dumps(data, indent=2))
        try:
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)

    def _read_json(self, path: Path, expected: type) -> Any:
        """Return the parsed file, or None when missing or of the wrong shape."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            return None
        return data if isinstance(data, expected) else None

    def _read_registry(self) -> list[dict[str, Any]]:
        entries = self._read_json(self.registry_file, list) or []
        return [entry for entry in entries if isinstance(entry, dict)]

    def _read_tombstones(self) -> dict[str, Any]:
        return self._read_json(self.tombstone_file, dict) or {}

    # --- reconcile steps, callers hold the lock ---

    def _ensure_bookkeeping(self) -> list[str]:
        recreated: list[str] = []
        if self._read_json(self.registry_file, list) is None:
            logger.warning(f"{self.registry_file} is missing or corrupt, recreating it")
            self._write_json_atomic(self.registry_file, [])
            recreated.append(self.registry_file.name)
        if self._read_json(self.tombstone_file, dict) is None:
            logger.debug(f"Recreating {self.tombstone_file}")
            self._write_json_atomic(self.tombstone_file, {})
            recreated.append(self.tombstone_file.name)
        return recreated

    def _cleanup_temporary(self) -> list[str]:
        removed: list[str] = []
        for entry in sorted(self.extensions_dir.iterdir(), key=lambda p: p.name):
            try:
                if entry.is_file() and entry.name.endswith(TEMP_FILE_SUFFIXES):
                    entry.unlink()
                elif (
                    entry.is_dir()
                    and _is_temporary_dir(entry.name)
                    and not _has_important_files(entry)
                ):
                    shutil.rmtree(entry)
                else:
                    continue
            except OSError as exc:
                logger.warning(f"Could not remove temporary entry {entry}: {exc}")
                continue
            logger.debug(f"Removed temporary entry {entry.name}")
            removed.append(entry.name)
        return removed

    def _remove_corrupted(self) -> list[str]:
        removed: list[str] = []
        for entry in sorted(self.extensions_dir.iterdir(), key=lambda p: p.name):
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            manifest = read_manifest(entry)
            if manifest is not None and manifest.get("name") and manifest.get("publisher"):
                continue
            logger.warning(f"Removing corrupted extension folder {entry.name}")
            shutil.rmtree(entry, ignore_errors=True)
            removed.append(entry.name)
        return removed

    def _rebuild_registry(self) -> int:
        previous: dict[tuple[str, str], Any] = {}
        for entry in self._read_registry():
            identifier = entry.get("identifier") or {}
            key = (str(identifier.get("id", "")).lower(), str(entry.get("version", "")))
            if entry.get("metadata") is not None:
                previous[key] = entry["metadata"]

        entries: list[dict[str, Any]] = []
        for folder in sorted(self.extensions_dir.iterdir(), key=lambda p: p.name):
            if not folder.is_dir() or folder.name.startswith("."):
                continue
            manifest = read_manifest(folder)
            if manifest is None:
                continue
            extension_id = manifest_id(manifest)
            version = str(manifest.get("version") or "")
            if not extension_id or not version:
                continue

            metadata = previous.get((extension_id.lower(), version))
            if metadata is None:
                metadata = {
                    "installedTimestamp": int(folder.stat().st_mtime * 1000),
                    "pinned": True,
                    "source": "marketplace",
                }
            entries.append(
                {
                    "identifier": {"id": extension_id},
                    "version": version,
                    "location": {"$mid": 1, "path": f"{folder}", "scheme": "file"},
                    "relativeLocation": folder.name,
                    "metadata": metadata,
                }
            )

        self._write_json_atomic(self.registry_file, entries)
        logger.debug(f"Rebuilt {self.registry_file} with {len(entries)} entries")
        return len(entries)

    # --- public API ---

    def ensure_bookkeeping(self) -> list[str]:
        with self._locked():
            return self._ensure_bookkeeping()

    def cleanup_temporary(self) -> list[str]:
        with self._locked():
            return self._cleanup_temporary()

    def remove_corrupted(self) -> list[str]:
        with self._locked():
            return self._remove_corrupted()

    def rebuild_registry(self) -> int:
        with self._locked():
            return self._rebuild_registry()

    def reconcile(self) -> ReconcileReport:
        """Repair bookkeeping, sweep leftovers and rebuild the registry from disk."""
        with self._locked():
            report = ReconcileReport()
            report.recreated = self._ensure_bookkeeping()
            report.removed_temporary = self._cleanup_temporary()
            report.removed_corrupted = self._remove_corrupted()
            report.entries = self._rebuild_registry()
        logger.info(
            f"Reconciled {self.extensions_dir}: {report.entries} extension(s) registered"
        )
        return report

    def find_extension_dirs(self, extension_id: str) -> list[Path]:
        if not self.extensions_dir.is_dir():
            return []
        found: list[Path] = []
        for entry in sorted(self.extensions_dir.iterdir(), key=lambda p: p.name):
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            if dirname_matches_id(entry.name, extension_id):
                found.append(entry)
                continue
            manifest = read_manifest(entry)
            if manifest is not None and manifest_id(manifest).lower() == extension_id.lower():
                found.append(entry)
        return found

    def remove_extension_dirs(self, extension_id: str) -> list[Path]:
        """Delete every folder holding ``extension_id``; bookkeeping is left alone."""
        removed: list[Path] = []
        for folder in self.find_extension_dirs(extension_id):
            shutil.rmtree(folder)
            logger.debug(f"Removed {folder}")
            removed.append(folder)
        return removed

    def forget(self, extension_ids: Iterable[str]) -> None:
        """Drop registry entries and tombstone the ids. Failures are only logged."""
        lowered = {extension_id.lower(): extension_id for extension_id in extension_ids}
        if not lowered:
            return
        try:
            with self._locked():
                entries = [
                    entry
                    for entry in self._read_registry()
                    if str((entry.get("identifier") or {}).get("id", "")).lower()
                    not in lowered
                ]
                self._write_json_atomic(self.registry_file, entries)
                tombstones = self._read_tombstones()
                for extension_id in lowered.values():
                    tombstones[extension_id] = True
                self._write_json_atomic(self.tombstone_file, tombstones)
        except (OSError, StateLockError) as exc:
            logger.warning(f"Could not update extension bookkeeping: {exc}")

    def untombstone(self, extension_ids: Iterable[str]) -> None:
        lowered = {extension_id.lower() for extension_id in extension_ids}
        if not lowered:
            return
        try:
            with self._locked():
                tombstones = self._read_tombstones()
                kept = {k: v for k, v in tombstones.items() if k.lower() not in lowered}
                if len(kept) != len(tombstones):
                    self._write_json_atomic(self.tombstone_file, kept)
        except (OSError, StateLockError) as exc:
            logger.warning(f"Could not update {self.tombstone_file}: {exc}")

    def uninstall(self, extension_id: str) -> list[Path]:
        """Remove the folders of ``extension_id``, then forget it."""
        removed = self.remove_extension_dirs(extension_id)
        self.forget([extension_id])
        return removed
