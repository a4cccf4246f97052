from __future__ import annotations

import datetime
import enum
import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any


class OutcomeStatus(str, enum.Enum):
    UPDATED = "updated"
    UP_TO_DATE = "up_to_date"
    SKIPPED = "skipped"
    FAILED = "failed"
    DOWNLOADED = "downloaded"
    UNINSTALLED = "uninstalled"


@dataclass(frozen=True)
class ExtensionSpec:
    extension_id: str
    pinned_version: str = ""


@dataclass(frozen=True)
class InstalledItem:
    id: str
    version: str
    path: Path | None = None


@dataclass(frozen=True)
class ChangePlan:
    id: str
    current_version: str
    target_version: str


@dataclass(frozen=True)
class BackupRecord:
    id: str
    extension_id: str
    extension_version: str
    editor: str
    backup_path: str
    original_path: str
    timestamp: str
    reason: str = "Manual backup"

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupRecord:
        return cls(
            id=str(data["id"]),
            extension_id=str(data["extension_id"]),
            extension_version=str(data.get("extension_version", "")),
            editor=str(data.get("editor", "")),
            backup_path=str(data.get("backup_path", "")),
            original_path=str(data.get("original_path", "")),
            timestamp=str(data.get("timestamp", "")),
            reason=str(data.get("reason", "Manual backup")),
        )


@dataclass
class UnitOutcome:
    """Terminal record for one unit of work; exactly one per planned item."""

    id: str
    status: OutcomeStatus
    current_version: str = ""
    target_version: str = ""
    error: str | None = None
    note: str | None = None
    elapsed_ms: int = 0
    backup_ref: str | None = None
    file_path: str | None = None
    strategy: str | None = None
    fetch_attempts: int = 0
    apply_attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        result = asdict(self)
        result["status"] = self.status.value
        return {key: value for key, value in result.items() if value is not None}


@dataclass
class Summary:
    total_detected: int = 0
    up_to_date: int = 0
    to_update: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    downloaded: int = 0
    uninstalled: int = 0
    items: list[UnitOutcome] = field(default_factory=list)
    backups: list[BackupRecord] = field(default_factory=list)
    elapsed_ms: int = 0
    aborted: bool = False

    def add(self, outcome: UnitOutcome) -> None:
        self.items.append(outcome)
        if outcome.status is OutcomeStatus.UPDATED:
            self.updated += 1
        elif outcome.status is OutcomeStatus.UP_TO_DATE:
            self.up_to_date += 1
        elif outcome.status is OutcomeStatus.SKIPPED:
            self.skipped += 1
        elif outcome.status is OutcomeStatus.FAILED:
            self.failed += 1
        elif outcome.status is OutcomeStatus.DOWNLOADED:
            self.downloaded += 1
        elif outcome.status is OutcomeStatus.UNINSTALLED:
            self.uninstalled += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_detected": self.total_detected,
            "up_to_date": self.up_to_date,
            "to_update": self.to_update,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "downloaded": self.downloaded,
            "uninstalled": self.uninstalled,
            "items": [item.to_dict() for item in self.items],
            "backups": [backup.to_dict() for backup in self.backups],
            "elapsed_ms": self.elapsed_ms,
            "aborted": self.aborted,
        }

    def write_json(self, path: Path, **extra: Any) -> Path:
        """Persist the summary for later auditing."""
        payload = {
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            **extra,
            **self.to_dict(),
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        return path
