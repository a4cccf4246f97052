"""Runs planned changes through the worker pool, one retry chain per step.

Every unit (update, uninstall or download of one extension) produces exactly
one :class:`UnitOutcome`. Failures stay local to their unit; only an
``ABORT_BATCH`` intervention stops the pool from claiming more work.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Protocol, Sequence

from vsixm.backup import BackupService
from vsixm.direct_install import install_direct
from vsixm.editor_cli import CliResult, EditorCli
from vsixm.editor_paths import EditorPaths
from vsixm.exceptions import IncompatibleExtensionError, InstallError
from vsixm.executor import ConcurrentTaskExecutor
from vsixm.installed import find_install_dir
from vsixm.internal_config import (
    DEFAULT_EXECUTION_CONCURRENCY,
    DEFAULT_INSTALL_TIMEOUT_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_UNINSTALL_TIMEOUT_SECONDS,
    HTTP_STREAM_READ_TIMEOUT_SECONDS,
)
from vsixm.models import BackupRecord, ChangePlan, OutcomeStatus, UnitOutcome
from vsixm.reconciler import StateReconciler
from vsixm.registry_client import source_order
from vsixm.retry import Intervention, RetryChain, RetryContext, RetryResult

logger: logging.Logger = logging.getLogger(__name__)

COMPATIBILITY_MARKERS = ("not compatible with", "requires a newer version")
BATCH_ABORTED = "batch aborted"


class ExtensionFetcher(Protocol):
    def fetch(
        self,
        extension_id: str,
        version: str,
        source: str,
        target_dir: Path,
        timeout: float | None = None,
    ) -> Path: ...


@dataclass
class BulkOptions:
    editor: str = "vscode"
    binary: str = ""
    parallel: int = DEFAULT_EXECUTION_CONCURRENCY
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    timeout: float = DEFAULT_INSTALL_TIMEOUT_SECONDS
    source: str = "auto"
    prefer_prerelease: bool = False
    dry_run: bool = False
    backup: bool = True
    unattended: bool = False
    quiet: bool = False
    download_dir: Path | None = None


@dataclass
class _Unit:
    outcome: UnitOutcome
    intervention: Intervention = Intervention.CONTINUE


@dataclass
class _Fetched:
    path: Path | None = None
    attempts: int = 0
    strategy: str | None = None
    error: BaseException | None = None
    intervention: Intervention = Intervention.CONTINUE


def compatibility_reason(output: str) -> str:
    """Pull the human readable part out of an editor compatibility error."""
    text = output
    if "Error: " in text:
        text = text.split("Error: ", 1)[1]
    text = text.split(" at ", 1)[0]
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return lines[0] if lines else "Extension not compatible with current editor version"


def install_failure(result: CliResult) -> InstallError:
    """Translate a failed CLI install into the matching error kind."""
    parts = [part for part in (result.error, result.stderr, result.stdout) if part]
    for part in parts:
        if any(marker in part for marker in COMPATIBILITY_MARKERS):
            return IncompatibleExtensionError(compatibility_reason(part))
    detailed = "; ".join(dict.fromkeys(parts)) or "Install failed"
    return InstallError(f"{detailed} (exit code: {result.exit_code})")


class BulkExecutionCoordinator(object):
    def __init__(
        self,
        registry: ExtensionFetcher,
        cli: EditorCli,
        paths: EditorPaths,
        reconciler: StateReconciler,
        backups: BackupService | None = None,
        options: BulkOptions | None = None,
        chain: RetryChain | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.registry = registry
        self.cli = cli
        self.paths = paths
        self.reconciler = reconciler
        self.backups = backups
        self.options = options or BulkOptions()
        self.chain = chain or RetryChain(sleep=sleep)
        self.executor = ConcurrentTaskExecutor(concurrency=self.options.parallel, sleep=sleep)
        self.aborted = False
        self.backup_records: list[BackupRecord] = []
        self._lock = threading.Lock()

    def _metadata(self, **extra: Any) -> dict[str, Any]:
        return {"unattended": self.options.unattended, "quiet": self.options.quiet, **extra}

    def _run_units(
        self,
        items: Sequence[Any],
        work: Callable[[Any], _Unit],
        item_id: Callable[[Any], str],
    ) -> list[UnitOutcome]:
        self.aborted = False

        def _on_error(item: Any, exc: Exception) -> _Unit:
            outcome = UnitOutcome(
                id=item_id(item), status=OutcomeStatus.FAILED, error=f"{exc}"
            )
            return _Unit(outcome)

        report = self.executor.run(
            items,
            work,
            on_error=_on_error,
            should_abort=lambda unit: unit.intervention is Intervention.ABORT_BATCH,
        )
        self.aborted = report.aborted

        outcomes: dict[int, UnitOutcome] = {
            index: unit.outcome for index, unit in report.outcomes
        }
        for index in report.unclaimed:
            outcomes[index] = UnitOutcome(
                id=item_id(items[index]), status=OutcomeStatus.SKIPPED, error=BATCH_ABORTED
            )
        return [outcomes[index] for index in sorted(outcomes)]

    def _interrupted(
        self, outcome: UnitOutcome, intervention: Intervention, error: Any
    ) -> _Unit:
        if intervention is Intervention.SKIP_ITEM:
            outcome.status = OutcomeStatus.SKIPPED
            outcome.error = f"skipped by user: {error}"
        else:
            outcome.status = OutcomeStatus.FAILED
            outcome.error = f"aborted by user: {error}"
        return _Unit(outcome, intervention)

    # --- steps ---

    def _backup(self, plan: ChangePlan) -> BackupRecord | None:
        if self.backups is None or not self.options.backup:
            return None
        install_dir = find_install_dir(
            self.paths.extensions_dir, plan.id, plan.current_version
        )
        if install_dir is None:
            logger.debug(f"No install folder for {plan.id}, skipping backup")
            return None
        try:
            record = self.backups.backup(
                install_dir,
                plan.id,
                plan.current_version,
                self.paths.editor,
                note=f"Before update to {plan.target_version}",
            )
        except Exception as exc:
            logger.warning(f"Backup of {plan.id} failed, continuing without it: {exc}")
            return None
        with self._lock:
            self.backup_records.append(record)
        return record

    def _fetch(self, plan: ChangePlan, target_dir: Path) -> _Fetched:
        fetched = _Fetched()
        for source in source_order(self.options.source):
            result: RetryResult[Path] = self.chain.execute(
                lambda context, source=source: self.registry.fetch(
                    plan.id, plan.target_version, source, target_dir, timeout=context.timeout
                ),
                name=f"download {plan.id}@{plan.target_version} from {source}",
                max_attempts=self.options.max_attempts,
                timeout=HTTP_STREAM_READ_TIMEOUT_SECONDS,
                metadata=self._metadata(source=source),
            )
            fetched.attempts += result.attempts
            if result.strategy:
                fetched.strategy = result.strategy
            if result.intervention is not Intervention.CONTINUE:
                fetched.error = result.error
                fetched.intervention = result.intervention
                return fetched
            if result.success:
                fetched.path = result.value
                fetched.error = None
                return fetched
            fetched.error = result.error
            logger.warning(f"Download of {plan.id} from {source} failed: {result.error}")
        return fetched

    def _apply(self, plan: ChangePlan, vsix_path: Path, context: RetryContext) -> str:
        if context.metadata.get("skip_install"):
            return "download-only"

        if context.metadata.get("strategy") == "direct" or not self.options.binary:
            install_direct(self.paths.extensions_dir, plan.id, plan.target_version, vsix_path)
            return "direct"

        result = self.cli.install(
            self.options.binary,
            vsix_path,
            force_reinstall=True,
            timeout=context.timeout or self.options.timeout,
        )
        if not result.success:
            raise install_failure(result)
        return "cli"

    def _keep_download(self, vsix_path: Path) -> Path:
        target_dir = self.options.download_dir or self.paths.backup_dir.joinpath("downloads")
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir.joinpath(vsix_path.name)
        shutil.move(vsix_path, target)
        return target

    # --- units ---

    def _update_one(self, plan: ChangePlan, staging_dir: Path) -> _Unit:
        start = time.monotonic()
        outcome = UnitOutcome(
            id=plan.id,
            status=OutcomeStatus.FAILED,
            current_version=plan.current_version,
            target_version=plan.target_version,
        )

        def _done(unit: _Unit) -> _Unit:
            unit.outcome.elapsed_ms = int((time.monotonic() - start) * 1000)
            return unit

        if self.options.dry_run:
            outcome.status = OutcomeStatus.SKIPPED
            outcome.note = "dry run"
            logger.info(
                f"[dry run] would update {plan.id} "
                f"{plan.current_version} -> {plan.target_version}"
            )
            return _done(_Unit(outcome))

        if plan.current_version:
            logger.info(f"Updating {plan.id} {plan.current_version} -> {plan.target_version}")
        else:
            logger.info(f"Installing {plan.id}@{plan.target_version}")
        record = self._backup(plan)
        if record is not None:
            outcome.backup_ref = record.id

        fetched = self._fetch(plan, staging_dir)
        outcome.fetch_attempts = fetched.attempts
        outcome.strategy = fetched.strategy
        if fetched.intervention is not Intervention.CONTINUE:
            return _done(self._interrupted(outcome, fetched.intervention, fetched.error))
        if fetched.path is None:
            outcome.error = f"{fetched.error or 'Download failed'}"
            return _done(_Unit(outcome))

        vsix_path = fetched.path
        applied: RetryResult[str] = self.chain.execute(
            lambda context: self._apply(plan, vsix_path, context),
            name=f"install {plan.id}@{plan.target_version}",
            max_attempts=self.options.max_attempts,
            timeout=self.options.timeout,
            metadata=self._metadata(supports_download_only=True),
        )
        outcome.apply_attempts = applied.attempts
        if applied.strategy:
            outcome.strategy = applied.strategy

        if applied.intervention is not Intervention.CONTINUE:
            return _done(self._interrupted(outcome, applied.intervention, applied.error))
        if not applied.success:
            outcome.error = f"{applied.error or 'Install failed'}"
            logger.error(f"Failed to update {plan.id}: {outcome.error}")
            return _done(_Unit(outcome))

        if applied.value == "download-only":
            outcome.status = OutcomeStatus.DOWNLOADED
            outcome.file_path = f"{self._keep_download(vsix_path)}"
            logger.warning(
                f"{plan.id} was downloaded to {outcome.file_path}, install it manually"
            )
        else:
            outcome.status = OutcomeStatus.UPDATED
            logger.info(f"Updated {plan.id} to {plan.target_version}")
        return _done(_Unit(outcome))

    def _download_one(self, plan: ChangePlan, output_dir: Path) -> _Unit:
        start = time.monotonic()
        outcome = UnitOutcome(
            id=plan.id,
            status=OutcomeStatus.FAILED,
            current_version=plan.current_version,
            target_version=plan.target_version,
        )
        if self.options.dry_run:
            outcome.status = OutcomeStatus.SKIPPED
            outcome.note = "dry run"
            return _Unit(outcome)

        fetched = self._fetch(plan, output_dir)
        outcome.fetch_attempts = fetched.attempts
        outcome.strategy = fetched.strategy
        outcome.elapsed_ms = int((time.monotonic() - start) * 1000)
        if fetched.intervention is not Intervention.CONTINUE:
            return self._interrupted(outcome, fetched.intervention, fetched.error)
        if fetched.path is None:
            outcome.error = f"{fetched.error or 'Download failed'}"
            return _Unit(outcome)

        outcome.status = OutcomeStatus.DOWNLOADED
        outcome.file_path = f"{fetched.path}"
        logger.info(f"Downloaded {plan.id}@{plan.target_version} to {fetched.path}")
        return _Unit(outcome)

    def _uninstall_one(self, extension_id: str) -> _Unit:
        start = time.monotonic()
        outcome = UnitOutcome(id=extension_id, status=OutcomeStatus.UNINSTALLED)
        if self.options.dry_run:
            outcome.status = OutcomeStatus.SKIPPED
            outcome.note = "dry run"
            return _Unit(outcome)

        if self.options.binary:
            try:
                result = self.cli.uninstall(
                    self.options.binary,
                    extension_id,
                    timeout=DEFAULT_UNINSTALL_TIMEOUT_SECONDS,
                )
                if not result.success:
                    logger.warning(
                        f"Editor CLI could not uninstall {extension_id}: {result.error}"
                    )
            except Exception as exc:
                logger.warning(f"Editor CLI could not uninstall {extension_id}: {exc}")

        removed = self.reconciler.remove_extension_dirs(extension_id)
        if not removed:
            outcome.note = "already uninstalled (folder not found)"
        logger.info(f"Uninstalled {extension_id}")
        outcome.elapsed_ms = int((time.monotonic() - start) * 1000)
        return _Unit(outcome)

    # --- batch operations ---

    def update(self, plans: Sequence[ChangePlan]) -> list[UnitOutcome]:
        """Back up, download and install every plan; one outcome per plan."""
        self.backup_records = []
        with tempfile.TemporaryDirectory(prefix="vsixm-update.") as tmp_dir:
            staging_dir = Path(tmp_dir)
            outcomes = self._run_units(
                plans, lambda plan: self._update_one(plan, staging_dir), lambda plan: plan.id
            )

        updated = [o.id for o in outcomes if o.status is OutcomeStatus.UPDATED]
        if updated:
            self.reconciler.untombstone(updated)
        return outcomes

    def download(self, plans: Sequence[ChangePlan], output_dir: Path) -> list[UnitOutcome]:
        output_dir.mkdir(parents=True, exist_ok=True)
        return self._run_units(
            plans, lambda plan: self._download_one(plan, output_dir), lambda plan: plan.id
        )

    def uninstall(self, extension_ids: Sequence[str]) -> list[UnitOutcome]:
        """Remove the folders of every id, then update bookkeeping once."""
        outcomes = self._run_units(
            extension_ids, self._uninstall_one, lambda extension_id: extension_id
        )
        removed = [o.id for o in outcomes if o.status is OutcomeStatus.UNINSTALLED]
        if removed:
            self.reconciler.forget(removed)
        return outcomes
