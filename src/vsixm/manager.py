#! /bin/env python3
from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Callable, Iterable, Sequence

import typer

from vsixm.backup import BackupService
from vsixm.coordinator import BulkExecutionCoordinator, BulkOptions
from vsixm.editor_cli import EditorCli, resolve_binary
from vsixm.editor_paths import EditorPaths, resolve_editor_paths
from vsixm.exceptions import (
    BatchAbortedError,
    ExtensionNotFoundError,
    ValidationError,
    VsixmError,
)
from vsixm.extension_list import format_extension_list, read_extension_list
from vsixm.installed import is_valid_extension_id, list_installed
from vsixm.internal_config import (
    DEFAULT_EXECUTION_CONCURRENCY,
    DEFAULT_INSTALL_TIMEOUT_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
)
from vsixm.models import (
    BackupRecord,
    ChangePlan,
    ExtensionSpec,
    InstalledItem,
    OutcomeStatus,
    Summary,
    UnitOutcome,
)
from vsixm.planner import UpdatePlanner, validate_plans
from vsixm.reconciler import ReconcileReport, StateReconciler
from vsixm.registry_client import RegistryClient
from vsixm.retry import Intervention, Prompter, RetryChain
from vsixm.versioning import deduplicate

app: typer.Typer = typer.Typer()
logger: logging.Logger = logging.getLogger(__name__)


def parse_extension_spec(value: str) -> ExtensionSpec:
    """Parse ``publisher.name`` or ``publisher.name@version``."""
    extension_id, _, version = value.strip().partition("@")
    if not is_valid_extension_id(extension_id):
        raise ValidationError(
            f"Invalid extension {value!r}, expected 'publisher.name[@version]'"
        )
    return ExtensionSpec(extension_id=extension_id, pinned_version=version)


def order_outcomes(outcomes: Iterable[UnitOutcome], ids: Sequence[str]) -> list[UnitOutcome]:
    """Sort outcomes into the order their ids were given in."""
    position = {extension_id.lower(): index for index, extension_id in enumerate(ids)}
    return sorted(
        outcomes, key=lambda outcome: position.get(outcome.id.lower(), len(position))
    )


def prompt_intervention(task_name: str, error: BaseException) -> Intervention:
    """Ask on the terminal whether to retry, skip the item or abort the batch."""
    typer.echo(f"{task_name} failed: {error}", err=True)
    choices = {
        "r": Intervention.CONTINUE,
        "s": Intervention.SKIP_ITEM,
        "a": Intervention.ABORT_BATCH,
    }
    while True:
        answer = typer.prompt("[r]etry, [s]kip or [a]bort", default="r")
        choice = choices.get(answer.strip().lower()[:1])
        if choice is not None:
            return choice


class ExtensionBatchManager(object):
    """Update, uninstall or download many extensions in one batch."""

    def __init__(
        self,
        paths: EditorPaths,
        options: BulkOptions | None = None,
        registry: RegistryClient | None = None,
        cli: EditorCli | None = None,
        backups: BackupService | None = None,
        reconciler: StateReconciler | None = None,
        prompter: Prompter | None = None,
        summary_path: Path | None = None,
        installed_source: Callable[[Path], list[InstalledItem]] = list_installed,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.paths = paths
        self.options = options or BulkOptions(editor=paths.editor)
        self.registry = registry or RegistryClient()
        self.cli = cli or EditorCli()
        self.backups = backups or BackupService(paths.backup_dir)
        self.reconciler = reconciler or StateReconciler(paths)
        self.prompter = None if self.options.unattended else prompter
        self.summary_path = summary_path
        self.installed_source = installed_source
        self.sleep = sleep

    def planner(self) -> UpdatePlanner:
        return UpdatePlanner(
            self.registry,
            prefer_prerelease=self.options.prefer_prerelease,
            source=self.options.source,
            sleep=self.sleep,
        )

    def coordinator(self) -> BulkExecutionCoordinator:
        return BulkExecutionCoordinator(
            registry=self.registry,
            cli=self.cli,
            paths=self.paths,
            reconciler=self.reconciler,
            backups=self.backups,
            options=self.options,
            chain=RetryChain(prompter=self.prompter, sleep=self.sleep),
            sleep=self.sleep,
        )

    def reconcile_quietly(self) -> ReconcileReport | None:
        if self.options.dry_run:
            return None
        try:
            return self.reconciler.reconcile()
        except (OSError, VsixmError) as exc:
            logger.warning(f"Could not reconcile {self.paths.extensions_dir}: {exc}")
            return None

    def reconcile(self) -> ReconcileReport:
        return self.reconciler.reconcile()

    def _finish(
        self,
        summary: Summary,
        outcomes: Iterable[UnitOutcome],
        ids: Sequence[str],
        coordinator: BulkExecutionCoordinator,
        start: float,
    ) -> Summary:
        for outcome in order_outcomes(outcomes, ids):
            summary.add(outcome)
        summary.backups = list(coordinator.backup_records)
        summary.aborted = coordinator.aborted
        summary.elapsed_ms = int((time.monotonic() - start) * 1000)

        if self.summary_path is not None:
            summary.write_json(
                self.summary_path, editor=self.paths.editor, binary=self.options.binary
            )
            logger.info(f"Summary written to {self.summary_path}")
        if summary.aborted:
            raise BatchAbortedError("Batch aborted by user", summary=summary)
        return summary

    def update_installed(self, selection: Sequence[str] | None = None) -> Summary:
        """Update every installed extension, or only ``selection``."""
        start = time.monotonic()
        self.reconcile_quietly()

        installed = self.installed_source(self.paths.extensions_dir)
        result = self.planner().plan(installed, selection=selection)

        summary = Summary(total_detected=result.total_scanned, to_update=len(result.plans))
        coordinator = self.coordinator()
        outcomes = coordinator.update(result.plans) if result.plans else []
        self.reconcile_quietly()

        ids = list(selection) if selection else [item.id for item in deduplicate(installed)]
        return self._finish(
            summary,
            [*result.up_to_date, *result.failed, *outcomes],
            ids,
            coordinator,
            start,
        )

    def uninstall(
        self, extension_ids: Sequence[str] = (), all_installed: bool = False
    ) -> Summary:
        start = time.monotonic()
        if all_installed:
            installed = deduplicate(self.installed_source(self.paths.extensions_dir))
            extension_ids = [item.id for item in installed]
        for extension_id in extension_ids:
            if not is_valid_extension_id(extension_id):
                raise ValidationError(f"Invalid extension id {extension_id!r}")

        ids = list(dict.fromkeys(extension_ids))
        summary = Summary(total_detected=len(ids))
        coordinator = self.coordinator()
        outcomes = coordinator.uninstall(ids)
        self.reconcile_quietly()
        return self._finish(summary, outcomes, ids, coordinator, start)

    def _plan_specs(
        self, specs: Sequence[str], installed: dict[str, str] | None = None
    ) -> tuple[list[str], list[ChangePlan], list[UnitOutcome]]:
        """Parse ``publisher.name[@version]`` specs and resolve unpinned versions.

        Returns the deduplicated ids, the plans and a failed outcome for every
        spec whose version could not be resolved. ``installed`` maps lowercase
        ids to their installed version and becomes each plan's current version.
        """
        installed = installed or {}
        parsed: list[ExtensionSpec] = []
        seen: set[str] = set()
        for value in specs:
            spec = parse_extension_spec(value)
            if spec.extension_id.lower() not in seen:
                seen.add(spec.extension_id.lower())
                parsed.append(spec)

        plans: list[ChangePlan] = []
        failed: list[UnitOutcome] = []
        unpinned = [spec.extension_id for spec in parsed if not spec.pinned_version]
        resolved = {r.id: r for r in self.planner().resolve_versions(unpinned)}

        for spec in parsed:
            version = spec.pinned_version
            if not version:
                resolution = resolved[spec.extension_id]
                if resolution.error or not resolution.version:
                    failed.append(
                        UnitOutcome(
                            id=spec.extension_id,
                            status=OutcomeStatus.FAILED,
                            error=resolution.error or "No version available",
                        )
                    )
                    continue
                version = resolution.version
            plans.append(
                ChangePlan(
                    id=spec.extension_id,
                    current_version=installed.get(spec.extension_id.lower(), ""),
                    target_version=version,
                )
            )
        validate_plans(plans)
        return [spec.extension_id for spec in parsed], plans, failed

    def install(self, specs: Sequence[str], force: bool = False) -> Summary:
        """Install ``publisher.name[@version]`` specs, skipping ones already in place.

        An extension already installed at the requested version (or at any
        version when none is pinned) is reported up to date unless ``force``.
        """
        start = time.monotonic()
        self.reconcile_quietly()
        installed = {
            item.id.lower(): item.version
            for item in deduplicate(self.installed_source(self.paths.extensions_dir))
        }

        ids: dict[str, str] = {}
        present: list[UnitOutcome] = []
        wanted: list[str] = []
        for value in specs:
            spec = parse_extension_spec(value)
            key = spec.extension_id.lower()
            if key in ids:
                continue
            ids[key] = spec.extension_id
            current = installed.get(key, "")
            if current and not force and spec.pinned_version in ("", current):
                logger.info(f"{spec.extension_id}@{current} is already installed")
                present.append(
                    UnitOutcome(
                        id=spec.extension_id,
                        status=OutcomeStatus.UP_TO_DATE,
                        current_version=current,
                        target_version=current,
                        note="already installed",
                    )
                )
            else:
                wanted.append(value)

        _, plans, failed = self._plan_specs(wanted, installed)
        summary = Summary(total_detected=len(ids), to_update=len(plans))
        coordinator = self.coordinator()
        outcomes = coordinator.update(plans) if plans else []
        self.reconcile_quietly()
        return self._finish(
            summary, [*present, *failed, *outcomes], list(ids.values()), coordinator, start
        )

    def download(self, specs: Sequence[str], output_dir: Path) -> Summary:
        """Fetch VSIX files without installing them."""
        start = time.monotonic()
        ids, plans, failed = self._plan_specs(specs)

        summary = Summary(total_detected=len(ids), to_update=len(plans))
        coordinator = self.coordinator()
        outcomes = coordinator.download(plans, output_dir) if plans else []
        return self._finish(summary, [*failed, *outcomes], ids, coordinator, start)

    def export(self, fmt: str = "txt") -> str:
        """Render the installed extensions as a list ``install`` can read back."""
        return format_extension_list(self.installed_source(self.paths.extensions_dir), fmt)

    def find_backup(self, backup_ref: str) -> BackupRecord:
        """Resolve a backup id, or an extension id to its newest backup."""
        for record in self.backups.list_backups():
            if record.id == backup_ref:
                return record
        latest = self.backups.latest_backup(backup_ref)
        if latest is None:
            raise ExtensionNotFoundError(f"Backup not found: {backup_ref}")
        return latest

    def rollback(self, backup_ref: str, force: bool = False) -> BackupRecord:
        """Restore a backup by its id, or the newest backup of an extension id."""
        record = self.find_backup(backup_ref)
        if self.options.dry_run:
            logger.info(f"[dry run] would restore {record.id} to {record.original_path}")
            return record
        if not Path(record.backup_path).is_dir():
            raise ExtensionNotFoundError(f"Backup files missing: {record.backup_path}")

        if force:
            # drop whatever version replaced the backed up one
            self.reconciler.remove_extension_dirs(record.extension_id)
        restored = self.backups.restore(record.id, force=force)
        self.reconcile_quietly()
        return restored


def _configure_logging(log_level: str) -> None:
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Invalid log level: {log_level}")
    logging.basicConfig(
        level=level,
        format="%(relativeCreated)d [%(levelname)s] %(message)s",
    )


def _build_manager(
    editor: str,
    code_bin: str,
    extensions_dir: str,
    backup_dir: str,
    summary: str,
    yes: bool,
    dry_run: bool = False,
    parallel: int = DEFAULT_EXECUTION_CONCURRENCY,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    timeout: float = DEFAULT_INSTALL_TIMEOUT_SECONDS,
    source: str = "auto",
    pre_release: bool = False,
    skip_backup: bool = False,
    resolve_cli: bool = True,
) -> ExtensionBatchManager:
    try:
        paths = resolve_editor_paths(editor, extensions_dir, backup_dir)
    except VsixmError as exc:
        logger.error(f"{exc}")
        raise typer.Exit(code=1)
    options = BulkOptions(
        editor=paths.editor,
        binary=resolve_binary(paths.editor, code_bin) if resolve_cli else "",
        parallel=parallel,
        max_attempts=max_attempts,
        timeout=timeout,
        source=source,
        prefer_prerelease=pre_release,
        dry_run=dry_run,
        backup=not skip_backup,
        unattended=yes,
    )
    if resolve_cli and not options.binary:
        logger.warning(f"No CLI found for {paths.editor}, installing extensions directly")
    return ExtensionBatchManager(
        paths,
        options,
        prompter=prompt_intervention,
        summary_path=Path(summary).expanduser() if summary else None,
    )


def _report(summary: Summary) -> None:
    for item in summary.items:
        detail = item.error or item.note or ""
        version = item.target_version or item.current_version
        name = f"{item.id}@{version}" if version else item.id
        line = f"{name}: {item.status.value}"
        typer.echo(f"{line} ({detail})" if detail else line)
    counts = {
        key: value
        for key, value in summary.to_dict().items()
        if isinstance(value, int) and not isinstance(value, bool) and key != "elapsed_ms"
    }
    typer.echo(", ".join(f"{key}={value}" for key, value in counts.items()))


def _run_batch(action: Callable[[], Summary]) -> None:
    try:
        summary = action()
    except BatchAbortedError as exc:
        if exc.summary is not None:
            _report(exc.summary)
        logger.error(f"{exc}")
        raise typer.Exit(code=2)
    except VsixmError as exc:
        logger.error(f"{exc}")
        raise typer.Exit(code=1)
    _report(summary)
    if summary.failed:
        raise typer.Exit(code=1)


@app.command()
def update(
    extension_ids: list[str] = typer.Argument(None),
    editor: str = "auto",
    code_bin: str = "",
    extensions_dir: str = "",
    parallel: int = DEFAULT_EXECUTION_CONCURRENCY,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    timeout: float = DEFAULT_INSTALL_TIMEOUT_SECONDS,
    source: str = "auto",
    pre_release: bool = False,
    dry_run: bool = False,
    skip_backup: bool = False,
    backup_dir: str = "",
    summary: str = "",
    yes: bool = False,
    log_level: str = "info",
) -> None:
    """Update installed extensions (all of them unless ids are given)."""
    _configure_logging(log_level)
    manager = _build_manager(
        editor,
        code_bin,
        extensions_dir,
        backup_dir,
        summary,
        yes,
        dry_run=dry_run,
        parallel=parallel,
        max_attempts=max_attempts,
        timeout=timeout,
        source=source,
        pre_release=pre_release,
        skip_backup=skip_backup,
    )
    _run_batch(lambda: manager.update_installed(extension_ids or None))


@app.command()
def uninstall(
    extension_ids: list[str] = typer.Argument(None),
    all_installed: bool = typer.Option(False, "--all"),
    editor: str = "auto",
    code_bin: str = "",
    extensions_dir: str = "",
    parallel: int = DEFAULT_EXECUTION_CONCURRENCY,
    dry_run: bool = False,
    summary: str = "",
    yes: bool = False,
    log_level: str = "info",
) -> None:
    """Remove extensions and tombstone them."""
    _configure_logging(log_level)
    if not extension_ids and not all_installed:
        typer.echo("Nothing to uninstall, pass extension ids or --all", err=True)
        raise typer.Exit(code=1)
    manager = _build_manager(
        editor, code_bin, extensions_dir, "", summary, yes, dry_run=dry_run, parallel=parallel
    )
    _run_batch(lambda: manager.uninstall(extension_ids or [], all_installed=all_installed))


@app.command()
def download(
    extensions: list[str] = typer.Argument(...),
    output_dir: str = ".",
    parallel: int = DEFAULT_EXECUTION_CONCURRENCY,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    source: str = "auto",
    pre_release: bool = False,
    dry_run: bool = False,
    summary: str = "",
    yes: bool = False,
    log_level: str = "info",
) -> None:
    """Download VSIX files for 'publisher.name[@version]' without installing."""
    _configure_logging(log_level)
    manager = _build_manager(
        "auto",
        "",
        "",
        "",
        summary,
        yes,
        dry_run=dry_run,
        parallel=parallel,
        max_attempts=max_attempts,
        source=source,
        pre_release=pre_release,
        resolve_cli=False,
    )
    target = Path(output_dir).expanduser().resolve()
    _run_batch(lambda: manager.download(extensions, target))


@app.command()
def install(
    extensions: list[str] = typer.Argument(None),
    from_list: str = "",
    force: bool = False,
    editor: str = "auto",
    code_bin: str = "",
    extensions_dir: str = "",
    parallel: int = DEFAULT_EXECUTION_CONCURRENCY,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    timeout: float = DEFAULT_INSTALL_TIMEOUT_SECONDS,
    source: str = "auto",
    pre_release: bool = False,
    dry_run: bool = False,
    backup_dir: str = "",
    summary: str = "",
    yes: bool = False,
    log_level: str = "info",
) -> None:
    """Install 'publisher.name[@version]' extensions, or those of a list file."""
    _configure_logging(log_level)
    specs = list(extensions or [])
    if from_list:
        list_path = Path(from_list).expanduser()
        try:
            specs.extend(read_extension_list(list_path))
        except (OSError, VsixmError) as exc:
            logger.error(f"Could not read {list_path}: {exc}")
            raise typer.Exit(code=1)
    if not specs:
        typer.echo("Nothing to install, pass extensions or --from-list", err=True)
        raise typer.Exit(code=1)
    manager = _build_manager(
        editor,
        code_bin,
        extensions_dir,
        backup_dir,
        summary,
        yes,
        dry_run=dry_run,
        parallel=parallel,
        max_attempts=max_attempts,
        timeout=timeout,
        source=source,
        pre_release=pre_release,
    )
    _run_batch(lambda: manager.install(specs, force=force))


@app.command()
def export(
    output: str = "",
    list_format: str = typer.Option("txt", "--format"),
    editor: str = "auto",
    extensions_dir: str = "",
    log_level: str = "info",
) -> None:
    """Write the installed extensions as a txt list or a workspace extensions.json."""
    _configure_logging(log_level)
    manager = _build_manager(editor, "", extensions_dir, "", "", True, resolve_cli=False)
    try:
        content = manager.export(list_format)
    except VsixmError as exc:
        logger.error(f"{exc}")
        raise typer.Exit(code=1)
    if not output:
        typer.echo(content, nl=False)
        return
    target = Path(output).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    logger.info(f"Exported installed extensions to {target}")


@app.command()
def reconcile(
    editor: str = "auto",
    extensions_dir: str = "",
    log_level: str = "info",
) -> None:
    """Repair extensions.json and .obsolete from the folders on disk."""
    _configure_logging(log_level)
    try:
        paths = resolve_editor_paths(editor, extensions_dir)
        report = StateReconciler(paths).reconcile()
    except (OSError, VsixmError) as exc:
        logger.error(f"{exc}")
        raise typer.Exit(code=1)
    typer.echo(
        json.dumps(
            {
                "extensions_dir": f"{paths.extensions_dir}",
                "entries": report.entries,
                "recreated": report.recreated,
                "removed_temporary": report.removed_temporary,
                "removed_corrupted": report.removed_corrupted,
            },
            indent=2,
        )
    )


@app.command()
def rollback(
    backup: str = typer.Argument(""),
    editor: str = "auto",
    extensions_dir: str = "",
    backup_dir: str = "",
    force: bool = False,
    list_backups: bool = typer.Option(False, "--list"),
    dry_run: bool = False,
    log_level: str = "info",
) -> None:
    """Restore a backup by id, or the newest backup of an extension."""
    _configure_logging(log_level)
    manager = _build_manager(
        editor, "", extensions_dir, backup_dir, "", True, dry_run=dry_run, resolve_cli=False
    )
    if list_backups or not backup:
        for record in manager.backups.list_backups(backup or None):
            typer.echo(f"{record.id}  {record.timestamp}  {record.reason}")
        return
    try:
        record = manager.rollback(backup, force=force)
    except VsixmError as exc:
        logger.error(f"{exc}")
        raise typer.Exit(code=1)
    typer.echo(
        f"Restored {record.extension_id}@{record.extension_version} to {record.original_path}"
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
