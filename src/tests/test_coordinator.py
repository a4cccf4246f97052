from __future__ import annotations

import json
import zipfile
from pathlib import Path
from types import SimpleNamespace

import pytest
from conftest import write_vsix

from vsixm.backup import BackupService
from vsixm.coordinator import (
    BulkExecutionCoordinator,
    BulkOptions,
    compatibility_reason,
    install_failure,
)
from vsixm.editor_cli import CliResult, EditorCli
from vsixm.editor_paths import EditorPaths
from vsixm.exceptions import (
    ExtensionNotFoundError,
    IncompatibleExtensionError,
    InstallError,
    NetworkError,
    OperationTimeoutError,
)
from vsixm.models import ChangePlan, OutcomeStatus
from vsixm.reconciler import StateReconciler
from vsixm.retry import Intervention, RetryChain


def _write_broken_vsix(path: Path, extension_id: str, version: str) -> Path:
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("readme.md", "no payload")
    return path


class _Fetcher:
    """Fails with the queued errors of a source, then writes a VSIX."""

    def __init__(self, failures: dict | None = None, writer=write_vsix) -> None:
        self.failures = {source: list(errors) for source, errors in (failures or {}).items()}
        self.writer = writer
        self.calls: list[tuple[str, str, str]] = []
        self.timeouts: list[float | None] = []

    def fetch(
        self,
        extension_id: str,
        version: str,
        source: str,
        target_dir: Path,
        timeout: float | None = None,
    ) -> Path:
        self.calls.append((extension_id, version, source))
        self.timeouts.append(timeout)
        pending = self.failures.get(source)
        if pending:
            raise pending.pop(0)
        target_dir.mkdir(parents=True, exist_ok=True)
        return self.writer(
            target_dir.joinpath(f"{extension_id}-{version}.vsix"), extension_id, version
        )


def _cli(returncode: int = 0, stdout: str = "", stderr: str = ""):
    calls: list[list[str]] = []

    def _run(cmd: list[str], **_kwargs) -> SimpleNamespace:
        calls.append(cmd)
        return SimpleNamespace(returncode=returncode, stdout=stdout, stderr=stderr)

    return EditorCli(run_command=_run), calls


@pytest.fixture
def build(tmp_path: Path, extensions_dir: Path, fake_sleep):
    def _build(fetcher: _Fetcher, cli: EditorCli | None = None, prompter=None, **options):
        options.setdefault("binary", "code")
        paths = EditorPaths(
            editor="vscode",
            extensions_dir=extensions_dir,
            backup_dir=tmp_path.joinpath("backups"),
        )
        return BulkExecutionCoordinator(
            registry=fetcher,
            cli=cli or _cli()[0],
            paths=paths,
            reconciler=StateReconciler(paths, sleep=fake_sleep),
            backups=BackupService(paths.backup_dir),
            options=BulkOptions(**options),
            chain=RetryChain(prompter=prompter, sleep=fake_sleep),
            sleep=fake_sleep,
        )

    return _build


PLAN = ChangePlan(id="pub.a", current_version="1.2.0", target_version="2.0.0")


def test_compatibility_reason_strips_stack_noise() -> None:
    output = (
        "Error: Unable to install 'pub.a' as it is not compatible with version 1.70"
        " at Object.install (/usr/share/code/out/cli.js:1:1)\n    at next"
    )

    assert compatibility_reason(output) == (
        "Unable to install 'pub.a' as it is not compatible with version 1.70"
    )
    assert compatibility_reason("") == "Extension not compatible with current editor version"


def test_install_failure_classifies_output() -> None:
    incompatible = install_failure(
        CliResult(
            success=False,
            exit_code=1,
            stderr="requires a newer version of VS Code",
            error="requires a newer version of VS Code",
        )
    )
    generic = install_failure(
        CliResult(success=False, exit_code=2, stdout="progress", stderr="boom", error="boom")
    )

    assert isinstance(incompatible, IncompatibleExtensionError)
    assert f"{incompatible}" == "requires a newer version of VS Code"
    assert type(generic) is InstallError
    assert f"{generic}" == "boom; progress (exit code: 2)"


def test_install_failure_ignores_progress_output() -> None:
    error = install_failure(
        CliResult(
            success=False,
            exit_code=1,
            stdout="Installing extensions...",
            stderr="not compatible with version 1.70",
            error="not compatible with version 1.70",
        )
    )

    assert isinstance(error, IncompatibleExtensionError)
    assert f"{error}" == "not compatible with version 1.70"


def test_incompatible_install_fails_without_retries(
    build, extensions_dir: Path, make_extension, sleeps: list[float]
) -> None:
    make_extension(extensions_dir, "pub.a", "1.2.0")
    cli, calls = _cli(returncode=1, stderr="not compatible with version 1.70")

    [outcome] = build(_Fetcher(), cli=cli).update([PLAN])

    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.error == "not compatible with version 1.70"
    assert outcome.apply_attempts == 1
    assert len(calls) == 1
    assert sleeps == []
    # the old version is left in place
    assert extensions_dir.joinpath("pub.a-1.2.0").is_dir()


def test_network_errors_are_retried_until_update_succeeds(
    build, extensions_dir: Path, make_extension, sleeps: list[float]
) -> None:
    make_extension(extensions_dir, "pub.a", "1.2.0")
    refused = [NetworkError("connect ECONNREFUSED 13.107.6.175:443") for _ in range(3)]
    fetcher = _Fetcher({"marketplace": refused})
    cli, calls = _cli(stdout="Extension 'pub.a' was successfully installed.")

    coordinator = build(fetcher, cli=cli)
    [outcome] = coordinator.update([PLAN])

    assert outcome.status is OutcomeStatus.UPDATED
    assert outcome.fetch_attempts == 4
    assert outcome.apply_attempts == 1
    assert outcome.strategy == "network-retry"
    assert sleeps == [1.0, 2.0, 4.0]
    assert calls[0][:2] == ["code", "--install-extension"]
    assert calls[0][-1] == "--force"
    assert outcome.backup_ref == coordinator.backup_records[0].id
    assert coordinator.aborted is False


def test_fetch_falls_back_to_alternate_source(build) -> None:
    fetcher = _Fetcher({"marketplace": [ExtensionNotFoundError("404 not found")]})

    [outcome] = build(fetcher, source="marketplace").update([PLAN])

    assert outcome.status is OutcomeStatus.UPDATED
    assert outcome.fetch_attempts == 2
    assert [call[2] for call in fetcher.calls] == ["marketplace", "open-vsx"]


def test_fetch_failure_on_every_source(build) -> None:
    fetcher = _Fetcher(
        {
            "marketplace": [ExtensionNotFoundError("missing on marketplace")],
            "open-vsx": [ExtensionNotFoundError("missing on open-vsx")],
        }
    )

    [outcome] = build(fetcher, source="open-vsx").update([PLAN])

    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.error == "missing on marketplace"
    assert [call[2] for call in fetcher.calls] == ["open-vsx", "marketplace"]


def test_without_binary_installs_directly(
    build, extensions_dir: Path, make_extension
) -> None:
    make_extension(extensions_dir, "pub.a", "1.2.0")
    cli, calls = _cli()

    [outcome] = build(_Fetcher(), cli=cli, binary="").update([PLAN])

    assert outcome.status is OutcomeStatus.UPDATED
    assert outcome.strategy is None
    assert calls == []
    assert extensions_dir.joinpath("pub.a-2.0.0", "package.json").is_file()
    assert not extensions_dir.joinpath("pub.a-1.2.0").exists()


def test_cli_failure_falls_back_to_direct_install(build, extensions_dir: Path) -> None:
    cli, calls = _cli(returncode=1, stderr="Error: Command failed")

    [outcome] = build(_Fetcher(), cli=cli).update([PLAN])

    assert outcome.status is OutcomeStatus.UPDATED
    assert outcome.strategy == "direct-fallback"
    assert outcome.apply_attempts == 2
    assert len(calls) == 1
    assert extensions_dir.joinpath("pub.a-2.0.0").is_dir()


def test_incompatible_reason_skips_cli_progress_output(
    build, extensions_dir: Path, make_extension
) -> None:
    make_extension(extensions_dir, "pub.a", "1.2.0")
    cli, _calls = _cli(
        returncode=1,
        stdout="Installing extensions...",
        stderr="not compatible with version 1.70",
    )

    [outcome] = build(_Fetcher(), cli=cli).update([PLAN])

    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.error == "not compatible with version 1.70"


def test_fetch_timeouts_double_on_each_retry(build, sleeps: list[float]) -> None:
    fetcher = _Fetcher(
        {
            "marketplace": [
                OperationTimeoutError("read timed out for pub.a"),
                OperationTimeoutError("read timed out for pub.a"),
            ]
        }
    )

    [outcome] = build(fetcher).update([PLAN])

    assert outcome.status is OutcomeStatus.UPDATED
    assert outcome.strategy == "timeout-increase"
    assert fetcher.timeouts == [120, 240, 480]
    assert sleeps == [2.0, 2.0]


def test_silent_cli_crash_falls_back_to_direct_install(
    build, extensions_dir: Path
) -> None:
    cli, calls = _cli(returncode=134)

    [outcome] = build(_Fetcher(), cli=cli).update([PLAN])

    assert outcome.status is OutcomeStatus.UPDATED
    assert outcome.strategy == "direct-fallback"
    assert len(calls) == 1
    assert extensions_dir.joinpath("pub.a-2.0.0").is_dir()


def test_download_only_when_every_install_path_fails(build, tmp_path: Path) -> None:
    cli, _calls = _cli(returncode=1, stderr="Error: Command failed")
    kept = tmp_path.joinpath("kept")

    [outcome] = build(
        _Fetcher(writer=_write_broken_vsix), cli=cli, download_dir=kept
    ).update([PLAN])

    assert outcome.status is OutcomeStatus.DOWNLOADED
    assert outcome.strategy == "download-only-fallback"
    assert outcome.apply_attempts == 3
    assert outcome.file_path == f"{kept.joinpath('pub.a-2.0.0.vsix')}"
    assert kept.joinpath("pub.a-2.0.0.vsix").is_file()


def test_dry_run_touches_nothing(build, extensions_dir: Path, make_extension) -> None:
    make_extension(extensions_dir, "pub.a", "1.2.0")
    fetcher = _Fetcher()
    coordinator = build(fetcher, dry_run=True)

    [outcome] = coordinator.update([PLAN])

    assert outcome.status is OutcomeStatus.SKIPPED
    assert outcome.note == "dry run"
    assert fetcher.calls == []
    assert coordinator.backup_records == []


def test_skip_backup_option(build, extensions_dir: Path, make_extension) -> None:
    make_extension(extensions_dir, "pub.a", "1.2.0")
    coordinator = build(_Fetcher(), backup=False)

    [outcome] = coordinator.update([PLAN])

    assert outcome.status is OutcomeStatus.UPDATED
    assert outcome.backup_ref is None
    assert coordinator.backup_records == []


def test_user_skip_only_affects_one_item(build) -> None:
    prompts: list[str] = []

    def _prompter(task_name: str, error: BaseException) -> Intervention:
        prompts.append(task_name)
        return Intervention.SKIP_ITEM

    fetcher = _Fetcher({"marketplace": [OperationTimeoutError("slow")] * 3})
    plans = [PLAN, ChangePlan("pub.b", "1.0.0", "1.1.0")]

    first, second = build(fetcher, prompter=_prompter).update(plans)

    assert first.status is OutcomeStatus.SKIPPED
    assert first.error == "skipped by user: slow"
    assert first.strategy == "user-intervention"
    assert second.status is OutcomeStatus.UPDATED
    assert prompts == ["download pub.a@2.0.0 from marketplace"]


def test_user_abort_leaves_remaining_items_skipped(build) -> None:
    fetcher = _Fetcher({"marketplace": [OperationTimeoutError("slow")] * 3})
    plans = [
        PLAN,
        ChangePlan("pub.b", "1.0.0", "1.1.0"),
        ChangePlan("pub.c", "1.0.0", "1.1.0"),
    ]
    coordinator = build(fetcher, prompter=lambda *_args: Intervention.ABORT_BATCH)

    outcomes = coordinator.update(plans)

    assert coordinator.aborted is True
    assert [(o.id, o.status) for o in outcomes] == [
        ("pub.a", OutcomeStatus.FAILED),
        ("pub.b", OutcomeStatus.SKIPPED),
        ("pub.c", OutcomeStatus.SKIPPED),
    ]
    assert outcomes[0].error == "aborted by user: slow"
    assert outcomes[1].error == "batch aborted"


def test_unattended_never_prompts(build) -> None:
    prompts: list[str] = []
    fetcher = _Fetcher(
        {
            "marketplace": [OperationTimeoutError("slow")] * 3,
            "open-vsx": [ExtensionNotFoundError("404")],
        }
    )

    [outcome] = build(
        fetcher,
        prompter=lambda name, _error: prompts.append(name) or Intervention.ABORT_BATCH,
        unattended=True,
    ).update([PLAN])

    assert outcome.status is OutcomeStatus.FAILED
    assert prompts == []


def test_parallel_update_produces_one_outcome_per_plan(build) -> None:
    plans = [ChangePlan(f"pub.e{index}", "1.0.0", "2.0.0") for index in range(6)]

    outcomes = build(_Fetcher(), parallel=3).update(plans)

    assert [o.id for o in outcomes] == [plan.id for plan in plans]
    assert {o.status for o in outcomes} == {OutcomeStatus.UPDATED}


def test_uninstall_removes_folders_then_forgets(
    build, extensions_dir: Path, make_extension
) -> None:
    make_extension(extensions_dir, "pub.a", "1.0.0")
    make_extension(extensions_dir, "pub.b", "1.0.0")
    cli, calls = _cli(returncode=1, stderr="Extension 'pub.a' is not installed.")

    outcomes = build(_Fetcher(), cli=cli).uninstall(["pub.a", "pub.gone"])

    assert [(o.id, o.status) for o in outcomes] == [
        ("pub.a", OutcomeStatus.UNINSTALLED),
        ("pub.gone", OutcomeStatus.UNINSTALLED),
    ]
    assert outcomes[0].note is None
    assert outcomes[1].note == "already uninstalled (folder not found)"
    assert calls[0] == ["code", "--uninstall-extension", "pub.a"]
    assert not extensions_dir.joinpath("pub.a-1.0.0").exists()
    assert extensions_dir.joinpath("pub.b-1.0.0").is_dir()
    tombstones = json.loads(extensions_dir.joinpath(".obsolete").read_text(encoding="utf-8"))
    assert tombstones == {"pub.a": True, "pub.gone": True}


def test_download_writes_into_output_dir(build, tmp_path: Path) -> None:
    output_dir = tmp_path.joinpath("out")
    plans = [
        ChangePlan("pub.a", "", "2.0.0"),
        ChangePlan("pub.b", "", "1.0.0"),
    ]
    fetcher = _Fetcher({"marketplace": [ExtensionNotFoundError("404")]})

    outcomes = build(fetcher).download(plans, output_dir)

    assert [(o.id, o.status) for o in outcomes] == [
        ("pub.a", OutcomeStatus.DOWNLOADED),
        ("pub.b", OutcomeStatus.DOWNLOADED),
    ]
    assert outcomes[0].file_path == f"{output_dir.joinpath('pub.a-2.0.0.vsix')}"
    assert sorted(p.name for p in output_dir.iterdir()) == [
        "pub.a-2.0.0.vsix",
        "pub.b-1.0.0.vsix",
    ]
