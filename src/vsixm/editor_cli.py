from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from vsixm.exceptions import CliError, ExtensionNotFoundError, OperationTimeoutError
from vsixm.internal_config import (
    DEFAULT_INSTALL_TIMEOUT_SECONDS,
    DEFAULT_UNINSTALL_TIMEOUT_SECONDS,
)

logger: logging.Logger = logging.getLogger(__name__)

RunCommand = Callable[..., subprocess.CompletedProcess[str]]

# the editor CLI sometimes exits 0 after printing this
ERROR_MARKER = "Error: "

_EDITOR_BINARIES = {
    "vscode": ("code",),
    "cursor": ("cursor",),
    "vscode-server": ("code-server", "code"),
    "vscode-remote": ("code",),
}


@dataclass(frozen=True)
class CliResult:
    success: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    error: str = ""


def resolve_binary(editor: str, explicit: str = "") -> str:
    """Return the editor CLI to call, or ``""`` when none can be found."""
    if explicit:
        expanded = os.path.expandvars(os.path.expanduser(explicit))
        return shutil.which(expanded) or expanded

    for candidate in _EDITOR_BINARIES.get(editor, ("code",)):
        found = shutil.which(candidate)
        if found:
            logger.debug(f"Using editor binary {found} for {editor}")
            return found
    return ""


class EditorCli(object):
    """Thin wrapper around ``code --install-extension`` and friends."""

    def __init__(self, run_command: RunCommand = subprocess.run) -> None:
        self.run_command = run_command

    def _run(self, cmd: list[str], timeout: float) -> CliResult:
        logger.debug(f"Running {' '.join(cmd)}")
        try:
            process = self.run_command(
                cmd,
                capture_output=True,
                check=False,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise OperationTimeoutError(
                f"Editor CLI timed out after {timeout:g}s: {' '.join(cmd)}"
            ) from exc
        except FileNotFoundError as exc:
            raise ExtensionNotFoundError(f"Editor binary not found: {cmd[0]}") from exc

        stdout = f"{process.stdout or ''}".strip()
        stderr = f"{process.stderr or ''}".strip()
        failed = (
            process.returncode != 0 or ERROR_MARKER in stdout or ERROR_MARKER in stderr
        )
        if not failed:
            return CliResult(
                success=True, exit_code=process.returncode, stdout=stdout, stderr=stderr
            )
        if not (stdout or stderr):
            raise CliError(
                f"Editor CLI exited with code {process.returncode} without output: "
                f"{' '.join(cmd)}"
            )
        return CliResult(
            success=False,
            exit_code=process.returncode if process.returncode != 0 else 1,
            stdout=stdout,
            stderr=stderr,
            error=stderr or stdout,
        )

    def install(
        self,
        binary: str,
        file: Path,
        force_reinstall: bool = True,
        timeout: float = DEFAULT_INSTALL_TIMEOUT_SECONDS,
    ) -> CliResult:
        cmd = [binary, "--install-extension", f"{file}"]
        if force_reinstall:
            cmd.append("--force")
        return self._run(cmd, timeout)

    def uninstall(
        self,
        binary: str,
        extension_id: str,
        timeout: float = DEFAULT_UNINSTALL_TIMEOUT_SECONDS,
    ) -> CliResult:
        return self._run([binary, "--uninstall-extension", extension_id], timeout)
