from __future__ import annotations

import enum
import re
import subprocess
from typing import TYPE_CHECKING

import requests

if TYPE_CHECKING:
    from vsixm.models import Summary


class ErrorKind(str, enum.Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    INSTALL = "install"
    CLI = "cli"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    VALIDATION = "validation"
    CANCELLED = "cancelled"
    INCOMPATIBLE = "incompatible"
    UNKNOWN = "unknown"


# never retried, one attempt only
FATAL_KINDS = frozenset(
    {
        ErrorKind.NOT_FOUND,
        ErrorKind.PERMISSION_DENIED,
        ErrorKind.VALIDATION,
        ErrorKind.CANCELLED,
        ErrorKind.INCOMPATIBLE,
    }
)


class VsixmError(Exception):
    """Base class for all vsixm domain errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN


class NetworkError(ConnectionError, VsixmError):
    """Raised when a registry cannot be reached (refused, DNS, reset)."""

    kind = ErrorKind.NETWORK


class OperationTimeoutError(TimeoutError, VsixmError):
    """Raised when a download or CLI call exceeds its timeout."""

    kind = ErrorKind.TIMEOUT


class InstallError(RuntimeError, VsixmError):
    """Raised when the editor refuses to install an extension."""

    kind = ErrorKind.INSTALL


class CliError(InstallError):
    """Raised when the editor CLI itself misbehaves."""

    kind = ErrorKind.CLI


class IncompatibleExtensionError(InstallError):
    """Raised when the extension requires a newer editor."""

    kind = ErrorKind.INCOMPATIBLE


class ExtensionNotFoundError(LookupError, VsixmError):
    """Raised when an extension, version or binary does not exist."""

    kind = ErrorKind.NOT_FOUND


class PermissionDeniedError(PermissionError, VsixmError):
    """Raised when the registry or file system denies access."""

    kind = ErrorKind.PERMISSION_DENIED


class ValidationError(ValueError, VsixmError):
    """Raised for malformed input such as an invalid extension id."""

    kind = ErrorKind.VALIDATION


class PlanValidationError(ValidationError):
    """Raised when an update plan violates its invariants; halts the batch."""


class StateLockError(RuntimeError, VsixmError):
    """Raised when the extensions metadata lock cannot be acquired."""


class BatchAbortedError(RuntimeError, VsixmError):
    """Raised after the pool drains when the user aborted the batch."""

    kind = ErrorKind.CANCELLED

    def __init__(self, message: str, summary: Summary | None = None) -> None:
        super().__init__(message)
        self.summary = summary


_MESSAGE_PATTERNS: list[tuple[re.Pattern[str], ErrorKind]] = [
    (re.compile(r"\benoent\b|\b404\b|not found", re.I), ErrorKind.NOT_FOUND),
    (
        re.compile(r"\beacces\b|\beperm\b|permission denied|\b403\b", re.I),
        ErrorKind.PERMISSION_DENIED,
    ),
    (re.compile(r"cancell?ed", re.I), ErrorKind.CANCELLED),
    (re.compile(r"invalid|malformed", re.I), ErrorKind.VALIDATION),
    (
        re.compile(r"not compatible with|requires a newer version", re.I),
        ErrorKind.INCOMPATIBLE,
    ),
    (
        re.compile(
            r"econnrefused|enotfound|etimedout|econnreset|network|fetch failed", re.I
        ),
        ErrorKind.NETWORK,
    ),
    (re.compile(r"timeout|timed out", re.I), ErrorKind.TIMEOUT),
    (re.compile(r"install|extension", re.I), ErrorKind.INSTALL),
    (re.compile(r"\bcli\b", re.I), ErrorKind.CLI),
]


def _classify_http_status(status: int) -> ErrorKind:
    if status == 404:
        return ErrorKind.NOT_FOUND
    if status in (401, 403):
        return ErrorKind.PERMISSION_DENIED
    if status == 429 or status >= 500:
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception onto one of the closed set of error kinds."""
    if isinstance(exc, VsixmError):
        return exc.kind

    # requests exceptions subclass IOError, check them before the builtins
    if isinstance(exc, requests.exceptions.ConnectTimeout):
        return ErrorKind.NETWORK
    if isinstance(exc, requests.exceptions.Timeout):
        return ErrorKind.TIMEOUT
    if isinstance(exc, requests.exceptions.ConnectionError):
        return ErrorKind.NETWORK
    if isinstance(exc, requests.exceptions.HTTPError):
        response = getattr(exc, "response", None)
        if response is not None:
            return _classify_http_status(int(response.status_code))

    if isinstance(exc, subprocess.TimeoutExpired):
        return ErrorKind.TIMEOUT
    if isinstance(exc, subprocess.CalledProcessError):
        return ErrorKind.CLI
    if isinstance(exc, FileNotFoundError):
        return ErrorKind.NOT_FOUND
    if isinstance(exc, PermissionError):
        return ErrorKind.PERMISSION_DENIED
    if isinstance(exc, TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, ConnectionError):
        return ErrorKind.NETWORK

    # untyped errors from third-party code: fall back to the message
    message = str(exc)
    for pattern, kind in _MESSAGE_PATTERNS:
        if pattern.search(message):
            return kind
    return ErrorKind.UNKNOWN


def is_fatal(exc: BaseException) -> bool:
    return classify_error(exc) in FATAL_KINDS
