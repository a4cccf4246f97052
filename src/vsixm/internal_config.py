from __future__ import annotations

import platform
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version


def _get_package_version(name: str) -> str:
    """Return the installed version of *name*, or ``"0"`` if not found."""
    try:
        return _pkg_version(name)
    except PackageNotFoundError:
        return "0"


_vsixm_version = _get_package_version("vsixm")

# The Marketplace CDN is picky about unfamiliar User-Agents; adjust if downloads break.
DEFAULT_USER_AGENT = (
    f"vsixm/{_vsixm_version}"
    f" ({platform.system()}; {platform.machine()}; compatible)"
)

MARKETPLACE_QUERY_URL = (
    "https://marketplace.visualstudio.com/_apis/public/gallery/extensionquery"
)
MARKETPLACE_API_VERSION = "7.2-preview.1"
OPEN_VSX_API_URL = "https://open-vsx.org/api"

HTTP_REQUEST_TIMEOUT_SECONDS = 30
HTTP_STREAM_CONNECT_TIMEOUT_SECONDS = 10
HTTP_STREAM_READ_TIMEOUT_SECONDS = 120

HTTP_RETRY_TOTAL = 3
HTTP_RETRY_BACKOFF_FACTOR = 1
HTTP_RETRY_STATUS_FORCELIST = [429, 500, 502, 503, 504]
HTTP_RETRY_ALLOWED_METHODS = ["HEAD", "GET", "OPTIONS", "POST"]

# bulk execution
DEFAULT_EXECUTION_CONCURRENCY = 1
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_INSTALL_TIMEOUT_SECONDS = 30.0
DEFAULT_UNINSTALL_TIMEOUT_SECONDS = 15.0

# version resolution
DEFAULT_RESOLUTION_CONCURRENCY = 5
DEFAULT_RESOLUTION_DELAY_SECONDS = 0.1
DEFAULT_RESOLUTION_MAX_ATTEMPTS = 3

# retry strategies
RETRY_BACKOFF_BASE_SECONDS = 1.0
RETRY_BACKOFF_MAX_SECONDS = 30.0
RETRY_TIMEOUT_PAUSE_SECONDS = 2.0
RETRY_FALLBACK_PAUSE_SECONDS = 1.0
RETRY_DEFAULT_TIMEOUT_SECONDS = 30.0

# extensions.json / .obsolete lock
STATE_LOCK_ATTEMPTS = 30
STATE_LOCK_DELAY_SECONDS = 0.1
