#! /bin/env python3
from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter, Retry

from vsixm.exceptions import (
    ExtensionNotFoundError,
    NetworkError,
    OperationTimeoutError,
    PermissionDeniedError,
    ValidationError,
    VsixmError,
)
from vsixm.installed import is_valid_extension_id
from vsixm.internal_config import (
    DEFAULT_USER_AGENT,
    HTTP_REQUEST_TIMEOUT_SECONDS,
    HTTP_RETRY_ALLOWED_METHODS,
    HTTP_RETRY_BACKOFF_FACTOR,
    HTTP_RETRY_STATUS_FORCELIST,
    HTTP_RETRY_TOTAL,
    HTTP_STREAM_CONNECT_TIMEOUT_SECONDS,
    HTTP_STREAM_READ_TIMEOUT_SECONDS,
    MARKETPLACE_API_VERSION,
    MARKETPLACE_QUERY_URL,
    OPEN_VSX_API_URL,
)
from vsixm.versioning import compare_versions, parse_version

logger: logging.Logger = logging.getLogger(__name__)

SOURCES = ("marketplace", "open-vsx")

FLAG_INCLUDE_VERSIONS = 0x1
FLAG_INCLUDE_FILES = 0x2
FLAG_INCLUDE_VERSION_PROPERTIES = 0x10
FLAG_INCLUDE_ASSET_URI = 0x80

PRERELEASE_PROPERTY = "Microsoft.VisualStudio.Code.PreRelease"
VSIX_ASSET_TYPE = "Microsoft.VisualStudio.Services.VSIXPackage"


class DownloadSession(Protocol):
    def get(
        self,
        url: str,
        *,
        stream: bool,
        headers: dict[str, str],
        timeout: tuple[float, float],
    ) -> requests.Response: ...


def source_order(preference: str) -> list[str]:
    """Preferred source first, then the alternate; ``auto`` prefers the Marketplace."""
    if preference == "open-vsx":
        return ["open-vsx", "marketplace"]
    if preference in ("marketplace", "auto", ""):
        return ["marketplace", "open-vsx"]
    raise ValidationError(f"Unknown registry source: {preference!r}")


def split_extension_id(extension_id: str) -> tuple[str, str]:
    if not is_valid_extension_id(extension_id):
        raise ValidationError(
            f"Invalid extension id {extension_id!r}, expected 'publisher.name'"
        )
    publisher, name = extension_id.split(".", 1)
    return publisher, name


def marketplace_download_url(extension_id: str, version: str) -> str:
    publisher, name = split_extension_id(extension_id)
    safe_publisher = quote(publisher, safe="")
    safe_name = quote(name, safe="")
    safe_version = quote(version, safe="")
    return (
        f"https://{safe_publisher}.gallery.vsassets.io/_apis/public/gallery/publisher/"
        f"{safe_publisher}/extension/{safe_name}/{safe_version}/assetbyname/"
        f"{VSIX_ASSET_TYPE}"
    )


def open_vsx_download_url(extension_id: str, version: str) -> str:
    publisher, name = split_extension_id(extension_id)
    safe_publisher = quote(publisher, safe="")
    safe_name = quote(name, safe="")
    safe_version = quote(version, safe="")
    return (
        f"{OPEN_VSX_API_URL}/{safe_publisher}/{safe_name}/{safe_version}/file/"
        f"{safe_publisher}.{safe_name}-{safe_version}.vsix"
    )


def build_extension_query_body(extension_id: str, flags: int) -> dict[str, Any]:
    return {
        "filters": [
            {
                "criteria": [
                    {"filterType": 8, "value": "Microsoft.VisualStudio.Code"},
                    {"filterType": 7, "value": extension_id},
                ],
                "pageNumber": 1,
                "pageSize": 1,
                "sortBy": 0,
                "sortOrder": 0,
            }
        ],
        "assetTypes": [],
        "flags": flags,
    }


def _version_properties(version_info: dict[str, Any]) -> dict[str, Any]:
    return {
        item.get("key"): item.get("value")
        for item in version_info.get("properties", []) or []
        if isinstance(item, dict)
    }


def _is_prerelease_property(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() == "true"


def _is_stable(version: str) -> bool:
    parsed = parse_version(version)
    return parsed is None or parsed.prerelease is None


def pick_marketplace_version(
    versions: list[dict[str, Any]], prefer_prerelease: bool
) -> str:
    """Return the newest acceptable version from a newest-first Marketplace list."""
    for version_info in versions:
        version = str(version_info.get("version", ""))
        if not version:
            continue
        is_pre_release = _is_prerelease_property(
            _version_properties(version_info).get(PRERELEASE_PROPERTY, False)
        )
        if is_pre_release and not prefer_prerelease:
            continue
        return version
    return ""


def pick_open_vsx_version(versions: list[str], prefer_prerelease: bool) -> str:
    candidates = [version for version in versions if version and version != "latest"]
    if not prefer_prerelease:
        stable = [version for version in candidates if _is_stable(version)]
        candidates = stable or candidates
    best = ""
    for version in candidates:
        if not best or compare_versions(version, best) > 0:
            best = version
    return best


def download_vsix(
    session: DownloadSession,
    url: str,
    target_path: Path,
    headers: dict[str, str],
    read_timeout: float,
) -> Path:
    """Stream ``url`` into ``target_path``, staging beside it so a partial file never lands."""
    target_path.parent.mkdir(parents=True, exist_ok=True)
    staged = tempfile.NamedTemporaryFile(
        dir=target_path.parent, prefix=".vsixm-download.", suffix=".part", delete=False
    )
    written = 0
    try:
        with staged as output:
            response: requests.Response = session.get(
                url,
                stream=True,
                headers=headers,
                timeout=(HTTP_STREAM_CONNECT_TIMEOUT_SECONDS, read_timeout),
            )
            response.raise_for_status()
            for chunk in response.iter_content(chunk_size=1024 * 8):
                if chunk:
                    written += output.write(chunk)
            output.flush()
            os.fsync(output.fileno())
        if written == 0:
            raise NetworkError(f"Empty response body from {url}")
        os.replace(staged.name, target_path)
    finally:
        Path(staged.name).unlink(missing_ok=True)
    return target_path


def translate_request_error(
    exc: requests.RequestException, extension_id: str, source: str
) -> VsixmError:
    """Turn a requests exception into one of the tagged error kinds."""
    if isinstance(exc, requests.exceptions.ConnectTimeout):
        return NetworkError(f"ETIMEDOUT connecting to {source} for {extension_id}: {exc}")
    if isinstance(exc, requests.exceptions.Timeout):
        return OperationTimeoutError(
            f"Timed out fetching {extension_id} from {source}: {exc}"
        )
    if isinstance(exc, requests.exceptions.ConnectionError):
        return NetworkError(f"Could not reach {source} for {extension_id}: {exc}")
    if isinstance(exc, requests.exceptions.HTTPError) and exc.response is not None:
        status = exc.response.status_code
        if status == 404:
            return ExtensionNotFoundError(f"Extension '{extension_id}' not found in {source}")
        if status in (401, 403):
            return PermissionDeniedError(
                f"Access to '{extension_id}' denied by {source} ({status})"
            )
        if status == 429 or status >= 500:
            return NetworkError(f"{source} service error ({status}): try again later")
    return NetworkError(f"Request to {source} failed for {extension_id}: {exc}")


class RegistryClient(object):
    """Resolve and fetch extensions from the Marketplace and Open VSX."""

    session: requests.Session

    def __init__(self, session: requests.Session | None = None) -> None:
        if session is None:
            retry_strategy = Retry(
                total=HTTP_RETRY_TOTAL,
                backoff_factor=HTTP_RETRY_BACKOFF_FACTOR,
                status_forcelist=HTTP_RETRY_STATUS_FORCELIST,
                allowed_methods=HTTP_RETRY_ALLOWED_METHODS,
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            session = requests.Session()
            session.mount("https://", adapter)
            session.mount("http://", adapter)
        self.session = session
        self.headers: dict[str, str] = {"User-Agent": DEFAULT_USER_AGENT}

    def _marketplace_versions(
        self, extension_id: str, timeout: float
    ) -> list[dict[str, Any]]:
        flags = (
            FLAG_INCLUDE_VERSIONS
            | FLAG_INCLUDE_FILES
            | FLAG_INCLUDE_VERSION_PROPERTIES
            | FLAG_INCLUDE_ASSET_URI
        )
        headers = {
            **self.headers,
            "Accept": f"application/json; charset=utf-8; api-version={MARKETPLACE_API_VERSION}",
        }
        r = self.session.post(
            MARKETPLACE_QUERY_URL,
            json=build_extension_query_body(extension_id, flags),
            headers=headers,
            timeout=timeout,
        )
        r.raise_for_status()
        response = r.json()

        results = response.get("results", []) or [{}]
        extensions = results[0].get("extensions", []) or []
        if not extensions:
            raise ExtensionNotFoundError(
                f"Extension '{extension_id}' not found in marketplace"
            )
        return list(extensions[0].get("versions", []) or [])

    def _open_vsx_versions(self, extension_id: str, timeout: float) -> list[str]:
        publisher, name = split_extension_id(extension_id)
        r = self.session.get(
            f"{OPEN_VSX_API_URL}/{quote(publisher, safe='')}/{quote(name, safe='')}",
            headers={**self.headers, "Accept": "application/json"},
            timeout=timeout,
        )
        r.raise_for_status()
        data = r.json() or {}
        return list((data.get("allVersions") or {}).keys())

    def resolve_latest_version(
        self,
        extension_id: str,
        prefer_prerelease: bool = False,
        source: str = "auto",
        timeout: float | None = None,
    ) -> str:
        """Return the newest version of ``extension_id`` published on ``source``.

        ``timeout`` bounds each registry request; it defaults to
        ``HTTP_REQUEST_TIMEOUT_SECONDS``.
        """
        split_extension_id(extension_id)
        sources = source_order(source) if source == "auto" else [source]
        request_timeout = timeout or HTTP_REQUEST_TIMEOUT_SECONDS
        last_error: VsixmError = ExtensionNotFoundError(
            f"Extension '{extension_id}' not found"
        )

        for current in sources:
            logger.debug(f"Resolving latest version of {extension_id} on {current}")
            try:
                if current == "marketplace":
                    version = pick_marketplace_version(
                        self._marketplace_versions(extension_id, request_timeout),
                        prefer_prerelease,
                    )
                else:
                    version = pick_open_vsx_version(
                        self._open_vsx_versions(extension_id, request_timeout),
                        prefer_prerelease,
                    )
            except requests.RequestException as exc:
                last_error = translate_request_error(exc, extension_id, current)
                continue
            except VsixmError as exc:
                last_error = exc
                continue

            if version:
                return version
            last_error = ExtensionNotFoundError(
                f"No versions available for extension '{extension_id}' in {current}"
            )

        raise last_error

    @staticmethod
    def download_url(extension_id: str, version: str, source: str) -> str:
        if source == "marketplace":
            return marketplace_download_url(extension_id, version)
        if source == "open-vsx":
            return open_vsx_download_url(extension_id, version)
        raise ValidationError(f"Unknown registry source: {source!r}")

    def fetch(
        self,
        extension_id: str,
        version: str,
        source: str,
        target_dir: Path,
        timeout: float | None = None,
    ) -> Path:
        """Download one VSIX into ``target_dir`` and return its path.

        ``timeout`` is the read timeout of the stream; it defaults to
        ``HTTP_STREAM_READ_TIMEOUT_SECONDS``.
        """
        url = self.download_url(extension_id, version, source)
        target_path = target_dir.joinpath(f"{extension_id}-{version}.vsix")
        read_timeout = timeout or HTTP_STREAM_READ_TIMEOUT_SECONDS
        logger.info(f"Downloading {extension_id}@{version} from {source}")
        logger.debug(f"- {url} (read timeout {read_timeout:g}s)")
        try:
            return download_vsix(self.session, url, target_path, self.headers, read_timeout)
        except requests.RequestException as exc:
            raise translate_request_error(exc, extension_id, source) from exc
