from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable

# workspace extensions.json files routinely carry comments
import json5

from vsixm.exceptions import ValidationError
from vsixm.installed import is_valid_extension_id
from vsixm.models import InstalledItem

logger: logging.Logger = logging.getLogger(__name__)

LIST_FORMATS = ("txt", "extensions.json")


def detect_list_format(path: Path) -> str:
    return "extensions.json" if path.suffix.lower() == ".json" else "txt"


def format_extension_list(items: Iterable[InstalledItem], fmt: str = "txt") -> str:
    """Render installed extensions as an id-per-line list or a workspace extensions.json."""
    ids = sorted({item.id.lower(): item.id for item in items}.values(), key=str.lower)
    if fmt == "txt":
        return "\n".join(ids) + ("\n" if ids else "")
    if fmt == "extensions.json":
        valid = [extension_id for extension_id in ids if is_valid_extension_id(extension_id)]
        return json.dumps({"recommendations": valid}, indent=2) + "\n"
    raise ValidationError(
        f"Unknown list format {fmt!r}, expected one of {', '.join(LIST_FORMATS)}"
    )


def parse_extension_list(content: str, fmt: str = "txt") -> list[str]:
    """Return the ``publisher.name[@version]`` entries of a list file.

    Plain text lists hold one entry per line; blank lines and ``#`` comments
    are ignored. ``extensions.json`` lists are read from ``recommendations``.
    """
    if fmt == "txt":
        entries = []
        for line in content.splitlines():
            entry = line.split("#", 1)[0].strip()
            if entry:
                entries.append(entry)
        return entries
    if fmt == "extensions.json":
        try:
            data = json5.loads(content)
        except ValueError as exc:
            raise ValidationError(f"Malformed extensions.json: {exc}") from exc
        recommendations = data.get("recommendations") if isinstance(data, dict) else None
        if not isinstance(recommendations, list):
            raise ValidationError("extensions.json has no 'recommendations' list")
        return [f"{entry}".strip() for entry in recommendations if f"{entry}".strip()]
    raise ValidationError(
        f"Unknown list format {fmt!r}, expected one of {', '.join(LIST_FORMATS)}"
    )


def read_extension_list(path: Path) -> list[str]:
    fmt = detect_list_format(path)
    logger.debug(f"Reading {fmt} extension list from {path}")
    return parse_extension_list(path.read_text(encoding="utf-8"), fmt)
