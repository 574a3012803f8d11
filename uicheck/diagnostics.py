"""Decoding of JSON-lines compiler diagnostics into per-line message buckets."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from uicheck.model import Diagnostics, Level, Message

logger = logging.getLogger(__name__)


def _same_file(file_name: str, path: Path) -> bool:
    candidate = Path(file_name)
    if candidate == path:
        return True
    try:
        return candidate.resolve() == path.resolve()
    except OSError:
        return False


def primary_line(spans: Any, path: Path) -> int | None:
    if not isinstance(spans, list):
        return None
    for span in spans:
        if not isinstance(span, dict) or not span.get("is_primary"):
            continue
        file_name = span.get("file_name")
        line = span.get("line_start")
        if isinstance(file_name, str) and isinstance(line, int) and _same_file(file_name, path):
            return line
    return None


def _code_of(payload: dict[str, Any]) -> str | None:
    code = payload.get("code")
    if isinstance(code, dict):
        code = code.get("code")
    if isinstance(code, str) and code:
        return code
    return None


def insert_recursive(
    payload: dict[str, Any],
    path: Path,
    diagnostics: Diagnostics,
    parent_line: int | None,
) -> None:
    raw_level = payload.get("level", "")
    line = primary_line(payload.get("spans"), path)
    if line is None:
        line = parent_line
    try:
        level = Level.parse(str(raw_level))
    except ValueError:
        logger.warning("skipping diagnostic with unknown level %r", raw_level)
    else:
        diagnostics.push(
            line,
            Message(level=level, message=str(payload.get("message", "")), code=_code_of(payload)),
        )
    for child in payload.get("children") or ():
        if isinstance(child, dict):
            insert_recursive(child, path, diagnostics, line)


def process(path: Path, stderr: bytes) -> Diagnostics:
    """Split compiler stderr into rendered text and structured messages.

    Lines that are not JSON diagnostics are kept verbatim in the rendered
    output.
    """
    diagnostics = Diagnostics()
    rendered: list[bytes] = []
    for raw_line in stderr.splitlines(keepends=True):
        stripped = raw_line.strip()
        if not stripped.startswith(b"{"):
            rendered.append(raw_line)
            continue
        try:
            payload = json.loads(stripped)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("unparseable diagnostic line: %r", stripped[:80])
            rendered.append(raw_line)
            continue
        if not isinstance(payload, dict) or "message" not in payload or "level" not in payload:
            rendered.append(raw_line)
            continue
        text = payload.get("rendered")
        if isinstance(text, str):
            rendered.append(text.encode("utf-8"))
        insert_recursive(payload, path, diagnostics, None)
    diagnostics.rendered = b"".join(rendered)
    return diagnostics
