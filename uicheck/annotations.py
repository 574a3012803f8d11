"""Load structured annotation sets from JSON documents."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError

from uicheck.custom_flags import flag_from_payload
from uicheck.model import (
    CodeMatch,
    Comments,
    ErrorMatch,
    Level,
    Mode,
    ModeKind,
    Normalization,
    Pattern,
    PatternMatch,
    Revisioned,
    Span,
    Spanned,
)

LEVEL_NAMES = ["error", "warn", "warning", "help", "note", "failure-note"]

_PATTERN_PROPERTIES = {
    "pattern": {"type": "string", "minLength": 1},
    "regex": {"type": "boolean"},
    "annotation_line": {"$ref": "#/$defs/line"},
}

ANNOTATIONS_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "revisions": {
            "type": "array",
            "items": {"type": "string", "minLength": 1},
            "uniqueItems": True,
        },
        "directives": {"type": "array", "items": {"$ref": "#/$defs/directives"}},
    },
    "$defs": {
        "line": {"type": "integer", "minimum": 1},
        "normalization": {
            "type": "object",
            "required": ["pattern", "replacement"],
            "additionalProperties": False,
            "properties": {
                "pattern": {"type": "string", "minLength": 1},
                "replacement": {"type": "string"},
            },
        },
        "pattern_match": {
            "type": "object",
            "required": ["line", "pattern", "level"],
            "additionalProperties": False,
            "properties": {
                **_PATTERN_PROPERTIES,
                "line": {"$ref": "#/$defs/line"},
                "level": {"enum": LEVEL_NAMES},
            },
        },
        "code_match": {
            "type": "object",
            "required": ["line", "code"],
            "additionalProperties": False,
            "properties": {
                "line": {"$ref": "#/$defs/line"},
                "code": {"type": "string", "minLength": 1},
                "annotation_line": {"$ref": "#/$defs/line"},
            },
        },
        "directives": {
            "type": "object",
            "additionalProperties": False,
            "dependentRequired": {"require_patterns": ["mode"]},
            "properties": {
                "revisions": {"type": "array", "items": {"type": "string", "minLength": 1}},
                "line": {"$ref": "#/$defs/line"},
                "compile_flags": {"type": "array", "items": {"type": "string"}},
                "env": {"type": "object", "additionalProperties": {"type": "string"}},
                "aux_builds": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "required": ["path"],
                        "additionalProperties": False,
                        "properties": {
                            "path": {"type": "string", "minLength": 1},
                            "line": {"$ref": "#/$defs/line"},
                        },
                    },
                },
                "error_matches": {
                    "type": "array",
                    "items": {
                        "oneOf": [
                            {"$ref": "#/$defs/pattern_match"},
                            {"$ref": "#/$defs/code_match"},
                        ]
                    },
                },
                "error_in_other_files": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "required": ["pattern"],
                        "additionalProperties": False,
                        "properties": _PATTERN_PROPERTIES,
                    },
                },
                "normalize_stdout": {"type": "array", "items": {"$ref": "#/$defs/normalization"}},
                "normalize_stderr": {"type": "array", "items": {"$ref": "#/$defs/normalization"}},
                "diagnostic_code_prefix": {"type": "string"},
                "require_annotations_for_level": {"enum": LEVEL_NAMES},
                "stderr_per_bitwidth": {"type": "boolean"},
                "mode": {"enum": [kind.value for kind in ModeKind]},
                "require_patterns": {"type": "boolean"},
                "custom": {
                    "type": "object",
                    "additionalProperties": {
                        "type": "object",
                        "required": ["kind"],
                        "properties": {"kind": {"type": "string"}},
                    },
                },
            },
        },
    },
}


class AnnotationError(ValueError):
    """Raised when an annotation document cannot be turned into directives."""


def _normalization(payload: dict[str, str], *, location: str) -> Normalization:
    try:
        pattern = re.compile(payload["pattern"].encode("utf-8"))
    except re.error as exc:
        raise AnnotationError(f"invalid normalization regex at {location}: {exc}") from exc
    return Normalization(pattern=pattern, replacement=payload["replacement"].encode("utf-8"))


def _pattern(payload: dict[str, Any], span: Span, *, location: str) -> Spanned[Pattern]:
    pattern = Pattern(text=payload["pattern"], regex=payload.get("regex", False))
    if pattern.regex:
        try:
            re.compile(pattern.text)
        except re.error as exc:
            raise AnnotationError(f"invalid pattern regex at {location}: {exc}") from exc
    return Spanned(pattern, span)


def _mode(payload: dict[str, Any], *, location: str) -> Mode:
    kind = ModeKind(payload["mode"])
    if "require_patterns" in payload and kind is not ModeKind.FAIL:
        raise AnnotationError(
            f"require_patterns at {location} needs mode `fail`, got `{kind.value}`"
        )
    if kind is ModeKind.FAIL:
        return Mode.fail(require_patterns=payload.get("require_patterns", True))
    return Mode(kind)


def revisioned_from_payload(payload: dict[str, Any], *, test_path: Path, index: int) -> Revisioned:
    def span(line: int | None) -> Span:
        return Span(file=test_path, line_start=line)

    set_line = payload.get("line")
    location = f"directives.{index}"
    rev = Revisioned(
        revisions=tuple(payload.get("revisions", ())),
        span=span(set_line),
        compile_flags=list(payload.get("compile_flags", ())),
        env_vars=dict(payload.get("env", {})),
        stderr_per_bitwidth=payload.get("stderr_per_bitwidth", False),
    )
    for aux in payload.get("aux_builds", ()):
        rev.aux_builds.append(Spanned(Path(aux["path"]), span(aux.get("line", set_line))))

    for position, raw in enumerate(payload.get("error_matches", ())):
        where = span(raw.get("annotation_line", raw["line"]))
        if "code" in raw:
            kind: PatternMatch | CodeMatch = CodeMatch(Spanned(raw["code"], where))
        else:
            kind = PatternMatch(
                pattern=_pattern(raw, where, location=f"{location}.error_matches.{position}"),
                level=Level.parse(raw["level"]),
            )
        rev.error_matches.append(ErrorMatch(kind=kind, line=raw["line"]))

    for position, raw in enumerate(payload.get("error_in_other_files", ())):
        rev.error_in_other_files.append(
            _pattern(
                raw,
                span(raw.get("annotation_line", set_line)),
                location=f"{location}.error_in_other_files.{position}",
            )
        )

    for stream in ("stdout", "stderr"):
        rules = getattr(rev, f"normalize_{stream}")
        for position, raw in enumerate(payload.get(f"normalize_{stream}", ())):
            rules.append(_normalization(raw, location=f"{location}.normalize_{stream}.{position}"))

    if "diagnostic_code_prefix" in payload:
        rev.diagnostic_code_prefix = Spanned(payload["diagnostic_code_prefix"], span(set_line))
    if "require_annotations_for_level" in payload:
        rev.require_annotations_for_level = Spanned(
            Level.parse(payload["require_annotations_for_level"]), span(set_line)
        )
    if "mode" in payload:
        rev.mode = Spanned(_mode(payload, location=location), span(set_line))

    for name, raw in payload.get("custom", {}).items():
        try:
            flag = flag_from_payload(raw)
        except (TypeError, ValueError) as exc:
            raise AnnotationError(f"invalid custom flag {name!r} at {location}: {exc}") from exc
        rev.custom[name] = Spanned(flag, span(set_line))
    return rev


def comments_from_payload(payload: dict[str, Any], *, test_path: Path) -> Comments:
    try:
        Draft202012Validator(ANNOTATIONS_SCHEMA).validate(payload)
    except ValidationError as exc:
        location = ".".join(str(part) for part in exc.absolute_path) or "<root>"
        raise AnnotationError(f"annotation validation failed at {location}: {exc.message}") from exc

    declared = tuple(payload.get("revisions", ()))
    revisioned = []
    for index, raw in enumerate(payload.get("directives", ())):
        unknown = [name for name in raw.get("revisions", ()) if name not in declared]
        if unknown:
            raise AnnotationError(
                f"directives.{index} names undeclared revision(s): {', '.join(unknown)}"
            )
        revisioned.append(revisioned_from_payload(raw, test_path=test_path, index=index))
    return Comments(revisions=declared, revisioned=revisioned)


def load_annotations(path: Path, *, test_path: Path) -> Comments:
    try:
        raw_text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise AnnotationError(f"unable to read annotation file {path}: {exc}") from exc
    try:
        payload = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        raise AnnotationError(
            f"annotation file is not valid JSON: {path} "
            f"(line {exc.lineno} column {exc.colno}: {exc.msg})"
        ) from exc
    if not isinstance(payload, dict):
        raise AnnotationError(f"annotation root must be a JSON object: {path}")
    return comments_from_payload(payload, test_path=test_path)
