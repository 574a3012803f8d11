"""Global harness configuration shared by every test of a run."""

from __future__ import annotations

import json
import logging
import struct
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable

from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError

from uicheck.command import CommandBuilder
from uicheck.diagnostics import process as process_diagnostics
from uicheck.model import Diagnostics, OutputConflictHandling

logger = logging.getLogger(__name__)

DEFAULT_AUX_ARGS = ("--crate-type=lib",)
DEFAULT_AUX_LINK_ARGS = ("--extern", "{name}={out_dir}/lib{name}.rlib", "-L", "{out_dir}")
EXTERNAL_OUT_DIR = "__external__"

CONFIG_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["program"],
    "additionalProperties": False,
    "properties": {
        "program": {
            "type": "object",
            "required": ["command"],
            "additionalProperties": False,
            "properties": {
                "command": {"type": "string", "minLength": 1},
                "args": {"type": "array", "items": {"type": "string"}},
                "out_dir_flag": {"type": ["string", "null"]},
                "env": {"type": "object", "additionalProperties": {"type": "string"}},
            },
        },
        "root_dir": {"type": "string"},
        "out_dir": {"type": "string"},
        "target": {"type": ["string", "null"]},
        "host": {"type": ["string", "null"]},
        "pointer_width": {"type": ["integer", "null"], "enum": [16, 32, 64, None]},
        "output_conflict_handling": {"enum": ["error", "bless", "ignore"]},
        "bless_command": {"type": ["string", "null"]},
        "aux_args": {"type": "array", "items": {"type": "string"}},
        "aux_link_args": {"type": "array", "items": {"type": "string"}},
        "exe_suffix": {"type": "string"},
    },
}


class ConfigError(ValueError):
    """Raised when a configuration document cannot be loaded."""


def host_pointer_width() -> int:
    return struct.calcsize("P") * 8


@dataclass
class Config:
    program: CommandBuilder
    root_dir: Path = field(default_factory=Path.cwd)
    out_dir: Path = field(default_factory=lambda: Path("target") / "ui")
    target: str | None = None
    host: str | None = None
    pointer_width: int | None = None
    output_conflict_handling: OutputConflictHandling = OutputConflictHandling.ERROR
    bless_command: str | None = None
    diagnostic_extractor: Callable[[Path, bytes], Diagnostics] = process_diagnostics
    aux_args: tuple[str, ...] = DEFAULT_AUX_ARGS
    aux_link_args: tuple[str, ...] = DEFAULT_AUX_LINK_ARGS
    exe_suffix: str = ""

    def copy(self) -> Config:
        return replace(self)

    def host_matches_target(self) -> bool:
        return self.target is None or self.target == self.host

    def get_pointer_width(self) -> int:
        if self.pointer_width is not None:
            return self.pointer_width
        return host_pointer_width()

    def out_dir_for(self, path: Path) -> Path:
        """Output directory for artifacts of `path`, keyed by its parent directory.

        Directories under `root_dir` map to their root-relative location. Any
        other directory keeps its full absolute path below `EXTERNAL_OUT_DIR`.
        """
        parent = path.parent.resolve()
        try:
            relative = parent.relative_to(self.root_dir.resolve())
        except ValueError:
            drive = parent.drive.replace(":", "").strip("\\/").replace("\\", "_")
            prefix = [EXTERNAL_OUT_DIR, drive] if drive else [EXTERNAL_OUT_DIR]
            return self.out_dir.joinpath(*prefix, *parent.parts[1:])
        return self.out_dir.joinpath(*relative.parts)


def _resolve(base_dir: Path, raw: str) -> Path:
    candidate = Path(raw)
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return candidate


def config_from_payload(payload: dict[str, Any], *, base_dir: Path) -> Config:
    try:
        Draft202012Validator(CONFIG_SCHEMA).validate(payload)
    except ValidationError as exc:
        location = ".".join(str(part) for part in exc.absolute_path) or "<root>"
        raise ConfigError(f"config validation failed at {location}: {exc.message}") from exc

    program_payload = payload["program"]
    program = CommandBuilder(
        program=program_payload["command"],
        args=tuple(program_payload.get("args", ())),
        out_dir_flag=program_payload.get("out_dir_flag", "--out-dir"),
        envs=tuple(program_payload.get("env", {}).items()),
    )
    config = Config(
        program=program,
        root_dir=_resolve(base_dir, payload.get("root_dir", ".")),
        out_dir=_resolve(base_dir, payload.get("out_dir", "target/ui")),
        target=payload.get("target"),
        host=payload.get("host"),
        pointer_width=payload.get("pointer_width"),
        output_conflict_handling=OutputConflictHandling(
            payload.get("output_conflict_handling", "error")
        ),
        bless_command=payload.get("bless_command"),
        aux_args=tuple(payload.get("aux_args", DEFAULT_AUX_ARGS)),
        aux_link_args=tuple(payload.get("aux_link_args", DEFAULT_AUX_LINK_ARGS)),
        exe_suffix=payload.get("exe_suffix", ""),
    )
    logger.debug("loaded config for program %s", program.program)
    return config


def load_config(path: Path) -> Config:
    try:
        raw_text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"unable to read config file {path}: {exc}") from exc
    try:
        payload = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        raise ConfigError(
            f"config file is not valid JSON: {path} "
            f"(line {exc.lineno} column {exc.colno}: {exc.msg})"
        ) from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"config root must be a JSON object: {path}")
    return config_from_payload(payload, base_dir=path.resolve().parent)
