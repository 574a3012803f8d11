"""External process invocation records."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterable, Mapping

from uicheck.errors import Errored

logger = logging.getLogger(__name__)


@dataclass
class Command:
    """A process invocation under construction.

    Environment entries are applied on top of the harness's own environment.
    """

    program: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    cwd: Path | None = None
    stdin: Path | None = None

    def arg(self, value: str | os.PathLike[str]) -> Command:
        self.args.append(os.fspath(value))
        return self

    def extend(self, values: Iterable[str | os.PathLike[str]]) -> Command:
        for value in values:
            self.arg(value)
        return self

    def envs(self, values: Mapping[str, str] | Iterable[tuple[str, str]]) -> Command:
        items = values.items() if isinstance(values, Mapping) else values
        for key, value in items:
            self.env[key] = value
        return self

    def copy(self) -> Command:
        return replace(self, args=list(self.args), env=dict(self.env))

    def tokens(self) -> list[str]:
        return [self.program, *self.args]

    def render(self) -> str:
        rendered = subprocess.list2cmdline(self.tokens())
        if self.env:
            assignments = " ".join(f"{key}={value}" for key, value in self.env.items())
            rendered = f"{assignments} {rendered}"
        return rendered


@dataclass(frozen=True)
class ProcessOutput:
    status: int
    stdout: bytes
    stderr: bytes


@dataclass(frozen=True)
class CommandBuilder:
    """How to invoke the compiler under test, before per-test arguments."""

    program: str
    args: tuple[str, ...] = ()
    out_dir_flag: str | None = "--out-dir"
    envs: tuple[tuple[str, str], ...] = ()

    def build(self, out_dir: Path) -> Command:
        cmd = Command(self.program)
        cmd.extend(self.args)
        if self.out_dir_flag is not None:
            cmd.arg(self.out_dir_flag).arg(out_dir)
        cmd.envs(self.envs)
        return cmd


def run_command(cmd: Command) -> ProcessOutput:
    """Run `cmd` to completion, raising `Errored` if it cannot be spawned."""
    env = None
    if cmd.env:
        env = dict(os.environ)
        env.update(cmd.env)
    logger.debug("running %s", cmd.render())
    try:
        if cmd.stdin is not None:
            with cmd.stdin.open("rb") as handle:
                completed = subprocess.run(
                    cmd.tokens(),
                    stdin=handle,
                    capture_output=True,
                    cwd=cmd.cwd,
                    env=env,
                    check=False,
                )
        else:
            completed = subprocess.run(
                cmd.tokens(),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                cwd=cmd.cwd,
                env=env,
                check=False,
            )
    except OSError as exc:
        raise Errored(
            command=cmd,
            stderr=str(exc).encode("utf-8"),
            stdout=f"could not spawn `{cmd.program}` as a process".encode("utf-8"),
        ) from exc
    return ProcessOutput(
        status=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr,
    )
