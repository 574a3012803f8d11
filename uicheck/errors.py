"""Closed error taxonomy of a single test run."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from uicheck.command import Command
    from uicheck.model import Message, Pattern, Span, Spanned


class Error:
    """Marker base for every discrepancy a test run can report."""

    def describe(self) -> str:
        raise NotImplementedError


def _at_line(line: int | None) -> str:
    if line is None:
        return ""
    return f" on line {line}"


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class ExitStatus(Error):
    mode: str
    status: int
    expected: int

    def describe(self) -> str:
        return f"test got exit status {self.status}, but expected {self.expected} ({self.mode} test)"


@dataclass(frozen=True)
class CommandFailed(Error):
    kind: str
    status: int

    def describe(self) -> str:
        return f"{self.kind} failed with exit status {self.status}"


@dataclass(frozen=True)
class OutputDiffers(Error):
    path: Path
    actual: bytes
    expected: bytes
    bless_command: str | None = None

    def describe(self) -> str:
        lines = [f"actual output differs from expected in {self.path.as_posix()}"]
        if self.bless_command:
            lines.append(f"use `{self.bless_command}` to update the expected output")
        lines.append("--- expected")
        lines.append(_decode(self.expected).rstrip("\n"))
        lines.append("+++ actual")
        lines.append(_decode(self.actual).rstrip("\n"))
        return "\n".join(lines)


@dataclass(frozen=True)
class PatternNotFound(Error):
    pattern: Spanned[Pattern]
    expected_line: int | None = None

    def describe(self) -> str:
        return (
            f"pattern {self.pattern.content} not found{_at_line(self.expected_line)} "
            f"(annotation at {self.pattern.span.describe()})"
        )


@dataclass(frozen=True)
class CodeNotFound(Error):
    code: Spanned[str]
    expected_line: int | None = None

    def describe(self) -> str:
        return (
            f"diagnostic code `{self.code.content}` not found{_at_line(self.expected_line)} "
            f"(annotation at {self.code.span.describe()})"
        )


@dataclass(frozen=True)
class ErrorsWithoutPattern(Error):
    msgs: tuple[Message, ...]
    path: Spanned[Path] | None = None

    def describe(self) -> str:
        if self.path is None:
            header = "there were diagnostics in other files or without a line"
        else:
            header = f"there were diagnostics without annotations at {self.path.span.describe()}"
        lines = [f"{header}:"]
        for msg in self.msgs:
            code = f"[{msg.code}] " if msg.code else ""
            lines.append(f"  {msg.level}: {code}{msg.message}")
        return "\n".join(lines)


@dataclass(frozen=True)
class PatternFoundInPassTest(Error):
    mode: Span
    span: Span

    def describe(self) -> str:
        return (
            f"error annotation at {self.span.describe()} found in a test that must not fail "
            f"(mode set at {self.mode.describe()})"
        )


@dataclass(frozen=True)
class NoPatternsFound(Error):
    def describe(self) -> str:
        return "no error annotations found in a test that requires them"


@dataclass(frozen=True)
class MultipleRevisionsWithResults(Error):
    kind: str
    lines: tuple[int | None, ...]

    def describe(self) -> str:
        where = ", ".join("?" if line is None else str(line) for line in self.lines)
        return f"multiple {self.kind} found for one revision (lines {where})"


@dataclass(frozen=True)
class Aux(Error):
    path: Path
    errors: tuple[Error, ...]
    line: int | None = None

    def describe(self) -> str:
        lines = [f"aux build of {self.path.as_posix()}{_at_line(self.line)} failed"]
        for error in self.errors:
            for text in error.describe().splitlines():
                lines.append(f"  {text}")
        return "\n".join(lines)


class Errored(Exception):
    """A failed test: the command, every accumulated error and the captured output."""

    def __init__(
        self,
        *,
        command: Command,
        errors: Sequence[Error] = (),
        stderr: bytes = b"",
        stdout: bytes = b"",
    ) -> None:
        self.command = command
        self.errors: list[Error] = list(errors)
        self.stderr = stderr
        self.stdout = stdout
        super().__init__(f"{len(self.errors)} error(s) running {command.render()}")

    def render(self) -> str:
        lines = [f"command: {self.command.render()}"]
        if self.errors:
            lines.append("errors:")
            for error in self.errors:
                for index, text in enumerate(error.describe().splitlines()):
                    prefix = "- " if index == 0 else "  "
                    lines.append(f"{prefix}{text}")
        if self.stderr:
            lines.append("full stderr:")
            lines.append(_decode(self.stderr).rstrip("\n"))
        if self.stdout:
            lines.append("full stdout:")
            lines.append(_decode(self.stdout).rstrip("\n"))
        return "\n".join(lines)
