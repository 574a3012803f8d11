"""Annotation and diagnostic records shared by the verification pipeline."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Generic, Iterator, TypeVar

from uicheck.command import Command
from uicheck.errors import Errored, ExitStatus, MultipleRevisionsWithResults

if TYPE_CHECKING:
    from uicheck.custom_flags import Flag

T = TypeVar("T")


class Level(enum.IntEnum):
    """Diagnostic severity. `ERROR` is the highest level."""

    FAILURE_NOTE = 0
    NOTE = 1
    HELP = 2
    WARN = 3
    ERROR = 4

    @classmethod
    def parse(cls, name: str) -> Level:
        normalized = name.strip().lower()
        try:
            return _LEVEL_NAMES[normalized]
        except KeyError:
            raise ValueError(f"unknown diagnostic level {name!r}") from None

    def __str__(self) -> str:
        return _LEVEL_DISPLAY[self]


_LEVEL_NAMES = {
    "error": Level.ERROR,
    "warn": Level.WARN,
    "warning": Level.WARN,
    "help": Level.HELP,
    "note": Level.NOTE,
    "failure-note": Level.FAILURE_NOTE,
    "failure_note": Level.FAILURE_NOTE,
    "error: internal compiler error": Level.ERROR,
}

_LEVEL_DISPLAY = {
    Level.ERROR: "error",
    Level.WARN: "warning",
    Level.HELP: "help",
    Level.NOTE: "note",
    Level.FAILURE_NOTE: "failure-note",
}


@dataclass(frozen=True)
class Span:
    file: Path | None = None
    line_start: int | None = None

    def describe(self) -> str:
        if self.file is None and self.line_start is None:
            return "<unknown location>"
        file_text = self.file.as_posix() if self.file is not None else "<unknown file>"
        if self.line_start is None:
            return file_text
        return f"{file_text}:{self.line_start}"


@dataclass(frozen=True)
class Spanned(Generic[T]):
    content: T
    span: Span = field(default_factory=Span)

    @property
    def line(self) -> int | None:
        return self.span.line_start


@dataclass(frozen=True)
class Message:
    level: Level
    message: str
    code: str | None = None


@dataclass
class Diagnostics:
    """Diagnostics of one invocation.

    `messages[line]` holds the messages attributed to `line` of the tested
    file; index 0 is never populated. Matching consumes entries from these
    lists, so every test run owns its own instance.
    """

    rendered: bytes = b""
    messages: list[list[Message]] = field(default_factory=lambda: [[]])
    messages_from_unknown_file_or_line: list[Message] = field(default_factory=list)

    def push(self, line: int | None, message: Message) -> None:
        if line is None or line <= 0:
            self.messages_from_unknown_file_or_line.append(message)
            return
        while len(self.messages) <= line:
            self.messages.append([])
        self.messages[line].append(message)


@dataclass(frozen=True)
class Pattern:
    """A literal substring or a regular expression searched in a message."""

    text: str
    regex: bool = False

    def matches(self, message: str) -> bool:
        if self.regex:
            return re.search(self.text, message) is not None
        return self.text in message

    def __str__(self) -> str:
        if self.regex:
            return f"/{self.text}/"
        return repr(self.text)


@dataclass(frozen=True)
class PatternMatch:
    pattern: Spanned[Pattern]
    level: Level


@dataclass(frozen=True)
class CodeMatch:
    code: Spanned[str]


@dataclass(frozen=True)
class ErrorMatch:
    kind: PatternMatch | CodeMatch
    line: int

    def __post_init__(self) -> None:
        if self.line < 1:
            raise ValueError(f"error annotations use 1-based lines, got {self.line}")

    @property
    def span(self) -> Span:
        if isinstance(self.kind, PatternMatch):
            return self.kind.pattern.span
        return self.kind.code.span


class ModeKind(enum.Enum):
    PASS = "pass"
    PANIC = "panic"
    FAIL = "fail"
    YOLO = "yolo"


@dataclass(frozen=True)
class Mode:
    kind: ModeKind
    require_patterns: bool = False

    @classmethod
    def pass_(cls) -> Mode:
        return cls(ModeKind.PASS)

    @classmethod
    def panic(cls) -> Mode:
        return cls(ModeKind.PANIC)

    @classmethod
    def fail(cls, *, require_patterns: bool = True) -> Mode:
        return cls(ModeKind.FAIL, require_patterns=require_patterns)

    @classmethod
    def yolo(cls) -> Mode:
        return cls(ModeKind.YOLO)

    @property
    def expected_exit_code(self) -> int | None:
        return _EXIT_CODES.get(self.kind)

    def ok(self, status: int) -> ExitStatus | None:
        """Return an `ExitStatus` error if `status` disagrees with the mode."""
        expected = self.expected_exit_code
        if expected is None or status == expected:
            return None
        return ExitStatus(mode=str(self), status=status, expected=expected)

    def __str__(self) -> str:
        return self.kind.value


_EXIT_CODES = {
    ModeKind.PASS: 0,
    ModeKind.PANIC: 101,
    ModeKind.FAIL: 1,
}


class OutputConflictHandling(enum.Enum):
    ERROR = "error"
    BLESS = "bless"
    IGNORE = "ignore"


@dataclass(frozen=True)
class Normalization:
    pattern: re.Pattern[bytes]
    replacement: bytes

    def apply(self, text: bytes) -> bytes:
        return self.pattern.sub(self.replacement, text)


@dataclass
class Revisioned:
    """Directives that apply to one set of revisions (all when `revisions` is empty)."""

    revisions: tuple[str, ...] = ()
    span: Span = field(default_factory=Span)
    compile_flags: list[str] = field(default_factory=list)
    env_vars: dict[str, str] = field(default_factory=dict)
    aux_builds: list[Spanned[Path]] = field(default_factory=list)
    error_matches: list[ErrorMatch] = field(default_factory=list)
    error_in_other_files: list[Spanned[Pattern]] = field(default_factory=list)
    normalize_stdout: list[Normalization] = field(default_factory=list)
    normalize_stderr: list[Normalization] = field(default_factory=list)
    diagnostic_code_prefix: Spanned[str] | None = None
    require_annotations_for_level: Spanned[Level] | None = None
    stderr_per_bitwidth: bool = False
    mode: Spanned[Mode] | None = None
    # Insertion order is the order in which flags are applied.
    custom: dict[str, Spanned[Flag]] = field(default_factory=dict)

    def applies_to(self, revision: str) -> bool:
        return not self.revisions or revision in self.revisions


@dataclass
class Comments:
    """Every directive set of one file, in source order."""

    revisions: tuple[str, ...] = ()
    revisioned: list[Revisioned] = field(default_factory=list)

    def for_revision(self, revision: str) -> Iterator[Revisioned]:
        for rev in self.revisioned:
            if rev.applies_to(revision):
                yield rev

    def find_one(
        self,
        revision: str,
        kind: str,
        getter: Callable[[Revisioned], Spanned[T] | None],
    ) -> Spanned[T] | None:
        """Resolve a single-valued setting.

        Revision-specific directive sets take precedence over the
        revision-independent ones; two revision-specific values conflict.
        """
        result: Spanned[T] | None = None
        conflicts: list[int | None] = []
        for rev in self.revisioned:
            if not rev.revisions or revision not in rev.revisions:
                continue
            found = getter(rev)
            if found is None:
                continue
            if result is None:
                result = found
            else:
                conflicts.append(found.line)
        if conflicts:
            raise Errored(
                command=Command(f"<finding flags for revision `{revision}`>"),
                errors=[MultipleRevisionsWithResults(kind=kind, lines=tuple(conflicts))],
            )
        if result is not None:
            return result
        for rev in self.revisioned:
            if rev.revisions:
                continue
            found = getter(rev)
            if found is not None:
                result = found
        return result

    def mode(self, revision: str) -> Spanned[Mode]:
        found = self.find_one(revision, "mode changes", lambda r: r.mode)
        if found is None:
            return Spanned(Mode.fail())
        return found
