from __future__ import annotations

import pytest

from uicheck.errors import ExitStatus
from uicheck.model import Diagnostics, ErrorMatch, Level, Message, Mode, Pattern, PatternMatch, Spanned


def test_level_parse_and_order() -> None:
    assert Level.parse("warning") is Level.WARN
    assert Level.parse(" Error ") is Level.ERROR
    assert Level.parse("failure-note") is Level.FAILURE_NOTE
    assert Level.FAILURE_NOTE < Level.NOTE < Level.HELP < Level.WARN < Level.ERROR
    assert str(Level.WARN) == "warning"
    with pytest.raises(ValueError, match="unknown diagnostic level"):
        Level.parse("loud")


@pytest.mark.parametrize(
    ("mode", "status", "expected"),
    [
        (Mode.pass_(), 0, None),
        (Mode.pass_(), 1, ExitStatus(mode="pass", status=1, expected=0)),
        (Mode.panic(), 101, None),
        (Mode.panic(), 1, ExitStatus(mode="panic", status=1, expected=101)),
        (Mode.fail(), 1, None),
        (Mode.fail(require_patterns=False), 0, ExitStatus(mode="fail", status=0, expected=1)),
        (Mode.yolo(), 42, None),
    ],
)
def test_mode_exit_status(mode: Mode, status: int, expected: ExitStatus | None) -> None:
    assert mode.ok(status) == expected


def test_error_match_lines_are_one_based() -> None:
    kind = PatternMatch(Spanned(Pattern("x")), Level.ERROR)
    with pytest.raises(ValueError, match="1-based"):
        ErrorMatch(kind=kind, line=0)


def test_diagnostics_push_grows_line_buckets() -> None:
    diagnostics = Diagnostics()
    diagnostics.push(3, Message(Level.ERROR, "three"))
    diagnostics.push(0, Message(Level.NOTE, "zero"))
    diagnostics.push(None, Message(Level.NOTE, "nowhere"))

    assert diagnostics.messages == [[], [], [], [Message(Level.ERROR, "three")]]
    assert [msg.message for msg in diagnostics.messages_from_unknown_file_or_line] == [
        "zero",
        "nowhere",
    ]


def test_pattern_substring_and_regex() -> None:
    assert Pattern("borrow").matches("cannot borrow `x`")
    assert not Pattern("b.rrow").matches("cannot borrow `x`")
    assert Pattern("b.rrow", regex=True).matches("cannot borrow `x`")
