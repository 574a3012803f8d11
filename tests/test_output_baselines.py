from __future__ import annotations

import re
from pathlib import Path

from uicheck.case import CaseConfig
from uicheck.command import CommandBuilder
from uicheck.config import Config
from uicheck.errors import OutputDiffers
from uicheck.model import Comments, Normalization, OutputConflictHandling, Revisioned


def _write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


def _case(
    path: Path,
    *revisioned: Revisioned,
    revision: str = "",
    handling: OutputConflictHandling = OutputConflictHandling.ERROR,
    pointer_width: int | None = None,
) -> CaseConfig:
    config = Config(
        program=CommandBuilder("rustc"),
        output_conflict_handling=handling,
        bless_command="uicheck --bless",
        pointer_width=pointer_width,
    )
    return CaseConfig(
        config=config,
        revision=revision,
        comments=Comments(revisioned=list(revisioned)),
        path=path,
        aux_dir=path.parent / "auxiliary",
    )


def _rule(pattern: bytes, replacement: bytes) -> Normalization:
    return Normalization(pattern=re.compile(pattern), replacement=replacement)


def test_extension_includes_revision() -> None:
    path = Path("ui/foo.rs")
    assert _case(path).extension("stderr") == "stderr"
    assert _case(path, revision="edition2021").extension("stderr") == "edition2021.stderr"


def test_output_path_naming() -> None:
    path = Path("ui/foo.rs")
    assert _case(path).output_path("stderr") == Path("ui/foo.stderr")
    assert _case(path, revision="a").output_path("stdout") == Path("ui/foo.a.stdout")


def test_output_path_per_bitwidth() -> None:
    path = Path("ui/foo.rs")
    case = _case(
        path,
        Revisioned(stderr_per_bitwidth=True),
        revision="a",
        pointer_width=32,
    )
    assert case.output_path("stderr") == Path("ui/foo.32bit.a.stderr")


def test_normalize_applies_rules_in_order_per_stream() -> None:
    case = _case(
        Path("ui/foo.rs"),
        Revisioned(
            normalize_stderr=[_rule(rb"/home/\w+", b"$HOME"), _rule(rb"\$HOME", b"~")],
            normalize_stdout=[_rule(rb"\d+ms", b"Nms")],
        ),
    )

    assert case.normalize(b"at /home/alice/src", "stderr") == b"at ~/src"
    assert case.normalize(b"took 15ms", "stdout") == b"took Nms"
    assert case.normalize(b"took 15ms", "stderr") == b"took 15ms"


def test_fixed_output_is_never_normalized() -> None:
    case = _case(Path("ui/foo.rs"), Revisioned(normalize_stderr=[_rule(rb"a", b"b")]))
    assert case.normalize(b"aaa", "fixed") == b"aaa"


def test_missing_baseline_means_empty_output(tmp_path: Path) -> None:
    case = _case(tmp_path / "foo.rs")
    errors: list = []

    path = case.check_output(b"", errors, "stderr")

    assert errors == []
    assert path == tmp_path / "foo.stderr"


def test_differing_output_is_reported(tmp_path: Path) -> None:
    _write(tmp_path / "foo.stderr", b"error: old\n")
    case = _case(tmp_path / "foo.rs")
    errors: list = []

    case.check_output(b"error: new\n", errors, "stderr")

    assert len(errors) == 1
    error = errors[0]
    assert isinstance(error, OutputDiffers)
    assert error.path == tmp_path / "foo.stderr"
    assert error.actual == b"error: new\n"
    assert error.expected == b"error: old\n"
    assert error.bless_command == "uicheck --bless"
    assert "uicheck --bless" in error.describe()


def test_comparison_uses_normalized_output(tmp_path: Path) -> None:
    _write(tmp_path / "foo.stderr", b"error in $DIR/foo.rs\n")
    case = _case(
        tmp_path / "foo.rs",
        Revisioned(normalize_stderr=[_rule(re.escape(str(tmp_path).encode()), b"$DIR")]),
    )
    errors: list = []

    case.check_output(f"error in {tmp_path}/foo.rs\n".encode(), errors, "stderr")

    assert errors == []


def test_bless_writes_baseline_and_round_trips(tmp_path: Path) -> None:
    source = tmp_path / "foo.rs"
    blessing = _case(source, handling=OutputConflictHandling.BLESS)
    errors: list = []

    blessing.check_test_output(errors, b"hello\n", b"warning: x\n")

    assert errors == []
    assert (tmp_path / "foo.stdout").read_bytes() == b"hello\n"
    assert (tmp_path / "foo.stderr").read_bytes() == b"warning: x\n"

    checking = _case(source)
    checking.check_test_output(errors, b"hello\n", b"warning: x\n")
    assert errors == []


def test_bless_removes_baseline_for_empty_output(tmp_path: Path) -> None:
    _write(tmp_path / "foo.stderr", b"stale\n")
    case = _case(tmp_path / "foo.rs", handling=OutputConflictHandling.BLESS)
    errors: list = []

    case.check_output(b"", errors, "stderr")

    assert errors == []
    assert not (tmp_path / "foo.stderr").exists()


def test_bless_of_empty_output_without_baseline(tmp_path: Path) -> None:
    case = _case(tmp_path / "foo.rs", handling=OutputConflictHandling.BLESS)
    errors: list = []

    case.check_output(b"", errors, "stdout")

    assert not (tmp_path / "foo.stdout").exists()


def test_ignore_leaves_baselines_untouched(tmp_path: Path) -> None:
    _write(tmp_path / "foo.stderr", b"recorded\n")
    case = _case(tmp_path / "foo.rs", handling=OutputConflictHandling.IGNORE)
    errors: list = []

    case.check_test_output(errors, b"anything", b"something else")

    assert errors == []
    assert (tmp_path / "foo.stderr").read_bytes() == b"recorded\n"
    assert not (tmp_path / "foo.stdout").exists()


def test_stdout_and_stderr_checked_independently(tmp_path: Path) -> None:
    _write(tmp_path / "foo.stdout", b"same\n")
    case = _case(tmp_path / "foo.rs")
    errors: list = []

    case.check_test_output(errors, b"same\n", b"unexpected\n")

    assert [error.path.name for error in errors] == ["foo.stderr"]
