from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from uicheck.build_manager import BuildManager
from uicheck.case import CaseConfig, Passed
from uicheck.command import Command, CommandBuilder, ProcessOutput
from uicheck.config import Config
from uicheck.custom_flags import ArgsFlag, Flag, RunFlag
from uicheck.errors import Errored, ExitStatus, OutputDiffers, PatternNotFound
from uicheck.model import (
    Comments,
    ErrorMatch,
    Level,
    Mode,
    OutputConflictHandling,
    Pattern,
    PatternMatch,
    Revisioned,
    Span,
    Spanned,
)

FAKE_COMPILER = Path(__file__).resolve().parent / "fixtures" / "fake_compiler.py"


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _source(tmp_path: Path, sidecar: dict | None = None) -> Path:
    source = _write(tmp_path / "ui" / "sample.rs", "fn main() {}\n")
    if sidecar is not None:
        _write(source.with_suffix(".fake.json"), json.dumps(sidecar))
    return source


def _config(tmp_path: Path, **overrides) -> Config:
    values = {
        "program": CommandBuilder(sys.executable, args=(str(FAKE_COMPILER),)),
        "root_dir": tmp_path,
        "out_dir": tmp_path / "target",
        "bless_command": "uicheck --bless",
    }
    values.update(overrides)
    return Config(**values)


def _case(
    source: Path,
    config: Config,
    *revisioned: Revisioned,
    revision: str = "",
    revisions: tuple[str, ...] = (),
) -> CaseConfig:
    return CaseConfig(
        config=config,
        revision=revision,
        comments=Comments(revisions=revisions, revisioned=list(revisioned)),
        path=source,
        aux_dir=source.parent / "auxiliary",
    )


def _passing() -> Revisioned:
    return Revisioned(mode=Spanned(Mode.pass_()))


def _error_at(line: int, text: str) -> dict:
    return {
        "level": "error",
        "message": text,
        "spans": [{"file_name": "{file}", "line_start": line, "is_primary": True}],
        "rendered": f"error: {text}\n",
    }


def test_clean_pass_test(tmp_path: Path) -> None:
    source = _source(tmp_path)
    config = _config(tmp_path)
    case = _case(source, config, _passing())

    passed = case.run_test(BuildManager(config))

    assert isinstance(passed, Passed)
    assert passed.output.status == 0
    assert passed.command.args[:3] == [str(FAKE_COMPILER), "--out-dir", str(tmp_path / "target" / "ui")]
    assert (tmp_path / "target" / "ui").is_dir()


def test_annotated_failing_test_passes_verification(tmp_path: Path) -> None:
    source = _source(
        tmp_path,
        {"diagnostics": [_error_at(2, "mismatched types")], "status": 1},
    )
    _write(source.with_suffix(".stderr"), "error: mismatched types\n")
    matcher = ErrorMatch(
        kind=PatternMatch(Spanned(Pattern("mismatched"), Span(source, 2)), Level.ERROR),
        line=2,
    )
    config = _config(tmp_path)
    case = _case(source, config, Revisioned(error_matches=[matcher]))

    passed = case.run_test(BuildManager(config))

    assert passed.output.status == 1


def test_unexpected_exit_status_and_missing_pattern_are_both_reported(tmp_path: Path) -> None:
    source = _source(tmp_path, {"status": 0})
    matcher = ErrorMatch(
        kind=PatternMatch(Spanned(Pattern("never emitted"), Span(source, 1)), Level.ERROR),
        line=1,
    )
    config = _config(tmp_path)
    case = _case(source, config, Revisioned(error_matches=[matcher]))

    with pytest.raises(Errored) as excinfo:
        case.run_test(BuildManager(config))

    errors = excinfo.value.errors
    assert errors[0] == ExitStatus(mode="fail", status=0, expected=1)
    assert isinstance(errors[1], PatternNotFound)
    assert "test got exit status 0, but expected 1" in excinfo.value.render()


def test_output_mismatch_carries_rendered_stderr(tmp_path: Path) -> None:
    source = _source(tmp_path, {"stderr_text": "warning: something odd\n"})
    config = _config(tmp_path)
    case = _case(source, config, _passing())

    with pytest.raises(Errored) as excinfo:
        case.run_test(BuildManager(config))

    error = excinfo.value.errors[0]
    assert isinstance(error, OutputDiffers)
    assert error.path == source.with_suffix(".stderr")
    assert excinfo.value.stderr == b"warning: something odd\n"


def test_stdin_file_is_attached(tmp_path: Path) -> None:
    source = _source(tmp_path, {"echo_stdin": True})
    _write(source.with_suffix(".stdin"), "typed input\n")
    _write(source.with_suffix(".stdout"), "typed input\n")
    config = _config(tmp_path)
    case = _case(source, config, _passing())

    passed = case.run_test(BuildManager(config))

    assert passed.command.stdin == source.with_suffix(".stdin")
    assert passed.output.stdout == b"typed input\n"


def test_bless_records_env_dependent_output(tmp_path: Path) -> None:
    source = _source(tmp_path, {"echo_env": ["UICHECK_GREETING"]})
    config = _config(tmp_path, output_conflict_handling=OutputConflictHandling.BLESS)
    case = _case(source, config, _passing(), Revisioned(env_vars={"UICHECK_GREETING": "hi"}))

    case.run_test(BuildManager(config))

    assert source.with_suffix(".stdout").read_text(encoding="utf-8") == "UICHECK_GREETING=hi\n"
    assert not source.with_suffix(".stderr").exists()


def test_revision_selects_compiler_behaviour_and_baseline(tmp_path: Path) -> None:
    source = _source(tmp_path, {"by_cfg": {"loud": {"stdout": "loud\n"}}})
    _write(source.with_suffix(".loud.stdout"), "loud\n")
    config = _config(tmp_path)
    quiet = _case(source, config, _passing(), revision="quiet", revisions=("quiet", "loud"))
    loud = _case(source, config, _passing(), revision="loud", revisions=("quiet", "loud"))
    manager = BuildManager(config)

    assert quiet.run_test(manager).output.stdout == b""
    assert loud.run_test(manager).output.stdout == b"loud\n"
    assert loud.run_test(manager).command.args[4] == "--cfg=loud"


def test_spawn_failure_is_reported(tmp_path: Path) -> None:
    source = _source(tmp_path)
    config = _config(tmp_path, program=CommandBuilder(str(tmp_path / "no-such-compiler")))
    case = _case(source, config, _passing())

    with pytest.raises(Errored) as excinfo:
        case.run_test(BuildManager(config))

    assert excinfo.value.errors == []
    assert b"could not spawn" in excinfo.value.stdout


def test_aux_builds_are_shared_between_revisions(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    source = _source(tmp_path)
    _write(source.parent / "auxiliary" / "dep.rs", "pub fn dep() {}\n")
    config = _config(tmp_path)
    manager = BuildManager(config)
    aux = Revisioned(aux_builds=[Spanned(Path("dep.rs"))])

    first = _case(source, config, _passing(), aux, revision="a", revisions=("a", "b"))
    second = _case(source, config, _passing(), aux, revision="b", revisions=("a", "b"))
    first_passed = first.run_test(manager)
    second.run_test(manager)

    aux_out = tmp_path / "target" / "ui" / "auxiliary"
    assert (aux_out / "aux-builds.log").read_text(encoding="utf-8") == "dep.rs\n"
    assert "--extern" in first_passed.command.args
    assert f"dep={aux_out.as_posix()}/libdep.rlib" in first_passed.command.args


class StopFlag(Flag):
    def post_test_action(self, case, cmd, output, build_manager):
        return None


class RecordingFlag(Flag):
    def __init__(self) -> None:
        self.seen: list[Command] = []

    def post_test_action(self, case, cmd, output: ProcessOutput, build_manager):
        self.seen.append(cmd)
        return cmd


def test_post_actions_chain_until_one_finishes(tmp_path: Path) -> None:
    source = _source(tmp_path)
    config = _config(tmp_path)
    before = RecordingFlag()
    after = RecordingFlag()
    case = _case(
        source,
        config,
        Revisioned(
            mode=Spanned(Mode.pass_()),
            custom={
                "before": Spanned(before),
                "args": Spanned(ArgsFlag(("--edition", "2021"))),
                "stop": Spanned(StopFlag()),
                "after": Spanned(after),
            },
        ),
    )

    passed = case.run_test(BuildManager(config))

    assert len(before.seen) == 1
    assert before.seen[0].args[-2:] == ["--edition", "2021"]
    assert after.seen == []
    assert passed.command is before.seen[0]


@pytest.mark.skipif(sys.platform == "win32", reason="fake executables rely on a shebang line")
def test_run_flag_checks_executable_output(tmp_path: Path) -> None:
    source = _source(tmp_path, {"exe": {"stdout": "ran\n", "status": 0}})
    _write(source.with_suffix(".run.stdout"), "ran\n")
    config = _config(tmp_path)
    case = _case(
        source,
        config,
        Revisioned(mode=Spanned(Mode.pass_()), custom={"run": Spanned(RunFlag())}),
    )

    passed = case.run_test(BuildManager(config))

    assert passed.output.status == 0


@pytest.mark.skipif(sys.platform == "win32", reason="fake executables rely on a shebang line")
def test_run_flag_reports_exit_code_and_output(tmp_path: Path) -> None:
    source = _source(tmp_path, {"exe": {"stderr": "boom\n", "status": 3}})
    config = _config(tmp_path)
    case = _case(
        source,
        config,
        Revisioned(mode=Spanned(Mode.pass_()), custom={"run": Spanned(RunFlag(exit_code=0))}),
    )

    with pytest.raises(Errored) as excinfo:
        case.run_test(BuildManager(config))

    errors = excinfo.value.errors
    assert isinstance(errors[0], OutputDiffers)
    assert errors[0].path == source.with_suffix(".run.stderr")
    assert errors[-1] == ExitStatus(mode="run(0)", status=3, expected=0)
    assert excinfo.value.command.program == str(tmp_path / "target" / "ui" / "sample")
