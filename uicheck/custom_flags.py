"""Named, revision-scoped extensions of the test command and its outcome."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from uicheck.command import Command, ProcessOutput, run_command
from uicheck.errors import Error, Errored, ExitStatus

if TYPE_CHECKING:
    from uicheck.build_manager import BuildManager
    from uicheck.case import CaseConfig

logger = logging.getLogger(__name__)


class Flag:
    """Capability interface of a custom flag.

    `apply` mutates the command before it runs. `post_test_action` runs after
    the command passed verification and returns the command to hand to the
    next flag, or `None` to finish the test as passed.
    """

    def apply(self, cmd: Command, case: CaseConfig) -> None:
        return None

    def post_test_action(
        self,
        case: CaseConfig,
        cmd: Command,
        output: ProcessOutput,
        build_manager: BuildManager,
    ) -> Command | None:
        return cmd


@dataclass(frozen=True)
class ArgsFlag(Flag):
    args: tuple[str, ...]

    def apply(self, cmd: Command, case: CaseConfig) -> None:
        cmd.extend(self.args)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ArgsFlag:
        return cls(args=tuple(payload.get("args", ())))


@dataclass(frozen=True)
class RunFlag(Flag):
    """Run the compiled executable and check its output and exit code."""

    exit_code: int = 0

    def post_test_action(
        self,
        case: CaseConfig,
        cmd: Command,
        output: ProcessOutput,
        build_manager: BuildManager,
    ) -> Command | None:
        run_case = case.with_revision(case.extension("run"))
        exe_file = case.config.out_dir / f"{case.path.stem}{case.config.exe_suffix}"
        exe = Command(str(exe_file))
        stdin = run_case.stdin_path()
        if stdin.exists():
            exe.stdin = stdin
        run_output = run_command(exe)

        errors: list[Error] = []
        run_case.check_test_output(errors, run_output.stdout, run_output.stderr)
        if run_output.status != self.exit_code:
            errors.append(
                ExitStatus(
                    mode=f"run({self.exit_code})",
                    status=run_output.status,
                    expected=self.exit_code,
                )
            )
        if errors:
            raise Errored(
                command=exe,
                errors=errors,
                stderr=run_output.stderr,
                stdout=run_output.stdout,
            )
        logger.debug("executable %s passed", exe_file)
        return cmd

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> RunFlag:
        return cls(exit_code=int(payload.get("exit_code", 0)))


FLAG_KINDS: dict[str, Callable[[dict[str, Any]], Flag]] = {
    "args": ArgsFlag.from_payload,
    "run": RunFlag.from_payload,
}


def flag_from_payload(payload: dict[str, Any]) -> Flag:
    kind = payload.get("kind")
    try:
        factory = FLAG_KINDS[kind]
    except KeyError:
        supported = ", ".join(sorted(FLAG_KINDS))
        raise ValueError(f"unsupported custom flag kind {kind!r}; expected one of: {supported}") from None
    return factory(payload)
