"""Build, run and verify one (file, revision) test case."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, TypeVar

from uicheck.build_manager import AuxBuilder, BuildManager
from uicheck.command import Command, ProcessOutput, run_command
from uicheck.config import Config
from uicheck.custom_flags import Flag
from uicheck.errors import (
    Aux,
    CodeNotFound,
    Error,
    Errored,
    ErrorsWithoutPattern,
    NoPatternsFound,
    OutputDiffers,
    PatternFoundInPassTest,
    PatternNotFound,
)
from uicheck.model import (
    CodeMatch,
    Comments,
    Level,
    Message,
    Mode,
    ModeKind,
    OutputConflictHandling,
    PatternMatch,
    Revisioned,
    Span,
    Spanned,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Passed:
    command: Command
    output: ProcessOutput


@dataclass
class CaseConfig:
    """Everything needed to run a single test file under one revision."""

    config: Config
    revision: str
    comments: Comments
    path: Path
    aux_dir: Path
    out_dir_patched: bool = field(default=False, repr=False)

    def patch_out_dir(self) -> None:
        # Aux artifacts of equally named files in different directories must not collide.
        if self.out_dir_patched:
            return
        self.config = self.config.copy()
        self.config.out_dir = self.config.out_dir_for(self.path)
        self.out_dir_patched = True

    def with_revision(self, revision: str) -> CaseConfig:
        return CaseConfig(
            config=self.config,
            revision=revision,
            comments=self.comments,
            path=self.path,
            aux_dir=self.aux_dir,
            out_dir_patched=self.out_dir_patched,
        )

    def extension(self, extension: str) -> str:
        if not self.revision:
            return extension
        return f"{self.revision}.{extension}"

    def directives(self) -> Iterator[Revisioned]:
        return self.comments.for_revision(self.revision)

    def mode(self) -> Spanned[Mode]:
        return self.comments.mode(self.revision)

    def find_one(
        self,
        kind: str,
        getter: Callable[[Revisioned], Spanned[T] | None],
    ) -> Spanned[T] | None:
        return self.comments.find_one(self.revision, kind, getter)

    def find_one_custom(self, name: str) -> Spanned[Flag] | None:
        return self.find_one(name, lambda r: r.custom.get(name))

    def stdin_path(self) -> Path:
        return self.path.with_suffix(f".{self.extension('stdin')}")

    def apply_custom(self, cmd: Command) -> None:
        for rev in self.directives():
            for flag in rev.custom.values():
                flag.content.apply(cmd, self)

    def build_aux_files(self, build_manager: BuildManager) -> list[str]:
        extra_args: list[str] = []
        for rev in self.directives():
            for aux in rev.aux_builds:
                extra_args.extend(build_aux_file(aux, self.aux_dir, build_manager))
        return extra_args

    def build_command(self, build_manager: BuildManager) -> Command:
        config = self.config
        cmd = config.program.build(config.out_dir)
        cmd.extend(self.build_aux_files(build_manager))
        cmd.arg(self.path)
        if self.revision:
            cmd.arg(f"--cfg={self.revision}")
        for rev in self.directives():
            cmd.extend(rev.compile_flags)

        self.apply_custom(cmd)

        # `--target` only when cross compiling.
        if config.target is not None and not config.host_matches_target():
            cmd.arg("--target").arg(config.target)

        for rev in self.directives():
            cmd.envs(rev.env_vars)
        return cmd

    def output_path(self, kind: str) -> Path:
        ext = self.extension(kind)
        if any(rev.stderr_per_bitwidth for rev in self.directives()):
            return self.path.with_suffix(f".{self.config.get_pointer_width()}bit.{ext}")
        return self.path.with_suffix(f".{ext}")

    def normalize(self, text: bytes, kind: str) -> bytes:
        if kind == "fixed":
            return text
        if kind not in ("stderr", "stdout"):
            raise ValueError(f"unknown output kind {kind!r}")
        for rev in self.directives():
            rules = rev.normalize_stderr if kind == "stderr" else rev.normalize_stdout
            for rule in rules:
                text = rule.apply(text)
        return text

    def check_test_output(self, errors: list[Error], stdout: bytes, stderr: bytes) -> None:
        self.check_output(stderr, errors, "stderr")
        self.check_output(stdout, errors, "stdout")

    def check_output(self, output: bytes, errors: list[Error], kind: str) -> Path:
        output = self.normalize(output, kind)
        path = self.output_path(kind)
        handling = self.config.output_conflict_handling
        if handling is OutputConflictHandling.ERROR:
            try:
                expected = path.read_bytes()
            except FileNotFoundError:
                expected = b""
            if output != expected:
                errors.append(
                    OutputDiffers(
                        path=path,
                        actual=output,
                        expected=expected,
                        bless_command=self.config.bless_command,
                    )
                )
        elif handling is OutputConflictHandling.BLESS:
            if output:
                path.write_bytes(output)
                logger.info("blessed %s", path)
            else:
                path.unlink(missing_ok=True)
                logger.debug("removed empty baseline %s", path)
        return path

    def check_test_result(self, cmd: Command, output: ProcessOutput) -> ProcessOutput:
        errors: list[Error] = []
        status_error = self.mode().content.ok(output.status)
        if status_error is not None:
            errors.append(status_error)
        diagnostics = self.config.diagnostic_extractor(self.path, output.stderr)
        self.check_test_output(errors, output.stdout, diagnostics.rendered)
        self.check_annotations(
            diagnostics.messages,
            diagnostics.messages_from_unknown_file_or_line,
            errors,
        )
        if errors:
            raise Errored(
                command=cmd,
                errors=errors,
                stderr=diagnostics.rendered,
                stdout=output.stdout,
            )
        return output

    def check_annotations(
        self,
        messages: list[list[Message]],
        messages_from_unknown_file_or_line: list[Message],
        errors: list[Error],
    ) -> None:
        """Pair annotations with diagnostics, consuming every matched message."""
        seen_error_match: Span | None = None

        # Other-file patterns go first so they can overlap with in-file annotations.
        for rev in self.directives():
            for pattern in rev.error_in_other_files:
                seen_error_match = pattern.span
                for index, msg in enumerate(messages_from_unknown_file_or_line):
                    if pattern.content.matches(msg.message):
                        del messages_from_unknown_file_or_line[index]
                        break
                else:
                    errors.append(PatternNotFound(pattern=pattern, expected_line=None))

        prefix_setting = self.find_one("diagnostic_code_prefix", lambda r: r.diagnostic_code_prefix)
        prefix = prefix_setting.content if prefix_setting is not None else ""

        # Every diagnostic at or above the lowest annotated level must be annotated.
        lowest_annotation_level = Level.ERROR
        for rev in self.directives():
            for error_match in rev.error_matches:
                kind = error_match.kind
                seen_error_match = error_match.span
                if isinstance(kind, PatternMatch) and kind.level < lowest_annotation_level:
                    lowest_annotation_level = kind.level

                line = error_match.line
                msgs = messages[line] if line < len(messages) else None
                if msgs is not None and _consume(msgs, kind, prefix):
                    continue

                if isinstance(kind, PatternMatch):
                    errors.append(PatternNotFound(pattern=kind.pattern, expected_line=line))
                else:
                    errors.append(
                        CodeNotFound(
                            code=Spanned(f"{prefix}{kind.code.content}", kind.code.span),
                            expected_line=line,
                        )
                    )

        required = self.find_one(
            "`require_annotations_for_level` annotations",
            lambda r: r.require_annotations_for_level,
        )
        required_level = required.content if required is not None else lowest_annotation_level

        mode = self.mode()
        if mode.content.kind is not ModeKind.YOLO:
            unknown = [msg for msg in messages_from_unknown_file_or_line if msg.level >= required_level]
            if unknown:
                errors.append(ErrorsWithoutPattern(msgs=tuple(unknown), path=None))
            for line, msgs in enumerate(messages):
                leftover = [msg for msg in msgs if msg.level >= required_level]
                if not leftover:
                    continue
                errors.append(
                    ErrorsWithoutPattern(
                        msgs=tuple(leftover),
                        path=Spanned(self.path, Span(file=self.path, line_start=line)),
                    )
                )

        if mode.content.kind in (ModeKind.PASS, ModeKind.PANIC):
            if seen_error_match is not None:
                errors.append(PatternFoundInPassTest(mode=mode.span, span=seen_error_match))
        elif mode.content.kind is ModeKind.FAIL and mode.content.require_patterns:
            if seen_error_match is None:
                errors.append(NoPatternsFound())

    def run_test(self, build_manager: BuildManager) -> Passed:
        self.patch_out_dir()
        self.config.out_dir.mkdir(parents=True, exist_ok=True)

        cmd = self.build_command(build_manager)
        stdin = self.stdin_path()
        if stdin.exists():
            cmd.stdin = stdin

        output = run_command(cmd)
        output = self.check_test_result(cmd, output)

        for rev in self.directives():
            for custom in rev.custom.values():
                next_cmd = custom.content.post_test_action(self, cmd, output, build_manager)
                if next_cmd is None:
                    return Passed(command=cmd, output=output)
                cmd = next_cmd
        return Passed(command=cmd, output=output)


def _consume(msgs: list[Message], kind: PatternMatch | CodeMatch, prefix: str) -> bool:
    if isinstance(kind, PatternMatch):
        for index, msg in enumerate(msgs):
            if msg.level == kind.level and kind.pattern.content.matches(msg.message):
                del msgs[index]
                return True
        return False
    for index, msg in enumerate(msgs):
        if msg.level != Level.ERROR or msg.code is None:
            continue
        if not msg.code.startswith(prefix):
            continue
        if msg.code[len(prefix):] == kind.code.content:
            del msgs[index]
            return True
    return False


def resolve_aux_file(aux: Path, aux_dir: Path) -> Path:
    # A leading `..` is relative to the aux directory's parent, not the aux directory.
    if aux.parts and aux.parts[0] == "..":
        return aux_dir.parent / aux
    return aux_dir / aux


def build_aux_file(aux: Spanned[Path], aux_dir: Path, build_manager: BuildManager) -> list[str]:
    aux_file = resolve_aux_file(aux.content, aux_dir)
    try:
        try:
            canonical = aux_file.resolve(strict=True)
        except OSError as exc:
            raise Errored(
                command=Command(f"canonicalizing path `{aux_file.as_posix()}`"),
                stderr=str(exc).encode("utf-8"),
            ) from exc
        try:
            key = canonical.relative_to(Path.cwd())
        except ValueError:
            key = canonical
        return build_manager.build(AuxBuilder(aux_file=key))
    except Errored as exc:
        raise Errored(
            command=exc.command,
            errors=[Aux(path=aux_file, errors=tuple(exc.errors), line=aux.line)],
            stderr=exc.stderr,
            stdout=exc.stdout,
        ) from exc
