#!/usr/bin/env python3
"""Run one test file through the compiler and verify its diagnostics."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from uicheck.annotations import AnnotationError, load_annotations
from uicheck.build_manager import BuildManager
from uicheck.case import CaseConfig
from uicheck.config import ConfigError, load_config
from uicheck.errors import Errored
from uicheck.model import OutputConflictHandling

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INPUT_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="uicheck", description=__doc__)
    parser.add_argument("file", type=Path, help="test source file to compile")
    parser.add_argument("--config", type=Path, required=True, help="harness config JSON")
    parser.add_argument(
        "--annotations",
        type=Path,
        required=True,
        help="structured annotation JSON for the test file",
    )
    parser.add_argument(
        "--revision",
        action="append",
        default=[],
        help="revision to run (repeatable; defaults to every declared revision)",
    )
    parser.add_argument(
        "--aux-dir",
        type=Path,
        default=None,
        help="directory holding aux files (default: <file dir>/auxiliary)",
    )
    handling = parser.add_mutually_exclusive_group()
    handling.add_argument(
        "--bless",
        dest="output_conflict_handling",
        action="store_const",
        const=OutputConflictHandling.BLESS,
        help="overwrite baselines with the actual output",
    )
    handling.add_argument(
        "--check",
        dest="output_conflict_handling",
        action="store_const",
        const=OutputConflictHandling.ERROR,
        help="fail when output differs from the baselines",
    )
    handling.add_argument(
        "--ignore-output",
        dest="output_conflict_handling",
        action="store_const",
        const=OutputConflictHandling.IGNORE,
        help="skip baseline comparison",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
    )
    return parser


def select_revisions(declared: Sequence[str], requested: Sequence[str]) -> list[str]:
    if not requested:
        return list(declared) if declared else [""]
    unknown = [name for name in requested if name not in declared]
    if unknown:
        raise AnnotationError(f"unknown revision(s): {', '.join(unknown)}")
    return list(requested)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level, format="%(levelname)s %(name)s: %(message)s")

    try:
        config = load_config(args.config)
        comments = load_annotations(args.annotations, test_path=args.file)
        revisions = select_revisions(comments.revisions, args.revision)
    except (ConfigError, AnnotationError) as exc:
        print(f"uicheck: error: {exc}", file=sys.stderr)
        return EXIT_INPUT_ERROR
    if not args.file.is_file():
        print(f"uicheck: error: test file does not exist: {args.file}", file=sys.stderr)
        return EXIT_INPUT_ERROR

    if args.output_conflict_handling is not None:
        config.output_conflict_handling = args.output_conflict_handling
    if config.bless_command is None:
        config.bless_command = f"uicheck {args.file} --bless"
    aux_dir = args.aux_dir if args.aux_dir is not None else args.file.parent / "auxiliary"

    build_manager = BuildManager(config)
    failures = 0
    for revision in revisions:
        label = f"{args.file} ({revision})" if revision else str(args.file)
        case = CaseConfig(
            config=config,
            revision=revision,
            comments=comments,
            path=args.file,
            aux_dir=aux_dir,
        )
        try:
            case.run_test(build_manager)
        except Errored as exc:
            failures += 1
            print(f"FAILED {label}", file=sys.stderr)
            print(exc.render(), file=sys.stderr)
            continue
        print(f"ok {label}")

    if failures:
        print(f"uicheck: {failures} of {len(revisions)} revision(s) failed", file=sys.stderr)
        return EXIT_FAILED
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
