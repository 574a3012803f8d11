"""Memoized auxiliary builds shared by concurrently running tests."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import CancelledError, Future
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Hashable, Protocol

from uicheck.command import Command, run_command
from uicheck.config import Config
from uicheck.errors import CommandFailed, Errored

logger = logging.getLogger(__name__)


class Build(Protocol):
    """Something `BuildManager` can build once and hand out to every caller."""

    @property
    def key(self) -> Hashable: ...

    def description(self) -> str: ...

    def build(self, manager: BuildManager) -> list[str]: ...


@dataclass(frozen=True)
class AuxBuilder:
    """Compile an auxiliary file as a dependency of the test that requested it.

    `aux_file` is the canonicalized path relative to the working directory.
    """

    aux_file: PurePath

    @property
    def key(self) -> Hashable:
        return ("aux", self.aux_file.as_posix())

    def description(self) -> str:
        return f"building aux file `{self.aux_file.as_posix()}`"

    def build(self, manager: BuildManager) -> list[str]:
        config = manager.config
        aux_path = Path(self.aux_file)
        out_dir = config.out_dir_for(aux_path)
        out_dir.mkdir(parents=True, exist_ok=True)

        cmd = config.program.build(out_dir)
        cmd.extend(config.aux_args)
        cmd.arg(aux_path)
        output = run_command(cmd)
        if output.status != 0:
            raise Errored(
                command=cmd,
                errors=[CommandFailed(kind="compilation of aux build", status=output.status)],
                stderr=output.stderr,
                stdout=output.stdout,
            )
        name = aux_path.stem.replace("-", "_")
        return [
            template.format(name=name, out_dir=out_dir.as_posix())
            for template in config.aux_link_args
        ]


class BuildManager:
    """Runs each distinct build at most once.

    Concurrent requests for a key that is already building block until the
    first request finishes and receive its result. Builds for different keys
    do not wait on each other. A build interrupted by a `BaseException` such
    as `KeyboardInterrupt` is forgotten, and the next request starts it anew.
    """

    def __init__(self, config: Config) -> None:
        self.config = config
        self._lock = threading.Lock()
        self._cache: dict[Hashable, Future[tuple[str, ...]]] = {}

    def build(self, what: Build) -> list[str]:
        key = what.key
        with self._lock:
            future = self._cache.get(key)
            owner = future is None
            if future is None:
                future = Future()
                self._cache[key] = future

        if not owner:
            logger.debug("reusing %s", what.description())
            try:
                return list(future.result())
            except CancelledError:
                # The previous owner was interrupted; elect a new one.
                return self.build(what)
            except Errored as exc:
                raise Errored(
                    command=Command(what.description()),
                    stderr=b"previous build failed",
                ) from exc

        logger.debug("%s", what.description())
        try:
            result = tuple(what.build(self))
        except Exception as exc:
            future.set_exception(exc)
            raise
        except BaseException:
            with self._lock:
                del self._cache[key]
            future.cancel()
            raise
        future.set_result(result)
        logger.info("finished %s", what.description())
        return list(result)
