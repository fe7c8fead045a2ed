"""Shell front end.

    from procflow import sh, cd

    branch = await sh("git rev-parse --abbrev-ref HEAD")
    await sh("git checkout {}", branch)

    build = sh.with_options(cwd="build", timeout=600)
    await build("make -j{}", os.cpu_count())

    upper = await sh.pipeline("printf hello", "awk '{print toupper($0)}'")
"""

from __future__ import annotations

import logging
import os
from typing import Any

from .command import Command
from .config import configure, get_config
from .errors import ConfigError
from .log import log_event
from .policy import POLICY_FIELDS, ExecutionPolicy
from .process import ProcessHandle

__all__ = ["Shell", "sh", "cd"]

logger = logging.getLogger(__name__)


class Shell:
    """Factory of process handles sharing one set of instance defaults.

    Options are the ExecutionPolicy fields (cwd, env, shell, timeout,
    nothrow, ...). They sit between call-site overrides on the handle and
    the process-wide configuration.
    """

    def __init__(self, **options: Any) -> None:
        unknown = set(options) - set(POLICY_FIELDS)
        if unknown:
            raise ConfigError(f"Unknown option(s): {', '.join(sorted(unknown))}")
        self._options = ExecutionPolicy(**options)

    @property
    def options(self) -> ExecutionPolicy:
        return self._options

    def __call__(self, template: str | Command, *args: Any) -> ProcessHandle:
        """Create a handle from a command template.

        "{}" and "{N}" are replaced by the quoted arguments; awaitables
        (other handles included) are awaited first.
        """
        if isinstance(template, Command):
            if args:
                raise ConfigError("Arguments cannot be combined with a prepared Command")
            command = template
        else:
            command = Command.parse(template, *args)
        return ProcessHandle(command, options=self._options)

    def cmd(self, *argv: Any) -> ProcessHandle:
        """Create a handle where every element is a separately quoted word."""
        if not argv:
            raise ConfigError("cmd() needs at least the program name")
        return ProcessHandle(Command.from_argv(*argv), options=self._options)

    def with_options(self, **options: Any) -> Shell:
        """Return a new Shell with options layered over this one."""
        merged = self._options.as_dict()
        merged.update(options)
        return Shell(**merged)

    def pipeline(self, *stages: Any) -> Any:
        """Chain stages with pipe().

        The first stage is a handle or a template; every following stage is
        anything pipe() accepts. A tuple stage is (template, *args).

        Returns:
            The last stage (a handle or a SinkPipe)
        """
        if not stages:
            raise ConfigError("pipeline() needs at least one stage")

        head, *rest = stages
        if isinstance(head, tuple):
            current = self(*head)
        elif isinstance(head, (str, Command)):
            current = self(head)
        elif isinstance(head, ProcessHandle):
            current = head
        else:
            raise ConfigError(f"Pipeline source must be a command, got {type(head).__name__}")

        for stage in rest:
            if isinstance(stage, tuple):
                current = current.pipe(*stage)
            else:
                current = current.pipe(stage)
        return current

    def __repr__(self) -> str:
        return f"Shell({self._options.as_dict()!r})"


sh = Shell()


def cd(path: str | os.PathLike[str]) -> str:
    """Change the default working directory of the current config scope.

    The process working directory (os.chdir) is left alone. Relative paths
    are resolved against the current default.

    Raises:
        ConfigError: If the directory does not exist
    """
    base = get_config().cwd or os.getcwd()
    target = os.path.normpath(os.path.join(base, os.fspath(path)))
    if not os.path.isdir(target):
        raise ConfigError(f"No such directory: {target}")

    config = configure(cwd=target)
    log_event({"kind": "cd", "dir": target}, config=config)
    logger.debug(f"Default cwd is now {target}")
    return target
