"""Argument escaping and shell invocation.

Quoting and command-line shaping are kept apart from the orchestration core:
the core only asks for a quote function and an argv.

- POSIX shells: arguments are quoted with shlex.quote and the command line is
  run as `<shell> -c "<prefix><cmd><postfix>"`
- PowerShell: single-quote escaping, `-NoProfile -NonInteractive -Command`
- shell disabled: the command line is split with shlex and executed directly
"""

from __future__ import annotations

import os
import re
import shlex
import shutil
from typing import Callable

from .errors import SpawnError

__all__ = [
    "Quote",
    "quote",
    "quote_powershell",
    "quote_for",
    "is_powershell",
    "find_shell",
    "default_prefix",
    "build_argv",
]

Quote = Callable[[str], str]

_POWERSHELL_SAFE = re.compile(r"[\w/.:=,+@%-]+")

BASH_PREFIX = "set -euo pipefail;"


def quote(arg: str) -> str:
    """Quote an argument for a POSIX shell."""
    return shlex.quote(arg)


def quote_powershell(arg: str) -> str:
    """Quote an argument for PowerShell."""
    if arg == "":
        return "''"
    if _POWERSHELL_SAFE.fullmatch(arg):
        return arg
    return "'" + arg.replace("'", "''") + "'"


def _shell_name(shell: str) -> str:
    name = os.path.basename(shell).lower()
    if name.endswith(".exe"):
        name = name[:-4]
    return name


def is_powershell(shell: str | bool | None) -> bool:
    if not isinstance(shell, str):
        return False
    return _shell_name(shell) in ("powershell", "pwsh")


def quote_for(shell: str | bool | None) -> Quote:
    """Pick the quote function matching a shell."""
    return quote_powershell if is_powershell(shell) else quote


def find_shell() -> str | None:
    """Locate the default shell: bash if available, otherwise sh."""
    return shutil.which("bash") or shutil.which("sh")


def default_prefix(shell: str | bool | None) -> str:
    if isinstance(shell, str) and _shell_name(shell) == "bash":
        return BASH_PREFIX
    return ""


def _locate(shell: str) -> str | None:
    if os.path.dirname(shell):
        return shell if os.path.isfile(shell) and os.access(shell, os.X_OK) else None
    return shutil.which(shell)


def build_argv(
    cmdline: str,
    *,
    shell: str | bool | None,
    prefix: str | None = None,
    postfix: str = "",
) -> list[str]:
    """Turn a resolved command line into an argv.

    Args:
        cmdline: Fully resolved and escaped command line
        shell: Shell path or name, True for the default shell, False to
            execute the command line directly
        prefix: Text prepended to the command line (None = shell default)
        postfix: Text appended to the command line

    Raises:
        SpawnError: If the shell cannot be located
    """
    if shell is False:
        return shlex.split(cmdline)

    if shell is None or shell is True:
        shell = find_shell()
        if shell is None:
            raise SpawnError(cmdline, FileNotFoundError("no default shell found"))

    path = _locate(shell)
    if path is None:
        raise SpawnError(cmdline, FileNotFoundError(f"shell not found: {shell}"))

    if prefix is None:
        prefix = default_prefix(path)
    script = f"{prefix}{cmdline}{postfix}"

    if is_powershell(path):
        return [path, "-NoProfile", "-NonInteractive", "-Command", script]
    return [path, "-c", script]
