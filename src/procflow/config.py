"""Process-wide default execution policy.

Environment variables:
    PROCFLOW_SHELL: shell used to run command lines
        - unset = bash if available, otherwise sh
        - false/0/no/off = no shell, the command line is split and executed directly

    PROCFLOW_PREFIX / PROCFLOW_POSTFIX: text wrapped around every command line
        - default prefix for bash: "set -euo pipefail;"

    PROCFLOW_VERBOSE: log commands and their output
        - true/1/yes = on
        - false/0/no = off (default)

    PROCFLOW_QUIET: suppress output echo even when verbose (default false)

    PROCFLOW_NOTHROW: resolve instead of reject on non-zero exit (default false)

    PROCFLOW_TIMEOUT: default timeout in seconds (default none)

    PROCFLOW_TIMEOUT_SIGNAL: signal sent on timeout (default SIGTERM)

    PROCFLOW_KILL_SIGNAL: signal sent by kill()/abort (default SIGTERM)

    PROCFLOW_DELIMITER: line delimiter for async iteration (default "\\n")

    PROCFLOW_LOG_DEBUG: debug logging to a temporary file
        - true/1/yes = on
        - false/0/no = off (default, logs go to stderr)

The configuration is read once and cached. Commands capture the Config object
current at construction time; configure() and within() install new objects
and never mutate one that is already captured.
"""

from __future__ import annotations

import contextlib
import contextvars
import os
import tempfile
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable

from .errors import ConfigError
from .policy import ExecutionPolicy, signal_name, validate_policy
from .quoting import Quote, find_shell

__all__ = [
    "Config",
    "load_config",
    "get_config",
    "reload_config",
    "configure",
    "within",
]

DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM before SIGKILL
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL

_FALSE_VALUES = ("false", "0", "no", "off")


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_timeout(value: str | None) -> float | None:
    """Parse a timeout in seconds; invalid or non-positive values mean no timeout."""
    if not value:
        return None
    try:
        timeout = float(value)
    except ValueError:
        return None
    return timeout if timeout > 0 else None


def _parse_signal(value: str | None, default: str) -> str:
    """Parse a signal name; unknown names fall back to the default."""
    if not value:
        return default
    try:
        return signal_name(value.strip())
    except ConfigError:
        return default


def _parse_shell(value: str | None) -> str | bool | None:
    if value is None or not value.strip():
        return find_shell()
    if value.strip().lower() in _FALSE_VALUES:
        return False
    return value.strip()


@dataclass(frozen=True)
class Config:
    """procflow configuration.

    Attributes:
        shell: Shell path, or False to run command lines without a shell
        prefix: Text prepended to command lines (None = shell default)
        postfix: Text appended to command lines
        quote: Argument escaping function (None = chosen by shell)
        cwd: Default working directory (None = inherit)
        env: Default environment (None = inherit)
        verbose: Log commands and output
        quiet: Suppress output echo
        nothrow: Do not reject on non-zero exit
        timeout: Default timeout in seconds
        timeout_signal: Signal sent on timeout
        kill_signal: Signal sent by kill() and abort()
        delimiter: Line delimiter for async iteration
        term_timeout: Grace period after the termination signal
        kill_timeout: Grace period after SIGKILL
        log_debug: Debug logging to a file
        log_file: Log file path (set when log_debug is on)
        log: Custom sink for structured log records
    """

    shell: str | bool | None = field(default_factory=find_shell)
    prefix: str | None = None
    postfix: str = ""
    quote: Quote | None = None
    cwd: str | None = None
    env: Mapping[str, str] | None = None
    verbose: bool = False
    quiet: bool = False
    nothrow: bool = False
    timeout: float | None = None
    timeout_signal: str = "SIGTERM"
    kill_signal: str = "SIGTERM"
    delimiter: str = "\n"
    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    log_debug: bool = False
    log_file: str | None = None
    log: Callable[[dict[str, Any]], None] | None = None

    def __post_init__(self) -> None:
        if self.env is not None and not isinstance(self.env, MappingProxyType):
            # Freeze a private copy so later changes to the caller's dict do not leak in.
            object.__setattr__(self, "env", MappingProxyType(dict(self.env)))
        if self.cwd is not None:
            object.__setattr__(self, "cwd", os.fspath(self.cwd))
        validate_policy(self.as_policy())

    def as_policy(self) -> ExecutionPolicy:
        """The default layer used when resolving a process policy."""
        return ExecutionPolicy(
            cwd=self.cwd,
            env=self.env,
            shell=self.shell,
            prefix=self.prefix,
            postfix=self.postfix,
            timeout=self.timeout,
            timeout_signal=self.timeout_signal,
            kill_signal=self.kill_signal,
            nothrow=self.nothrow,
            quiet=self.quiet,
            verbose=self.verbose,
            halt=False,
            delimiter=self.delimiter,
        )

    def __repr__(self) -> str:
        return (
            f"Config(shell={self.shell}, "
            f"cwd={self.cwd}, "
            f"verbose={self.verbose}, "
            f"quiet={self.quiet}, "
            f"nothrow={self.nothrow}, "
            f"timeout={self.timeout}, "
            f"timeout_signal={self.timeout_signal}, "
            f"kill_signal={self.kill_signal}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """Build a timestamped log file path under the system temp directory."""
    log_dir = Path(tempfile.gettempdir()) / "procflow"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"procflow_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """Load configuration from environment variables."""
    log_debug = _parse_bool(os.environ.get("PROCFLOW_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        shell=_parse_shell(os.environ.get("PROCFLOW_SHELL")),
        prefix=os.environ.get("PROCFLOW_PREFIX"),
        postfix=os.environ.get("PROCFLOW_POSTFIX", ""),
        verbose=_parse_bool(os.environ.get("PROCFLOW_VERBOSE"), default=False),
        quiet=_parse_bool(os.environ.get("PROCFLOW_QUIET"), default=False),
        nothrow=_parse_bool(os.environ.get("PROCFLOW_NOTHROW"), default=False),
        timeout=_parse_timeout(os.environ.get("PROCFLOW_TIMEOUT")),
        timeout_signal=_parse_signal(os.environ.get("PROCFLOW_TIMEOUT_SIGNAL"), "SIGTERM"),
        kill_signal=_parse_signal(os.environ.get("PROCFLOW_KILL_SIGNAL"), "SIGTERM"),
        delimiter=os.environ.get("PROCFLOW_DELIMITER") or "\n",
        log_debug=log_debug,
        log_file=log_file,
    )


# Global config (lazily loaded)
_config: Config | None = None

# Scoped override installed by within()
_scoped: contextvars.ContextVar[Config | None] = contextvars.ContextVar(
    "procflow_config", default=None
)


def get_config() -> Config:
    """Return the effective configuration for the current context."""
    global _config
    scoped = _scoped.get()
    if scoped is not None:
        return scoped
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload the global configuration from the environment (used by tests)."""
    global _config
    _config = load_config()
    return _config


def configure(**changes: Any) -> Config:
    """Replace configuration values.

    Inside a within() block only the scoped configuration changes.

    Raises:
        ConfigError: If the resulting configuration is invalid
        TypeError: On unknown option names
    """
    global _config
    updated = replace(get_config(), **changes)
    if _scoped.get() is not None:
        _scoped.set(updated)
    else:
        _config = updated
    return updated


@contextlib.contextmanager
def within(**changes: Any) -> Iterator[Config]:
    """Run a block with a scoped configuration.

    Tasks created inside the block copy the context and keep the scoped
    configuration after the block exits.

    Example:
        with within(nothrow=True, cwd="/tmp"):
            await sh("ls missing")
    """
    scoped = replace(get_config(), **changes)
    token = _scoped.set(scoped)
    try:
        yield scoped
    finally:
        _scoped.reset(token)
