"""Execution policy and its resolution.

A policy is resolved from three layers with shallow, per-key precedence:

    call-site override > instance default > process-wide default

Every field of ExecutionPolicy defaults to None, meaning "not set in this
layer". Nested values (env, stdio) are replaced as a whole, never merged.
"""

from __future__ import annotations

import os
import signal
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from typing import TYPE_CHECKING, Any, Union

from .errors import ConfigError

if TYPE_CHECKING:
    from .cancellation import CancellationToken

__all__ = [
    "ExecutionPolicy",
    "PolicyLayer",
    "StdioMode",
    "DEFAULT_STDIO",
    "resolve",
    "validate_policy",
    "signal_number",
    "signal_name",
    "stdio_target",
]

StdioMode = Union[str, int, Any]

STDIO_MODES = ("pipe", "inherit", "ignore")
DEFAULT_STDIO: tuple[str, str, str] = ("inherit", "pipe", "pipe")


@dataclass(frozen=True)
class ExecutionPolicy:
    """Per-call execution options.

    Attributes:
        cwd: Working directory
        env: Complete environment for the process (replaces, never merges)
        shell: Shell path, True for the default shell, False for no shell
        prefix: Text prepended to the command line
        postfix: Text appended to the command line
        stdio: (stdin, stdout, stderr), each "pipe", "inherit", "ignore",
            a file descriptor or a file object
        input: Data or stream fed to stdin
        timeout: Seconds before the process is stopped
        timeout_signal: Signal sent on timeout
        kill_signal: Signal sent by kill() and abort()
        signal: Cancellation token shared with derived pipeline stages
        nothrow: Resolve instead of reject on non-zero exit
        quiet: Suppress output echo
        verbose: Log the command and its output
        halt: Defer spawning until run() is called
        delimiter: Line delimiter for async iteration
    """

    cwd: str | os.PathLike[str] | None = None
    env: Mapping[str, str] | None = None
    shell: str | bool | None = None
    prefix: str | None = None
    postfix: str | None = None
    stdio: tuple[StdioMode, StdioMode, StdioMode] | None = None
    input: Any = None
    timeout: float | None = None
    timeout_signal: str | int | None = None
    kill_signal: str | int | None = None
    signal: CancellationToken | None = None
    nothrow: bool | None = None
    quiet: bool | None = None
    verbose: bool | None = None
    halt: bool | None = None
    delimiter: str | None = None

    def merged(self, **changes: Any) -> ExecutionPolicy:
        """Return a copy with changes applied on top of this layer."""
        return replace(self, **changes)

    def as_dict(self) -> dict[str, Any]:
        """Only the keys set in this layer."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }


PolicyLayer = Union[ExecutionPolicy, Mapping[str, Any], None]

POLICY_FIELDS: tuple[str, ...] = tuple(f.name for f in fields(ExecutionPolicy))

# Values used when no layer sets a key.
BUILTIN_DEFAULTS: dict[str, Any] = {
    "shell": True,
    "postfix": "",
    "timeout_signal": "SIGTERM",
    "kill_signal": "SIGTERM",
    "nothrow": False,
    "quiet": False,
    "verbose": False,
    "halt": False,
    "delimiter": "\n",
}


def _layer_dict(layer: PolicyLayer) -> Mapping[str, Any]:
    if layer is None:
        return {}
    if isinstance(layer, ExecutionPolicy):
        return layer.as_dict()
    unknown = set(layer) - set(POLICY_FIELDS)
    if unknown:
        raise ConfigError(f"Unknown policy option(s): {', '.join(sorted(unknown))}")
    return layer


def resolve(
    call: PolicyLayer = None,
    instance: PolicyLayer = None,
    default: PolicyLayer = None,
) -> ExecutionPolicy:
    """Resolve the effective policy from the three layers.

    Args:
        call: Call-site overrides
        instance: Defaults of the Shell instance
        default: Process-wide defaults

    Returns:
        A validated policy with every defaultable key filled in

    Raises:
        ConfigError: On unknown keys or contradictory/invalid values
    """
    layers = [_layer_dict(layer) for layer in (call, instance, default)]
    values: dict[str, Any] = dict(BUILTIN_DEFAULTS)
    for name in POLICY_FIELDS:
        for layer in layers:
            value = layer.get(name)
            if value is not None:
                values[name] = value
                break

    policy = ExecutionPolicy(**values)
    validate_policy(policy)
    return policy


def signal_number(value: str | int) -> int:
    """Convert "SIGTERM", "TERM" or 15 into a signal number.

    Raises:
        ConfigError: If the signal is unknown on this platform
    """
    if isinstance(value, signal.Signals):
        return int(value)
    if isinstance(value, int):
        try:
            return int(signal.Signals(value))
        except ValueError:
            raise ConfigError(f"Unknown signal: {value}") from None
    name = str(value).strip().upper()
    if not name.startswith("SIG"):
        name = "SIG" + name
    try:
        return int(signal.Signals[name])
    except KeyError:
        raise ConfigError(f"Unknown signal: {value!r}") from None


def signal_name(value: str | int) -> str:
    """Normalize a signal to its canonical name, e.g. "SIGTERM"."""
    return signal.Signals(signal_number(value)).name


def _valid_stdio_entry(entry: Any) -> bool:
    if isinstance(entry, str):
        return entry in STDIO_MODES
    if isinstance(entry, bool):
        return False
    if isinstance(entry, int):
        return entry >= 0
    return hasattr(entry, "fileno")


def validate_policy(policy: ExecutionPolicy) -> None:
    """Reject invalid or contradictory option combinations.

    Raises:
        ConfigError: Describing the first problem found
    """
    if policy.timeout is not None:
        if isinstance(policy.timeout, bool) or not isinstance(policy.timeout, (int, float)):
            raise ConfigError(f"timeout must be a number of seconds, got {policy.timeout!r}")
        if policy.timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {policy.timeout}")

    for name in ("timeout_signal", "kill_signal"):
        value = getattr(policy, name)
        if value is not None:
            signal_number(value)

    if policy.delimiter is not None and policy.delimiter == "":
        raise ConfigError("delimiter must not be empty")

    if policy.stdio is not None:
        if len(policy.stdio) != 3:
            raise ConfigError(f"stdio must have 3 entries, got {len(policy.stdio)}")
        for entry in policy.stdio:
            if not _valid_stdio_entry(entry):
                raise ConfigError(f"Invalid stdio entry: {entry!r}")
        if policy.input is not None and policy.stdio[0] != "pipe":
            raise ConfigError(
                f"input requires stdin to be 'pipe', got {policy.stdio[0]!r}"
            )

    if policy.env is not None and not isinstance(policy.env, Mapping):
        raise ConfigError(f"env must be a mapping, got {type(policy.env).__name__}")


def stdio_target(entry: StdioMode) -> Any:
    """Map a stdio entry to the value expected by asyncio subprocess functions."""
    if entry == "pipe":
        return subprocess.PIPE
    if entry == "inherit":
        return None
    if entry == "ignore":
        return subprocess.DEVNULL
    return entry
