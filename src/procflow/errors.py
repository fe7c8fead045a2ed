"""procflow exception classes.

procflow core v0.1.0
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .output import ProcessOutput

__all__ = [
    "ProcflowError",
    "ConfigError",
    "SpawnError",
    "ProcessError",
    "ExitError",
    "SignalError",
    "CancellationError",
    "ParseError",
]

# Captured output longer than this is cut in exception messages.
MAX_MESSAGE_OUTPUT = 4096


class ProcflowError(Exception):
    """Base class for all procflow errors."""
    pass


class ConfigError(ProcflowError, ValueError):
    """Contradictory or invalid execution options."""
    pass


class SpawnError(ProcflowError):
    """The executable or the shell could not be started.

    Attributes:
        command: Command line that was being spawned
        cause: Underlying OS error, if any
    """

    def __init__(self, command: str, cause: BaseException | None = None) -> None:
        self.command = command
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Failed to spawn {command!r}{detail}")


def _clip(data: bytes) -> str:
    text = data.decode("utf-8", errors="replace")
    if len(text) > MAX_MESSAGE_OUTPUT:
        return text[:MAX_MESSAGE_OUTPUT] + "..."
    return text


class ProcessError(ProcflowError):
    """A process settled as rejected.

    Attributes:
        output: Snapshot of everything captured before settlement
    """

    def __init__(self, output: ProcessOutput, summary: str) -> None:
        self.output = output
        parts = [summary]
        if output.command:
            parts.append(f"  command: {output.command}")
        if output.exit_code is not None:
            parts.append(f"  exit code: {output.exit_code}")
        if output.signal is not None:
            parts.append(f"  signal: {output.signal}")
        if output.stderr:
            parts.append(f"  stderr: {_clip(output.stderr)}")
        if output.stdout:
            parts.append(f"  stdout: {_clip(output.stdout)}")
        super().__init__("\n".join(parts))

    @property
    def exit_code(self) -> int | None:
        return self.output.exit_code

    @property
    def stdout(self) -> bytes:
        return self.output.stdout

    @property
    def stderr(self) -> bytes:
        return self.output.stderr


class ExitError(ProcessError):
    """The process exited with a non-zero code and was not marked nothrow."""

    def __init__(self, output: ProcessOutput) -> None:
        super().__init__(output, f"Process exited with code {output.exit_code}")


class SignalError(ProcessError):
    """The process was terminated by a signal.

    Attributes:
        signal: Signal name, e.g. "SIGTERM"
    """

    def __init__(self, output: ProcessOutput) -> None:
        self.signal = output.signal
        super().__init__(output, f"Process terminated by {output.signal}")


class CancellationError(ProcessError):
    """The process was aborted or timed out.

    Attributes:
        reason: Abort reason supplied by the caller (or the timeout description)
        signal: Signal used to stop the process, if it was running
    """

    def __init__(
        self,
        output: ProcessOutput,
        reason: object = None,
        signal: str | None = None,
    ) -> None:
        self.reason = reason
        self.signal = signal or output.signal
        summary = "Process cancelled"
        if reason is not None:
            summary += f": {reason}"
        super().__init__(output, summary)


class ParseError(ProcflowError, ValueError):
    """Output could not be decoded as structured data.

    Attributes:
        text: The text that failed to parse
    """

    def __init__(self, message: str, text: str = "") -> None:
        self.text = text
        super().__init__(message)
