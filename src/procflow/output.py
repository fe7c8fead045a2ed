"""Settled result of a process.

ProcessOutput is the immutable snapshot a process handle resolves to: the
captured channels, the exit metadata and a few derived views.

Equality and string coercion always use the combined output trimmed of
exactly one trailing line terminator, so a result can be interpolated into
the next command without carrying the newline along.
"""

from __future__ import annotations

import json
import locale
from dataclasses import dataclass
from typing import Any, Literal

from .errors import ParseError

__all__ = ["ProcessOutput", "Channel", "trim_terminator"]

Channel = Literal["stdout", "stderr", "combined"]


def trim_terminator(text: str) -> str:
    """Strip a single trailing line terminator ("\\r\\n" or "\\n")."""
    if text.endswith("\r\n"):
        return text[:-2]
    if text.endswith("\n"):
        return text[:-1]
    return text


@dataclass(frozen=True, eq=False)
class ProcessOutput:
    """Captured output and exit metadata of a settled process.

    Attributes:
        stdout: Bytes written to stdout
        stderr: Bytes written to stderr
        combined: Both channels interleaved in arrival order
        exit_code: Exit code, None when the process died from a signal
        signal: Terminating signal name, e.g. "SIGTERM"
        command: The resolved command line
        duration: Wall-clock seconds between spawn and exit
    """

    stdout: bytes = b""
    stderr: bytes = b""
    combined: bytes = b""
    exit_code: int | None = None
    signal: str | None = None
    command: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        """True if the process exited with code 0."""
        return self.exit_code == 0

    def _channel(self, channel: Channel) -> bytes:
        if channel == "stdout":
            return self.stdout
        if channel == "stderr":
            return self.stderr
        if channel == "combined":
            return self.combined
        raise ValueError(f"Unknown channel: {channel!r}")

    def text(self, encoding: str | None = None, channel: Channel = "combined") -> str:
        """Decode a channel (combined by default) into text."""
        encoding = encoding or locale.getpreferredencoding(False)
        return self._channel(channel).decode(encoding, errors="replace")

    def lines(
        self,
        delimiter: str = "\n",
        encoding: str | None = None,
        channel: Channel = "combined",
    ) -> list[str]:
        """Split the text on delimiter.

        A terminal delimiter does not produce a trailing empty segment:
        "a\\nb\\n" gives ["a", "b"], while "a\\nb" gives ["a", "b"] as well.
        """
        if not delimiter:
            raise ValueError("delimiter must not be empty")
        parts = self.text(encoding, channel).split(delimiter)
        if parts and parts[-1] == "":
            parts.pop()
        return parts

    def json(self, encoding: str | None = None, channel: Channel = "combined") -> Any:
        """Parse the text as JSON.

        Raises:
            ParseError: If the text is not well-formed JSON
        """
        text = self.text(encoding, channel)
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ParseError(f"Invalid JSON in process output: {e}", text) from e

    def buffer(self, channel: Channel = "combined") -> bytes:
        return self._channel(channel)

    def blob(self, channel: Channel = "combined") -> memoryview:
        return memoryview(self._channel(channel)).toreadonly()

    def __str__(self) -> str:
        return trim_terminator(self.combined.decode("utf-8", errors="replace"))

    def __bytes__(self) -> bytes:
        return self.combined

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ProcessOutput):
            return str(self) == str(other)
        if isinstance(other, str):
            return str(self) == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(str(self))

    def __repr__(self) -> str:
        status = f"signal={self.signal}" if self.signal else f"exit_code={self.exit_code}"
        return (
            f"ProcessOutput({status}, "
            f"stdout={len(self.stdout)}B, "
            f"stderr={len(self.stderr)}B)"
        )
