"""Command descriptor.

A Command is the immutable, unresolved form of a command line: literal
segments interleaved with interpolated values. Building a command line is a
two-phase operation:

1. parse (sync): split the template into segments and raw values
2. resolve (async): await every pending value, then quote and join

Template syntax:
    "{}"   next positional argument
    "{N}"  positional argument N
    "{{}}" a literal "{}"

Any other brace is literal text, so shell and awk snippets need no escaping.
"""

from __future__ import annotations

import inspect
import os
import re
from dataclasses import dataclass
from typing import Any

from .errors import ConfigError
from .output import ProcessOutput
from .quoting import Quote, quote as posix_quote

__all__ = ["Command"]

_PLACEHOLDER = re.compile(r"\{\{\}\}|\{(\d*)\}")


@dataclass(frozen=True)
class Command:
    """Literal segments plus interpolated values.

    Attributes:
        segments: Literal text; one more element than args
        args: Values placed between consecutive segments
    """

    segments: tuple[str, ...]
    args: tuple[Any, ...] = ()

    def __post_init__(self) -> None:
        if len(self.segments) != len(self.args) + 1:
            raise ConfigError(
                f"Command needs {len(self.args) + 1} segments for "
                f"{len(self.args)} args, got {len(self.segments)}"
            )

    @classmethod
    def parse(cls, template: str, *args: Any) -> Command:
        """Split a template into segments and interpolated values.

        A template without placeholders takes the args as extra words:
        Command.parse("ls -la", path) is "ls -la <quoted path>".

        Raises:
            ConfigError: If placeholders and arguments do not match
        """
        if not isinstance(template, str):
            raise ConfigError(f"Command template must be a string, got {type(template).__name__}")

        segments: list[str] = []
        values: list[Any] = []
        literal: list[str] = []
        used: set[int] = set()
        auto = 0
        pos = 0

        for match in _PLACEHOLDER.finditer(template):
            literal.append(template[pos:match.start()])
            pos = match.end()
            if match.group(1) is None:
                literal.append("{}")
                continue
            if match.group(1) == "":
                index = auto
                auto += 1
            else:
                index = int(match.group(1))
            if index >= len(args):
                raise ConfigError(
                    f"Placeholder {index} has no argument ({len(args)} given): {template!r}"
                )
            used.add(index)
            segments.append("".join(literal))
            literal = []
            values.append(args[index])
        literal.append(template[pos:])

        if not values:
            return cls.from_argv("".join(literal), *args, literal_head=True)

        unused = set(range(len(args))) - used
        if unused:
            raise ConfigError(
                f"Argument(s) {sorted(unused)} not used by template {template!r}"
            )

        segments.append("".join(literal))
        return cls(tuple(segments), tuple(values))

    @classmethod
    def from_argv(cls, *argv: Any, literal_head: bool = False) -> Command:
        """Build a command where every element is an interpolated word.

        With literal_head the first element is kept as literal text.
        """
        if literal_head:
            head, rest = argv[0], argv[1:]
            if not rest:
                return cls((head,))
            segments = [head + " "] + [" "] * (len(rest) - 1) + [""]
            return cls(tuple(segments), tuple(rest))

        if not argv:
            return cls(("",))
        segments = [""] + [" "] * (len(argv) - 1) + [""]
        return cls(tuple(segments), tuple(argv))

    async def resolve(self, quote: Quote = posix_quote) -> str:
        """Await pending values and build the escaped command line."""
        values = [await _resolve_value(value) for value in self.args]

        parts = [self.segments[0]]
        for value, segment in zip(values, self.segments[1:]):
            parts.append(_substitute(value, quote))
            parts.append(segment)
        return "".join(parts)

    def __str__(self) -> str:
        parts = [self.segments[0]]
        for segment in self.segments[1:]:
            parts.append("{}")
            parts.append(segment)
        return "".join(parts)


async def _resolve_value(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await _resolve_value(await value)
    if isinstance(value, (list, tuple)):
        return [await _resolve_value(item) for item in value]
    return value


def _substitute(value: Any, quote: Quote) -> str:
    if value is None:
        raise ConfigError("Cannot interpolate None into a command")
    if isinstance(value, list):
        return " ".join(_substitute(item, quote) for item in value)
    if isinstance(value, ProcessOutput):
        return quote(str(value))
    if isinstance(value, (bytes, bytearray)):
        return quote(bytes(value).decode())
    if isinstance(value, os.PathLike):
        return quote(os.fspath(value))
    return quote(str(value))
