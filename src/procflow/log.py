"""Structured event logging.

Process orchestration emits structured records:

    {"kind": "cmd", "cmd": "ls -la", "id": ...}
    {"kind": "stdout", "data": b"...", "id": ...}
    {"kind": "stderr", "data": b"...", "id": ...}
    {"kind": "cd", "dir": "/tmp"}
    {"kind": "fetch", "url": "https://...", "method": "GET"}
    {"kind": "retry", "attempt": 1, "count": 3, "error": "...", "delay": 0.5}
    {"kind": "custom", "message": "..."}

Records are gated by the verbose/quiet flags of the effective policy and
delivered to Config.log when set, otherwise rendered into the "procflow.log"
logger.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Callable

from .config import Config, get_config

__all__ = [
    "EVENT_KINDS",
    "LogSink",
    "log_event",
    "should_log",
    "format_entry",
    "default_sink",
    "setup_logging",
]

logger = logging.getLogger(__name__)

EVENT_KINDS = frozenset({"cmd", "stdout", "stderr", "fetch", "cd", "retry", "custom"})

LogSink = Callable[[dict[str, Any]], None]


def should_log(kind: str, verbose: bool, quiet: bool) -> bool:
    """Output echo needs verbose and not quiet; everything else needs verbose."""
    if kind in ("stdout", "stderr"):
        return verbose and not quiet
    return verbose


def _decode(data: Any) -> str:
    if isinstance(data, (bytes, bytearray)):
        return bytes(data).decode("utf-8", errors="replace")
    return str(data)


def format_entry(entry: dict[str, Any]) -> str:
    """Render a record as a single log message."""
    kind = entry.get("kind")
    if kind == "cmd":
        return f"$ {entry.get('cmd', '')}"
    if kind in ("stdout", "stderr"):
        return _decode(entry.get("data", b"")).rstrip("\n")
    if kind == "cd":
        return f"$ cd {entry.get('dir', '')}"
    if kind == "fetch":
        return f"$ fetch {entry.get('method', 'GET')} {entry.get('url', '')}"
    if kind == "retry":
        return (
            f"retry {entry.get('attempt')}/{entry.get('count')} "
            f"in {entry.get('delay', 0)}s: {entry.get('error', '')}"
        )
    if "message" in entry:
        return str(entry["message"])
    return json.dumps(entry, ensure_ascii=False, default=str)


def default_sink(entry: dict[str, Any]) -> None:
    logger.info(format_entry(entry))


def log_event(
    entry: dict[str, Any],
    *,
    verbose: bool | None = None,
    quiet: bool | None = None,
    config: Config | None = None,
) -> bool:
    """Deliver a record if the verbose/quiet gate lets it through.

    Args:
        entry: The record; must carry a "kind" key
        verbose: Effective verbose flag (None = from config)
        quiet: Effective quiet flag (None = from config)
        config: Configuration snapshot supplying the sink and defaults

    Returns:
        True if the record was delivered
    """
    kind = entry.get("kind")
    if kind not in EVENT_KINDS:
        raise ValueError(f"Unknown log record kind: {kind!r}")

    config = config or get_config()
    verbose = config.verbose if verbose is None else verbose
    quiet = config.quiet if quiet is None else quiet
    if not should_log(kind, verbose, quiet):
        return False

    sink = config.log or default_sink
    sink(entry)
    return True


def setup_logging(config: Config | None = None) -> logging.Handler:
    """Configure log output for the procflow namespace.

    Logs go to stderr at INFO by default; with PROCFLOW_LOG_DEBUG they go to
    a temporary file at DEBUG. The root logger (third-party libraries) stays
    at WARNING.

    Returns:
        The installed handler
    """
    config = config or get_config()

    handler: logging.Handler
    if config.log_debug and config.log_file:
        handler = logging.FileHandler(config.log_file, encoding="utf-8")
        log_level = logging.DEBUG
    else:
        handler = logging.StreamHandler(sys.stderr)
        log_level = logging.INFO

    handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    )

    logging.basicConfig(level=logging.WARNING, handlers=[handler])
    logging.getLogger("procflow").setLevel(log_level)
    return handler
