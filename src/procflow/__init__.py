"""procflow - awaitable subprocesses with pipelines and replayable output.

Environment variables:
    PROCFLOW_SHELL: shell used to run command lines (default bash, then sh)
    PROCFLOW_VERBOSE: log commands and their output (default false)
    PROCFLOW_NOTHROW: resolve instead of reject on non-zero exit (default false)
    PROCFLOW_TIMEOUT: default timeout in seconds (default none)
    PROCFLOW_LOG_DEBUG: debug logging to a temporary file (default false)

Usage:
    from procflow import sh

    files = await sh("ls {}", path).lines()
"""

__version__ = "0.1.0"

from .cancellation import CancellationToken
from .command import Command
from .config import Config, configure, get_config, reload_config, within
from .errors import (
    CancellationError,
    ConfigError,
    ExitError,
    ParseError,
    ProcessError,
    ProcflowError,
    SignalError,
    SpawnError,
)
from .fetch import FetchResponse, fetch
from .log import log_event, setup_logging
from .multiplexer import StreamMultiplexer
from .output import ProcessOutput
from .pipeline import SinkPipe
from .policy import ExecutionPolicy
from .process import ProcessHandle, Stage
from .registry import get_registry, kill_all
from .shell import Shell, cd, sh
from .utils import exp_backoff, retry

__all__ = [
    "__version__",
    # front end
    "Shell",
    "sh",
    "cd",
    "fetch",
    "FetchResponse",
    # core types
    "Command",
    "ProcessHandle",
    "ProcessOutput",
    "Stage",
    "StreamMultiplexer",
    "SinkPipe",
    "CancellationToken",
    "ExecutionPolicy",
    # configuration and logging
    "Config",
    "configure",
    "get_config",
    "reload_config",
    "within",
    "log_event",
    "setup_logging",
    # process registry
    "get_registry",
    "kill_all",
    # helpers
    "retry",
    "exp_backoff",
    # errors
    "ProcflowError",
    "ConfigError",
    "SpawnError",
    "ProcessError",
    "ExitError",
    "SignalError",
    "CancellationError",
    "ParseError",
]
