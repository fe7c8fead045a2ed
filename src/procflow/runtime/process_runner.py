"""Spawning, signalling and tearing down the processes behind a handle.

Every process leads its own session (POSIX) or process group (Windows), so
kill() and timeouts reach the shell together with everything it forked.
Termination escalates from the requested signal to SIGKILL, and teardown
runs shielded from the caller's cancellation.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import AsyncIterator, Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import anyio

__all__ = [
    "IS_WINDOWS",
    "ProcessRunner",
    "ProcessSpec",
]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after the termination signal
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a subprocess to spawn.

    Attributes:
        argv: Command line arguments (first element is the executable)
        cwd: Working directory for the process (None = inherit)
        env: Environment variables (None = inherit parent)
        stdin: stdin target (subprocess.PIPE, DEVNULL, None, fd or file)
        stdout: stdout target
        stderr: stderr target
    """

    argv: list[str]
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    stdin: Any = None
    stdout: Any = subprocess.PIPE
    stderr: Any = subprocess.PIPE


@dataclass
class ProcessRunner:
    """Owns the OS side of a process handle.

    term_timeout bounds the wait after the graceful signal, kill_timeout
    the wait after SIGKILL.

    Example:
        runner = ProcessRunner()
        process = await runner.spawn(ProcessSpec(argv=["sleep", "10"]))
        runner.send_signal(process, signal.SIGINT)
        await runner.terminate(process)
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT

    async def spawn(self, spec: ProcessSpec) -> asyncio.subprocess.Process:
        """Start the subprocess in an isolated process group/session.

        Raises:
            OSError: If the executable cannot be started
        """
        kwargs = self._isolation_kwargs(spec)

        process = await asyncio.create_subprocess_exec(
            *spec.argv,
            stdin=spec.stdin,
            stdout=spec.stdout,
            stderr=spec.stderr,
            cwd=spec.cwd,
            **kwargs,
        )

        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={spec.argv[0]} cwd={spec.cwd}"
        )
        return process

    def _isolation_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if spec.env is not None:
            kwargs["env"] = dict(spec.env)
        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True  # setsid
        return kwargs

    def send_signal(self, process: asyncio.subprocess.Process, signum: int) -> bool:
        """Send a signal to the process group.

        Returns:
            False if the process had already exited
        """
        if process.returncode is not None:
            return False

        if IS_WINDOWS:
            return self._windows_signal(process, signum)

        try:
            # pgid equals pid because of start_new_session
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, signum)
            logger.debug(f"Sent {signal.Signals(signum).name} to process group pgid={pgid}")
            return True
        except ProcessLookupError:
            return False
        except OSError as e:
            logger.debug(f"killpg failed, falling back to send_signal: {e}")
            try:
                process.send_signal(signum)
            except ProcessLookupError:
                return False
            return True

    def _windows_signal(self, process: asyncio.subprocess.Process, signum: int) -> bool:
        """Best-effort signal delivery on Windows."""
        try:
            if signum == signal.SIGTERM:
                # CTRL_BREAK_EVENT reaches the group created with CREATE_NEW_PROCESS_GROUP
                os.kill(process.pid, signal.CTRL_BREAK_EVENT)
            elif signum == getattr(signal, "SIGKILL", None):
                process.kill()
            else:
                process.send_signal(signum)
            return True
        except ProcessLookupError:
            return False
        except OSError as e:
            logger.debug(f"Signal delivery failed, falling back to terminate: {e}")
            process.terminate()
            return True

    async def terminate(
        self,
        process: asyncio.subprocess.Process,
        signum: int = signal.SIGTERM,
    ) -> None:
        """Deliver signum to the group and escalate to SIGKILL.

        Gives the group term_timeout seconds to exit after signum, then
        kill_timeout seconds after SIGKILL before giving up with a warning.
        """
        pid = process.pid
        if process.returncode is not None:
            return
        logger.debug(f"Terminating subprocess pid={pid}")

        try:
            self.send_signal(process, signum)

            try:
                await asyncio.wait_for(process.wait(), timeout=self.term_timeout)
                logger.debug(
                    f"Subprocess terminated gracefully pid={pid} "
                    f"returncode={process.returncode}"
                )
                return
            except asyncio.TimeoutError:
                pass

            logger.debug(f"Force killing subprocess pid={pid}")
            self.send_signal(process, getattr(signal, "SIGKILL", signal.SIGTERM))

            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
                logger.debug(
                    f"Subprocess killed pid={pid} "
                    f"returncode={process.returncode}"
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"Subprocess did not exit after kill pid={pid}"
                )

        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")

    async def feed_stdin(
        self,
        stdin: asyncio.StreamWriter,
        chunks: AsyncIterator[bytes],
        *,
        cancel_scope: anyio.CancelScope | None = None,
    ) -> int:
        """Write chunks to the process stdin, then close it.

        Stops early when the cancel scope is cancelled or the process
        closes its end of the pipe.

        Returns:
            Number of bytes written
        """
        written = 0
        try:
            async for chunk in chunks:
                if cancel_scope and cancel_scope.cancel_called:
                    break
                stdin.write(chunk)
                await stdin.drain()
                written += len(chunk)
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"stdin closed by process after {written} bytes: {e}")
        finally:
            stdin.close()
            try:
                await stdin.wait_closed()
            except (BrokenPipeError, ConnectionResetError):
                pass
        return written

    async def cleanup(
        self,
        process: asyncio.subprocess.Process | None,
        tasks: Iterable[asyncio.Task[Any]] = (),
    ) -> None:
        """Cancel helper tasks (readers, stdin feeder) and stop the process.

        Runs to completion even when the calling task is cancelled.
        """
        tasks = list(tasks)
        try:
            await asyncio.shield(self._teardown(process, tasks))
        except asyncio.CancelledError:
            await self._teardown(process, tasks)
            raise

    async def _teardown(
        self,
        process: asyncio.subprocess.Process | None,
        tasks: list[asyncio.Task[Any]],
    ) -> None:
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Helper task failed during cleanup: {e}")

        if process is not None and process.returncode is None:
            await self.terminate(process)
