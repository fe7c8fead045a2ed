"""Process handle: one spawned command and its lifecycle.

Stages:
    initial   constructed, execution scheduled but not spawned yet
    halted    constructed with halt=True, waits for run()
    running   OS process spawned
    fulfilled exit code 0 (or any exit code under nothrow)
    rejected  non-zero exit, signal death, spawn failure or cancellation

Transitions only move forward and a settled handle never changes again.

Settlement rules, first match wins:
1. cancelled through the token (abort(), shared pipeline token) -> CancellationError
2. stopped by timeout()                                         -> CancellationError
3. an upstream pipeline stage rejected                          -> the upstream error
4. terminated by a signal                                       -> SignalError
5. non-zero exit without nothrow                                -> ExitError
6. otherwise                                                    -> fulfilled

Cancellation always wins over nothrow: it is caller-driven termination, not a
program exit status.
"""

from __future__ import annotations

import asyncio
import codecs
import locale
import logging
import time
import uuid
import weakref
from collections.abc import AsyncIterator
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Generator

from .cancellation import CancellationToken
from .command import Command
from .config import Config, get_config
from .errors import CancellationError, ConfigError, ExitError, SignalError, SpawnError
from .log import log_event
from .multiplexer import StreamMultiplexer
from .output import Channel, ProcessOutput
from .pipeline import SinkPipe, is_sink, iter_source
from .policy import (
    DEFAULT_STDIO,
    ExecutionPolicy,
    resolve,
    signal_name,
    signal_number,
    stdio_target,
)
from .quoting import Quote, build_argv, quote_for
from .registry import get_registry
from .runtime.process_runner import ProcessRunner, ProcessSpec

__all__ = ["ProcessHandle", "Stage"]

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


class Stage(str, Enum):
    """Lifecycle stage of a process handle."""

    INITIAL = "initial"
    HALTED = "halted"
    RUNNING = "running"
    FULFILLED = "fulfilled"
    REJECTED = "rejected"

    @property
    def settled(self) -> bool:
        return self in (Stage.FULFILLED, Stage.REJECTED)


class ProcessHandle:
    """Awaitable handle around one OS process.

    Handles are normally created through a Shell:

        out = await sh("git rev-parse HEAD")
        files = await sh("ls {}", directory).nothrow().lines()
        await sh("cat {}", path).pipe("gzip").pipe(Path("out.gz"))

    Awaiting resolves to a ProcessOutput or raises a ProcessError subclass.
    The stdout and stderr attributes are replaying multiplexers: consumers
    attached at any point observe the complete output.
    """

    def __init__(
        self,
        command: Command,
        *,
        options: ExecutionPolicy | None = None,
        config: Config | None = None,
    ) -> None:
        self.id = str(uuid.uuid4())
        self._command = command
        self._config = config or get_config()
        self._instance = options or ExecutionPolicy()
        self._defaults = self._config.as_policy()
        self._overrides: dict[str, Any] = {}
        self._policy: ExecutionPolicy | None = None
        self._runner = ProcessRunner(
            term_timeout=self._config.term_timeout,
            kill_timeout=self._config.kill_timeout,
        )

        self._stage = Stage.INITIAL
        self._cmdline = ""
        self._process: asyncio.subprocess.Process | None = None
        self._future: asyncio.Future[ProcessOutput] | None = None
        self._task: asyncio.Task[None] | None = None
        self._helpers: set[asyncio.Task[Any]] = set()
        self._timer: asyncio.TimerHandle | None = None
        self._started_at: float | None = None

        self.stdout = StreamMultiplexer("stdout")
        self.stderr = StreamMultiplexer("stderr")
        self._combined: list[bytes] = []

        self._stdin_source: StreamMultiplexer | None = None
        self._upstream: ProcessHandle | None = None
        self._downstream: weakref.WeakSet[ProcessHandle] = weakref.WeakSet()
        self._upstream_error: BaseException | None = None

        self._cancelled = False
        self._cancel_reason: object = None
        # Set on cancellation or upstream failure; ends argument resolution.
        self._interrupted = asyncio.Event()
        self._timed_out: tuple[float, str] | None = None

        self._output: ProcessOutput | None = None
        self._error: BaseException | None = None

        if self._layered("halt"):
            self._stage = Stage.HALTED

        self._token_explicit = self._layered("signal") is not None
        self._token: CancellationToken = self._layered("signal") or CancellationToken()
        self._unsubscribe: Callable[[], None] = lambda: None
        self._unsubscribe = self._token.subscribe(self._on_cancel)

        if self._stage is Stage.INITIAL:
            self._schedule()

    # =========================================================================
    # Policy
    # =========================================================================

    def _layered(self, name: str) -> Any:
        """Read one option through the layers before the policy is frozen."""
        if self._policy is not None:
            return getattr(self._policy, name)
        for layer in (self._overrides, self._instance.as_dict(), self._defaults.as_dict()):
            value = layer.get(name)
            if value is not None:
                return value
        return None

    def _override(self, **changes: Any) -> ProcessHandle:
        if self._policy is not None:
            names = ", ".join(changes)
            raise ConfigError(f"Cannot change {names}: policy is frozen once the process has started")
        self._overrides.update(changes)
        return self

    def _freeze(self) -> ExecutionPolicy:
        if self._policy is None:
            self._policy = resolve(self._overrides, self._instance, self._defaults)
            if self._stdin_source is not None and self._policy.input is not None:
                raise ConfigError("A piped process cannot also take input")
            if self._stdin_source is not None and self._policy.stdio is not None \
                    and self._policy.stdio[0] != "pipe":
                raise ConfigError(
                    f"A piped process needs stdin 'pipe', got {self._policy.stdio[0]!r}"
                )
        return self._policy

    def nothrow(self, value: bool = True) -> ProcessHandle:
        """Resolve instead of reject on non-zero exit."""
        return self._override(nothrow=value)

    def quiet(self, value: bool = True) -> ProcessHandle:
        return self._override(quiet=value)

    def verbose(self, value: bool = True) -> ProcessHandle:
        return self._override(verbose=value)

    def stdio(
        self,
        stdin: Any = "inherit",
        stdout: Any = "pipe",
        stderr: Any = "pipe",
    ) -> ProcessHandle:
        """Set the stdio modes ("pipe", "inherit", "ignore", fd or file)."""
        return self._override(stdio=(stdin, stdout, stderr))

    def input(self, data: Any) -> ProcessHandle:
        """Feed data (bytes, str, output, stream or iterable) to stdin."""
        return self._override(input=data)

    def timeout(self, duration: float, signal: str | int | None = None) -> ProcessHandle:
        """Stop the process with signal if it has not settled within duration.

        Before spawn this sets the policy; on a running process it (re)arms
        the timer immediately. No-op once settled.
        """
        if self._stage.settled:
            return self
        if self._policy is None:
            changes: dict[str, Any] = {"timeout": duration}
            if signal is not None:
                changes["timeout_signal"] = signal
            return self._override(**changes)
        if duration <= 0:
            raise ConfigError(f"timeout must be positive, got {duration}")
        self._arm_timer(duration, signal_name(signal or self._policy.timeout_signal))
        return self

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def stage(self) -> Stage:
        return self._stage

    @property
    def is_running(self) -> bool:
        return (
            self._stage is Stage.RUNNING
            and self._process is not None
            and self._process.returncode is None
        )

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def cmd(self) -> str:
        """The resolved command line (empty until resolved)."""
        return self._cmdline

    @property
    def command(self) -> Command:
        return self._command

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def output(self) -> ProcessOutput | None:
        """The settled output, None while unsettled."""
        return self._output

    @property
    def exit_code(self) -> int | None:
        return self._output.exit_code if self._output else None

    def _schedule(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Started on first await.
            return
        self._start(loop)

    def _start(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._task is not None or self._stage.settled:
            return
        self._get_future(loop)
        self._task = loop.create_task(self._execute(), name=f"procflow-{self.id[:8]}")

    def run(self) -> ProcessHandle:
        """Start a halted (or not yet started) process. No-op otherwise."""
        if self._task is None and not self._stage.settled:
            if self._stage is Stage.HALTED:
                self._stage = Stage.INITIAL
            self._start(asyncio.get_running_loop())
        return self

    def _get_future(self, loop: asyncio.AbstractEventLoop | None = None) -> asyncio.Future[ProcessOutput]:
        if self._future is None:
            loop = loop or asyncio.get_running_loop()
            self._future = loop.create_future()
            if self._stage.settled:
                self._resolve_future()
        return self._future

    def _resolve_future(self) -> None:
        future = self._future
        if future is None or future.done():
            return
        if self._error is not None:
            future.set_exception(self._error)
        else:
            future.set_result(self._output)

    def _settle(self, output: ProcessOutput | None, error: BaseException | None) -> None:
        if self._stage.settled:
            return
        self._output = output
        self._error = error
        self._stage = Stage.REJECTED if error is not None else Stage.FULFILLED
        self._cancel_timer()
        self._unsubscribe()
        self.stdout.close()
        self.stderr.close()

        if error is not None:
            logger.debug(f"Process rejected: {self!r} error={type(error).__name__}")
        else:
            logger.debug(f"Process fulfilled: {self!r}")

        self._resolve_future()
        for downstream in list(self._downstream):
            downstream._on_upstream_settled(self, error)

    def _mark_observed(self) -> None:
        # The error is reported through a downstream stage.
        if self._future is not None and self._future.done() and not self._future.cancelled():
            self._future.exception()

    async def _wait(self) -> ProcessOutput:
        if self._stage is Stage.HALTED:
            raise ConfigError("Process is halted, call run() before awaiting it")
        if self._task is None and self._stage is Stage.INITIAL:
            self._start(asyncio.get_running_loop())
        return await asyncio.shield(self._get_future())

    def __await__(self) -> Generator[Any, None, ProcessOutput]:
        return self._wait().__await__()

    # =========================================================================
    # Signals and cancellation
    # =========================================================================

    def kill(self, signal: str | int | None = None) -> None:
        """Send a signal to the process group. No-op unless running."""
        if not self.is_running:
            return
        signame = signal_name(signal or self._layered("kill_signal") or "SIGTERM")
        logger.debug(f"Killing pid={self.pid} with {signame}")
        self._runner.send_signal(self._process, signal_number(signame))

    def abort(self, reason: object = None) -> None:
        """Fire the cancellation token shared with every pipeline stage."""
        self._token.abort(reason if reason is not None else "aborted")

    def _on_cancel(self, reason: object) -> None:
        if self._stage.settled:
            return
        self._cancelled = True
        self._cancel_reason = reason
        self._interrupted.set()

        if self._task is None:
            # Never started: nothing to kill.
            self._settle(self._snapshot(), CancellationError(self._snapshot(), reason))
            return
        if self.is_running:
            signame = signal_name(self._layered("kill_signal") or "SIGTERM")
            self._spawn_helper(self._runner.terminate(self._process, signal_number(signame)))

    def _arm_timer(self, duration: float, signame: str) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(duration, self._on_timeout, duration, signame)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timeout(self, duration: float, signame: str) -> None:
        self._timer = None
        if self._stage.settled or not self.is_running:
            return
        logger.debug(f"Timeout after {duration}s, sending {signame} to pid={self.pid}")
        self._timed_out = (duration, signame)
        self._spawn_helper(self._runner.terminate(self._process, signal_number(signame)))

    def _spawn_helper(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._helpers.add(task)
        task.add_done_callback(self._helpers.discard)

    # =========================================================================
    # Execution
    # =========================================================================

    async def _execute(self) -> None:
        try:
            output = await self._run_process()
        except asyncio.CancelledError:
            error = CancellationError(self._snapshot(), "task cancelled")
            self._settle(error.output, error)
            raise
        except Exception as e:
            self._settle(getattr(e, "output", None) or self._snapshot(), e)
        else:
            self._settle(output, None)

    def _check_cancelled(self) -> None:
        if self._cancelled:
            raise CancellationError(self._snapshot(), self._cancel_reason)
        if self._upstream_error is not None:
            raise self._upstream_error

    async def _run_process(self) -> ProcessOutput:
        policy = self._freeze()
        quote = self._config.quote or quote_for(policy.shell)

        self._cmdline = await self._resolve_cmdline(quote)
        self._check_cancelled()
        if not self._cmdline.strip():
            raise ConfigError("Command line is empty")

        argv = build_argv(
            self._cmdline,
            shell=policy.shell,
            prefix=policy.prefix,
            postfix=policy.postfix or "",
        )
        if not argv:
            raise ConfigError("Command line is empty")

        spec = self._build_spec(argv, policy)
        log_event(
            {"kind": "cmd", "cmd": self._cmdline, "id": self.id},
            verbose=policy.verbose,
            quiet=policy.quiet,
            config=self._config,
        )

        self._started_at = time.monotonic()
        try:
            self._process = await self._runner.spawn(spec)
        except OSError as e:
            raise SpawnError(self._cmdline, e) from e

        self._stage = Stage.RUNNING
        registry = get_registry()
        registry.register(self)
        try:
            return await self._supervise(policy)
        finally:
            registry.unregister(self.id)

    async def _resolve_cmdline(self, quote: Quote) -> str:
        """Await the interpolated values unless the handle is interrupted first.

        Pending values are cancelled on abort or upstream failure.
        """
        resolving = asyncio.ensure_future(self._command.resolve(quote))
        interrupted = asyncio.ensure_future(self._interrupted.wait())
        try:
            await asyncio.wait({resolving, interrupted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            interrupted.cancel()
            if not resolving.done():
                resolving.cancel()
        if not resolving.done() or resolving.cancelled():
            self._check_cancelled()
        return resolving.result()

    def _build_spec(self, argv: list[str], policy: ExecutionPolicy) -> ProcessSpec:
        stdin, stdout, stderr = policy.stdio or DEFAULT_STDIO
        if self._stdin_source is not None or policy.input is not None:
            stdin = "pipe"
        return ProcessSpec(
            argv=argv,
            cwd=Path(policy.cwd) if policy.cwd is not None else None,
            env=policy.env,
            stdin=stdio_target(stdin),
            stdout=stdio_target(stdout),
            stderr=stdio_target(stderr),
        )

    async def _supervise(self, policy: ExecutionPolicy) -> ProcessOutput:
        process = self._process
        assert process is not None

        if self._cancelled:
            self._on_cancel(self._cancel_reason)
        elif policy.timeout:
            self._arm_timer(policy.timeout, signal_name(policy.timeout_signal))

        readers = []
        for reader, stream, kind in (
            (process.stdout, self.stdout, "stdout"),
            (process.stderr, self.stderr, "stderr"),
        ):
            if reader is None:
                stream.close()
                continue
            readers.append(asyncio.ensure_future(self._drain(reader, stream, kind, policy)))

        feeder = None
        if process.stdin is not None:
            feeder = asyncio.ensure_future(self._feed(process.stdin, policy))

        try:
            await asyncio.gather(*readers)
            returncode = await process.wait()
        except asyncio.CancelledError:
            await self._runner.cleanup(process, [*readers, *([feeder] if feeder else [])])
            raise
        finally:
            if feeder is not None and not feeder.done():
                feeder.cancel()
                try:
                    await feeder
                except asyncio.CancelledError:
                    pass
            self.stdout.close()
            self.stderr.close()

        if feeder is not None and not feeder.cancelled() and feeder.exception() is not None:
            raise feeder.exception()

        duration = time.monotonic() - (self._started_at or time.monotonic())
        output = self._snapshot(returncode, duration)
        logger.debug(
            f"Process exited pid={process.pid} returncode={returncode} "
            f"duration={duration:.3f}s"
        )

        if self._upstream is not None and not self._upstream.stage.settled:
            try:
                await self._upstream
            except Exception:
                # Reported through _upstream_error by _on_upstream_settled.
                pass

        return self._outcome(output, policy)

    async def _drain(
        self,
        reader: asyncio.StreamReader,
        stream: StreamMultiplexer,
        kind: str,
        policy: ExecutionPolicy,
    ) -> None:
        while True:
            chunk = await reader.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            stream.feed(chunk)
            self._combined.append(chunk)
            log_event(
                {"kind": kind, "data": chunk, "id": self.id},
                verbose=policy.verbose,
                quiet=policy.quiet,
                config=self._config,
            )
        stream.close()

    async def _feed(self, stdin: asyncio.StreamWriter, policy: ExecutionPolicy) -> None:
        source = self._stdin_source if self._stdin_source is not None else policy.input
        if source is None:
            stdin.close()
            return
        scope = self._token.cancel_scope()
        try:
            await self._runner.feed_stdin(stdin, iter_source(source), cancel_scope=scope)
        finally:
            self._token.release_scope(scope)

    def _snapshot(self, returncode: int | None = None, duration: float = 0.0) -> ProcessOutput:
        exit_code = returncode if returncode is not None and returncode >= 0 else None
        signal = None
        if returncode is not None and returncode < 0:
            try:
                signal = signal_name(-returncode)
            except ConfigError:
                signal = f"SIG{-returncode}"
        return ProcessOutput(
            stdout=self.stdout.data,
            stderr=self.stderr.data,
            combined=b"".join(self._combined),
            exit_code=exit_code,
            signal=signal,
            command=self._cmdline,
            duration=duration,
        )

    def _outcome(self, output: ProcessOutput, policy: ExecutionPolicy) -> ProcessOutput:
        if self._cancelled:
            raise CancellationError(output, self._cancel_reason)
        if self._timed_out is not None:
            duration, signame = self._timed_out
            raise CancellationError(output, f"timed out after {duration}s", signal=signame)
        if self._upstream_error is not None:
            raise self._upstream_error
        if output.signal is not None:
            raise SignalError(output)
        if output.exit_code != 0 and not policy.nothrow:
            raise ExitError(output)
        return output

    # =========================================================================
    # Pipes
    # =========================================================================

    def channel(self, name: str = "stdout") -> StreamMultiplexer:
        """Return the multiplexer of an output channel."""
        if name == "stdout":
            return self.stdout
        if name == "stderr":
            return self.stderr
        raise ValueError(f"Unknown channel: {name!r} (expected 'stdout' or 'stderr')")

    def pipe(self, target: Any, *args: Any, channel: str = "stdout") -> Any:
        """Connect an output channel of this process to a target.

        Args:
            target: A not yet started ProcessHandle, a Command, a command
                template (formatted with args), a Path or any byte sink
            channel: "stdout" (default) or "stderr"

        Returns:
            The target handle for process targets, a SinkPipe for sinks

        Raises:
            ConfigError: If the target has already started or is unsupported
        """
        source = self.channel(channel)

        if isinstance(target, str):
            target = self._derive(Command.parse(target, *args))
        elif isinstance(target, Command):
            target = self._derive(target)
        elif args:
            raise ConfigError("Template arguments are only valid with a command template")

        if isinstance(target, ProcessHandle):
            target._attach_upstream(self, source)
            self._ensure_started()
            target._ensure_started()
            return target

        if is_sink(target):
            self._ensure_started()
            return SinkPipe(self, channel, target)

        raise ConfigError(f"Cannot pipe into {type(target).__name__}")

    def _derive(self, command: Command) -> ProcessHandle:
        return ProcessHandle(
            command,
            options=self._instance.merged(halt=True, input=None),
            config=self._config,
        )

    def _ensure_started(self) -> None:
        if self._task is None and not self._stage.settled:
            try:
                self.run()
            except RuntimeError:
                # No running loop: starts on first await.
                if self._stage is Stage.HALTED:
                    self._stage = Stage.INITIAL

    def _attach_upstream(self, upstream: ProcessHandle, source: StreamMultiplexer) -> None:
        if upstream is self:
            raise ConfigError("Cannot pipe a process into itself")
        if self._policy is not None or self._process is not None or self._stage.settled:
            raise ConfigError("Cannot pipe into a process that has already started")
        if self._stdin_source is not None:
            raise ConfigError("Process already has a piped input")

        self._stdin_source = source
        self._upstream = upstream
        upstream._downstream.add(self)

        if self._token is not upstream._token:
            own = self._token
            self._unsubscribe()
            self._token = upstream._token
            self._unsubscribe = self._token.subscribe(self._on_cancel)
            if self._token_explicit:
                own.link(upstream._token)

        if upstream.stage is Stage.REJECTED:
            self._on_upstream_settled(upstream, upstream._error)

    def _on_upstream_settled(self, upstream: ProcessHandle, error: BaseException | None) -> None:
        if error is None or self._stage.settled:
            return
        upstream._mark_observed()
        if self._upstream_error is None:
            self._upstream_error = error
        self._interrupted.set()
        if self.is_running:
            signame = signal_name(self._layered("kill_signal") or "SIGTERM")
            self._spawn_helper(self._runner.terminate(self._process, signal_number(signame)))

    # =========================================================================
    # Convenience views
    # =========================================================================

    async def text(self, encoding: str | None = None, channel: Channel = "combined") -> str:
        return (await self).text(encoding, channel)

    async def lines(self, delimiter: str | None = None, encoding: str | None = None) -> list[str]:
        output = await self
        return output.lines(delimiter or self._layered("delimiter") or "\n", encoding)

    async def json(self, encoding: str | None = None, channel: Channel = "combined") -> Any:
        return (await self).json(encoding, channel)

    async def buffer(self, channel: Channel = "combined") -> bytes:
        return (await self).buffer(channel)

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iter_lines()

    async def _iter_lines(self) -> AsyncIterator[str]:
        """Yield stdout split on the delimiter as it arrives."""
        self._ensure_started()
        delimiter = self._layered("delimiter") or "\n"
        decoder = codecs.getincrementaldecoder(locale.getpreferredencoding(False))(errors="replace")
        pending = ""
        async for chunk in self.stdout:
            pending += decoder.decode(chunk)
            *complete, pending = pending.split(delimiter)
            for line in complete:
                yield line
        pending += decoder.decode(b"", final=True)
        if pending:
            yield pending

    def __repr__(self) -> str:
        cmd = self._cmdline or str(self._command)
        if len(cmd) > 60:
            cmd = cmd[:57] + "..."
        pid = f", pid={self.pid}" if self._process else ""
        return f"ProcessHandle(id={self.id[:8]}..., stage={self._stage.value}{pid}, cmd={cmd!r})"
