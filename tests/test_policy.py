"""Execution policy resolution tests."""

from __future__ import annotations

import signal
import subprocess

import pytest

from procflow.cancellation import CancellationToken
from procflow.errors import ConfigError
from procflow.policy import (
    DEFAULT_STDIO,
    ExecutionPolicy,
    resolve,
    signal_name,
    signal_number,
    stdio_target,
)


class TestResolve:
    """Per-key precedence: call > instance > default."""

    def test_builtin_defaults(self):
        policy = resolve()
        assert policy.shell is True
        assert policy.nothrow is False
        assert policy.timeout is None
        assert policy.timeout_signal == "SIGTERM"
        assert policy.delimiter == "\n"

    def test_call_overrides_instance_and_default(self):
        policy = resolve(
            {"nothrow": True},
            ExecutionPolicy(nothrow=False, cwd="/tmp"),
            ExecutionPolicy(nothrow=False, cwd="/", verbose=True),
        )
        assert policy.nothrow is True
        assert policy.cwd == "/tmp"
        assert policy.verbose is True

    def test_nested_values_replace(self):
        """env is replaced as a whole, never merged."""
        policy = resolve(
            {"env": {"A": "1"}},
            None,
            ExecutionPolicy(env={"B": "2"}),
        )
        assert dict(policy.env) == {"A": "1"}

    def test_unknown_key(self):
        with pytest.raises(ConfigError, match="no_such"):
            resolve({"no_such": 1})

    def test_shared_token_kept(self):
        token = CancellationToken()
        policy = resolve(None, ExecutionPolicy(signal=token))
        assert policy.signal is token

    def test_as_dict_only_set_keys(self):
        assert ExecutionPolicy(quiet=True).as_dict() == {"quiet": True}

    def test_merged(self):
        base = ExecutionPolicy(quiet=True)
        merged = base.merged(halt=True)
        assert merged.quiet is True
        assert merged.halt is True
        assert base.halt is None


class TestValidation:
    """Contradictory or invalid option combinations."""

    @pytest.mark.parametrize("timeout", [0, -1, "10", True])
    def test_bad_timeout(self, timeout):
        with pytest.raises(ConfigError):
            resolve({"timeout": timeout})

    def test_bad_signal(self):
        with pytest.raises(ConfigError, match="SIGNOPE"):
            resolve({"timeout_signal": "SIGNOPE"})

    def test_empty_delimiter(self):
        with pytest.raises(ConfigError):
            resolve({"delimiter": ""})

    def test_stdio_length(self):
        with pytest.raises(ConfigError):
            resolve({"stdio": ("pipe", "pipe")})

    def test_stdio_mode(self):
        with pytest.raises(ConfigError):
            resolve({"stdio": ("pipe", "bogus", "pipe")})

    def test_input_needs_piped_stdin(self):
        with pytest.raises(ConfigError, match="stdin"):
            resolve({"input": b"x", "stdio": ("inherit", "pipe", "pipe")})

    def test_input_with_default_stdio(self):
        policy = resolve({"input": b"x"})
        assert policy.input == b"x"

    def test_env_must_be_mapping(self):
        with pytest.raises(ConfigError):
            resolve({"env": ["A=1"]})

    def test_fd_stdio_accepted(self):
        policy = resolve({"stdio": ("pipe", 1, "ignore")})
        assert policy.stdio == ("pipe", 1, "ignore")


class TestSignals:
    """Signal name normalization."""

    @pytest.mark.parametrize("value", ["SIGTERM", "TERM", "term", 15, signal.SIGTERM])
    def test_signal_number(self, value):
        assert signal_number(value) == signal.SIGTERM

    def test_signal_name(self):
        assert signal_name("kill") == "SIGKILL"
        assert signal_name(2) == "SIGINT"

    def test_unknown(self):
        with pytest.raises(ConfigError):
            signal_number("SIGNOPE")
        with pytest.raises(ConfigError):
            signal_number(9999)


class TestStdioTarget:
    """Mapping of stdio modes to subprocess arguments."""

    def test_modes(self):
        assert stdio_target("pipe") == subprocess.PIPE
        assert stdio_target("inherit") is None
        assert stdio_target("ignore") == subprocess.DEVNULL
        assert stdio_target(5) == 5

    def test_default(self):
        assert DEFAULT_STDIO == ("inherit", "pipe", "pipe")
