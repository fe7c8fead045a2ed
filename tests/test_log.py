"""Structured log record tests."""

from __future__ import annotations

import logging

import pytest

from procflow.config import Config
from procflow.log import format_entry, log_event, setup_logging, should_log


class TestShouldLog:
    """verbose/quiet gating."""

    @pytest.mark.parametrize("kind", ["cmd", "cd", "fetch", "retry", "custom"])
    def test_needs_verbose(self, kind: str):
        assert should_log(kind, verbose=True, quiet=False) is True
        assert should_log(kind, verbose=True, quiet=True) is True
        assert should_log(kind, verbose=False, quiet=False) is False

    @pytest.mark.parametrize("kind", ["stdout", "stderr"])
    def test_output_needs_verbose_and_not_quiet(self, kind: str):
        assert should_log(kind, verbose=True, quiet=False) is True
        assert should_log(kind, verbose=True, quiet=True) is False
        assert should_log(kind, verbose=False, quiet=False) is False


class TestFormatEntry:
    """Rendering records for the default sink."""

    def test_cmd(self):
        assert format_entry({"kind": "cmd", "cmd": "ls -la"}) == "$ ls -la"

    def test_output(self):
        assert format_entry({"kind": "stdout", "data": b"hello\n"}) == "hello"

    def test_cd(self):
        assert format_entry({"kind": "cd", "dir": "/tmp"}) == "$ cd /tmp"

    def test_fetch(self):
        assert format_entry({"kind": "fetch", "url": "http://x", "method": "POST"}) == (
            "$ fetch POST http://x"
        )

    def test_retry(self):
        entry = {"kind": "retry", "attempt": 1, "count": 3, "delay": 0.5, "error": "boom"}
        assert format_entry(entry) == "retry 1/3 in 0.5s: boom"

    def test_custom_message(self):
        assert format_entry({"kind": "custom", "message": "note"}) == "note"

    def test_custom_payload(self):
        assert format_entry({"kind": "custom", "n": 1}) == '{"kind": "custom", "n": 1}'


class TestLogEvent:
    """Delivery through Config.log or the logging module."""

    def test_custom_sink(self):
        records = []
        config = Config(verbose=True, log=records.append)

        assert log_event({"kind": "custom", "message": "x"}, config=config) is True
        assert records == [{"kind": "custom", "message": "x"}]

    def test_gated(self):
        records = []
        config = Config(log=records.append)

        assert log_event({"kind": "cmd", "cmd": "ls"}, config=config) is False
        assert records == []

    def test_explicit_flags_override_config(self):
        records = []
        config = Config(verbose=True, log=records.append)

        assert log_event({"kind": "stdout", "data": b"x"}, quiet=True, config=config) is False
        assert log_event({"kind": "cmd", "cmd": "ls"}, verbose=False, config=config) is False

    def test_unknown_kind(self):
        with pytest.raises(ValueError, match="kind"):
            log_event({"kind": "bogus"})

    def test_default_sink_uses_logging(self, caplog: pytest.LogCaptureFixture):
        config = Config(verbose=True)
        with caplog.at_level(logging.INFO, logger="procflow.log"):
            log_event({"kind": "cmd", "cmd": "echo hi"}, config=config)

        assert "$ echo hi" in caplog.text


class TestSetupLogging:
    """Handler installation."""

    def test_stderr_handler(self):
        handler = setup_logging(Config())
        try:
            assert isinstance(handler, logging.StreamHandler)
            assert logging.getLogger("procflow").level == logging.INFO
        finally:
            logging.getLogger().removeHandler(handler)

    def test_debug_file_handler(self, tmp_path):
        log_file = tmp_path / "debug.log"
        handler = setup_logging(Config(log_debug=True, log_file=str(log_file)))
        try:
            assert isinstance(handler, logging.FileHandler)
            assert logging.getLogger("procflow").level == logging.DEBUG
        finally:
            logging.getLogger().removeHandler(handler)
            handler.close()
            logging.getLogger("procflow").setLevel(logging.NOTSET)
