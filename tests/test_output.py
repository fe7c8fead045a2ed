"""ProcessOutput tests."""

from __future__ import annotations

import pytest

from procflow.errors import ParseError
from procflow.output import ProcessOutput, trim_terminator


def _output(stdout: bytes = b"", stderr: bytes = b"", exit_code: int | None = 0, **kwargs):
    return ProcessOutput(
        stdout=stdout,
        stderr=stderr,
        combined=kwargs.pop("combined", stdout + stderr),
        exit_code=exit_code,
        **kwargs,
    )


class TestTrimTerminator:
    """Exactly one trailing terminator is removed."""

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("a\n", "a"),
            ("a\r\n", "a"),
            ("a\n\n", "a\n"),
            ("a", "a"),
            ("", ""),
        ],
    )
    def test_trim(self, text: str, expected: str):
        assert trim_terminator(text) == expected


class TestCoercion:
    """String coercion and equality."""

    def test_str_trims_one_newline(self):
        assert str(_output(b"hello\n")) == "hello"

    def test_equality_with_string(self):
        assert _output(b"foo\n") == "foo"
        assert _output(b"foo\n") != "bar"

    def test_equality_between_outputs(self):
        assert _output(b"x\n") == _output(b"x", exit_code=1)
        assert hash(_output(b"x\n")) == hash("x")

    def test_bytes(self):
        assert bytes(_output(b"raw\n")) == b"raw\n"

    def test_repr(self):
        assert "exit_code=0" in repr(_output(b"x"))
        assert "signal=SIGTERM" in repr(_output(exit_code=None, signal="SIGTERM"))


class TestViews:
    """text/lines/json/buffer/blob."""

    def test_text_channels(self):
        output = _output(b"out", b"err", combined=b"outerr")
        assert output.text() == "outerr"
        assert output.text(channel="stdout") == "out"
        assert output.text(channel="stderr") == "err"

    def test_unknown_channel(self):
        with pytest.raises(ValueError):
            _output().text(channel="stdin")  # type: ignore[arg-type]

    def test_lines_trailing_delimiter(self):
        assert _output(b"a\nb\n").lines() == ["a", "b"]
        assert _output(b"a\nb").lines() == ["a", "b"]

    def test_lines_custom_delimiter(self):
        assert _output(b"a\0b\0").lines("\0") == ["a", "b"]

    def test_lines_empty(self):
        assert _output(b"").lines() == []

    def test_json(self):
        assert _output(b'{"a": [1, 2]}\n').json() == {"a": [1, 2]}

    def test_json_malformed(self):
        with pytest.raises(ParseError) as exc_info:
            _output(b"{nope").json()
        assert exc_info.value.text == "{nope"

    def test_buffer_and_blob(self):
        output = _output(b"abc")
        assert output.buffer() == b"abc"
        blob = output.blob()
        assert bytes(blob) == b"abc"
        assert blob.readonly is True

    def test_ok(self):
        assert _output(exit_code=0).ok is True
        assert _output(exit_code=3).ok is False
        assert _output(exit_code=None, signal="SIGKILL").ok is False
