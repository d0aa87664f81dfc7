"""Tests for logging_utils module."""

from __future__ import annotations

from plan_coordinator.logging_utils import (
    format_gate_failure,
    pretty,
    summarize_pytest_failures,
    summarize_test_output,
)


class TestSummarizePytestFailures:
    def test_empty_log(self):
        assert summarize_pytest_failures("") == {"failed": [], "first_error": None}

    def test_short_summary_lines(self):
        log_text = """
FAILED tests/test_parser.py::test_split - AssertionError: assert 1 == 2
FAILED tests/test_parser.py::test_join - KeyError: 'x'
FAILED tests/test_parser.py::test_split - AssertionError: assert 1 == 2
E   AssertionError: assert 1 == 2
"""
        result = summarize_pytest_failures(log_text)

        assert result["failed"] == ["tests/test_parser.py::test_split", "tests/test_parser.py::test_join"]
        assert result["first_error"] == "E   AssertionError: assert 1 == 2"

    def test_max_failed(self):
        log_text = "\n".join(f"FAILED t.py::test_{i}" for i in range(10))
        assert len(summarize_pytest_failures(log_text, max_failed=3)["failed"]) == 3


class TestSummarizeTestOutput:
    def test_strips_ansi(self):
        assert summarize_test_output("\x1b[31mred\x1b[0m text") == "red text"

    def test_truncates_from_the_end(self):
        output = "a" * 50 + "TAIL"
        result = summarize_test_output(output, max_chars=10)
        assert result.startswith("... (truncated)")
        assert result.endswith("aaaaaaTAIL")


class TestFormatGateFailure:
    def test_with_detail(self):
        text = format_gate_failure("Gate 2 (tests)", "tests failed", "E  boom\n")
        assert text.splitlines() == ["**Gate 2 (tests) failed:** tests failed", "", "```", "E  boom", "```"]

    def test_without_detail(self):
        assert format_gate_failure("Gate 1 (evidence)", "no commits") == "**Gate 1 (evidence) failed:** no commits"


def test_pretty_falls_back_to_str():
    class Opaque:
        def __repr__(self) -> str:
            return "<opaque>"

    assert pretty({"a": 1}) == '{\n  "a": 1\n}'
    assert pretty({"key": Opaque()}) == '{\n  "key": "<opaque>"\n}'
