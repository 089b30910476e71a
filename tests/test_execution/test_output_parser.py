"""Tests for agent output parser."""

import json

from taskengine.execution.output_parser import AgentOutputParser, OUTPUT_END_MARKER, OUTPUT_START_MARKER


def _block(parser: AgentOutputParser, payload: str):
    parser.feed(OUTPUT_START_MARKER)
    parser.feed(payload)
    return parser.feed(OUTPUT_END_MARKER)


class TestAgentOutputParser:
    def test_parses_valid_output(self):
        parser = AgentOutputParser()
        assert parser.feed(OUTPUT_START_MARKER) is None
        assert parser.feed(json.dumps({"status": "success", "output": "Hello", "duration_ms": 120})) is None
        output = parser.feed(OUTPUT_END_MARKER)
        assert output is not None
        assert output.status == "success"
        assert output.output == "Hello"
        assert output.duration_ms == 120

    def test_parses_tool_outputs(self):
        output = _block(AgentOutputParser(), json.dumps({"output": "ok", "tool_outputs": [{"tool": "search", "hits": 3}]}))
        assert output.tool_outputs == [{"tool": "search", "hits": 3}]

    def test_parses_error_output(self):
        output = _block(AgentOutputParser(), json.dumps({"status": "error", "error": "Something failed"}))
        assert output.status == "error"
        assert output.error == "Something failed"

    def test_ignores_lines_outside_markers(self):
        parser = AgentOutputParser()
        assert parser.feed("random log line") is None
        assert parser.feed(OUTPUT_END_MARKER) is None

    def test_handles_invalid_json(self):
        output = _block(AgentOutputParser(), "not valid json {{{")
        assert output.status == "error"
        assert "Failed to parse" in output.error

    def test_non_object_is_an_error(self):
        assert _block(AgentOutputParser(), "[1, 2]").status == "error"

    def test_tool_outputs_must_be_a_list(self):
        assert _block(AgentOutputParser(), json.dumps({"tool_outputs": "nope"})).status == "error"

    def test_multiline_json(self):
        parser = AgentOutputParser()
        parser.feed(OUTPUT_START_MARKER)
        parser.feed('{"status": "success",')
        parser.feed('"output": "Hello"}')
        output = parser.feed(OUTPUT_END_MARKER)
        assert output.output == "Hello"

    def test_strips_trailing_newlines(self):
        parser = AgentOutputParser()
        assert parser.feed(OUTPUT_START_MARKER + "\n") is None
        parser.feed(json.dumps({"output": "ok"}) + "\r\n")
        output = parser.feed(OUTPUT_END_MARKER + "\n")
        assert output.output == "ok"
        assert output.status == "success"

    def test_multiple_blocks(self):
        parser = AgentOutputParser()
        first = _block(parser, json.dumps({"output": "First"}))
        parser.feed("some log between blocks")
        second = _block(parser, json.dumps({"output": "Second"}))
        assert (first.output, second.output) == ("First", "Second")
