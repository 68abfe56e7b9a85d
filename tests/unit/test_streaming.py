"""Unit tests for streaming primitives."""

from switchboard.jsonutil import coerce_scalar, extract_balanced, repair_object
from switchboard.streaming import (
    ToolCall,
    ToolCallAccumulator,
    ToolCallDelta,
    dedupe_calls,
    parse_arguments,
)


class TestToolCallAccumulator:
    def test_single_fragment(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallDelta(index=0, id_fragment="c1", name_fragment="echo",
                               args_fragment='{"text": "hi"}'))
        result = acc.finalize()

        assert result == [ToolCall(id="c1", name="echo", arguments={"text": "hi"})]

    def test_name_and_arguments_reassembled(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallDelta(index=0, name_fragment="na", args_fragment='{"a":'))
        acc.feed(ToolCallDelta(index=0, name_fragment="me", args_fragment="1}"))
        acc.complete(0)
        result = acc.finalize()

        assert len(result) == 1
        assert result[0].name == "name"
        assert result[0].arguments == {"a": 1}
        assert result[0].parse_error is None

    def test_repeated_full_name_not_doubled(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallDelta(index=0, name_fragment="echo", args_fragment='{"x"'))
        acc.feed(ToolCallDelta(index=0, name_fragment="echo", args_fragment=": 2}"))
        assert acc.finalize()[0].name == "echo"

    def test_interleaved_calls(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallDelta(index=0, id_fragment="c1", name_fragment="foo", args_fragment='{"a":'))
        acc.feed(ToolCallDelta(index=1, id_fragment="c2", name_fragment="bar", args_fragment='{"b":'))
        acc.feed(ToolCallDelta(index=0, args_fragment=" 1}"))
        acc.feed(ToolCallDelta(index=1, args_fragment=" 2}"))
        result = acc.finalize()

        assert [(c.id, c.name, c.arguments) for c in result] == [
            ("c1", "foo", {"a": 1}),
            ("c2", "bar", {"b": 2}),
        ]

    def test_finalize_returns_index_order(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallDelta(index=2, id_fragment="c3", name_fragment="c"))
        acc.feed(ToolCallDelta(index=0, id_fragment="c1", name_fragment="a"))
        acc.feed(ToolCallDelta(index=1, id_fragment="c2", name_fragment="b"))

        assert [c.name for c in acc.finalize()] == ["a", "b", "c"]

    def test_missing_id_is_synthesized(self):
        acc = ToolCallAccumulator(round_index=3)
        acc.feed(ToolCallDelta(index=1, name_fragment="ping"))
        assert acc.finalize()[0].id == "call_3_1"

    def test_nameless_call_dropped(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallDelta(index=0, args_fragment="{}"))
        assert acc.finalize() == []

    def test_structural_duplicates_collapse(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallDelta(index=0, id_fragment="c1", name_fragment="search",
                               args_fragment='{"q": "x", "n": 1}'))
        acc.feed(ToolCallDelta(index=1, id_fragment="c2", name_fragment="search",
                               args_fragment='{"n": 1, "q": "x"}'))
        result = acc.finalize()

        assert len(result) == 1
        assert result[0].id == "c1"

    def test_fragment_after_complete_ignored(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallDelta(index=0, name_fragment="a", args_fragment="{}"))
        acc.complete(0)
        acc.feed(ToolCallDelta(index=0, args_fragment='{"late": true}'))
        assert acc.finalize()[0].arguments == {}

    def test_truncated_arguments_repaired_with_error(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallDelta(index=0, name_fragment="write", args_fragment='{"path": "a.txt", "body": "hel'))
        call = acc.finalize()[0]

        assert call.arguments == {"path": "a.txt", "body": "hel"}
        assert call.parse_error is not None

    def test_empty_accumulator(self):
        assert ToolCallAccumulator().finalize() == []


class TestParseArguments:
    def test_empty_buffer(self):
        assert parse_arguments("  ") == ({}, None)

    def test_valid_object(self):
        assert parse_arguments('{"k": [1, 2]}') == ({"k": [1, 2]}, None)

    def test_garbage(self):
        args, error = parse_arguments("not json at all")
        assert args == {}
        assert error.startswith("could not parse tool arguments")

    def test_non_object_json_is_an_error(self):
        args, error = parse_arguments("[1, 2]")
        assert error is not None


class TestDedupe:
    def test_first_occurrence_wins(self):
        a = ToolCall(id="1", name="t", arguments={"x": 1})
        b = ToolCall(id="2", name="t", arguments={"x": 1})
        c = ToolCall(id="3", name="t", arguments={"x": 2})
        assert dedupe_calls([a, b, c]) == [a, c]


class TestJsonUtil:
    def test_extract_balanced_ignores_braces_in_strings(self):
        text = 'before {"a": "}{", "b": {"c": 1}} after'
        obj, end = extract_balanced(text)
        assert obj == '{"a": "}{", "b": {"c": 1}}'
        assert text[end:] == " after"

    def test_extract_balanced_unclosed(self):
        assert extract_balanced('{"a": 1') is None

    def test_repair_scrapes_pairs(self):
        assert repair_object('{"a": "x", oops "n": 3, }}}') == {"a": "x", "n": 3}

    def test_repair_nothing_usable(self):
        assert repair_object("hello") is None

    def test_coerce_scalar(self):
        assert coerce_scalar("true") is True
        assert coerce_scalar("null") is None
        assert coerce_scalar("12") == 12
        assert coerce_scalar("1.5") == 1.5
        assert coerce_scalar("abc") == "abc"
