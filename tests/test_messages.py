import datetime

import pytest

from chat_loop.messages import (
    AssistantMessageBuilder,
    TokenUsage,
    ToolCallRequest,
    serialize_result,
)


class TestToolCallRequest:
    def test_parse_arguments(self):
        call = ToolCallRequest(id="c1", name="search", arguments_json='{"q": "x"}')
        assert call.parse_arguments() == {"q": "x"}

    def test_empty_arguments_parse_to_empty_dict(self):
        assert ToolCallRequest(id="c1", name="noop").parse_arguments() == {}

    def test_non_object_arguments_rejected(self):
        call = ToolCallRequest(id="c1", name="search", arguments_json="[1, 2]")
        with pytest.raises(ValueError, match="must be a JSON object"):
            call.parse_arguments()

    def test_malformed_arguments_raise_value_error(self):
        call = ToolCallRequest(id="c1", name="search", arguments_json='{"q": ')
        with pytest.raises(ValueError):
            call.parse_arguments()


class TestTokenUsage:
    def test_from_dict(self):
        usage = TokenUsage.from_dict(
            {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}
        )
        assert usage == TokenUsage(10, 5, 15)

    def test_from_dict_missing_values(self):
        assert TokenUsage.from_dict({"prompt_tokens": None}) == TokenUsage()


class TestAssistantMessageBuilder:
    def test_content_concatenates_in_order(self):
        builder = AssistantMessageBuilder()
        builder.add_content("Hel")
        builder.add_content("lo")
        message = builder.build()
        assert message.role == "assistant"
        assert message.content == "Hello"
        assert message.tool_calls is None

    def test_tool_call_fragments_merge_by_index(self):
        builder = AssistantMessageBuilder()
        builder.add_tool_call_delta(0, id="call_a", name="search", arguments='{"q":')
        builder.add_tool_call_delta(1, id="call_b", name="file", arguments="{}")
        builder.add_tool_call_delta(0, arguments=' "x"}')

        calls = builder.tool_calls()
        assert [c.id for c in calls] == ["call_a", "call_b"]
        assert calls[0].parse_arguments() == {"q": "x"}

    def test_tool_calls_sorted_by_stream_index(self):
        builder = AssistantMessageBuilder()
        builder.add_tool_call_delta(2, id="c", name="third")
        builder.add_tool_call_delta(0, id="a", name="first")
        builder.add_tool_call_delta(1, id="b", name="second")
        assert [c.name for c in builder.tool_calls()] == ["first", "second", "third"]

    def test_late_id_and_name_are_filled(self):
        builder = AssistantMessageBuilder()
        builder.add_tool_call_delta(0, arguments="{}")
        builder.add_tool_call_delta(0, id="call_1", name="noop")
        call = builder.tool_calls()[0]
        assert call.id == "call_1"
        assert call.name == "noop"

    def test_text_and_tool_calls_share_one_message(self):
        builder = AssistantMessageBuilder()
        builder.add_content("Let me check.")
        builder.add_tool_call_delta(0, id="call_1", name="search", arguments="{}")
        message = builder.build()
        assert message.content == "Let me check."
        assert len(message.tool_calls) == 1

    def test_tool_calls_without_text_have_no_content(self):
        builder = AssistantMessageBuilder()
        builder.add_tool_call_delta(0, id="call_1", name="search")
        assert builder.build().content is None

    def test_build_partial_drops_tool_calls(self):
        builder = AssistantMessageBuilder()
        builder.add_content("Partial")
        builder.add_tool_call_delta(0, id="call_1", name="search", arguments='{"q"')
        partial = builder.build_partial()
        assert partial.content == "Partial"
        assert partial.tool_calls is None

    def test_build_partial_without_content(self):
        assert AssistantMessageBuilder().build_partial() is None


class TestSerializeResult:
    def test_string_passthrough(self):
        assert serialize_result("plain") == "plain"

    def test_json_for_structures(self):
        assert serialize_result({"a": [1, 2]}) == '{"a": [1, 2]}'

    def test_non_json_values_use_str(self):
        result = serialize_result({"when": datetime.date(2024, 1, 2)})
        assert result == '{"when": "2024-01-02"}'
