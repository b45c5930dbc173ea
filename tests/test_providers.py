import json

import pytest

from chatbridge.errors import ParseError, VendorError
from chatbridge.providers import (
    ClaudeAdapter, DeepSeekAdapter, GeminiAdapter, OpenAIAdapter, create_adapter,
)
from chatbridge.types import ChatRequest


def body_of(result):
    assert result.ok, result.error_message
    return json.loads(result.value)


TOOL_CALL = {
    "id": "call_1",
    "type": "function",
    "function": {"name": "get_weather", "arguments": '{"city":"Paris"}'},
}
TOOL_ROUND = {
    "tool_calls": [TOOL_CALL],
    "results": [{
        "tool_call_id": "call_1",
        "function": {"name": "get_weather", "output": '{"temp": 21}'},
    }],
}


class TestRegistry:
    @pytest.mark.parametrize("platform, cls", [
        ("openai", OpenAIAdapter),
        ("OpenAI-Compatible", OpenAIAdapter),
        ("DeepSeek", DeepSeekAdapter),
        ("CLAUDE", ClaudeAdapter),
        ("gemini", GeminiAdapter),
    ])
    def test_case_insensitive_lookup(self, platform, cls):
        assert type(create_adapter(platform)) is cls

    def test_unknown_platform(self):
        assert create_adapter("cohere") is None


class TestMaxTokens:
    def test_claude_defaults_to_1024(self):
        for max_tokens in (None, 0, -5):
            body = body_of(ClaudeAdapter().build_chat_request(
                "claude-3-haiku", ChatRequest(user_message="hi", max_tokens=max_tokens)
            ))
            assert body["max_tokens"] == 1024

    def test_openai_omits_unset(self):
        body = body_of(OpenAIAdapter().build_chat_request("gpt-4o", ChatRequest(user_message="hi")))
        assert "max_completion_tokens" not in body
        assert "max_tokens" not in body
        assert "temperature" not in body

    def test_gemini_omits_unset(self):
        body = body_of(GeminiAdapter().build_chat_request("gemini-2.0-flash", ChatRequest(user_message="hi")))
        assert "generationConfig" not in body

    def test_vendor_field_names(self):
        request = ChatRequest(user_message="hi", max_tokens=50)
        assert body_of(OpenAIAdapter().build_chat_request("m", request))["max_completion_tokens"] == 50
        assert body_of(DeepSeekAdapter().build_chat_request("m", request))["max_tokens"] == 50
        assert body_of(GeminiAdapter().build_chat_request("m", request))["generationConfig"] == {
            "maxOutputTokens": 50
        }


class TestOpenAIAdapter:
    def test_endpoint_and_headers(self):
        adapter = OpenAIAdapter()
        assert adapter.resolve_endpoint("gpt-4o", "k") == "https://api.openai.com/v1/chat/completions"
        assert adapter.resolve_endpoint("gpt-4o", "k", "http://localhost:8000/v1/chat") == (
            "http://localhost:8000/v1/chat"
        )
        assert adapter.build_headers("sk-1")["Authorization"] == "Bearer sk-1"

    def test_deepseek_endpoint(self):
        assert DeepSeekAdapter().resolve_endpoint("deepseek-chat", "k") == (
            "https://api.deepseek.com/chat/completions"
        )

    def test_chat_request_custom_params_do_not_override(self):
        request = ChatRequest(
            user_message="hi",
            system_role="be brief",
            temperature=0.3,
            custom_params={"model": "other", "temperature": 1.5, "top_p": 0.9, "stream": True},
        )
        body = body_of(OpenAIAdapter().build_chat_request("gpt-4o", request))
        assert body["model"] == "gpt-4o"
        assert body["temperature"] == 0.3
        assert body["top_p"] == 0.9
        assert "stream" not in body
        assert body["messages"] == [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "hi"},
        ]

    def test_parse_chat_response(self):
        adapter = OpenAIAdapter()
        result = adapter.parse_chat_response(json.dumps({
            "choices": [{"message": {"role": "assistant", "content": "Hello!"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7},
        }))
        assert result.ok
        assert result.value == "Hello!"
        assert adapter.total_tokens == 7
        assert adapter.finish_reason == "stop"

    def test_state_reset_between_calls(self):
        adapter = OpenAIAdapter()
        adapter.parse_chat_response(json.dumps({
            "choices": [{"message": {"content": "a"}, "finish_reason": "stop"}],
            "usage": {"total_tokens": 9},
        }))
        adapter.build_chat_request("gpt-4o", ChatRequest(user_message="next"))
        assert adapter.total_tokens == 0
        assert adapter.finish_reason == ""

    def test_error_envelope(self):
        result = OpenAIAdapter().parse_chat_response('{"error": {"message": "bad key"}}')
        assert not result.ok
        assert isinstance(result.error, VendorError)
        assert "bad key" in result.error_message
        assert result.value is None

    def test_malformed_json(self):
        result = OpenAIAdapter().parse_chat_response("<html>oops")
        assert isinstance(result.error, ParseError)

    def test_missing_choices(self):
        result = OpenAIAdapter().parse_chat_response('{"id": "x"}')
        assert isinstance(result.error, ParseError)

    def test_tool_request(self, weather_tool):
        body = body_of(OpenAIAdapter().build_tool_request(
            "gpt-4o", [weather_tool], ChatRequest(user_message="weather?"), "required"
        ))
        assert body["tools"][0]["function"]["name"] == "get_weather"
        assert body["tool_choice"] == "required"

    def test_parse_tool_calls(self):
        adapter = OpenAIAdapter()
        result = adapter.parse_tool_response(json.dumps({
            "choices": [{
                "message": {"content": None, "tool_calls": [TOOL_CALL]},
                "finish_reason": "tool_calls",
            }]
        }))
        assert result.ok
        assert result.value.tool_calls == [TOOL_CALL]
        assert result.value.tool_calls[0]["function"]["arguments"] == '{"city":"Paris"}'
        assert adapter.finish_reason == "tool_calls"

    def test_empty_tool_response_is_error(self):
        result = OpenAIAdapter().parse_tool_response(json.dumps({
            "choices": [{"message": {"content": None}, "finish_reason": "stop"}]
        }))
        assert not result.ok
        assert result.value is None
        assert "tool_calls" in result.error_message

    def test_followup_messages(self, weather_tool):
        body = body_of(OpenAIAdapter().build_tool_followup_request(
            "gpt-4o", [weather_tool], ChatRequest(user_message="weather?"), None, [TOOL_ROUND]
        ))
        messages = body["messages"]
        assert messages[0] == {"role": "user", "content": "weather?"}
        assert messages[1]["role"] == "assistant"
        assert messages[1]["tool_calls"] == [TOOL_CALL]
        assert messages[2] == {"role": "tool", "tool_call_id": "call_1", "content": '{"temp": 21}'}
        assert "tool_choice" not in body

    def test_stream_request(self):
        body = body_of(OpenAIAdapter().build_stream_request("gpt-4o", ChatRequest(user_message="hi")))
        assert body["stream"] is True

    def test_stream_done_marker(self):
        result = OpenAIAdapter().parse_stream_chunk("data: [DONE]")
        assert result.ok
        assert result.value.is_complete is True
        assert result.value.content == ""

    def test_stream_content(self):
        result = OpenAIAdapter().parse_stream_chunk('data: {"choices":[{"delta":{"content":"hi"}}]}')
        assert result.value.content == "hi"
        assert result.value.is_complete is False

    def test_stream_finish_reason_completes(self):
        adapter = OpenAIAdapter()
        result = adapter.parse_stream_chunk(
            'data: {"choices":[{"delta":{},"finish_reason":"length"}]}'
        )
        assert result.value.is_complete is True
        assert adapter.finish_reason == "length"

    @pytest.mark.parametrize("line", ["", ": keep-alive", "event: message"])
    def test_stream_non_data_lines(self, line):
        result = OpenAIAdapter().parse_stream_chunk(line)
        assert result.ok
        assert result.value.content == ""
        assert result.value.is_complete is False

    def test_stream_bad_json(self):
        result = OpenAIAdapter().parse_stream_chunk("data: {broken")
        assert isinstance(result.error, ParseError)

    def test_extract_error_message(self):
        adapter = OpenAIAdapter()
        assert adapter.extract_error_message('{"error": {"message": "bad key"}}') == "bad key"
        assert adapter.extract_error_message("Bad Gateway") == "Bad Gateway"


class TestClaudeAdapter:
    def test_headers(self):
        headers = ClaudeAdapter().build_headers("sk-ant")
        assert headers["x-api-key"] == "sk-ant"
        assert headers["anthropic-version"] == "2023-06-01"
        assert "Authorization" not in headers

    def test_system_is_top_level(self):
        request = ChatRequest(
            user_message="hi",
            system_role="be brief",
            custom_params={"system": "ignored", "top_k": 5},
        )
        body = body_of(ClaudeAdapter().build_chat_request("claude-3-haiku", request))
        assert body["system"] == "be brief"
        assert body["top_k"] == 5
        assert body["messages"] == [{"role": "user", "content": "hi"}]

    def test_parse_chat_response(self):
        adapter = ClaudeAdapter()
        result = adapter.parse_chat_response(json.dumps({
            "content": [{"type": "text", "text": "Hello"}, {"type": "text", "text": " there"}],
            "stop_reason": "end_turn",
            "usage": {"input_tokens": 10, "output_tokens": 4},
        }))
        assert result.value == "Hello there"
        assert adapter.total_tokens == 14
        assert adapter.finish_reason == "end_turn"

    def test_parse_tool_use(self):
        adapter = ClaudeAdapter()
        result = adapter.parse_tool_response(json.dumps({
            "content": [
                {"type": "text", "text": "Let me check."},
                {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {"city": "Paris"}},
            ],
            "stop_reason": "tool_use",
        }))
        turn = result.value
        assert turn.text == "Let me check."
        assert turn.tool_calls == [{
            "id": "toolu_1",
            "type": "function",
            "function": {"name": "get_weather", "arguments": '{"city": "Paris"}'},
        }]
        assert adapter.finish_reason == "tool_use"

    def test_empty_tool_response_is_error(self):
        result = ClaudeAdapter().parse_tool_response(json.dumps({
            "content": [{"type": "text", "text": ""}],
            "stop_reason": "end_turn",
        }))
        assert not result.ok
        assert "neither tool_use nor text" in result.error_message

    def test_followup_blocks(self, weather_tool):
        error_round = {
            "tool_calls": [TOOL_CALL],
            "results": [dict(TOOL_ROUND["results"][0], is_error=True)],
        }
        body = body_of(ClaudeAdapter().build_tool_followup_request(
            "claude-3-haiku", [weather_tool], ChatRequest(user_message="weather?"), "auto", [error_round]
        ))
        assistant, results = body["messages"][1], body["messages"][2]
        assert assistant["content"] == [{
            "type": "tool_use", "id": "call_1", "name": "get_weather", "input": {"city": "Paris"},
        }]
        assert results["role"] == "user"
        assert results["content"] == [{
            "type": "tool_result", "tool_use_id": "call_1", "content": '{"temp": 21}', "is_error": True,
        }]
        assert body["tools"][0]["input_schema"]["type"] == "object"
        assert body["tool_choice"] == {"type": "auto"}

    def test_stream_events(self):
        adapter = ClaudeAdapter()
        adapter.build_stream_request("claude-3-haiku", ChatRequest(user_message="hi"))
        start = adapter.parse_stream_chunk(
            'data: {"type":"message_start","message":{"usage":{"input_tokens":12,"output_tokens":1}}}'
        )
        assert start.value.content == ""
        delta = adapter.parse_stream_chunk(
            'data: {"type":"content_block_delta","index":0,"delta":{"type":"text_delta","text":"Hi"}}'
        )
        assert delta.value.content == "Hi"
        assert adapter.parse_stream_chunk('data: {"type":"ping"}').value.content == ""
        adapter.parse_stream_chunk(
            'data: {"type":"message_delta","delta":{"stop_reason":"end_turn"},"usage":{"output_tokens":5}}'
        )
        assert adapter.finish_reason == "end_turn"
        assert adapter.total_tokens == 17
        stop = adapter.parse_stream_chunk('data: {"type":"message_stop"}')
        assert stop.value.is_complete is True

    def test_stream_error_event(self):
        result = ClaudeAdapter().parse_stream_chunk(
            'data: {"type":"error","error":{"type":"overloaded_error","message":"Overloaded"}}'
        )
        assert not result.ok
        assert result.error_message == "Stream error: Overloaded"


class TestGeminiAdapter:
    def test_endpoints_carry_key(self):
        adapter = GeminiAdapter()
        assert adapter.resolve_endpoint("gemini-2.0-flash", "AIza") == (
            "https://generativelanguage.googleapis.com/v1beta/models/"
            "gemini-2.0-flash:generateContent?key=AIza"
        )
        assert adapter.resolve_stream_endpoint("gemini-2.0-flash", "AIza").endswith(
            "gemini-2.0-flash:streamGenerateContent?alt=sse&key=AIza"
        )
        assert adapter.build_headers("AIza") == {"Content-Type": "application/json"}

    def test_chat_request_shape(self):
        request = ChatRequest(
            user_message="hi",
            system_role="be brief",
            temperature=0.5,
            custom_params={"topK": 3, "safetySettings": [], "contents": "ignored"},
        )
        body = body_of(GeminiAdapter().build_chat_request("gemini-2.0-flash", request))
        assert body["systemInstruction"] == {"parts": [{"text": "be brief"}]}
        assert body["contents"] == [{"role": "user", "parts": [{"text": "hi"}]}]
        assert body["generationConfig"] == {"topK": 3, "temperature": 0.5}
        assert body["safetySettings"] == []

    def test_parse_chat_response(self):
        adapter = GeminiAdapter()
        result = adapter.parse_chat_response(json.dumps({
            "candidates": [{"content": {"parts": [{"text": "Bonjour"}], "role": "model"}, "finishReason": "STOP"}],
            "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 2, "totalTokenCount": 5},
        }))
        assert result.value == "Bonjour"
        assert adapter.total_tokens == 5
        assert adapter.finish_reason == "STOP"

    def test_safety_stop_is_error(self):
        result = GeminiAdapter().parse_chat_response(json.dumps({
            "candidates": [{"finishReason": "SAFETY"}],
        }))
        assert not result.ok
        assert "Reason: SAFETY" in result.error_message

    def test_prompt_blocked(self):
        result = GeminiAdapter().parse_chat_response(json.dumps({
            "promptFeedback": {"blockReason": "OTHER"},
        }))
        assert "prompt blocked" in result.error_message

    def test_tool_request(self, weather_tool):
        body = body_of(GeminiAdapter().build_tool_request(
            "gemini-2.0-flash", [weather_tool], ChatRequest(user_message="weather?"), "any"
        ))
        declaration = body["tools"][0]["functionDeclarations"][0]
        assert declaration["parameters"]["type"] == "OBJECT"
        assert body["tool_config"] == {"function_calling_config": {"mode": "ANY"}}

    def test_parse_function_calls(self):
        adapter = GeminiAdapter()
        result = adapter.parse_tool_response(json.dumps({
            "candidates": [{
                "content": {"role": "model", "parts": [
                    {"functionCall": {"name": "get_weather", "args": {"city": "Paris"}}},
                ]},
                "finishReason": "STOP",
            }]
        }))
        call = result.value.tool_calls[0]
        assert call["id"] == "gemini_get_weather_0"
        assert json.loads(call["function"]["arguments"]) == {"city": "Paris"}
        assert adapter.finish_reason == "tool_calls"

    def test_tool_response_without_content_is_error(self):
        result = GeminiAdapter().parse_tool_response(json.dumps({
            "candidates": [{"finishReason": "SAFETY"}],
        }))
        assert not result.ok
        assert "'content' object" in result.error_message

    def test_tool_response_without_parts_is_error(self):
        result = GeminiAdapter().parse_tool_response(json.dumps({
            "candidates": [{"content": {"role": "model", "parts": []}, "finishReason": "STOP"}],
        }))
        assert not result.ok
        assert "neither function calls nor text" in result.error_message

    def test_followup_contents(self, weather_tool):
        body = body_of(GeminiAdapter().build_tool_followup_request(
            "gemini-2.0-flash", [weather_tool], ChatRequest(user_message="weather?"), None, [TOOL_ROUND]
        ))
        contents = body["contents"]
        assert contents[1] == {
            "role": "model",
            "parts": [{"functionCall": {"name": "get_weather", "args": {"city": "Paris"}}}],
        }
        assert contents[2] == {
            "role": "user",
            "parts": [{"functionResponse": {"name": "get_weather", "response": {"content": {"temp": 21}}}}],
        }

    def test_plain_text_tool_output(self, weather_tool):
        text_round = {
            "tool_calls": [TOOL_CALL],
            "results": [{"tool_call_id": "call_1", "function": {"name": "get_weather", "output": "sunny"}}],
        }
        body = body_of(GeminiAdapter().build_tool_followup_request(
            "m", [weather_tool], ChatRequest(user_message="q"), None, [text_round]
        ))
        response = body["contents"][2]["parts"][0]["functionResponse"]["response"]
        assert response == {"content": "sunny"}

    def test_stream_chunks(self):
        adapter = GeminiAdapter()
        first = adapter.parse_stream_chunk(
            'data: {"candidates":[{"content":{"parts":[{"text":"Hel"}],"role":"model"}}]}'
        )
        assert first.value.content == "Hel"
        assert first.value.is_complete is False
        last = adapter.parse_stream_chunk(
            'data: {"candidates":[{"content":{"parts":[{"text":"lo"}]},"finishReason":"STOP"}],'
            '"usageMetadata":{"totalTokenCount":8}}'
        )
        assert last.value.content == "lo"
        assert last.value.is_complete is True
        assert adapter.total_tokens == 8

    def test_stream_safety_completes_without_error(self):
        result = GeminiAdapter().parse_stream_chunk('data: {"candidates":[{"finishReason":"SAFETY"}]}')
        assert result.ok
        assert result.value.is_complete is True
