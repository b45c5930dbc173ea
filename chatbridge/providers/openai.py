import json
from typing import Any, Dict, List

from .base import BaseProviderAdapter
from ..errors import ParseError
from ..tools import convert_tools, openai_tool_choice, parse_tool_choice, to_openai_tool
from ..types import ChatRequest, StreamDelta, ToolCall, ToolRound, ToolTurn


class OpenAIAdapter(BaseProviderAdapter):
    """
    Adapter for OpenAI-compatible chat completion APIs (OpenAI, DeepSeek, etc.).
    """

    name = "openai"
    default_endpoint = "https://api.openai.com/v1/chat/completions"
    # Newer OpenAI models reject max_tokens
    max_tokens_field = "max_completion_tokens"

    def build_headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }

    # =========================================================================
    # Requests
    # =========================================================================

    def _base_messages(self, request: ChatRequest) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if request.system_role:
            messages.append({"role": "system", "content": request.system_role})
        messages.append({"role": "user", "content": request.user_message})
        return messages

    def _payload(
        self, model: str, request: ChatRequest, messages: List[Dict[str, Any]]
    ) -> Dict[str, Any]:
        # Custom params first so explicit fields win
        payload: Dict[str, Any] = {}
        self._merge_custom_params(payload, request)
        payload["model"] = model
        payload["messages"] = messages
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.has_max_tokens:
            payload[self.max_tokens_field] = request.max_tokens
        return payload

    def _add_tools(self, payload: Dict[str, Any], tools: List[Any], tool_choice: Any) -> None:
        converted = convert_tools(tools, to_openai_tool)
        if not converted:
            return
        payload["tools"] = converted
        choice = openai_tool_choice(parse_tool_choice(tool_choice))
        if choice is not None:
            payload["tool_choice"] = choice

    def _chat_payload(self, model: str, request: ChatRequest) -> Dict[str, Any]:
        return self._payload(model, request, self._base_messages(request))

    def _tool_payload(
        self, model: str, tools: List[Any], request: ChatRequest, tool_choice: Any
    ) -> Dict[str, Any]:
        payload = self._payload(model, request, self._base_messages(request))
        self._add_tools(payload, tools, tool_choice)
        return payload

    def _followup_payload(
        self,
        model: str,
        tools: List[Any],
        request: ChatRequest,
        tool_choice: Any,
        rounds: List[ToolRound],
    ) -> Dict[str, Any]:
        messages = self._base_messages(request)
        for tool_round in rounds:
            messages.append({
                "role": "assistant",
                "content": None,
                "tool_calls": tool_round["tool_calls"],
            })
            for result in tool_round["results"]:
                messages.append({
                    "role": "tool",
                    "tool_call_id": result["tool_call_id"],
                    "content": result["function"]["output"],
                })
        payload = self._payload(model, request, messages)
        self._add_tools(payload, tools, tool_choice)
        return payload

    def _stream_payload(self, model: str, request: ChatRequest) -> Dict[str, Any]:
        payload = self._chat_payload(model, request)
        payload["stream"] = True
        return payload

    # =========================================================================
    # Responses
    # =========================================================================

    def _record_openai_usage(self, usage: Any) -> None:
        if not isinstance(usage, dict):
            return
        self._record_usage(
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
            total_tokens=usage.get("total_tokens"),
            raw=usage,
        )

    def _first_choice(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self._record_openai_usage(data.get("usage"))
        choices = data.get("choices")
        if not choices:
            raise ParseError("Invalid response format: missing 'choices'")
        choice = choices[0]
        self.finish_reason = choice.get("finish_reason") or ""
        if not isinstance(choice.get("message"), dict):
            raise ParseError("Invalid response format: missing 'message'")
        return choice

    def _parse_chat(self, data: Dict[str, Any]) -> str:
        message = self._first_choice(data)["message"]
        content = message.get("content")
        if content is None:
            refusal = message.get("refusal")
            if refusal:
                raise ParseError(f"Model refused: {refusal}")
            raise ParseError("No 'content' field in response message")
        return content

    def _parse_tool(self, data: Dict[str, Any]) -> ToolTurn:
        message = self._first_choice(data)["message"]
        tool_calls = self._parse_tool_calls(message.get("tool_calls") or [])
        text = message.get("content") or ""
        if not tool_calls and not text:
            raise ParseError("Could not find 'content' or 'tool_calls' in response message")
        return ToolTurn(text=text, tool_calls=tool_calls)

    @staticmethod
    def _parse_tool_calls(raw_calls: List[Dict[str, Any]]) -> List[ToolCall]:
        """
        Normalize OpenAI tool calls, keeping ``arguments`` as the vendor's string.
        """
        tool_calls: List[ToolCall] = []
        for tc in raw_calls:
            function = tc.get("function") or {}
            arguments = function.get("arguments", "{}")
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments)
            tool_calls.append({
                "id": tc.get("id", ""),
                "type": "function",
                "function": {
                    "name": function.get("name", ""),
                    "arguments": arguments,
                },
            })
        return tool_calls

    def _parse_stream_data(self, data: str) -> StreamDelta:
        if data == "[DONE]":
            return StreamDelta(is_complete=True)

        chunk = self._load_json(data)
        self._record_openai_usage(chunk.get("usage"))
        choices = chunk.get("choices") or []
        if not choices:
            # usage-only chunk
            return StreamDelta()

        choice = choices[0]
        delta = choice.get("delta") or {}
        content = delta.get("content") or ""
        finish_reason = choice.get("finish_reason")
        if finish_reason:
            self.finish_reason = finish_reason
            return StreamDelta(content=content, is_complete=True)
        return StreamDelta(content=content)
