import json
from typing import Any, Dict, List

from .base import BaseProviderAdapter
from ..errors import ParseError, VendorError
from ..tools import claude_tool_choice, convert_tools, parse_tool_choice, to_claude_tool
from ..types import ChatRequest, StreamDelta, ToolCall, ToolRound, ToolTurn
from ..utils import parse_arguments

# Anthropic rejects requests without max_tokens
DEFAULT_MAX_TOKENS = 1024


class ClaudeAdapter(BaseProviderAdapter):
    """
    Adapter for Anthropic's Messages API.

    Differences from the OpenAI shape handled here:
    - ``system`` is a top-level field, not a message.
    - ``max_tokens`` is mandatory.
    - Tool calls are ``tool_use`` content blocks; results go back as
      ``tool_result`` blocks in a user message.
    - Streaming uses typed events (``message_start``, ``content_block_delta``, ...).
    """

    name = "claude"
    default_endpoint = "https://api.anthropic.com/v1/messages"
    reserved_params = ("model", "messages", "system", "stream")

    def build_headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": self.settings.claude_api_version,
        }

    # =========================================================================
    # Requests
    # =========================================================================

    def _payload(
        self, model: str, request: ChatRequest, messages: List[Dict[str, Any]]
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        self._merge_custom_params(payload, request)
        payload["model"] = model
        payload["max_tokens"] = request.max_tokens if request.has_max_tokens else DEFAULT_MAX_TOKENS
        if request.system_role:
            payload["system"] = request.system_role
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        payload["messages"] = messages
        return payload

    def _add_tools(self, payload: Dict[str, Any], tools: List[Any], tool_choice: Any) -> None:
        converted = convert_tools(tools, to_claude_tool)
        if not converted:
            return
        payload["tools"] = converted
        choice = claude_tool_choice(parse_tool_choice(tool_choice))
        if choice is not None:
            payload["tool_choice"] = choice

    @staticmethod
    def _user_message(request: ChatRequest) -> Dict[str, Any]:
        return {"role": "user", "content": request.user_message}

    def _chat_payload(self, model: str, request: ChatRequest) -> Dict[str, Any]:
        return self._payload(model, request, [self._user_message(request)])

    def _tool_payload(
        self, model: str, tools: List[Any], request: ChatRequest, tool_choice: Any
    ) -> Dict[str, Any]:
        payload = self._payload(model, request, [self._user_message(request)])
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
        messages = [self._user_message(request)]
        for tool_round in rounds:
            messages.append({
                "role": "assistant",
                "content": [
                    {
                        "type": "tool_use",
                        "id": tc["id"],
                        "name": tc["function"]["name"],
                        "input": parse_arguments(tc["function"].get("arguments")),
                    }
                    for tc in tool_round["tool_calls"]
                ],
            })
            results = []
            for result in tool_round["results"]:
                block: Dict[str, Any] = {
                    "type": "tool_result",
                    "tool_use_id": result["tool_call_id"],
                    "content": result["function"]["output"],
                }
                if result.get("is_error"):
                    block["is_error"] = True
                results.append(block)
            messages.append({"role": "user", "content": results})

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

    def _record_claude_usage(self, usage: Any) -> None:
        if not isinstance(usage, dict):
            return
        input_tokens = usage.get("input_tokens") or 0
        output_tokens = usage.get("output_tokens") or 0
        self._record_usage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            raw=usage,
        )

    def _content_blocks(self, data: Dict[str, Any]) -> List[Dict[str, Any]]:
        self.finish_reason = data.get("stop_reason") or ""
        self._record_claude_usage(data.get("usage"))
        content = data.get("content")
        if not isinstance(content, list):
            raise ParseError("No content array found in response")
        return content

    def _parse_chat(self, data: Dict[str, Any]) -> str:
        content = self._content_blocks(data)
        if not content:
            raise ParseError("No valid content in response")
        return "".join(
            block.get("text", "") for block in content if block.get("type") == "text"
        )

    def _parse_tool(self, data: Dict[str, Any]) -> ToolTurn:
        content = self._content_blocks(data)
        text_parts = []
        tool_calls: List[ToolCall] = []
        for block in content:
            block_type = block.get("type")
            if block_type == "text":
                text_parts.append(block.get("text", ""))
            elif block_type == "tool_use":
                tool_input = block.get("input")
                tool_calls.append({
                    "id": block.get("id", ""),
                    "type": "function",
                    "function": {
                        "name": block.get("name", ""),
                        "arguments": json.dumps(tool_input) if isinstance(tool_input, dict) else "{}",
                    },
                })
        text = "".join(text_parts)
        if not tool_calls and not text:
            raise ParseError("Response contained neither tool_use nor text content")
        return ToolTurn(text=text, tool_calls=tool_calls)

    def _parse_stream_data(self, data: str) -> StreamDelta:
        event = self._load_json(data, check_error=False)
        event_type = event.get("type", "")

        if event_type == "error" or "error" in event:
            error = event.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise VendorError(f"Stream error: {message or 'Unknown error'}")

        if event_type == "message_start":
            message = event.get("message") or {}
            self._record_claude_usage(message.get("usage"))
            return StreamDelta()

        if event_type == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta":
                return StreamDelta(content=delta.get("text") or "")
            return StreamDelta()

        if event_type == "message_delta":
            delta = event.get("delta") or {}
            if delta.get("stop_reason"):
                self.finish_reason = delta["stop_reason"]
            self._accumulate_output_tokens(event.get("usage"))
            return StreamDelta()

        if event_type == "message_stop":
            return StreamDelta(is_complete=True)

        # ping, content_block_start, content_block_stop and unknown events
        return StreamDelta()

    def _accumulate_output_tokens(self, usage: Any) -> None:
        # message_delta reports the cumulative output token count
        if not isinstance(usage, dict) or "output_tokens" not in usage:
            return
        previous = self.usage or {}
        self._record_claude_usage({
            "input_tokens": previous.get("input_tokens") or 0,
            "output_tokens": usage.get("output_tokens") or 0,
        })
