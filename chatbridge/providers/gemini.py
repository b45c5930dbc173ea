from typing import Any, Dict, List

from .base import BaseProviderAdapter
from ..errors import ParseError, VendorError
from ..tools import convert_tools, gemini_tool_config, parse_tool_choice, to_gemini_declaration
from ..types import ChatRequest, StreamDelta, ToolCall, ToolRound, ToolTurn
from ..utils import parse_arguments, parse_json_or_text, to_json

BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

# Custom parameters with these keys belong inside generationConfig
GENERATION_CONFIG_KEYS = frozenset({
    "temperature",
    "topP",
    "topK",
    "maxOutputTokens",
    "candidateCount",
    "stopSequences",
    "responseMimeType",
    "responseSchema",
    "presencePenalty",
    "frequencyPenalty",
    "seed",
    "responseLogprobs",
    "logprobs",
    "enableEnhancedCivicAnswers",
    "speechConfig",
    "thinkingConfig",
    "mediaResolution",
})

# finishReason values that still carry a usable answer
SUCCESS_FINISH_REASONS = ("STOP", "MAX_TOKENS")


class GeminiAdapter(BaseProviderAdapter):
    """
    Adapter for Google's Gemini ``generateContent`` REST API.

    Gemini authenticates through a ``key`` query parameter, calls the
    assistant role ``model`` and takes sampling options in ``generationConfig``.
    """

    name = "gemini"
    reserved_params = ("model", "contents", "systemInstruction", "stream")

    def resolve_endpoint(self, model: str, api_key: str, custom_endpoint: str = "") -> str:
        if custom_endpoint:
            return custom_endpoint
        return f"{BASE_URL}/{model}:generateContent?key={api_key}"

    def resolve_stream_endpoint(self, model: str, api_key: str, custom_endpoint: str = "") -> str:
        if custom_endpoint:
            return custom_endpoint
        return f"{BASE_URL}/{model}:streamGenerateContent?alt=sse&key={api_key}"

    def build_headers(self, api_key: str) -> Dict[str, str]:
        # The key travels in the URL
        return {"Content-Type": "application/json"}

    # =========================================================================
    # Requests
    # =========================================================================

    def _payload(self, request: ChatRequest, contents: List[Dict[str, Any]]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        generation_config: Dict[str, Any] = {}
        reserved = set(self.reserved_params)
        for key, value in request.custom_params.items():
            if key in reserved:
                continue
            if key in GENERATION_CONFIG_KEYS:
                generation_config[key] = value
            elif key == "generationConfig" and isinstance(value, dict):
                generation_config.update(value)
            else:
                payload[key] = value

        if request.system_role:
            payload["systemInstruction"] = {"parts": [{"text": request.system_role}]}
        payload["contents"] = contents

        if request.temperature is not None:
            generation_config["temperature"] = request.temperature
        if request.has_max_tokens:
            generation_config["maxOutputTokens"] = request.max_tokens
        if generation_config:
            payload["generationConfig"] = generation_config
        else:
            payload.pop("generationConfig", None)
        return payload

    @staticmethod
    def _user_content(request: ChatRequest) -> Dict[str, Any]:
        return {"role": "user", "parts": [{"text": request.user_message}]}

    def _add_tools(self, payload: Dict[str, Any], tools: List[Any], tool_choice: Any) -> None:
        declarations = convert_tools(tools, to_gemini_declaration)
        if not declarations:
            return
        payload["tools"] = [{"functionDeclarations": declarations}]
        tool_config = gemini_tool_config(parse_tool_choice(tool_choice))
        if tool_config is not None:
            payload["tool_config"] = tool_config

    def _chat_payload(self, model: str, request: ChatRequest) -> Dict[str, Any]:
        return self._payload(request, [self._user_content(request)])

    def _tool_payload(
        self, model: str, tools: List[Any], request: ChatRequest, tool_choice: Any
    ) -> Dict[str, Any]:
        payload = self._payload(request, [self._user_content(request)])
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
        contents = [self._user_content(request)]
        for tool_round in rounds:
            parts = [
                {
                    "functionCall": {
                        "name": tc["function"]["name"],
                        "args": parse_arguments(tc["function"].get("arguments")),
                    }
                }
                for tc in tool_round["tool_calls"]
            ]
            contents.append({"role": "model", "parts": parts or [{"text": ""}]})
            for result in tool_round["results"]:
                contents.append({
                    "role": "user",
                    "parts": [{
                        "functionResponse": {
                            "name": result["function"]["name"],
                            "response": {
                                "content": parse_json_or_text(result["function"]["output"]),
                            },
                        }
                    }],
                })

        payload = self._payload(request, contents)
        self._add_tools(payload, tools, tool_choice)
        return payload

    def _stream_payload(self, model: str, request: ChatRequest) -> Dict[str, Any]:
        # streaming is selected by the endpoint, not a body field
        return self._chat_payload(model, request)

    # =========================================================================
    # Responses
    # =========================================================================

    def _record_gemini_usage(self, data: Dict[str, Any]) -> None:
        usage = data.get("usageMetadata")
        if not isinstance(usage, dict):
            return
        self._record_usage(
            input_tokens=usage.get("promptTokenCount"),
            output_tokens=usage.get("candidatesTokenCount"),
            total_tokens=usage.get("totalTokenCount"),
            raw=usage,
        )

    def _first_candidate(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self._record_gemini_usage(data)
        candidates = data.get("candidates")
        if candidates:
            candidate = candidates[0]
            self.finish_reason = candidate.get("finishReason") or ""
            return candidate

        feedback = data.get("promptFeedback")
        if isinstance(feedback, dict):
            if feedback.get("blockReason"):
                raise VendorError(f"Gemini prompt blocked. Reason: {feedback['blockReason']}")
            raise ParseError("Response missing 'candidates' and 'error', contains 'promptFeedback'.")
        raise ParseError(
            "Invalid Gemini response format: Missing 'candidates', 'error', or 'promptFeedback'."
        )

    @staticmethod
    def _parts(candidate: Dict[str, Any]) -> List[Dict[str, Any]]:
        content = candidate.get("content")
        if not isinstance(content, dict):
            return []
        return content.get("parts") or []

    def _parse_chat(self, data: Dict[str, Any]) -> str:
        candidate = self._first_candidate(data)
        if self.finish_reason and self.finish_reason not in SUCCESS_FINISH_REASONS:
            raise VendorError(f"Gemini response stopped. Reason: {self.finish_reason}")

        if not isinstance(candidate.get("content"), dict):
            raise ParseError("Could not find 'content' object in response 'candidates'.")
        texts = [part["text"] for part in self._parts(candidate) if isinstance(part.get("text"), str)]
        if not texts:
            raise ParseError("Could not find 'text' field in response 'parts'.")
        return "".join(texts)

    def _parse_tool(self, data: Dict[str, Any]) -> ToolTurn:
        candidate = self._first_candidate(data)
        if not isinstance(candidate.get("content"), dict):
            raise ParseError("Could not find 'content' object in response 'candidates'.")
        text_parts = []
        tool_calls: List[ToolCall] = []
        for part in self._parts(candidate):
            function_call = part.get("functionCall")
            if isinstance(function_call, dict) and function_call.get("name"):
                name = function_call["name"]
                tool_calls.append({
                    # Gemini does not issue ids; synthesize a stable one
                    "id": function_call.get("id") or f"gemini_{name}_{len(tool_calls)}",
                    "type": "function",
                    "function": {
                        "name": name,
                        "arguments": to_json(function_call.get("args") or {}),
                    },
                })
            elif isinstance(part.get("text"), str):
                text_parts.append(part["text"])

        text = "".join(text_parts)
        if not tool_calls and not text:
            raise ParseError("Response contained neither function calls nor text content")
        if tool_calls:
            self.finish_reason = "tool_calls"
        return ToolTurn(text=text, tool_calls=tool_calls)

    def _parse_stream_data(self, data: str) -> StreamDelta:
        chunk = self._load_json(data)
        self._record_gemini_usage(chunk)
        candidates = chunk.get("candidates") or []
        if not candidates:
            return StreamDelta()

        candidate = candidates[0]
        content = "".join(
            part["text"] for part in self._parts(candidate) if isinstance(part.get("text"), str)
        )
        finish_reason = candidate.get("finishReason")
        if finish_reason and finish_reason != "FINISH_REASON_UNSPECIFIED":
            # SAFETY, RECITATION and other blocking reasons also end the stream cleanly
            self.finish_reason = finish_reason
            return StreamDelta(content=content, is_complete=True)
        return StreamDelta(content=content)
