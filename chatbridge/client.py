import json
import logging
from typing import Any, Dict, List, Optional, Union

from .config import ClientSettings, api_key_from_env
from .errors import ChatBridgeError, ConfigurationError, ValidationError, VendorError
from .providers import BaseProviderAdapter, create_adapter
from .streaming import StreamCallback, StreamingSession
from .tools import RawTool, normalize_tool_spec
from .transport import HttpxTransport, Transport, TransportResponse
from .types import (
    ChatRequest, ConversationTurnState, StreamState, ToolCall, ToolResult, ToolRound, ToolSpec,
)
from .utils import parse_custom_params, redact_key, to_json

logger = logging.getLogger(__name__)


class UnifiedChatClient:
    """
    Unified client for interacting with multiple LLM providers.

    This class provides a single interface for OpenAI (and OpenAI-compatible
    servers), Claude (Anthropic), Gemini (Google) and DeepSeek, with three
    linear protocols: plain chat, tool-calling chat and streaming chat.

    Errors never raise out of the public methods: a failed call returns an
    empty string / False and leaves the reason in ``get_last_error()``.
    """

    def __init__(
        self,
        platform: Optional[str] = None,
        api_key: Optional[str] = None,
        model: str = "",
        endpoint: Optional[str] = None,
        *,
        transport: Optional[Transport] = None,
        settings: Optional[ClientSettings] = None,
    ):
        """
        Initialize the client, optionally configuring it right away.

        Args:
            platform: "openai", "openai-compatible", "deepseek", "claude" or "gemini".
            api_key: API key; defaults to the platform's environment variable.
            model: Model identifier sent with every request.
            endpoint: Custom endpoint URL replacing the vendor default.
            transport: HTTP collaborator; defaults to ``HttpxTransport``.
            settings: Timeouts and limits; defaults to ``ClientSettings()``.
        """
        self.settings = settings or ClientSettings()
        self.transport = transport or HttpxTransport()
        self._adapter: Optional[BaseProviderAdapter] = None
        self._platform = ""
        self._api_key = ""
        self._model = ""
        self._endpoint = ""
        self._last_error = ""

        # Persist across configure() and tc_chat_reset()
        self._tools: List[ToolSpec] = []

        self._reset_chat()
        self._reset_tc()
        self._stream = StreamingSession(self.settings)

        if platform is not None:
            self.configure(platform, api_key, model, endpoint)

    # ==========================================================================
    # Configuration
    # ==========================================================================

    def configure(
        self,
        platform: str,
        api_key: Optional[str] = None,
        model: str = "",
        endpoint: Optional[str] = None,
    ) -> bool:
        """
        Select the vendor adapter and credentials.

        Re-configuring discards chat, tool-chat and stream options but keeps
        registered tool definitions.

        Args:
            platform (str): Platform identifier (case-insensitive).
            api_key (str, optional): API key; falls back to the environment.
            model (str): Model identifier.
            endpoint (str, optional): Custom endpoint URL.

        Returns:
            bool: False if the platform is not supported.
        """
        self._last_error = ""
        adapter = create_adapter(platform or "", self.settings)
        if adapter is None:
            self._adapter = None
            self._last_error = str(ConfigurationError(f"Unsupported platform: {platform}"))
            logger.warning(self._last_error)
            return False

        self._adapter = adapter
        self._platform = adapter.name
        self._api_key = api_key if api_key is not None else (api_key_from_env(platform) or "")
        self._model = model
        self._endpoint = endpoint or ""

        self._reset_chat()
        self._reset_tc()
        if not self._stream.is_streaming:
            self._stream.reset()
        logger.debug("Configured %s adapter for model %r", self._platform, model)
        return True

    @property
    def platform(self) -> str:
        return self._platform

    @property
    def model(self) -> str:
        return self._model

    def _require_adapter(self) -> BaseProviderAdapter:
        if self._adapter is None:
            raise ConfigurationError("Platform handler not initialized")
        return self._adapter

    def _post(self, url: str, body: str) -> TransportResponse:
        adapter = self._require_adapter()
        logger.debug("POST %s: %s", redact_key(url), body)
        response = self.transport.post(
            url, adapter.build_headers(self._api_key), body, self.settings.http_timeout
        )
        logger.debug("Response %s: %s", response.status_code, response.body)
        return response

    def _check_status(self, response: TransportResponse) -> None:
        if response.status_code != 200:
            message = self._require_adapter().extract_error_message(response.body)
            raise VendorError(
                f"HTTP Error: {response.status_code} - {message}",
                status_code=response.status_code,
            )

    # ==========================================================================
    # Error and usage getters
    # ==========================================================================

    def get_last_error(self) -> str:
        return self._last_error

    def get_total_tokens(self) -> int:
        """Token usage reported by the most recent call, or so far by a running stream."""
        if self._stream.is_streaming:
            return self._stream.total_tokens
        return self._adapter.total_tokens if self._adapter else 0

    def get_finish_reason(self) -> str:
        """Vendor finish/stop reason of the most recent call, verbatim."""
        if self._stream.is_streaming:
            return self._stream.finish_reason
        return self._adapter.finish_reason if self._adapter else ""

    # ==========================================================================
    # Plain chat
    # ==========================================================================

    def _reset_chat(self) -> None:
        self._chat_system_role = ""
        self._chat_temperature: Optional[float] = None
        self._chat_max_tokens: Optional[int] = None
        self._chat_custom_params: Dict[str, Any] = {}
        self._chat_raw_response = ""
        self._chat_response_code = 0

    def set_chat_system_role(self, system_role: str) -> None:
        self._chat_system_role = system_role or ""

    def get_chat_system_role(self) -> str:
        return self._chat_system_role

    def set_chat_temperature(self, temperature: float) -> None:
        """Clamped to [0.0, 2.0]."""
        self._chat_temperature = min(max(float(temperature), 0.0), 2.0)

    def get_chat_temperature(self) -> Optional[float]:
        return self._chat_temperature

    def set_chat_max_tokens(self, max_tokens: int) -> None:
        """Values below 1 are raised to 1."""
        self._chat_max_tokens = max(1, int(max_tokens))

    def get_chat_max_tokens(self) -> Optional[int]:
        return self._chat_max_tokens

    def set_chat_parameters(self, params: Union[str, Dict[str, Any], None]) -> bool:
        """
        Set extra vendor parameters merged into every chat request.

        Args:
            params: JSON object (dict or string); empty / None clears them.

        Returns:
            bool: False (with last error set) if ``params`` is not a JSON object.
        """
        try:
            self._chat_custom_params = parse_custom_params(params)
        except ValidationError as e:
            self._last_error = str(e)
            return False
        return True

    def get_chat_parameters(self) -> Dict[str, Any]:
        return dict(self._chat_custom_params)

    def chat_reset(self) -> None:
        """Clear chat options and the last chat response records."""
        self._reset_chat()

    def get_chat_raw_response(self) -> str:
        return self._chat_raw_response

    def get_chat_response_code(self) -> int:
        return self._chat_response_code

    def chat(self, message: str) -> str:
        """
        Send a single chat turn.

        Args:
            message (str): The user message.

        Returns:
            str: The assistant's text, or "" on failure (see ``get_last_error()``).
        """
        self._last_error = ""
        self._chat_raw_response = ""
        self._chat_response_code = 0
        try:
            adapter = self._require_adapter()
            request = ChatRequest(
                user_message=message,
                system_role=self._chat_system_role,
                temperature=self._chat_temperature,
                max_tokens=self._chat_max_tokens,
                custom_params=dict(self._chat_custom_params),
            )
            built = adapter.build_chat_request(self._model, request)
            if not built.ok:
                raise built.error

            url = adapter.resolve_endpoint(self._model, self._api_key, self._endpoint)
            response = self._post(url, built.value)
            self._chat_response_code = response.status_code
            self._chat_raw_response = response.body
            self._check_status(response)

            parsed = adapter.parse_chat_response(response.body)
            if not parsed.ok:
                raise parsed.error
            return parsed.value
        except ChatBridgeError as e:
            self._last_error = str(e)
            logger.debug("chat failed: %s", e)
            return ""

    # ==========================================================================
    # Tool calling
    # ==========================================================================

    def _reset_tc(self) -> None:
        self._tc_system_role = ""
        self._tc_max_tokens: Optional[int] = None
        self._tc_tool_choice: Any = None
        self._tc_reply_max_tokens: Optional[int] = None
        self._tc_reply_tool_choice: Any = None
        self._tc_raw_response = ""
        self._tc_chat_response_code = 0
        self._tc_reply_response_code = 0
        self._conversation = ConversationTurnState()

    def set_tc_tools(self, tools: Union[str, List[RawTool], None]) -> bool:
        """
        Register the tool definitions offered to the model.

        Accepts a list of definitions (dicts or JSON strings) in either the
        simple ``{name, description, parameters}`` form or the OpenAI-wrapped
        ``{type: "function", function: {...}}`` form, or a JSON array string.
        The whole batch is validated first; on failure the previously
        registered tools are kept. An empty list clears the tools.

        Returns:
            bool: False (with last error set) if any definition is invalid
            or the batch exceeds the payload limit.
        """
        self._last_error = ""
        try:
            if tools is None:
                tools = []
            if isinstance(tools, str):
                try:
                    tools = json.loads(tools)
                except json.JSONDecodeError as e:
                    raise ValidationError(f"Invalid JSON in tools array: {e.msg}") from e
                if not isinstance(tools, list):
                    raise ValidationError("Tools must be a JSON array")

            specs = [normalize_tool_spec(raw, index) for index, raw in enumerate(tools, start=1)]
            size = len(to_json(specs))
            if size > self.settings.max_tool_payload:
                raise ValidationError(
                    f"Tool definitions too large: {size} bytes "
                    f"(limit {self.settings.max_tool_payload})"
                )
        except ValidationError as e:
            self._last_error = str(e)
            logger.warning("Rejected tool definitions: %s", e)
            return False

        self._tools = specs
        logger.debug("Registered %d tool(s)", len(specs))
        return True

    def get_tc_tools(self) -> List[ToolSpec]:
        return list(self._tools)

    def set_tc_chat_system_role(self, system_role: str) -> None:
        self._tc_system_role = system_role or ""

    def get_tc_chat_system_role(self) -> str:
        return self._tc_system_role

    def set_tc_chat_max_tokens(self, max_tokens: int) -> None:
        self._tc_max_tokens = max(1, int(max_tokens))

    def get_tc_chat_max_tokens(self) -> Optional[int]:
        return self._tc_max_tokens

    def set_tc_chat_tool_choice(self, tool_choice: Any) -> None:
        """
        Tool choice for tc_chat: "auto", "none", "required"/"any", or a
        vendor-specific JSON object (dict or string). None or "" unsets it.
        """
        self._tc_tool_choice = tool_choice or None

    def get_tc_chat_tool_choice(self) -> Any:
        return self._tc_tool_choice

    def set_tc_reply_max_tokens(self, max_tokens: int) -> None:
        self._tc_reply_max_tokens = max(1, int(max_tokens))

    def get_tc_reply_max_tokens(self) -> Optional[int]:
        return self._tc_reply_max_tokens

    def set_tc_reply_tool_choice(self, tool_choice: Any) -> None:
        """Tool choice for tc_reply; falls back to the tc_chat choice when unset."""
        self._tc_reply_tool_choice = tool_choice or None

    def get_tc_reply_tool_choice(self) -> Any:
        return self._tc_reply_tool_choice

    def tc_chat_reset(self) -> None:
        """Clear the conversation, tool-chat options and records. Tools are kept."""
        self._reset_tc()

    def get_tc_raw_response(self) -> str:
        return self._tc_raw_response

    def get_tc_chat_response_code(self) -> int:
        return self._tc_chat_response_code

    def get_tc_reply_response_code(self) -> int:
        return self._tc_reply_response_code

    def get_last_tool_calls(self) -> List[ToolCall]:
        """Tool calls awaiting results, or [] if the last turn was text."""
        return list(self._conversation.last_assistant_tool_calls)

    @property
    def awaiting_tool_results(self) -> bool:
        return self._conversation.last_turn_was_tool_calls

    def _tool_exchange(self, url: str, body: str, record_code) -> Any:
        response = self._post(url, body)
        record_code(response.status_code)
        self._tc_raw_response = response.body
        self._check_status(response)
        parsed = self._require_adapter().parse_tool_response(response.body)
        if not parsed.ok:
            raise parsed.error
        return parsed.value

    def tc_chat(self, message: str) -> str:
        """
        Start a tool-calling conversation.

        Args:
            message (str): The user message.

        Returns:
            str: A JSON array of tool calls
            (``[{"id", "type": "function", "function": {"name", "arguments"}}]``)
            when the model wants tools run, otherwise the model's text.
            "" on failure.
        """
        self._last_error = ""
        self._tc_raw_response = ""
        self._tc_chat_response_code = 0
        self._tc_reply_response_code = 0
        self._conversation = ConversationTurnState()
        try:
            adapter = self._require_adapter()
            if not self._tools:
                raise ValidationError("No tools registered; call set_tc_tools first")

            request = ChatRequest(
                user_message=message,
                system_role=self._tc_system_role,
                max_tokens=self._tc_max_tokens,
            )
            built = adapter.build_tool_request(self._model, self._tools, request, self._tc_tool_choice)
            if not built.ok:
                raise built.error

            url = adapter.resolve_endpoint(self._model, self._api_key, self._endpoint)
            turn = self._tool_exchange(url, built.value, self._set_tc_chat_code)
        except ChatBridgeError as e:
            self._last_error = str(e)
            logger.debug("tc_chat failed: %s", e)
            return ""

        self._conversation.last_user_message = message
        if turn.has_tool_calls:
            self._conversation.last_assistant_tool_calls = turn.tool_calls
            self._conversation.last_turn_was_tool_calls = True
            return to_json(turn.tool_calls)
        return turn.text

    def _set_tc_chat_code(self, code: int) -> None:
        self._tc_chat_response_code = code

    def _set_tc_reply_code(self, code: int) -> None:
        self._tc_reply_response_code = code

    def _validate_tool_results(self, results: Union[str, List[ToolResult]]) -> List[ToolResult]:
        if isinstance(results, str):
            if len(results) > self.settings.max_tool_payload:
                raise ValidationError(
                    f"Tool results too large: {len(results)} bytes "
                    f"(limit {self.settings.max_tool_payload})"
                )
            try:
                results = json.loads(results)
            except json.JSONDecodeError as e:
                raise ValidationError(f"Invalid JSON in tool results: {e.msg}") from e
        if not isinstance(results, list):
            raise ValidationError("Tool results must be a JSON array")
        if not results:
            raise ValidationError("Tool results array is empty")

        pending_ids = {tc["id"] for tc in self._conversation.last_assistant_tool_calls}
        validated: List[ToolResult] = []
        for index, item in enumerate(results, start=1):
            if not isinstance(item, dict):
                raise ValidationError(f"Tool result #{index} must be a JSON object")
            tool_call_id = item.get("tool_call_id")
            if not isinstance(tool_call_id, str) or not tool_call_id:
                raise ValidationError(f"Missing 'tool_call_id' in tool result #{index}")
            if tool_call_id not in pending_ids:
                raise ValidationError(
                    f"Tool result #{index} references unknown tool_call_id '{tool_call_id}'"
                )
            function = item.get("function")
            if not isinstance(function, dict) or not function.get("name"):
                raise ValidationError(f"Missing 'function.name' in tool result #{index}")
            if "output" not in function or function["output"] is None:
                raise ValidationError(f"Missing 'function.output' in tool result #{index}")

            output = function["output"]
            result: ToolResult = {
                "tool_call_id": tool_call_id,
                "function": {
                    "name": str(function["name"]),
                    "output": output if isinstance(output, str) else to_json(output),
                },
            }
            if item.get("is_error"):
                result["is_error"] = True
            validated.append(result)

        size = len(to_json(validated))
        if size > self.settings.max_tool_payload:
            raise ValidationError(
                f"Tool results too large: {size} bytes (limit {self.settings.max_tool_payload})"
            )
        return validated

    def tc_reply(self, results: Union[str, List[ToolResult]]) -> str:
        """
        Send tool results for the pending tool calls and continue the conversation.

        Args:
            results: JSON array (list or string) of
                ``{"tool_call_id", "function": {"name", "output"}, "is_error"?}``.
                ``utils.create_tool_result`` builds one entry.

        Returns:
            str: Another tool-call array if the model chains more calls,
            otherwise its text. "" on failure; the pending calls are kept so
            the reply can be retried.
        """
        self._last_error = ""
        self._tc_raw_response = ""
        self._tc_reply_response_code = 0
        try:
            adapter = self._require_adapter()
            if not self._conversation.last_turn_was_tool_calls:
                raise ValidationError("No pending tool calls to reply to; call tc_chat first")
            validated = self._validate_tool_results(results)

            current: ToolRound = {
                "tool_calls": list(self._conversation.last_assistant_tool_calls),
                "results": validated,
            }
            rounds = self._conversation.completed_rounds + [current]
            request = ChatRequest(
                user_message=self._conversation.last_user_message,
                system_role=self._tc_system_role,
                max_tokens=self._tc_reply_max_tokens,
            )
            tool_choice = self._tc_reply_tool_choice or self._tc_tool_choice
            built = adapter.build_tool_followup_request(
                self._model, self._tools, request, tool_choice, rounds
            )
            if not built.ok:
                raise built.error

            url = adapter.resolve_endpoint(self._model, self._api_key, self._endpoint)
            turn = self._tool_exchange(url, built.value, self._set_tc_reply_code)
        except ChatBridgeError as e:
            self._last_error = str(e)
            logger.debug("tc_reply failed: %s", e)
            return ""

        self._conversation.completed_rounds.append(current)
        if turn.has_tool_calls:
            self._conversation.last_assistant_tool_calls = turn.tool_calls
            self._conversation.last_turn_was_tool_calls = True
            return to_json(turn.tool_calls)
        self._conversation.last_assistant_tool_calls = []
        self._conversation.last_turn_was_tool_calls = False
        return turn.text

    # ==========================================================================
    # Streaming
    # ==========================================================================

    def stream_chat(self, message: str, callback: StreamCallback) -> bool:
        """
        Stream a chat response, calling ``callback`` for each delta.

        Runs on the calling thread; ``stop_streaming()`` and the stream
        getters may be used from other threads meanwhile.

        Args:
            message (str): The user message.
            callback: Receives a StreamChunkInfo; return False to stop.

        Returns:
            bool: True on completion or a user-requested stop.
        """
        self._last_error = ""
        result = self._stream.run(
            self._adapter,
            self.transport,
            model=self._model,
            api_key=self._api_key,
            custom_endpoint=self._endpoint,
            user_message=message,
            callback=callback,
        )
        if not result.ok:
            self._last_error = result.error_message
            return False
        return True

    def stop_streaming(self) -> None:
        self._stream.stop()

    def is_streaming(self) -> bool:
        return self._stream.is_streaming

    def get_stream_state(self) -> StreamState:
        return self._stream.state

    def get_stream_chunk_count(self) -> int:
        return self._stream.chunk_count

    def get_stream_total_bytes(self) -> int:
        return self._stream.total_bytes

    def get_stream_elapsed_time(self) -> int:
        """Milliseconds since the current (or last) stream started."""
        return self._stream.elapsed_ms

    def get_stream_chat_raw_response(self) -> str:
        """Last raw SSE line received."""
        return self._stream.raw_response

    def get_stream_chat_response_code(self) -> int:
        return self._stream.status_code

    def stream_chat_reset(self) -> None:
        """Return the stream to IDLE (required after an error) and clear its options."""
        self._stream.reset()

    def set_stream_chat_system_role(self, system_role: str) -> None:
        self._stream.set_system_role(system_role)

    def get_stream_chat_system_role(self) -> str:
        return self._stream.system_role

    def set_stream_chat_temperature(self, temperature: float) -> None:
        self._stream.set_temperature(temperature)

    def get_stream_chat_temperature(self) -> Optional[float]:
        return self._stream.temperature

    def set_stream_chat_max_tokens(self, max_tokens: int) -> None:
        self._stream.set_max_tokens(max_tokens)

    def get_stream_chat_max_tokens(self) -> Optional[int]:
        return self._stream.max_tokens

    def set_stream_chat_parameters(self, params: Union[str, Dict[str, Any], None]) -> bool:
        try:
            self._stream.set_custom_params(params)
        except ValidationError as e:
            self._last_error = str(e)
            return False
        return True

    def get_stream_chat_parameters(self) -> Dict[str, Any]:
        return self._stream.custom_params
