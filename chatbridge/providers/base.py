import functools
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..config import ClientSettings
from ..errors import ChatBridgeError, ParseError, VendorError
from ..types import ChatRequest, Result, StreamDelta, ToolRound, ToolTurn
from ..utils import to_json

logger = logging.getLogger(__name__)


def adapter_boundary(method: Callable[..., Any]) -> Callable[..., Result]:
    """
    Run an adapter operation and fold any failure into a ``Result``.

    ChatBridgeError subclasses keep their type and message. Lookups on a
    response that does not have the expected shape surface as ParseError.
    """

    @functools.wraps(method)
    def wrapper(self: "BaseProviderAdapter", *args: Any, **kwargs: Any) -> Result:
        try:
            return Result.success(method(self, *args, **kwargs))
        except ChatBridgeError as e:
            logger.debug("%s.%s failed: %s", self.name, method.__name__, e)
            return Result.failure(e)
        except (KeyError, IndexError, TypeError, AttributeError, ValueError) as e:
            logger.debug("%s.%s: unexpected structure: %r", self.name, method.__name__, e)
            return Result.failure(ParseError(f"Unexpected response structure: {e!r}"))

    return wrapper


class BaseProviderAdapter(ABC):
    """
    Abstract base class for vendor adapters.

    An adapter translates vendor-neutral requests into one vendor's JSON body
    and parses that vendor's responses and SSE lines back. It never performs
    I/O; the client owns the transport. Token usage and the finish reason of
    the most recent call are kept on the adapter and reset whenever a new
    request is built or a complete response is parsed.
    """

    name: str = ""
    default_endpoint: str = ""
    # Keys callers may not override through custom parameters
    reserved_params: Iterable[str] = ("model", "messages", "stream")

    def __init__(self, settings: Optional[ClientSettings] = None):
        self.settings = settings or ClientSettings()
        self.usage: Optional[Dict[str, Any]] = None
        self.finish_reason: str = ""

    # -------------------------------------------------------------------------
    # Call-scoped state
    # -------------------------------------------------------------------------

    def reset_state(self) -> None:
        self.usage = None
        self.finish_reason = ""

    @property
    def total_tokens(self) -> int:
        if not self.usage:
            return 0
        return self.usage.get("total_tokens") or 0

    def _record_usage(
        self,
        *,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None,
        total_tokens: Optional[int] = None,
        raw: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.usage = self.normalize_usage(
            self.name,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total_tokens,
            raw=raw,
        )

    @staticmethod
    def normalize_usage(
        provider: str,
        *,
        input_tokens: Optional[int],
        output_tokens: Optional[int],
        total_tokens: Optional[int],
        raw: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """
        Normalize token usage information across providers.

        Creates a standardized dictionary structure for token usage statistics,
        calculating the total if the vendor did not report one.

        Args:
            provider (str): Name of the provider.
            input_tokens (int, optional): Number of prompt tokens.
            output_tokens (int, optional): Number of generated tokens.
            total_tokens (int, optional): Total token count.
            raw (dict, optional): Raw usage data from the provider response.

        Returns:
            Dict[str, Any]: Standardized usage dictionary.
        """
        if total_tokens is None and input_tokens is not None and output_tokens is not None:
            total_tokens = input_tokens + output_tokens

        return {
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "total_tokens": total_tokens,
            "raw": {
                "provider": provider,
                **(raw or {}),
            } if raw is not None else None,
        }

    # -------------------------------------------------------------------------
    # Endpoints and headers
    # -------------------------------------------------------------------------

    def resolve_endpoint(self, model: str, api_key: str, custom_endpoint: str = "") -> str:
        """
        URL for a chat or tool request.

        Args:
            model (str): The model identifier.
            api_key (str): API key (only used by vendors that authenticate via URL).
            custom_endpoint (str): Returned verbatim when non-empty.

        Returns:
            str: The endpoint URL.
        """
        if custom_endpoint:
            return custom_endpoint
        return self.default_endpoint

    def resolve_stream_endpoint(self, model: str, api_key: str, custom_endpoint: str = "") -> str:
        """URL for a streaming request; same as the chat endpoint unless overridden."""
        return self.resolve_endpoint(model, api_key, custom_endpoint)

    @abstractmethod
    def build_headers(self, api_key: str) -> Dict[str, str]:
        """
        HTTP headers for any request to this vendor.

        Args:
            api_key (str): The caller's API key.

        Returns:
            Dict[str, str]: Header name to value.
        """

    # -------------------------------------------------------------------------
    # Public operations (never raise)
    # -------------------------------------------------------------------------

    @adapter_boundary
    def build_chat_request(self, model: str, request: ChatRequest) -> str:
        """
        Serialize a plain chat request.

        Returns:
            Result[str]: The JSON body, or the reason it could not be built.
        """
        self.reset_state()
        return to_json(self._chat_payload(model, request))

    @adapter_boundary
    def parse_chat_response(self, body: str) -> str:
        """
        Extract the assistant text from a chat response body.

        Also records usage and the finish reason.

        Returns:
            Result[str]: The text, or a ParseError / VendorError.
        """
        self.reset_state()
        return self._parse_chat(self._load_json(body))

    @adapter_boundary
    def build_tool_request(
        self,
        model: str,
        tools: List[Any],
        request: ChatRequest,
        tool_choice: Any = None,
    ) -> str:
        """
        Serialize the first request of a tool-calling conversation.

        Args:
            model (str): The model identifier.
            tools (List): Registered tool definitions, in either surface form.
            request (ChatRequest): System role, user message and limits.
            tool_choice: Raw tool_choice (string, JSON string or dict); None omits it.

        Returns:
            Result[str]: The JSON body.
        """
        self.reset_state()
        return to_json(self._tool_payload(model, tools, request, tool_choice))

    @adapter_boundary
    def parse_tool_response(self, body: str) -> ToolTurn:
        """
        Parse a tool-enabled response into tool calls or text.

        Returns:
            Result[ToolTurn]: Normalized tool calls (OpenAI shape) and/or text.
        """
        self.reset_state()
        return self._parse_tool(self._load_json(body))

    @adapter_boundary
    def build_tool_followup_request(
        self,
        model: str,
        tools: List[Any],
        request: ChatRequest,
        tool_choice: Any,
        rounds: List[ToolRound],
    ) -> str:
        """
        Serialize a follow-up request carrying tool results.

        Args:
            model (str): The model identifier.
            tools (List): Registered tool definitions.
            request (ChatRequest): Original user message, system role and limits.
            tool_choice: Raw tool_choice for the follow-up; None omits it.
            rounds (List[ToolRound]): Every tool round so far, oldest first;
                the last one holds the results being sent now.

        Returns:
            Result[str]: The JSON body.
        """
        self.reset_state()
        return to_json(self._followup_payload(model, tools, request, tool_choice, rounds))

    @adapter_boundary
    def build_stream_request(self, model: str, request: ChatRequest) -> str:
        """
        Serialize a streaming chat request.

        Returns:
            Result[str]: The JSON body.
        """
        self.reset_state()
        return to_json(self._stream_payload(model, request))

    @adapter_boundary
    def parse_stream_chunk(self, line: str) -> StreamDelta:
        """
        Interpret one line of the SSE response.

        Lines that carry no data (blank lines, comments, ``event:`` lines)
        yield an empty, non-final delta.

        Returns:
            Result[StreamDelta]: Content delta and completion flag.
        """
        line = line.strip()
        if not line.startswith("data:"):
            return StreamDelta()
        data = line[len("data:"):].strip()
        if not data:
            return StreamDelta()
        return self._parse_stream_data(data)

    def extract_error_message(self, body: str) -> str:
        """
        Human-readable message for an error response body.

        Returns the vendor's ``error.message`` when the body carries the
        usual envelope, otherwise the body itself.
        """
        try:
            data = json.loads(body)
        except (TypeError, json.JSONDecodeError):
            return body
        message = self._error_envelope_message(data)
        return message if message is not None else body

    # -------------------------------------------------------------------------
    # Vendor hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    def _chat_payload(self, model: str, request: ChatRequest) -> Dict[str, Any]:
        pass

    @abstractmethod
    def _parse_chat(self, data: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def _tool_payload(
        self, model: str, tools: List[Any], request: ChatRequest, tool_choice: Any
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    def _parse_tool(self, data: Dict[str, Any]) -> ToolTurn:
        pass

    @abstractmethod
    def _followup_payload(
        self,
        model: str,
        tools: List[Any],
        request: ChatRequest,
        tool_choice: Any,
        rounds: List[ToolRound],
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    def _stream_payload(self, model: str, request: ChatRequest) -> Dict[str, Any]:
        pass

    @abstractmethod
    def _parse_stream_data(self, data: str) -> StreamDelta:
        """Handle the payload of one ``data:`` line (prefix already removed)."""

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _merge_custom_params(self, payload: Dict[str, Any], request: ChatRequest) -> None:
        """Copy custom parameters into ``payload``, skipping reserved keys."""
        reserved = set(self.reserved_params)
        for key, value in request.custom_params.items():
            if key in reserved:
                logger.debug("%s: ignoring reserved custom parameter %r", self.name, key)
                continue
            payload[key] = value

    @staticmethod
    def _error_envelope_message(data: Any) -> Optional[str]:
        if not isinstance(data, dict) or "error" not in data:
            return None
        error = data["error"]
        if isinstance(error, dict):
            return str(error.get("message") or error.get("type") or error)
        return str(error)

    def _load_json(self, body: str, check_error: bool = True) -> Dict[str, Any]:
        """
        Decode a response body.

        Raises:
            ParseError: If the body is not a JSON object.
            VendorError: If it carries the vendor's error envelope.
        """
        try:
            data = json.loads(body)
        except (TypeError, json.JSONDecodeError) as e:
            raise ParseError(f"JSON Parse Error: {e}") from e
        if not isinstance(data, dict):
            raise ParseError("JSON Parse Error: expected an object")
        if check_error:
            message = self._error_envelope_message(data)
            if message is not None:
                raise VendorError(f"API Error: {message}")
        return data
