from .client import UnifiedChatClient
from .config import ClientSettings, api_key_from_env
from .errors import (
    ChatBridgeError, ConfigurationError, ParseError, TransportError, ValidationError, VendorError,
)
from .printer import RichStreamPrinter
from .providers import create_adapter
from .transport import HttpxTransport, Transport
from .types import (
    ChatRequest, Platform, Result, StreamChunkInfo, StreamState, Tool, ToolCall, ToolResult,
)
from .utils import create_tool, create_tool_result

__all__ = [
    "UnifiedChatClient",
    "ClientSettings",
    "api_key_from_env",
    "ChatBridgeError",
    "ConfigurationError",
    "ParseError",
    "TransportError",
    "ValidationError",
    "VendorError",
    "RichStreamPrinter",
    "create_adapter",
    "HttpxTransport",
    "Transport",
    "ChatRequest",
    "Platform",
    "Result",
    "StreamChunkInfo",
    "StreamState",
    "Tool",
    "ToolCall",
    "ToolResult",
    "create_tool",
    "create_tool_result",
]
