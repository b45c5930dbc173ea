from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, List, Dict, Any, Generic, Optional, TypedDict, TypeVar

from .errors import ChatBridgeError

# =============================================================================
# Type Definitions
# =============================================================================

# Supported platform identifiers (matched case-insensitively)
Platform = Literal["openai", "openai-compatible", "deepseek", "gemini", "claude"]


@dataclass
class ChatRequest:
    """
    Vendor-neutral description of a single chat turn.

    ``temperature`` and ``max_tokens`` use ``None`` as the "vendor default"
    sentinel. ``custom_params`` is merged into the vendor payload first, so
    the explicit fields above always win over it.
    """
    user_message: str = ""
    system_role: str = ""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    custom_params: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_max_tokens(self) -> bool:
        return self.max_tokens is not None and self.max_tokens > 0


# =============================================================================
# Tool Calling Type Definitions
# =============================================================================

class FunctionParameters(TypedDict, total=False):
    """
    JSON Schema for function parameters.
    """
    type: str
    properties: Dict[str, Any]
    required: List[str]


class ToolSpec(TypedDict, total=False):
    """
    Normalized tool definition (the "simple" surface form).
    """
    name: str
    description: str
    parameters: FunctionParameters


class FunctionDefinition(TypedDict, total=False):
    name: str
    description: str
    parameters: FunctionParameters


class Tool(TypedDict):
    """
    Tool definition in OpenAI format.
    """
    type: Literal["function"]
    function: FunctionDefinition


class ToolCallFunction(TypedDict):
    name: str
    arguments: str  # JSON-encoded object, kept verbatim


class ToolCall(TypedDict):
    """
    Tool call from an LLM response, normalized to the OpenAI shape.
    """
    id: str
    type: Literal["function"]
    function: ToolCallFunction


class ToolResultFunction(TypedDict):
    name: str
    output: str


class ToolResult(TypedDict, total=False):
    """
    Tool result supplied by the caller for a pending tool call.
    """
    tool_call_id: str
    function: ToolResultFunction
    is_error: bool


class ToolRound(TypedDict):
    """
    One assistant tool-call turn together with the results sent back for it.
    """
    tool_calls: List[ToolCall]
    results: List[ToolResult]


@dataclass
class ToolTurn:
    """
    Parsed tool-enabled response: either tool calls or plain text.
    """
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class ConversationTurnState:
    """
    Tracks the tool-calling conversation between tc_chat and tc_reply.
    """
    last_user_message: str = ""
    last_assistant_tool_calls: List[ToolCall] = field(default_factory=list)
    last_turn_was_tool_calls: bool = False
    completed_rounds: List[ToolRound] = field(default_factory=list)


# =============================================================================
# Streaming Type Definitions
# =============================================================================

class StreamState(Enum):
    IDLE = 0
    STARTING = 1
    ACTIVE = 2
    STOPPING = 3
    ERROR = 4


@dataclass
class StreamDelta:
    """
    What a single SSE line contributed to the stream.
    """
    content: str = ""
    is_complete: bool = False


@dataclass
class StreamChunkInfo:
    """
    Event handed to the stream callback for every content delta or completion.
    """
    content: str
    is_complete: bool
    chunk_index: int
    total_bytes: int
    elapsed_ms: int
    error_msg: str = ""


# =============================================================================
# Result Type
# =============================================================================

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """
    Either a value or a structured error. Never raised, always inspected.
    """
    value: Optional[T] = None
    error: Optional[ChatBridgeError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_message(self) -> str:
        return str(self.error) if self.error is not None else ""

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ChatBridgeError) -> "Result[T]":
        return cls(error=error)
