import json
from typing import Any, Dict, List, Optional, Union

from .errors import ValidationError
from .types import Tool, ToolCall, ToolResult

# =============================================================================
# JSON Helpers
# =============================================================================

def to_json(value: Any) -> str:
    """
    Serialize a payload the way it goes on the wire: compact, UTF-8 kept as-is.
    """
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def parse_json_or_text(text: str) -> Any:
    """
    Parse ``text`` as JSON, falling back to the raw string.

    Tool outputs may be JSON or plain text; vendors that want structured
    content (Gemini) get the parsed value when there is one.
    """
    try:
        return json.loads(text)
    except (TypeError, json.JSONDecodeError):
        return text


def parse_arguments(arguments: Union[str, Dict[str, Any], None]) -> Dict[str, Any]:
    """
    Decode a tool call's ``arguments`` string into a dict.

    Empty or invalid input yields an empty dict.
    """
    if isinstance(arguments, dict):
        return arguments
    if not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def redact_key(url: str) -> str:
    """Hide the ``key=`` query parameter of a URL for logging."""
    marker = "key="
    start = url.find(marker)
    if start == -1:
        return url
    end = url.find("&", start)
    return url[: start + len(marker)] + "***" + (url[end:] if end != -1 else "")


# =============================================================================
# Tool Calling Helpers
# =============================================================================

def create_tool(
    name: str,
    description: str,
    parameters: Dict[str, Any],
    required: Optional[List[str]] = None,
) -> Tool:
    """
    Create a standardized Tool definition for function calling.

    Formats the tool definition according to the OpenAI function calling schema,
    which every adapter accepts.

    Args:
        name (str): The name of the function/tool to be called.
        description (str): A clear description of what the tool does.
        parameters (Dict): Mapping of argument name to its JSON Schema.
        required (List[str], optional): A list of parameter names that are required.

    Returns:
        Tool: A dictionary representing the tool definition.
    """
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": parameters,
                "required": required or [],
            },
        },
    }


def create_tool_result(
    tool_call: ToolCall,
    output: Union[str, Dict[str, Any], List[Any]],
    is_error: bool = False,
) -> ToolResult:
    """
    Create a tool result answering one of the model's tool calls.

    Args:
        tool_call (ToolCall): The call being answered (as returned by tc_chat).
        output: The tool's output; non-string values are JSON-encoded.
        is_error (bool): Mark the result as a failed execution (Claude only).

    Returns:
        ToolResult: A dictionary suitable for ``UnifiedChatClient.tc_reply``.
    """
    result: ToolResult = {
        "tool_call_id": tool_call["id"],
        "function": {
            "name": tool_call["function"]["name"],
            "output": output if isinstance(output, str) else to_json(output),
        },
    }
    if is_error:
        result["is_error"] = True
    return result


def parse_custom_params(params: Union[str, Dict[str, Any], None]) -> Dict[str, Any]:
    """
    Validate custom request parameters.

    Args:
        params: A dict, a JSON object string, or None / "" to clear.

    Returns:
        Dict[str, Any]: The parameters as a dict (empty when cleared).

    Raises:
        ValidationError: If the value is not a JSON object.
    """
    if params is None or params == "":
        return {}
    if isinstance(params, str):
        try:
            params = json.loads(params)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid JSON in custom parameters: {e.msg}") from e
    if not isinstance(params, dict):
        raise ValidationError("Custom parameters must be a JSON object")
    return dict(params)
