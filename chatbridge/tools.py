"""
Tool schema and tool_choice normalization.

Tools are accepted in two surface forms:

- simple:         {"name": ..., "description": ..., "parameters": {...}}
- OpenAI-wrapped: {"type": "function", "function": {"name": ..., ...}}

Both normalize to a ``ToolSpec`` which the functions below render into the
OpenAI, Claude and Gemini wire shapes.
"""
import json
import logging
import warnings
from typing import Any, Callable, Dict, Iterable, List, Optional, TypedDict, Union

from .errors import ValidationError
from .types import ToolSpec

logger = logging.getLogger(__name__)

RawTool = Union[str, Dict[str, Any]]


# =============================================================================
# Tool definitions
# =============================================================================

def normalize_tool_spec(raw: RawTool, index: int = 1) -> ToolSpec:
    """
    Validate one tool definition and convert it to a ``ToolSpec``.

    Args:
        raw (Union[str, Dict]): Tool definition as a dict or JSON string,
                                in either surface form.
        index (int): 1-based position, used in error messages.

    Returns:
        ToolSpec: Normalized {name, description, parameters}.

    Raises:
        ValidationError: On invalid JSON or missing name/parameters.
    """
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid JSON in tool #{index}: {e.msg}") from e
    else:
        data = raw

    if not isinstance(data, dict):
        raise ValidationError(f"Tool #{index} must be a JSON object")

    if "name" in data:
        source = data
    elif "type" in data and isinstance(data.get("function"), dict):
        source = data["function"]
    else:
        source = {}

    name = source.get("name")
    if not isinstance(name, str) or not name:
        raise ValidationError(f"Missing 'name' field in tool #{index}")
    if "parameters" not in source or not isinstance(source["parameters"], dict):
        raise ValidationError(f"Missing 'parameters' field in tool #{index}")

    spec: ToolSpec = {"name": name, "parameters": source["parameters"]}
    description = source.get("description")
    if description:
        spec["description"] = str(description)
    return spec


def to_openai_tool(spec: ToolSpec) -> Dict[str, Any]:
    """OpenAI wraps each tool as {"type": "function", "function": {...}}."""
    function: Dict[str, Any] = {"name": spec["name"]}
    if spec.get("description"):
        function["description"] = spec["description"]
    function["parameters"] = spec["parameters"]
    return {"type": "function", "function": function}


def to_claude_tool(spec: ToolSpec) -> Dict[str, Any]:
    """
    Convert a tool to Claude format.

    Claude uses 'input_schema' instead of 'parameters'.
    """
    tool: Dict[str, Any] = {"name": spec["name"]}
    if spec.get("description"):
        tool["description"] = spec["description"]
    tool["input_schema"] = spec.get("parameters") or {"type": "object", "properties": {}}
    return tool


def gemini_schema(schema: Any) -> Any:
    """
    Convert a JSON schema to Gemini's dialect: upper-case ``type`` keywords.

    Recurses through ``properties`` and ``items``. ``enum`` and ``required``
    are copied verbatim. A schema that is not object-typed at the top level
    is assumed to already be Gemini-shaped and returned unchanged.

    Args:
        schema: JSON-schema-like dict.

    Returns:
        A new dict; the input is not modified.
    """
    if not isinstance(schema, dict) or schema.get("type") != "object":
        return schema
    return _upper_types(schema)


def _upper_types(node: Any) -> Any:
    if not isinstance(node, dict):
        return node
    converted: Dict[str, Any] = {}
    for key, value in node.items():
        if key == "type" and isinstance(value, str):
            converted[key] = value.upper()
        elif key == "properties" and isinstance(value, dict):
            converted[key] = {name: _upper_types(prop) for name, prop in value.items()}
        elif key == "items":
            converted[key] = _upper_types(value)
        elif isinstance(value, list):
            converted[key] = list(value)
        else:
            converted[key] = value
    return converted


def to_gemini_declaration(spec: ToolSpec) -> Dict[str, Any]:
    """One entry of ``tools[0].functionDeclarations``."""
    declaration: Dict[str, Any] = {"name": spec["name"]}
    if spec.get("description"):
        declaration["description"] = spec["description"]
    if spec.get("parameters") is not None:
        declaration["parameters"] = gemini_schema(spec["parameters"])
    return declaration


def convert_tools(
    tools: Iterable[RawTool],
    converter: Callable[[ToolSpec], Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """
    Render a batch of tools with ``converter``, skipping malformed entries.

    Registration already validated the batch, so a failure here only drops
    the offending tool and logs a warning.
    """
    converted = []
    for index, raw in enumerate(tools, start=1):
        try:
            converted.append(converter(normalize_tool_spec(raw, index)))
        except ValidationError as e:
            logger.warning("Skipping tool definition: %s", e)
    return converted


# =============================================================================
# tool_choice
# =============================================================================

class ToolChoice(TypedDict, total=False):
    """
    Tagged tool_choice value.

    mode is one of "auto", "none", "required", "function" or "raw"; "raw"
    keeps a value we could not interpret in ``raw``.
    """
    mode: str
    name: str
    raw: Any


_SIMPLE_CHOICES = {"auto": "auto", "none": "none", "required": "required", "any": "required"}


def parse_tool_choice(choice: Any) -> Optional[ToolChoice]:
    """
    Interpret a tool_choice given as a bare string, a JSON-object string or a dict.

    Returns:
        Optional[ToolChoice]: None when no choice was given.
    """
    if choice is None:
        return None

    if isinstance(choice, str):
        text = choice.strip()
        if not text:
            return None
        if text.lower() in _SIMPLE_CHOICES:
            return {"mode": _SIMPLE_CHOICES[text.lower()]}
        if text.startswith("{"):
            try:
                choice = json.loads(text)
            except json.JSONDecodeError:
                return {"mode": "raw", "raw": text}
        else:
            return {"mode": "raw", "raw": text}

    if isinstance(choice, dict):
        choice_type = str(choice.get("type", "")).lower()
        function = choice.get("function")
        # OpenAI: {"type": "function", "function": {"name": ...}}
        if choice_type == "function" and isinstance(function, dict) and function.get("name"):
            return {"mode": "function", "name": function["name"], "raw": choice}
        # Claude: {"type": "tool", "name": ...}
        if choice_type == "tool" and choice.get("name"):
            return {"mode": "function", "name": choice["name"], "raw": choice}
        # Claude: {"type": "auto" | "any" | "none"}
        if choice_type in _SIMPLE_CHOICES and len(choice) == 1:
            return {"mode": _SIMPLE_CHOICES[choice_type], "raw": choice}
        return {"mode": "raw", "raw": choice}

    return {"mode": "raw", "raw": choice}


def _warn_passthrough(vendor: str, value: Any) -> None:
    message = f"tool_choice value {value!r} is not recognized for {vendor}; passing it through"
    logger.warning(message)
    warnings.warn(message, UserWarning, stacklevel=3)


def openai_tool_choice(choice: Optional[ToolChoice]) -> Any:
    """Render a tool_choice for OpenAI-compatible APIs (None = omit)."""
    if choice is None:
        return None
    mode = choice["mode"]
    if mode in ("auto", "none", "required"):
        return mode
    if mode == "function":
        return {"type": "function", "function": {"name": choice["name"]}}
    raw = choice.get("raw")
    if isinstance(raw, dict):
        return dict(raw)
    _warn_passthrough("openai", raw)
    return raw


def claude_tool_choice(choice: Optional[ToolChoice]) -> Any:
    """Render a tool_choice for Claude (None = omit)."""
    if choice is None:
        return None
    mode = choice["mode"]
    if mode == "required":
        return {"type": "any"}
    if mode in ("auto", "none"):
        return {"type": mode}
    if mode == "function":
        return {"type": "tool", "name": choice["name"]}
    raw = choice.get("raw")
    if isinstance(raw, dict):
        return dict(raw)
    _warn_passthrough("claude", raw)
    return {"type": str(raw)}


def gemini_tool_config(choice: Optional[ToolChoice]) -> Optional[Dict[str, Any]]:
    """Render a tool_choice as Gemini's ``tool_config`` (None = omit)."""
    if choice is None:
        return None
    mode = choice["mode"]
    if mode == "auto":
        return {"function_calling_config": {"mode": "AUTO"}}
    if mode == "none":
        return {"function_calling_config": {"mode": "NONE"}}
    if mode == "required":
        return {"function_calling_config": {"mode": "ANY"}}
    if mode == "function":
        return {
            "function_calling_config": {
                "mode": "ANY",
                "allowed_function_names": [choice["name"]],
            }
        }
    raw = choice.get("raw")
    if isinstance(raw, dict):
        for key in ("function_calling_config", "functionCallingConfig"):
            if isinstance(raw.get(key), dict):
                return {"function_calling_config": dict(raw[key])}
        _warn_passthrough("gemini", raw)
        return {"function_calling_config": dict(raw)}
    _warn_passthrough("gemini", raw)
    return {"function_calling_config": {"mode": str(raw).upper()}}
