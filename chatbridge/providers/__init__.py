from typing import Dict, Optional, Type

from .base import BaseProviderAdapter
from .openai import OpenAIAdapter
from .anthropic import ClaudeAdapter
from .gemini import GeminiAdapter
from .deepseek import DeepSeekAdapter
from ..config import ClientSettings

# Platform identifier (lower case) -> adapter class
ADAPTERS: Dict[str, Type[BaseProviderAdapter]] = {
    "openai": OpenAIAdapter,
    "openai-compatible": OpenAIAdapter,
    "deepseek": DeepSeekAdapter,
    "claude": ClaudeAdapter,
    "gemini": GeminiAdapter,
}


def create_adapter(
    platform: str, settings: Optional[ClientSettings] = None
) -> Optional[BaseProviderAdapter]:
    """
    Instantiate the adapter registered for ``platform`` (case-insensitive).

    Returns:
        Optional[BaseProviderAdapter]: None if the platform is not supported.
    """
    adapter_cls = ADAPTERS.get(platform.strip().lower())
    if adapter_cls is None:
        return None
    return adapter_cls(settings)


__all__ = [
    "ADAPTERS",
    "BaseProviderAdapter",
    "OpenAIAdapter",
    "ClaudeAdapter",
    "GeminiAdapter",
    "DeepSeekAdapter",
    "create_adapter",
]
