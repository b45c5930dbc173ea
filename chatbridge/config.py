"""
Runtime settings for chatbridge.

Everything here has a sensible default; ``ClientSettings.from_env()`` lets a
deployment override values through ``CHATBRIDGE_*`` environment variables
(or a ``.env`` file, loaded with python-dotenv).
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

import dotenv

logger = logging.getLogger(__name__)

# Platform -> environment variable holding its API key
API_KEY_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
    "openai-compatible": "OPENAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "claude": "ANTHROPIC_API_KEY",
    "gemini": "GOOGLE_API_KEY",
}


@dataclass
class ClientSettings:
    """Timeouts and limits shared by the client and its streaming session."""

    http_timeout: float = 30.0
    stream_chunk_timeout: float = 5.0
    stream_poll_interval: float = 0.01
    lock_timeout: float = 1.0
    getter_lock_timeout: float = 0.1
    max_tool_payload: int = 16384
    claude_api_version: str = "2023-06-01"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "ClientSettings":
        """Build settings from ``CHATBRIDGE_*`` variables.

        Args:
            env_file: Optional path to a ``.env`` file; the default lookup
                of python-dotenv is used when omitted.

        Returns:
            ClientSettings with overrides applied.
        """
        dotenv.load_dotenv(env_file)
        settings = cls()

        float_fields = {
            "http_timeout": "CHATBRIDGE_HTTP_TIMEOUT",
            "stream_chunk_timeout": "CHATBRIDGE_STREAM_CHUNK_TIMEOUT",
            "stream_poll_interval": "CHATBRIDGE_STREAM_POLL_INTERVAL",
            "lock_timeout": "CHATBRIDGE_LOCK_TIMEOUT",
            "getter_lock_timeout": "CHATBRIDGE_GETTER_LOCK_TIMEOUT",
        }
        for attr, var in float_fields.items():
            raw = os.getenv(var)
            if raw is None:
                continue
            try:
                setattr(settings, attr, float(raw))
            except ValueError:
                logger.warning("Ignoring %s=%r: not a number", var, raw)

        raw_payload = os.getenv("CHATBRIDGE_MAX_TOOL_PAYLOAD")
        if raw_payload is not None:
            try:
                settings.max_tool_payload = int(raw_payload)
            except ValueError:
                logger.warning("Ignoring CHATBRIDGE_MAX_TOOL_PAYLOAD=%r: not an integer", raw_payload)

        settings.claude_api_version = os.getenv(
            "CHATBRIDGE_CLAUDE_API_VERSION", settings.claude_api_version
        )
        return settings


def api_key_from_env(platform: str) -> Optional[str]:
    """
    Look up the API key for a platform in the environment / ``.env`` file.

    Args:
        platform (str): Platform identifier (case-insensitive).

    Returns:
        Optional[str]: The key, or None if the platform is unknown or unset.
    """
    var = API_KEY_ENV_VARS.get(platform.lower())
    if var is None:
        return None
    dotenv.load_dotenv()
    return os.getenv(var) or None
