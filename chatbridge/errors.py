"""
Error taxonomy for chatbridge.

These exceptions are raised inside a component and converted to a
``Result.failure`` (adapters) or a "last error" string (client) at the
component boundary. Callers of the public API never see them raised.
"""
from typing import Optional


class ChatBridgeError(Exception):
    """
    Base class for all chatbridge errors.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ConfigurationError(ChatBridgeError):
    """Unsupported platform or a client used before it was configured."""


class ValidationError(ChatBridgeError):
    """Caller-supplied data (tools, tool results, parameters) is invalid."""


class TransportError(ChatBridgeError):
    """Connection, timeout or stream failures reported by the transport."""


class VendorError(ChatBridgeError):
    """
    Non-2xx HTTP status or a 2xx body carrying the vendor's error envelope.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ParseError(ChatBridgeError):
    """Malformed JSON or a response missing the fields we expect."""
