import json
from typing import Dict, List, Optional

import pytest

from chatbridge.config import ClientSettings
from chatbridge.transport import StreamHandle, Transport, TransportResponse


class ScriptedStreamHandle(StreamHandle):
    """Stream handle that replays a fixed list of lines."""

    def __init__(self, lines: List[str], status_code: int = 200, body: str = "", stay_open: bool = False):
        self._lines = list(lines)
        self.status_code = status_code
        self.body = body
        self.error = None
        self.stay_open = stay_open
        self.closed = False

    def available(self) -> bool:
        return bool(self._lines)

    def read_line(self, timeout: Optional[float] = None) -> Optional[str]:
        return self._lines.pop(0) if self._lines else None

    def connected(self) -> bool:
        return not self.closed and (self.stay_open or bool(self._lines))

    def close(self) -> None:
        self.closed = True


class FakeTransport(Transport):
    """Records requests and returns queued responses."""

    def __init__(self):
        self.responses: List[TransportResponse] = []
        self.streams: List[StreamHandle] = []
        self.requests: List[Dict] = []

    def queue(self, status_code: int, body) -> None:
        if not isinstance(body, str):
            body = json.dumps(body)
        self.responses.append(TransportResponse(status_code=status_code, body=body))

    def post(self, url, headers, body, timeout):
        self.requests.append({"url": url, "headers": headers, "body": json.loads(body)})
        return self.responses.pop(0)

    def open_stream(self, url, headers, body, timeout):
        self.requests.append({"url": url, "headers": headers, "body": json.loads(body)})
        return self.streams.pop(0)


@pytest.fixture
def mock_env(monkeypatch):
    """Mock environment variables for API keys."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-openai")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test-anthropic")
    monkeypatch.setenv("GOOGLE_API_KEY", "AIza-test-google")
    monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-test-deepseek")


@pytest.fixture
def fast_settings():
    """Settings with short timeouts so stream tests finish quickly."""
    return ClientSettings(stream_chunk_timeout=0.2, stream_poll_interval=0.001)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def weather_tool():
    return {
        "name": "get_weather",
        "description": "Get the current weather for a city",
        "parameters": {
            "type": "object",
            "properties": {
                "city": {"type": "string", "description": "City name"},
                "unit": {"type": "string", "enum": ["celsius", "fahrenheit"]},
            },
            "required": ["city"],
        },
    }


@pytest.fixture
def make_stream():
    """Factory for scripted stream handles."""
    return ScriptedStreamHandle
