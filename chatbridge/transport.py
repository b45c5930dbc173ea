"""
HTTP transport used by the client.

The client only needs "POST a body, get status + body" and "POST a body,
get a line stream". ``Transport`` captures that contract so tests (or
embedders with their own HTTP stack) can swap the implementation;
``HttpxTransport`` is the default, built on httpx.
"""
import logging
import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import httpx

from .errors import TransportError

logger = logging.getLogger(__name__)


@dataclass
class TransportResponse:
    status_code: int
    body: str


class StreamHandle(ABC):
    """
    Line-oriented view of a streaming HTTP response.

    ``status_code`` and ``body`` are available right after the request was
    sent; ``body`` is only populated for non-200 responses.
    """

    status_code: int = 0
    body: str = ""
    error: Optional[str] = None

    @abstractmethod
    def available(self) -> bool:
        """True if a line can be read without blocking."""

    @abstractmethod
    def read_line(self, timeout: Optional[float] = None) -> Optional[str]:
        """Next line without its terminator, or None if none arrived in time."""

    @abstractmethod
    def connected(self) -> bool:
        """True while the peer may still send data or buffered lines remain."""

    @abstractmethod
    def close(self) -> None:
        """Release the underlying connection. Safe to call more than once."""


class Transport(ABC):
    """
    Abstract HTTP collaborator.
    """

    @abstractmethod
    def post(
        self,
        url: str,
        headers: Dict[str, str],
        body: str,
        timeout: float,
    ) -> TransportResponse:
        """
        Send a POST request and read the full response.

        Raises:
            TransportError: If the connection fails or times out.
        """

    @abstractmethod
    def open_stream(
        self,
        url: str,
        headers: Dict[str, str],
        body: str,
        timeout: float,
    ) -> StreamHandle:
        """
        Send a POST request and return a handle over the response lines.

        Raises:
            TransportError: If the connection fails or times out.
        """


class HttpxStreamHandle(StreamHandle):
    """
    Stream handle over an ``httpx`` streaming response.

    Lines are pumped into a queue by a background thread so that
    ``available()`` never blocks the caller's polling loop.
    """

    _EOF = object()

    def __init__(self, client: httpx.Client, response: httpx.Response):
        self._client = client
        self._response = response
        self._lines: "queue.Queue[object]" = queue.Queue()
        self._eof = threading.Event()
        self._closed = False
        self._reader: Optional[threading.Thread] = None
        self.status_code = response.status_code
        self.body = ""
        self.error = None

        if response.status_code != 200:
            try:
                response.read()
                self.body = response.text
            except httpx.HTTPError as e:
                self.body = ""
                self.error = str(e)
            self._eof.set()
            return

        self._reader = threading.Thread(
            target=self._pump, name="chatbridge-stream-reader", daemon=True
        )
        self._reader.start()

    def _pump(self) -> None:
        try:
            for line in self._response.iter_lines():
                self._lines.put(line)
        except (httpx.HTTPError, httpx.StreamError) as e:
            if not self._closed:
                self.error = f"Stream read failed: {e}"
                logger.debug("Stream reader stopped: %s", e)
        finally:
            self._eof.set()
            self._lines.put(self._EOF)

    def available(self) -> bool:
        return not self._lines.empty() and not self._peek_eof()

    def _peek_eof(self) -> bool:
        # queue.Queue exposes its deque; only the consumer thread pops from it
        with self._lines.mutex:
            return bool(self._lines.queue) and self._lines.queue[0] is self._EOF

    def read_line(self, timeout: Optional[float] = None) -> Optional[str]:
        try:
            item = self._lines.get(timeout=timeout) if timeout else self._lines.get_nowait()
        except queue.Empty:
            return None
        if item is self._EOF:
            # keep the marker so connected() keeps reporting False
            self._lines.put(self._EOF)
            return None
        return item  # type: ignore[return-value]

    def connected(self) -> bool:
        if self._closed:
            return False
        return not self._eof.is_set() or self.available()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._response.close()
        finally:
            self._client.close()


class HttpxTransport(Transport):
    """
    Default transport built on ``httpx.Client``.

    Args:
        verify: Passed to httpx; ``True`` (system CAs), ``False`` (insecure)
            or a path to a PEM CA bundle.
        **client_kwargs: Extra ``httpx.Client`` options (proxies, a mock
            transport in tests, ...).
    """

    def __init__(self, verify: Union[bool, str] = True, **client_kwargs: Any):
        self.verify = verify
        self.client_kwargs = client_kwargs

    def _client(self, timeout: float) -> httpx.Client:
        return httpx.Client(timeout=timeout, verify=self.verify, **self.client_kwargs)

    def post(
        self,
        url: str,
        headers: Dict[str, str],
        body: str,
        timeout: float,
    ) -> TransportResponse:
        try:
            with self._client(timeout) as client:
                response = client.post(url, content=body.encode("utf-8"), headers=headers)
                return TransportResponse(status_code=response.status_code, body=response.text)
        except httpx.HTTPError as e:
            raise TransportError(f"HTTP Request Failed: {e}") from e

    def open_stream(
        self,
        url: str,
        headers: Dict[str, str],
        body: str,
        timeout: float,
    ) -> StreamHandle:
        client = self._client(timeout)
        try:
            request = client.build_request(
                "POST", url, content=body.encode("utf-8"), headers=headers
            )
            response = client.send(request, stream=True)
        except httpx.HTTPError as e:
            client.close()
            raise TransportError(f"HTTP Request Failed: {e}") from e
        return HttpxStreamHandle(client, response)
