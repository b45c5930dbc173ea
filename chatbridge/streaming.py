"""
Streaming chat session.

The read loop runs on the caller's thread. ``stop()``, ``state`` and the
metric getters are meant to be called from other threads while it runs,
so every shared field lives behind one lock that is only ever acquired
with a timeout.
"""
import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional

from .config import ClientSettings
from .errors import ChatBridgeError, ConfigurationError, TransportError, ValidationError, VendorError
from .providers.base import BaseProviderAdapter
from .transport import StreamHandle, Transport
from .types import ChatRequest, Result, StreamChunkInfo, StreamState
from .utils import parse_custom_params, redact_key

logger = logging.getLogger(__name__)

# Return False to stop the stream
StreamCallback = Callable[[StreamChunkInfo], bool]


class StreamingSession:
    """
    State machine for one client's streaming calls.

    IDLE -> STARTING -> ACTIVE -> (STOPPING ->) IDLE on success or user stop,
    or -> ERROR on failure. ERROR blocks new streams until ``reset()``.
    """

    def __init__(self, settings: Optional[ClientSettings] = None):
        self.settings = settings or ClientSettings()
        self._lock = threading.Lock()
        self._state = StreamState.IDLE
        self._callback: Optional[StreamCallback] = None
        self._chunk_count = 0
        self._total_bytes = 0
        self._start_time: Optional[float] = None
        self._raw_response = ""
        self._status_code = 0
        self._total_tokens = 0
        self._finish_reason = ""
        # per-stream options
        self._system_role = ""
        self._temperature: Optional[float] = None
        self._max_tokens: Optional[int] = None
        self._custom_params: Dict[str, Any] = {}

    @contextmanager
    def _locked(self, timeout: float) -> Iterator[bool]:
        acquired = self._lock.acquire(timeout=timeout)
        try:
            yield acquired
        finally:
            if acquired:
                self._lock.release()

    def _read(self, getter: Callable[[], Any], default: Any) -> Any:
        with self._locked(self.settings.getter_lock_timeout) as acquired:
            return getter() if acquired else default

    def _set_state(self, new_state: StreamState) -> bool:
        with self._locked(self.settings.lock_timeout) as acquired:
            if not acquired:
                logger.warning("Could not acquire stream lock to enter %s", new_state.name)
                return False
            old_state = self._state
            self._state = new_state
        logger.debug("Stream state: %s -> %s", old_state.name, new_state.name)
        return True

    # =========================================================================
    # Options
    # =========================================================================

    def set_system_role(self, system_role: str) -> None:
        with self._locked(self.settings.getter_lock_timeout) as acquired:
            if acquired:
                self._system_role = system_role or ""

    def set_temperature(self, temperature: float) -> None:
        with self._locked(self.settings.getter_lock_timeout) as acquired:
            if acquired:
                self._temperature = min(max(float(temperature), 0.0), 2.0)

    def set_max_tokens(self, max_tokens: int) -> None:
        with self._locked(self.settings.getter_lock_timeout) as acquired:
            if acquired:
                self._max_tokens = max(1, int(max_tokens))

    def set_custom_params(self, params: Any) -> None:
        """
        Raises:
            ValidationError: If ``params`` is not a JSON object.
        """
        parsed = parse_custom_params(params)
        with self._locked(self.settings.getter_lock_timeout) as acquired:
            if acquired:
                self._custom_params = parsed

    @property
    def system_role(self) -> str:
        return self._read(lambda: self._system_role, "")

    @property
    def temperature(self) -> Optional[float]:
        return self._read(lambda: self._temperature, None)

    @property
    def max_tokens(self) -> Optional[int]:
        return self._read(lambda: self._max_tokens, None)

    @property
    def custom_params(self) -> Dict[str, Any]:
        return self._read(lambda: dict(self._custom_params), {})

    # =========================================================================
    # Status
    # =========================================================================

    @property
    def state(self) -> StreamState:
        # single attribute read, no lock needed
        return self._state

    @property
    def is_streaming(self) -> bool:
        return self._state in (StreamState.STARTING, StreamState.ACTIVE, StreamState.STOPPING)

    @property
    def chunk_count(self) -> int:
        return self._read(lambda: self._chunk_count, 0)

    @property
    def total_bytes(self) -> int:
        return self._read(lambda: self._total_bytes, 0)

    @property
    def elapsed_ms(self) -> int:
        start = self._start_time
        if start is None:
            return 0
        return int((time.monotonic() - start) * 1000)

    @property
    def raw_response(self) -> str:
        return self._read(lambda: self._raw_response, "")

    @property
    def status_code(self) -> int:
        return self._read(lambda: self._status_code, 0)

    @property
    def total_tokens(self) -> int:
        return self._read(lambda: self._total_tokens, 0)

    @property
    def finish_reason(self) -> str:
        return self._read(lambda: self._finish_reason, "")

    def stop(self) -> None:
        """Ask a running stream to stop; honored on the loop's next idle poll."""
        with self._locked(self.settings.lock_timeout) as acquired:
            if acquired and self._state in (StreamState.STARTING, StreamState.ACTIVE):
                self._state = StreamState.STOPPING
                logger.debug("Stream stop requested")

    def reset(self) -> None:
        """Return to IDLE and clear metrics, records and per-stream options."""
        with self._locked(self.settings.lock_timeout) as acquired:
            if not acquired:
                logger.warning("Could not acquire stream lock for reset")
                return
            self._state = StreamState.IDLE
            self._callback = None
            self._raw_response = ""
            self._status_code = 0
            self._chunk_count = 0
            self._total_bytes = 0
            self._start_time = None
            self._total_tokens = 0
            self._finish_reason = ""
            self._system_role = ""
            self._temperature = None
            self._max_tokens = None
            self._custom_params = {}

    # =========================================================================
    # Running a stream
    # =========================================================================

    def _begin(self, callback: Optional[StreamCallback]) -> None:
        if self._state != StreamState.IDLE:
            raise ValidationError(self._busy_message())
        with self._locked(self.settings.lock_timeout) as acquired:
            if not acquired:
                raise ChatBridgeError("Failed to acquire stream lock (timeout)")
            # compare-and-set under the lock
            if self._state != StreamState.IDLE:
                raise ValidationError(self._busy_message())
            if callback is None:
                raise ValidationError("Callback function is null")
            self._state = StreamState.STARTING
            self._callback = callback
            self._chunk_count = 0
            self._total_bytes = 0
            self._start_time = time.monotonic()
            self._raw_response = ""
            self._status_code = 0
            self._total_tokens = 0
            self._finish_reason = ""
        logger.debug("Stream state: IDLE -> STARTING")

    def _busy_message(self) -> str:
        if self._state == StreamState.ERROR:
            return "Streaming operation already in progress or failed; call stream_chat_reset() first"
        return "Streaming operation already in progress"

    def run(
        self,
        adapter: Optional[BaseProviderAdapter],
        transport: Transport,
        *,
        model: str,
        api_key: str,
        custom_endpoint: str,
        user_message: str,
        callback: Optional[StreamCallback],
    ) -> Result:
        """
        Run one streaming chat to completion on the calling thread.

        Args:
            adapter: Active vendor adapter.
            transport: HTTP collaborator used to open the stream.
            model (str): The model identifier.
            api_key (str): The caller's API key.
            custom_endpoint (str): Overrides the vendor's stream URL when set.
            user_message (str): The user turn.
            callback: Called with a StreamChunkInfo per content delta and on
                completion; returning False stops the stream.

        Returns:
            Result: ``ok`` on completion or user stop; otherwise the failure.
            A second call while a stream is running fails with
            "Streaming operation already in progress" and leaves the running
            stream untouched.
        """
        try:
            if adapter is None:
                raise ConfigurationError("Platform handler not initialized")
            self._begin(callback)
        except ChatBridgeError as e:
            return Result.failure(e)

        try:
            self._stream(adapter, transport, model, api_key, custom_endpoint, user_message)
        except ChatBridgeError as e:
            logger.debug("Stream failed: %s", e)
            self._set_state(StreamState.ERROR)
            return Result.failure(e)

        self._set_state(StreamState.IDLE)
        return Result.success(None)

    def _stream(
        self,
        adapter: BaseProviderAdapter,
        transport: Transport,
        model: str,
        api_key: str,
        custom_endpoint: str,
        user_message: str,
    ) -> None:
        url = adapter.resolve_stream_endpoint(model, api_key, custom_endpoint)
        if not url:
            raise ConfigurationError("Failed to get endpoint URL from platform handler")

        request = self._read(
            lambda: ChatRequest(
                user_message=user_message,
                system_role=self._system_role,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                custom_params=dict(self._custom_params),
            ),
            ChatRequest(user_message=user_message),
        )
        built = adapter.build_stream_request(model, request)
        if not built.ok:
            raise built.error
        logger.debug("Stream request to %s: %s", redact_key(url), built.value)

        handle = transport.open_stream(
            url, adapter.build_headers(api_key), built.value, self.settings.http_timeout
        )
        try:
            with self._locked(self.settings.lock_timeout) as acquired:
                if acquired:
                    self._status_code = handle.status_code
            if handle.status_code != 200:
                raise VendorError(
                    f"HTTP Error: {handle.status_code} - "
                    f"{adapter.extract_error_message(handle.body)}",
                    status_code=handle.status_code,
                )
            # a stop requested while connecting wins over ACTIVE
            with self._locked(self.settings.lock_timeout) as acquired:
                if acquired and self._state == StreamState.STARTING:
                    self._state = StreamState.ACTIVE
                    logger.debug("Stream state: STARTING -> ACTIVE")
            self._read_loop(adapter, handle)
        finally:
            handle.close()

    def _read_loop(self, adapter: BaseProviderAdapter, handle: StreamHandle) -> None:
        last_data = time.monotonic()
        complete = False

        while not complete:
            if self._state == StreamState.STOPPING:
                logger.debug("Stream stopped on request")
                return

            if not handle.available():
                if not handle.connected():
                    if handle.error:
                        raise TransportError(handle.error)
                    raise TransportError("Stream connection closed before completion")
                if time.monotonic() - last_data > self.settings.stream_chunk_timeout:
                    raise TransportError(
                        "Stream timeout: No data received within "
                        f"{int(self.settings.stream_chunk_timeout * 1000)}ms"
                    )
                time.sleep(self.settings.stream_poll_interval)
                continue

            line = handle.read_line()
            if line is None:
                continue
            last_data = time.monotonic()

            with self._locked(self.settings.lock_timeout) as acquired:
                if acquired:
                    self._raw_response = line
                    self._total_bytes += len(line.encode("utf-8"))
                    self._chunk_count += 1
                chunk_index = self._chunk_count
                total_bytes = self._total_bytes
                callback = self._callback

            parsed = adapter.parse_stream_chunk(line)
            if not parsed.ok:
                raise parsed.error
            with self._locked(self.settings.lock_timeout) as acquired:
                if acquired:
                    # usage and finish reason are read by other threads mid-stream
                    self._total_tokens = adapter.total_tokens
                    self._finish_reason = adapter.finish_reason
            delta = parsed.value
            complete = delta.is_complete

            if not delta.content and not delta.is_complete:
                continue

            info = StreamChunkInfo(
                content=delta.content,
                is_complete=delta.is_complete,
                chunk_index=chunk_index,
                total_bytes=total_bytes,
                elapsed_ms=self.elapsed_ms,
            )
            if callback is None:
                continue
            try:
                keep_going = callback(info)
            except Exception as e:
                logger.warning("Stream callback raised", exc_info=True)
                raise ChatBridgeError(f"Stream callback raised: {e}") from e
            if not keep_going:
                logger.debug("Stream stopped by callback")
                return
