"""
Stream transport over a long-lived HTTP GET

One canonical reader with two authentication strategies: a bearer
`Authorization` header, or a query-string token for environments where
custom headers cannot be set on streaming requests.
"""
import asyncio
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import httpx
import structlog

from comptax_chat.services.config import Settings
from comptax_chat.services.errors import (
    MalformedFrameError,
    TransportError,
    TransportMidStreamError,
    TransportOpenError,
)
from comptax_chat.services.sse_parser import SSEParser, decode_frame
from comptax_chat.utils.metrics import track_malformed_frame

logger = structlog.get_logger()

FrameCallback = Callable[[str, Dict[str, Any]], None]
ErrorCallback = Callable[[TransportError], None]
EndCallback = Callable[[], None]
MalformedCallback = Callable[[MalformedFrameError], None]


class TransportStrategy(str, Enum):
    HEADER = "header"
    QUERY_TOKEN = "query_token"


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class StreamHandle:
    """Cancellation handle of one open stream"""

    def __init__(self):
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._task is None or self._task.done()

    def cancel(self) -> None:
        """
        Stop delivery and tear the connection down

        Idempotent and non-blocking. No frame callback runs after this
        returns: the reader checks the flag before every read and every
        delivery, and is cancelled at its current suspension point.
        """
        if self._cancelled:
            return
        self._cancelled = True
        task = self._task
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

    async def wait(self) -> None:
        """Wait until the reader has stopped, whatever the reason"""
        if self._task is not None and not self._task.done():
            await asyncio.wait([self._task])


class StreamTransport:
    """Reads an SSE response incrementally and hands decoded frames to callbacks"""

    def __init__(
        self,
        settings: Settings,
        strategy: Optional[TransportStrategy] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.strategy = TransportStrategy(strategy or settings.resolve_transport_strategy())
        self.http_client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                settings.STREAM_TIMEOUT,
                connect=settings.CONNECT_TIMEOUT,
            )
        )
        logger.info("Stream transport ready", strategy=self.strategy.value)

    def prepare_request(self, url: str, headers: Dict[str, str]) -> Tuple[httpx.URL, Dict[str, str]]:
        """Apply the authentication strategy to a request"""
        request_url = httpx.URL(url)
        request_headers = {"Accept": "text/event-stream"}
        authorization = None
        for name, value in headers.items():
            if name.lower() == "authorization":
                authorization = value
            else:
                request_headers[name] = value

        if authorization:
            if self.strategy == TransportStrategy.HEADER:
                request_headers["Authorization"] = authorization
            else:
                token = authorization.split(" ", 1)[-1]
                request_url = request_url.copy_merge_params({self.settings.QUERY_TOKEN_PARAM: token})
        return request_url, request_headers

    def open(
        self,
        url: str,
        headers: Dict[str, str],
        on_frame: FrameCallback,
        on_transport_error: ErrorCallback,
        on_transport_end: EndCallback,
        on_malformed: Optional[MalformedCallback] = None,
    ) -> StreamHandle:
        """
        Start reading a stream in the background

        Must be called from a running event loop. The returned handle's
        `cancel` is the only way to stop the reader early; cancellation is
        never reported through `on_transport_error`.
        """
        handle = StreamHandle()
        request_url, request_headers = self.prepare_request(url, headers)
        handle._task = asyncio.get_running_loop().create_task(
            self._read(handle, request_url, request_headers,
                       on_frame, on_transport_error, on_transport_end, on_malformed)
        )
        return handle

    async def _read(
        self,
        handle: StreamHandle,
        url: httpx.URL,
        headers: Dict[str, str],
        on_frame: FrameCallback,
        on_transport_error: ErrorCallback,
        on_transport_end: EndCallback,
        on_malformed: Optional[MalformedCallback],
    ) -> None:
        if handle.cancelled:
            return

        parser = SSEParser()
        bytes_received = 0
        connected = False

        def deliver(frames) -> bool:
            for frame in frames:
                if handle.cancelled:
                    return False
                try:
                    event_type, payload = decode_frame(frame)
                except MalformedFrameError as e:
                    track_malformed_frame()
                    logger.warning("Skipping malformed frame", event_type=e.event_type, reason=e.reason)
                    if on_malformed:
                        on_malformed(e)
                    continue
                on_frame(event_type, payload)
            return not handle.cancelled

        logger.debug("Opening stream", host=url.host, path=url.path, strategy=self.strategy.value)
        try:
            async with self.http_client.stream("GET", url, headers=headers) as response:
                connected = True
                if handle.cancelled:
                    return
                if not response.is_success:
                    raise TransportOpenError(
                        f"HTTP {response.status_code} {response.reason_phrase}",
                        status_code=response.status_code,
                    )

                async for raw in response.aiter_bytes():
                    if handle.cancelled:
                        return
                    bytes_received += len(raw)
                    if not deliver(parser.feed(raw)):
                        return

                if not deliver(parser.close()):
                    return

        except asyncio.CancelledError:
            logger.info("Stream reader cancelled", bytes_received=bytes_received)
            raise

        except TransportError as e:
            logger.error("Stream rejected by server", error=str(e))
            if not handle.cancelled:
                on_transport_error(e)
            return

        except httpx.HTTPError as e:
            if handle.cancelled:
                return
            if connected and bytes_received > 0:
                error: TransportError = TransportMidStreamError(
                    f"Connection lost: {e}", bytes_received=bytes_received
                )
            else:
                error = TransportOpenError(f"Connection failed: {e}")
            logger.error(
                "Stream transport failure",
                kind=error.kind.value,
                bytes_received=bytes_received,
                error=str(e)
            )
            on_transport_error(error)
            return

        if not handle.cancelled:
            logger.debug("Stream ended", bytes_received=bytes_received)
            on_transport_end()

    async def close(self):
        """Clean up resources"""
        await self.http_client.aclose()
