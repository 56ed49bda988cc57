"""
Incremental Server-Sent-Events frame parser

Network reads do not line up with frame boundaries, so the parser keeps a
line buffer across `feed` calls and only emits a frame once its terminating
blank line has been seen (or at end of input, see `close`).
"""
import codecs
import json
from typing import Any, AsyncIterable, AsyncIterator, Dict, Iterable, Iterator, List, Optional, Tuple, Union

import structlog

from comptax_chat.models.stream import SSEFrame
from comptax_chat.services.errors import MalformedFrameError

logger = structlog.get_logger()


class SSEParser:
    """Stateful line-protocol decoder; one instance per connection"""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event_type: Optional[str] = None
        self._data: Optional[str] = None
        self._last_event_type: Optional[str] = None

    def feed(self, chunk: Union[str, bytes]) -> List[SSEFrame]:
        """
        Consume a chunk of the stream

        Args:
            chunk: Raw bytes (decoded incrementally, so split UTF-8 sequences
                are safe) or already-decoded text

        Returns:
            Frames completed by this chunk, in stream order
        """
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk

        lines = self._buffer.split("\n")
        self._buffer = lines.pop()

        frames = []
        for line in lines:
            frame = self._process_line(line.rstrip("\r"))
            if frame is not None:
                frames.append(frame)
        return frames

    def close(self) -> List[SSEFrame]:
        """Signal end of input and flush a complete pending frame"""
        self._buffer += self._decoder.decode(b"", final=True)
        frames = []
        if self._buffer:
            line, self._buffer = self._buffer, ""
            frame = self._process_line(line.rstrip("\r"))
            if frame is not None:
                frames.append(frame)

        event_type = self._event_type or self._last_event_type
        if self._data and event_type:
            frames.append(SSEFrame(type=event_type, data=self._data))
        self._reset_pending()
        return frames

    def _process_line(self, line: str) -> Optional[SSEFrame]:
        if line == "":
            return self._dispatch()

        if line.startswith("event:"):
            event_type = line[6:].strip()
            if event_type:
                self._event_type = event_type
                self._last_event_type = event_type
        elif line.startswith("data:"):
            value = line[5:]
            if value.startswith(" "):
                value = value[1:]
            self._data = value
        # id:, retry: and ":" comments are not used by this protocol
        return None

    def _dispatch(self) -> Optional[SSEFrame]:
        if not self._data:
            self._reset_pending()
            return None
        frame = SSEFrame(type=self._event_type or self._last_event_type, data=self._data)
        self._reset_pending()
        return frame

    def _reset_pending(self) -> None:
        self._event_type = None
        self._data = None


def infer_event_type(payload: Dict[str, Any]) -> Optional[str]:
    """Guess the event of an untyped frame from its payload shape"""
    if "text" in payload and "completion" in payload:
        return "chunk"
    if "answer" in payload:
        return "complete"
    if "error" in payload:
        return "error"
    if "status" in payload and "completion" in payload:
        return "progress"
    return None


def decode_frame(frame: SSEFrame) -> Tuple[str, Dict[str, Any]]:
    """
    Parse a frame's JSON payload and settle its event type

    Raises:
        MalformedFrameError: data is not a JSON object, or the frame is
            untyped and its shape matches no known event
    """
    try:
        payload = json.loads(frame.data)
    except json.JSONDecodeError:
        raise MalformedFrameError(frame.type, frame.data)

    if not isinstance(payload, dict):
        raise MalformedFrameError(frame.type, frame.data, reason="payload is not an object")

    event_type = frame.type or infer_event_type(payload)
    if event_type is None:
        raise MalformedFrameError(None, frame.data, reason="unrecognized payload shape")
    return event_type, payload


def iter_frames(chunks: Iterable[Union[str, bytes]]) -> Iterator[SSEFrame]:
    """Lazily parse an iterable of chunks"""
    parser = SSEParser()
    for chunk in chunks:
        yield from parser.feed(chunk)
    yield from parser.close()


async def aiter_frames(chunks: AsyncIterable[Union[str, bytes]]) -> AsyncIterator[SSEFrame]:
    """Lazily parse an async iterable of chunks"""
    parser = SSEParser()
    async for chunk in chunks:
        for frame in parser.feed(chunk):
            yield frame
    for frame in parser.close():
        yield frame
