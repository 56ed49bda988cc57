"""
Error taxonomy for the streaming client
"""
from enum import Enum
from typing import Optional


class ComptaxError(Exception):
    """Base class for client errors"""
    pass


class MalformedFrameError(ComptaxError):
    """A frame whose data is not valid JSON or does not fit its event schema"""

    def __init__(self, event_type: Optional[str], raw_data: str, reason: str = "invalid JSON"):
        self.event_type = event_type
        self.raw_data = raw_data
        self.reason = reason
        super().__init__(f"Malformed '{event_type}' frame ({reason}): {raw_data[:200]}")


class TransportErrorKind(str, Enum):
    CONNECT = "connect"
    MID_STREAM = "mid_stream"
    HTTP_STATUS = "http_status"


class TransportError(ComptaxError):
    """Network-level failure of a stream connection"""

    def __init__(self, kind: TransportErrorKind, message: str):
        self.kind = kind
        super().__init__(message)


class TransportOpenError(TransportError):
    """Connection refused, or non-success status, before any frame"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        kind = TransportErrorKind.HTTP_STATUS if status_code is not None else TransportErrorKind.CONNECT
        self.status_code = status_code
        super().__init__(kind, message)


class TransportMidStreamError(TransportError):
    """Connection lost after part of the stream was received"""

    def __init__(self, message: str, bytes_received: int = 0):
        self.bytes_received = bytes_received
        super().__init__(TransportErrorKind.MID_STREAM, message)


class ServerReportedError(ComptaxError):
    """Failure sent by the server as an `error` frame"""

    def __init__(self, message: str, query_id: Optional[str] = None):
        self.query_id = query_id
        super().__init__(message)


class ApiError(ComptaxError):
    """REST call failure with a user-presentable message"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
