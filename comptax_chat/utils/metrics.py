"""
Metrics tracking utilities
"""
from prometheus_client import Counter, Histogram
import structlog

logger = structlog.get_logger()

# Define metrics
streams_started = Counter(
    'comptax_streams_started_total',
    'Total number of stream sessions opened'
)

streams_finished = Counter(
    'comptax_streams_finished_total',
    'Total number of stream sessions by terminal state',
    ['outcome']
)

frames_received = Counter(
    'comptax_frames_received_total',
    'Frames received per event type',
    ['event']
)

malformed_frames = Counter(
    'comptax_malformed_frames_total',
    'Frames skipped because their payload could not be decoded'
)

first_chunk_latency = Histogram(
    'comptax_first_chunk_latency_seconds',
    'Time from session start to first answer chunk',
    buckets=[0.1, 0.5, 1.0, 2.0, 3.0, 5.0, 10.0, 30.0]
)

stream_duration = Histogram(
    'comptax_stream_duration_seconds',
    'Time from session start to terminal state',
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0]
)


def track_stream_started():
    """Track a new session"""
    streams_started.inc()


def track_frame(event_type: str):
    """Track a dispatched frame"""
    frames_received.labels(event=event_type).inc()


def track_malformed_frame():
    malformed_frames.inc()


def track_first_chunk(latency: float):
    first_chunk_latency.observe(latency)


def track_stream_finished(outcome: str, duration: float, session_id: str):
    """Track a session reaching a terminal state"""
    streams_finished.labels(outcome=outcome).inc()
    stream_duration.observe(duration)
    logger.info(
        "Stream finished",
        session_id=session_id,
        outcome=outcome,
        duration=duration
    )
