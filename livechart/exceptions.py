"""Error taxonomy for the chart synchronization engine.

None of these are fatal to the process. Transport and snapshot failures are
surfaced as a status on the series view; stale and malformed messages are
dropped and counted.
"""
from __future__ import annotations


class LiveChartError(Exception):
    """Base class for all engine errors."""


class TransportError(LiveChartError):
    """Push transport failed to connect, subscribe or keep receiving."""


class SnapshotFetchError(LiveChartError):
    """Historical snapshot request failed or returned an unusable payload."""

    def __init__(self, instrument: str, reason: str) -> None:
        super().__init__(f"Snapshot for {instrument} failed: {reason}")
        self.instrument = instrument
        self.reason = reason


class StaleMessage(LiveChartError):
    """Message for a superseded generation or older than the latest point."""


class MalformedMessage(LiveChartError):
    """Payload could not be parsed into a bar, indicator point or signal."""

    def __init__(self, topic: str, reason: str) -> None:
        super().__init__(f"Malformed {topic} message: {reason}")
        self.topic = topic
        self.reason = reason


class BackendRequestError(LiveChartError):
    """A pass-through REST call to the backend failed."""
