"""Network I/O for the chart engine."""

from .backend import BackendClient
from .stomp import StompFrame, StompWebSocketClient

__all__ = ["BackendClient", "StompFrame", "StompWebSocketClient"]
