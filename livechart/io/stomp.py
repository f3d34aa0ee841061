"""STOMP 1.2 client over a plain websocket.

The backend exposes a STOMP broker behind a SockJS endpoint; its raw
websocket transport (``/ws/websocket``) speaks STOMP frames directly, so
only frame encoding and the connect/subscribe handshake live here.
"""
from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..exceptions import TransportError
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

STOMP_SUBPROTOCOLS = ["v12.stomp", "v11.stomp", "v10.stomp"]
NULL = "\x00"

_ESCAPES = {"\\": "\\\\", "\r": "\\r", "\n": "\\n", ":": "\\c"}
_UNESCAPES = {"\\\\": "\\", "\\r": "\r", "\\n": "\n", "\\c": ":"}


def _escape(value: str) -> str:
    return "".join(_ESCAPES.get(ch, ch) for ch in value)


def _unescape(value: str) -> str:
    out: List[str] = []
    idx = 0
    while idx < len(value):
        pair = value[idx : idx + 2]
        if pair in _UNESCAPES:
            out.append(_UNESCAPES[pair])
            idx += 2
        else:
            out.append(value[idx])
            idx += 1
    return "".join(out)


@dataclass
class StompFrame:
    command: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""

    @property
    def destination(self) -> str:
        return self.headers.get("destination", "")

    def encode(self) -> str:
        # CONNECT and CONNECTED headers are never escaped
        escape = self.command not in {"CONNECT", "CONNECTED"}
        lines = [self.command]
        for key, value in self.headers.items():
            if escape:
                key, value = _escape(key), _escape(str(value))
            lines.append(f"{key}:{value}")
        return "\n".join(lines) + "\n\n" + self.body + NULL

    @classmethod
    def decode(cls, raw: str) -> Optional["StompFrame"]:
        """Parse one frame; returns ``None`` for heart-beat EOLs."""

        text = raw.rstrip(NULL).lstrip("\r\n")
        if not text:
            return None
        head, _, body = text.partition("\n\n")
        lines = head.replace("\r\n", "\n").split("\n")
        command = lines[0].strip()
        unescape = command not in {"CONNECT", "CONNECTED"}
        headers: Dict[str, str] = {}
        for line in lines[1:]:
            if not line:
                continue
            key, sep, value = line.partition(":")
            if not sep:
                continue
            if unescape:
                key, value = _unescape(key), _unescape(value)
            # the first occurrence of a repeated header wins
            headers.setdefault(key, value)
        length = headers.get("content-length")
        if length is not None and length.isdigit():
            body = body.encode("utf-8")[: int(length)].decode("utf-8", errors="replace")
        return cls(command=command, headers=headers, body=body)


def split_frames(raw: str) -> List[StompFrame]:
    frames: List[StompFrame] = []
    for chunk in raw.split(NULL):
        frame = StompFrame.decode(chunk)
        if frame is not None:
            frames.append(frame)
    return frames


class StompWebSocketClient:
    """Minimal STOMP client with subscribe helpers."""

    def __init__(
        self,
        url: str,
        *,
        host: str = "/",
        heartbeat_ms: int = 0,
        connect_timeout: float = 10.0,
    ) -> None:
        self.url = url
        self.host = host
        self.heartbeat_ms = max(0, int(heartbeat_ms))
        self.connect_timeout = connect_timeout
        self._socket = None
        self._ids = itertools.count()
        self._subscriptions: Dict[str, str] = {}
        self._closing = False
        self._backlog: List[StompFrame] = []

    @property
    def connected(self) -> bool:
        return self._socket is not None and not self._closing

    async def connect(self) -> None:
        LOGGER.info("Connecting to STOMP endpoint: %s", self.url)
        try:
            self._socket = await asyncio.wait_for(
                websockets.connect(self.url, subprotocols=STOMP_SUBPROTOCOLS),
                timeout=self.connect_timeout,
            )
            await self._send(
                StompFrame(
                    "CONNECT",
                    {
                        "accept-version": "1.2,1.1,1.0",
                        "host": self.host,
                        "heart-beat": f"{self.heartbeat_ms},{self.heartbeat_ms}",
                    },
                )
            )
            await asyncio.wait_for(self._await_connected(), timeout=self.connect_timeout)
        except TransportError:
            await self._close_socket()
            raise
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            await self._close_socket()
            raise TransportError(f"STOMP connect to {self.url} failed: {exc}") from exc
        LOGGER.info("STOMP session established: %s", self.url)

    async def _await_connected(self) -> None:
        connected = False
        while not connected:
            for frame in split_frames(await self._recv_raw()):
                if connected:
                    # frames sharing the websocket message with CONNECTED
                    self._backlog.append(frame)
                elif frame.command == "CONNECTED":
                    connected = True
                elif frame.command == "ERROR":
                    raise TransportError(frame.headers.get("message") or frame.body or "STOMP ERROR")
                else:
                    self._backlog.append(frame)

    async def _recv_raw(self) -> str:
        if self._socket is None:
            raise TransportError("Websocket not connected")
        data = await self._socket.recv()
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        return data

    async def _send(self, frame: StompFrame) -> None:
        if self._socket is None:
            raise TransportError("Websocket not connected")
        try:
            await self._socket.send(frame.encode())
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"STOMP send failed: {exc}") from exc

    async def subscribe(self, destination: str) -> str:
        sub_id = f"sub-{next(self._ids)}"
        await self._send(
            StompFrame("SUBSCRIBE", {"id": sub_id, "destination": destination, "ack": "auto"})
        )
        self._subscriptions[sub_id] = destination
        LOGGER.debug("Subscribed %s -> %s", sub_id, destination)
        return sub_id

    async def unsubscribe(self, sub_id: str) -> None:
        if self._subscriptions.pop(sub_id, None) is None:
            return
        await self._send(StompFrame("UNSUBSCRIBE", {"id": sub_id}))

    async def messages(self) -> AsyncIterator[StompFrame]:
        """Yield MESSAGE frames until the session is closed."""

        while self._backlog:
            frame = self._backlog.pop(0)
            if frame.command == "MESSAGE":
                yield frame
        while True:
            try:
                raw = await self._recv_raw()
            except ConnectionClosed as exc:
                if self._closing:
                    return
                raise TransportError(f"STOMP connection closed: {exc}") from exc
            except (OSError, WebSocketException) as exc:
                raise TransportError(f"STOMP receive failed: {exc}") from exc
            for frame in split_frames(raw):
                if frame.command == "MESSAGE":
                    yield frame
                elif frame.command == "ERROR":
                    raise TransportError(frame.headers.get("message") or frame.body or "STOMP ERROR")

    async def disconnect(self) -> None:
        if self._socket is None:
            return
        self._closing = True
        try:
            for sub_id in list(self._subscriptions):
                await self.unsubscribe(sub_id)
            await self._send(StompFrame("DISCONNECT", {"receipt": "disconnect"}))
        except TransportError as exc:
            LOGGER.debug("Ignoring error during STOMP disconnect: %s", exc)
        finally:
            await self._close_socket()
            LOGGER.info("STOMP connection closed")

    async def _close_socket(self) -> None:
        socket, self._socket = self._socket, None
        if socket is not None:
            try:
                await socket.close()
            except (OSError, WebSocketException) as exc:
                LOGGER.debug("Websocket close failed: %s", exc)
