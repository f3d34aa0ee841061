"""Push-subscription lifecycle for one instrument.

State machine::

    Disconnected -> Connecting -> Connected -> Subscribed
                                            -> Disconnected (teardown)
                                            -> Failed (transport error)

A manager serves exactly one instrument-switch generation. Once teardown is
requested it drops every message the transport still delivers.
"""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    Mapping,
    Optional,
    Protocol,
)

from ..exceptions import MalformedMessage, TransportError
from ..utils.logging import get_logger
from .messages import DEFAULT_INDICATOR_CHANNELS, ParsedMessage, parse_message
from .models import Topic

LOGGER = get_logger(__name__)

DEFAULT_TOPIC_TEMPLATES: Dict[Topic, str] = {
    Topic.PRICE: "/topic/stock-data/{instrument}",
    Topic.INDICATORS: "/topic/indicators/{instrument}",
    Topic.SIGNALS: "/topic/trading-signals/{instrument}",
}


class SubscriptionStatus(str, Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    SUBSCRIBED = "Subscribed"
    FAILED = "Failed"


class PushFrame(Protocol):
    @property
    def destination(self) -> str: ...

    @property
    def body(self) -> Any: ...


class PushTransport(Protocol):
    """Publish/subscribe primitives the manager drives."""

    async def connect(self) -> None: ...

    async def subscribe(self, destination: str) -> str: ...

    async def unsubscribe(self, sub_id: str) -> None: ...

    def messages(self) -> AsyncIterator[PushFrame]: ...

    async def disconnect(self) -> None: ...


MessageSink = Callable[[int, ParsedMessage], None]
StatusSink = Callable[[int, SubscriptionStatus, Optional[BaseException]], None]
MalformedSink = Callable[[int, MalformedMessage], None]


class SubscriptionManager:
    """Own the transport and topic subscriptions for one instrument."""

    def __init__(
        self,
        instrument: str,
        generation: int,
        transport: PushTransport,
        sink: MessageSink,
        *,
        topic_templates: Optional[Mapping[Topic, str]] = None,
        indicator_channels: Iterable[str] = DEFAULT_INDICATOR_CHANNELS,
        on_status: Optional[StatusSink] = None,
        on_malformed: Optional[MalformedSink] = None,
    ) -> None:
        self.instrument = instrument
        self.generation = generation
        self._transport = transport
        self._sink = sink
        templates = dict(topic_templates or DEFAULT_TOPIC_TEMPLATES)
        self.destinations: Dict[str, Topic] = {
            templates[topic].format(instrument=instrument): topic for topic in Topic
        }
        self._channels = tuple(indicator_channels)
        self._on_status = on_status
        self._on_malformed = on_malformed
        self._sub_ids: Dict[str, str] = {}
        self._status = SubscriptionStatus.DISCONNECTED
        self._teardown_requested = False
        self._teardown_task: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()
        self.dropped_after_teardown = 0

    @property
    def status(self) -> SubscriptionStatus:
        return self._status

    @property
    def torn_down(self) -> bool:
        return self._teardown_requested

    def _set_status(self, status: SubscriptionStatus, error: Optional[BaseException] = None) -> None:
        if status is self._status:
            return
        LOGGER.info(
            "Subscription %s gen=%s: %s -> %s",
            self.instrument,
            self.generation,
            self._status.value,
            status.value,
        )
        self._status = status
        if self._on_status is not None:
            self._on_status(self.generation, status, error)

    # ------------------------------------------------------------ lifecycle
    async def wait_ready(self) -> None:
        """Block until the handshake has succeeded, failed or been abandoned."""

        await self._ready.wait()

    async def connect(self) -> None:
        """Connect the transport and subscribe price, indicators and signals."""

        try:
            await self._connect()
        finally:
            self._ready.set()

    async def _connect(self) -> None:
        if self._teardown_requested:
            return
        self._set_status(SubscriptionStatus.CONNECTING)
        try:
            await self._transport.connect()
        except TransportError as exc:
            if self._teardown_requested:
                return
            self._set_status(SubscriptionStatus.FAILED, exc)
            raise
        if self._teardown_requested:
            # teardown came in during the handshake and could not close it yet
            await self._close_transport()
            return
        self._set_status(SubscriptionStatus.CONNECTED)
        try:
            for destination in self.destinations:
                self._sub_ids[destination] = await self._transport.subscribe(destination)
        except TransportError as exc:
            if self._teardown_requested:
                return
            self._set_status(SubscriptionStatus.FAILED, exc)
            await self._close_transport()
            raise
        self._set_status(SubscriptionStatus.SUBSCRIBED)

    async def pump(self) -> None:
        """Hand inbound messages to the sink until teardown or failure."""

        try:
            async for frame in self._transport.messages():
                if self._teardown_requested:
                    self.dropped_after_teardown += 1
                    LOGGER.debug("Dropping late message for %s gen=%s", self.instrument, self.generation)
                    continue
                self.dispatch(frame.destination, frame.body)
        except TransportError as exc:
            if self._teardown_requested:
                return
            self._set_status(SubscriptionStatus.FAILED, exc)
            raise

    async def run(self) -> None:
        await self.connect()
        if self._status is SubscriptionStatus.SUBSCRIBED:
            await self.pump()

    def dispatch(self, destination: str, body: Any) -> None:
        """Parse one message by topic type and forward it tagged with the generation."""

        if self._teardown_requested:
            self.dropped_after_teardown += 1
            return
        topic = self.destinations.get(destination)
        if topic is None:
            LOGGER.debug("Ignoring message on unknown destination %s", destination)
            return
        try:
            parsed = parse_message(topic, body, self._channels)
        except MalformedMessage as exc:
            LOGGER.warning("Dropping malformed message for %s: %s", self.instrument, exc)
            if self._on_malformed is not None:
                self._on_malformed(self.generation, exc)
            return
        self._sink(self.generation, parsed)

    def request_teardown(self) -> asyncio.Task:
        """Start teardown without waiting; messages are dropped from now on."""

        self._teardown_requested = True
        if self._teardown_task is None:
            self._teardown_task = asyncio.ensure_future(self.teardown())
        return self._teardown_task

    async def teardown(self) -> None:
        self._teardown_requested = True
        if self._status is SubscriptionStatus.DISCONNECTED:
            return
        try:
            for destination, sub_id in list(self._sub_ids.items()):
                await self._transport.unsubscribe(sub_id)
                self._sub_ids.pop(destination, None)
        except TransportError as exc:
            LOGGER.debug("Unsubscribe failed during teardown of %s: %s", self.instrument, exc)
        await self._close_transport()

    async def _close_transport(self) -> None:
        try:
            await self._transport.disconnect()
        except TransportError as exc:
            LOGGER.debug("Disconnect failed for %s: %s", self.instrument, exc)
        self._sub_ids.clear()
        self._set_status(SubscriptionStatus.DISCONNECTED)
