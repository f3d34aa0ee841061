"""Switch instruments atomically and fence off superseded async work.

Each instrument switch bumps a generation counter. The snapshot request and
the push subscription started for a switch carry that generation; anything
they deliver after a newer switch is discarded instead of reaching the
current store.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Iterable, List, Mapping, Optional, Protocol, Set

from ..config import Settings
from ..exceptions import MalformedMessage, SnapshotFetchError, StaleMessage, TransportError
from ..io.backend import BackendClient
from ..io.stomp import StompWebSocketClient
from ..utils.logging import get_logger
from .messages import DEFAULT_INDICATOR_CHANNELS, ParsedItem, ParsedMessage
from .models import Bar, IndicatorPoint, Signal, Topic
from .reconcile import ReconcileOutcome
from .series_store import SeriesStore, SeriesView
from .subscription import PushTransport, SubscriptionManager, SubscriptionStatus

LOGGER = get_logger(__name__)

Listener = Callable[[SeriesView], None]


class SnapshotSource(Protocol):
    def historical(self, instrument: str) -> Awaitable[List[Bar]]: ...


def normalize_instrument(instrument: str) -> str:
    symbol = (instrument or "").strip().upper()
    if not symbol:
        raise ValueError("instrument must not be empty")
    return symbol


class SyncController:
    """Single owner of the active series store and the generation counter."""

    def __init__(
        self,
        snapshots: SnapshotSource,
        transport_factory: Callable[[str], PushTransport],
        *,
        topic_templates: Optional[Mapping[Topic, str]] = None,
        indicator_channels: Iterable[str] = DEFAULT_INDICATOR_CHANNELS,
        max_points: Optional[int] = None,
    ) -> None:
        self._snapshots = snapshots
        self._transport_factory = transport_factory
        self._topic_templates = topic_templates
        self._channels = tuple(indicator_channels)
        self._max_points = max_points
        self._generation = 0
        self._store: Optional[SeriesStore] = None
        self._manager: Optional[SubscriptionManager] = None
        self._snapshot_task: Optional[asyncio.Task] = None
        self._subscription_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._snapshot_settled = False
        self._backlog: List[ParsedMessage] = []
        self._status = SubscriptionStatus.DISCONNECTED
        self._snapshot_error: Optional[str] = None
        self._transport_error: Optional[str] = None
        self._listeners: List[Listener] = []

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncController":
        backend = BackendClient(
            settings.backend.api_base,
            timeout=settings.backend.request_timeout,
            user_agent=settings.backend.user_agent,
        )
        stream = settings.stream

        def transport_factory(instrument: str) -> StompWebSocketClient:
            return StompWebSocketClient(
                settings.backend.ws_url,
                host=stream.stomp_host,
                heartbeat_ms=stream.heartbeat_ms,
                connect_timeout=stream.connect_timeout,
            )

        return cls(
            backend,
            transport_factory,
            topic_templates={
                Topic.PRICE: stream.price_topic,
                Topic.INDICATORS: stream.indicators_topic,
                Topic.SIGNALS: stream.signals_topic,
            },
            indicator_channels=settings.data.indicator_channels,
            max_points=settings.data.max_points,
        )

    # ---------------------------------------------------------------- state
    @property
    def generation(self) -> int:
        return self._generation

    @property
    def instrument(self) -> Optional[str]:
        return self._store.instrument if self._store is not None else None

    @property
    def status(self) -> SubscriptionStatus:
        return self._status

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self) -> None:
        if not self._listeners or self._store is None:
            return
        view = self.current_series()
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception:  # a broken listener must not stop the feed
                LOGGER.exception("Series listener failed")

    # ------------------------------------------------------------ switching
    def switch_instrument(self, instrument: str, *, force: bool = False) -> int:
        """Make ``instrument`` current; returns the new generation.

        Must be called from the running event loop. The snapshot request and
        the subscription run in the background.
        """

        symbol = normalize_instrument(instrument)
        if (
            not force
            and self._store is not None
            and self._store.instrument == symbol
            and self._status is not SubscriptionStatus.FAILED
        ):
            return self._generation

        self._generation += 1
        generation = self._generation
        LOGGER.info(
            "Switching to %s (gen=%s, previous=%s)", symbol, generation, self.instrument
        )
        self._release_previous()

        self._store = SeriesStore(symbol, generation, max_points=self._max_points)
        self._snapshot_settled = False
        self._backlog = []
        self._status = SubscriptionStatus.DISCONNECTED
        self._snapshot_error = None
        self._transport_error = None

        # snapshot task first so its request is issued before the subscription connects
        self._snapshot_task = asyncio.ensure_future(self._load_snapshot(symbol, generation))
        manager = SubscriptionManager(
            symbol,
            generation,
            self._transport_factory(symbol),
            self._on_message,
            topic_templates=self._topic_templates,
            indicator_channels=self._channels,
            on_status=self._on_status,
            on_malformed=self._on_malformed,
        )
        self._manager = manager
        self._subscription_task = asyncio.ensure_future(self._run_subscription(manager))
        self._notify()
        return generation

    def retry(self) -> int:
        """Re-run the switch for the current instrument after a failure."""

        if self._store is None:
            raise RuntimeError("No instrument selected")
        return self.switch_instrument(self._store.instrument, force=True)

    def _release_previous(self) -> None:
        if self._manager is not None:
            teardown = self._manager.request_teardown()
            self._background.add(teardown)
            teardown.add_done_callback(self._background.discard)
            self._manager = None
        # a superseded snapshot is left to finish; the generation check discards it
        snapshot = self._snapshot_task
        if snapshot is not None and not snapshot.done():
            self._background.add(snapshot)
            snapshot.add_done_callback(self._background.discard)
        task = self._subscription_task
        if task is not None and not task.done():
            task.cancel()
        self._snapshot_task = None
        self._subscription_task = None

    async def settle(self) -> None:
        """Wait until the current generation's snapshot and handshake finish."""

        snapshot = self._snapshot_task
        if snapshot is not None:
            await asyncio.gather(snapshot, return_exceptions=True)
        manager = self._manager
        task = self._subscription_task
        if manager is None or task is None:
            return
        ready = asyncio.ensure_future(manager.wait_ready())
        await asyncio.wait({ready, task}, return_when=asyncio.FIRST_COMPLETED)
        if not ready.done():
            ready.cancel()

    async def close(self) -> None:
        manager = self._manager
        self._release_previous()
        if manager is not None:
            await manager.request_teardown()
        pending = list(self._background)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._status = SubscriptionStatus.DISCONNECTED
        self._notify()

    # -------------------------------------------------------------- snapshot
    async def _load_snapshot(self, instrument: str, generation: int) -> None:
        try:
            bars = await self._snapshots.historical(instrument)
        except SnapshotFetchError as exc:
            LOGGER.warning("%s; live updates continue", exc)
            self._snapshot_failed(generation, str(exc))
            return
        except Exception as exc:
            LOGGER.exception("Unexpected snapshot failure for %s gen=%s", instrument, generation)
            self._snapshot_failed(generation, f"Snapshot for {instrument} failed: {exc!r}")
            return
        if generation != self._generation or self._store is None:
            LOGGER.info(
                "Discarding %s snapshot for superseded gen=%s (current=%s)",
                instrument,
                generation,
                self._generation,
            )
            return
        self._store.load_snapshot(bars)
        LOGGER.info("Loaded %s bars for %s gen=%s", len(self._store.bars), instrument, generation)
        self._settle_snapshot()

    def _snapshot_failed(self, generation: int, error: str) -> None:
        if generation != self._generation:
            return
        self._snapshot_error = error
        self._settle_snapshot()

    def _settle_snapshot(self) -> None:
        self._snapshot_settled = True
        backlog, self._backlog = self._backlog, []
        for parsed in backlog:
            self._apply_message(parsed)
        self._notify()

    # ---------------------------------------------------------- subscription
    async def _run_subscription(self, manager: SubscriptionManager) -> None:
        try:
            await manager.run()
        except TransportError as exc:
            LOGGER.warning("Live feed for %s unavailable: %s", manager.instrument, exc)

    def _on_status(
        self, generation: int, status: SubscriptionStatus, error: Optional[BaseException]
    ) -> None:
        if generation != self._generation:
            return
        self._status = status
        if error is not None:
            self._transport_error = str(error)
        self._notify()

    def _on_malformed(self, generation: int, exc: MalformedMessage) -> None:
        if generation == self._generation and self._store is not None:
            self._store.malformed_count += 1

    def _on_message(self, generation: int, parsed: ParsedMessage) -> None:
        try:
            self._check_generation(generation)
        except StaleMessage as exc:
            LOGGER.debug("%s", exc)
            if self._store is not None:
                self._store.fenced_count += 1
            return
        if not self._snapshot_settled:
            self._backlog.append(parsed)
            return
        self._apply_message(parsed)
        self._notify()

    def _check_generation(self, generation: int) -> None:
        if generation != self._generation:
            raise StaleMessage(
                f"Message from gen={generation} dropped (current gen={self._generation})"
            )

    def _apply_message(self, parsed: ParsedMessage) -> None:
        for item in parsed.items:
            self._reconcile_item(item)

    def apply(self, generation: int, item: ParsedItem) -> Optional[object]:
        """Reconcile one item if ``generation`` is current, otherwise do nothing."""

        if generation != self._generation or self._store is None:
            return None
        return self._reconcile_item(item)

    def _reconcile_item(self, item: ParsedItem) -> Optional[object]:
        store = self._store
        if store is None:
            return None
        if isinstance(item, Bar):
            outcome = store.apply_bar(item)
            if outcome is ReconcileOutcome.STALE:
                LOGGER.debug("Rejected stale %s bar at %s", store.instrument, item.time)
            return outcome
        if isinstance(item, IndicatorPoint):
            return store.apply_indicator(item)
        if isinstance(item, Signal):
            if item.instrument != store.instrument:
                LOGGER.debug(
                    "Dropping %s signal on %s feed", item.instrument, store.instrument
                )
                store.fenced_count += 1
                return None
            return store.apply_signal(item)
        raise TypeError(f"Unsupported item {type(item).__name__}")

    # ----------------------------------------------------------------- reads
    def current_series(self, instrument: Optional[str] = None) -> SeriesView:
        """Point-in-time copy of the store for ``instrument`` (default: current)."""

        store = self._store
        if store is None or (instrument is not None and normalize_instrument(instrument) != store.instrument):
            symbol = normalize_instrument(instrument) if instrument else ""
            return SeriesView(instrument=symbol, generation=self._generation)
        return store.view(
            status=self._status.value,
            snapshot_error=self._snapshot_error,
            transport_error=self._transport_error,
        )
