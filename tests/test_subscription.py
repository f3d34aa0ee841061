from __future__ import annotations

import asyncio
import json
from typing import List, Tuple

import pytest
from fakes import FakeTransport, bar_payload, drain

from livechart.exceptions import TransportError
from livechart.live.messages import ParsedMessage
from livechart.live.models import Bar, Topic
from livechart.live.subscription import SubscriptionManager, SubscriptionStatus


def _manager(transport: FakeTransport, received: List[Tuple[int, ParsedMessage]], statuses=None, malformed=None):
    return SubscriptionManager(
        "IBM",
        7,
        transport,
        lambda gen, parsed: received.append((gen, parsed)),
        on_status=(lambda gen, status, error: statuses.append(status)) if statuses is not None else None,
        on_malformed=(lambda gen, exc: malformed.append(exc)) if malformed is not None else None,
    )


def test_connect_subscribes_all_topics_for_instrument() -> None:
    async def runner() -> None:
        transport = FakeTransport()
        statuses: List[SubscriptionStatus] = []
        manager = _manager(transport, [], statuses)

        await manager.connect()

        assert statuses == [
            SubscriptionStatus.CONNECTING,
            SubscriptionStatus.CONNECTED,
            SubscriptionStatus.SUBSCRIBED,
        ]
        assert sorted(transport.subscriptions.values()) == [
            "/topic/indicators/IBM",
            "/topic/stock-data/IBM",
            "/topic/trading-signals/IBM",
        ]

    asyncio.run(runner())


def test_messages_are_tagged_with_generation_and_topic() -> None:
    async def runner() -> None:
        transport = FakeTransport()
        received: List[Tuple[int, ParsedMessage]] = []
        manager = _manager(transport, received)
        task = asyncio.ensure_future(manager.run())
        await drain()

        transport.push("/topic/stock-data/IBM", json.dumps(bar_payload(60)))
        transport.push("/topic/unknown/IBM", "{}")
        await drain()

        assert len(received) == 1
        generation, parsed = received[0]
        assert generation == 7
        assert parsed.topic is Topic.PRICE
        assert isinstance(parsed.items[0], Bar)

        await manager.request_teardown()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(runner())


def test_malformed_message_does_not_stop_the_pump() -> None:
    async def runner() -> None:
        transport = FakeTransport()
        received: List[Tuple[int, ParsedMessage]] = []
        malformed: list = []
        manager = _manager(transport, received, malformed=malformed)
        task = asyncio.ensure_future(manager.run())
        await drain()

        transport.push("/topic/stock-data/IBM", "{broken")
        transport.push(
            "/topic/stock-data/IBM",
            '{"timestamp": 1e400, "open": 1, "high": 2, "low": 0, "close": 1}',
        )
        transport.push("/topic/stock-data/IBM", json.dumps(bar_payload(120)))
        await drain()

        assert len(malformed) == 2
        assert [parsed.items[0].time for _, parsed in received] == [120]
        assert not task.done()
        await manager.request_teardown()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(runner())


def test_teardown_unsubscribes_and_drops_late_messages() -> None:
    async def runner() -> None:
        transport = FakeTransport()
        received: List[Tuple[int, ParsedMessage]] = []
        manager = _manager(transport, received)
        await manager.connect()

        teardown = manager.request_teardown()
        manager.dispatch("/topic/stock-data/IBM", json.dumps(bar_payload(60)))
        await teardown

        assert received == []
        assert manager.dropped_after_teardown == 1
        assert len(transport.unsubscribed) == 3
        assert transport.disconnected
        assert manager.status is SubscriptionStatus.DISCONNECTED

    asyncio.run(runner())


def test_connect_failure_is_terminal_and_surfaced() -> None:
    async def runner() -> None:
        transport = FakeTransport(fail_connect=True)
        statuses: List[SubscriptionStatus] = []
        manager = _manager(transport, [], statuses)

        with pytest.raises(TransportError):
            await manager.run()

        assert statuses[-1] is SubscriptionStatus.FAILED
        assert transport.subscriptions == {}

    asyncio.run(runner())


def test_teardown_during_handshake_never_subscribes() -> None:
    async def runner() -> None:
        gate = asyncio.Event()
        transport = FakeTransport(connect_gate=gate)
        manager = _manager(transport, [])
        task = asyncio.ensure_future(manager.run())
        await drain()
        assert manager.status is SubscriptionStatus.CONNECTING

        manager.request_teardown()
        gate.set()
        await asyncio.wait_for(task, timeout=1)

        assert transport.subscriptions == {}
        assert transport.disconnected
        assert manager.status is SubscriptionStatus.DISCONNECTED

    asyncio.run(runner())


def test_dropped_connection_marks_failed() -> None:
    async def runner() -> None:
        transport = FakeTransport()
        statuses: List[SubscriptionStatus] = []
        manager = _manager(transport, [], statuses)
        task = asyncio.ensure_future(manager.run())
        await drain()

        transport.break_connection()
        with pytest.raises(TransportError):
            await asyncio.wait_for(task, timeout=1)
        assert manager.status is SubscriptionStatus.FAILED

    asyncio.run(runner())
