import time

import pytest
from fastapi.testclient import TestClient

from fakes import FakeBackend, TransportPool, make_bar

from livechart.api.app import create_app
from livechart.live.controller import SyncController


def wait_for_status(client: TestClient, predicate, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        payload = client.get("/status").json()
        if predicate(payload) or time.monotonic() > deadline:
            return payload
        time.sleep(0.02)


@pytest.fixture()
def client():
    backend = FakeBackend({"IBM": [make_bar(100), make_bar(200), make_bar(300, close=12.5)]})
    controller = SyncController(backend, TransportPool())
    with TestClient(create_app(controller)) as test_client:
        yield test_client


def test_health(client: TestClient):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_status_before_any_selection(client: TestClient):
    payload = client.get("/status").json()
    assert payload["instrument"] is None
    assert payload["generation"] == 0
    assert payload["status"] == "Disconnected"


def test_select_instrument_loads_snapshot(client: TestClient):
    resp = client.put("/instrument", json={"instrument": "ibm"})
    assert resp.status_code == 200
    assert resp.json() == {"instrument": "IBM", "generation": 1}

    status = wait_for_status(
        client, lambda p: p["snapshot_loaded"] and p["status"] == "Subscribed"
    )
    assert status["snapshot_loaded"]
    assert status["status"] == "Subscribed"
    assert status["diagnostics"]["stale"] == 0

    series = client.get("/series").json()
    assert [bar["time"] for bar in series["bars"]] == [100, 200, 300]
    assert series["bars"][-1]["close"] == 12.5


def test_series_frame_records(client: TestClient):
    client.put("/instrument", json={"instrument": "IBM"})
    wait_for_status(client, lambda p: p["snapshot_loaded"])

    payload = client.get("/series", params={"frame": "true"}).json()
    frame = payload["frame"]
    assert [row["time"] for row in frame] == [100, 200, 300]
    assert frame[0]["volume"] is None


def test_series_for_other_instrument_is_empty(client: TestClient):
    client.put("/instrument", json={"instrument": "IBM"})
    payload = client.get("/series", params={"instrument": "aapl"}).json()
    assert payload["instrument"] == "AAPL"
    assert payload["bars"] == []


def test_blank_instrument_is_rejected(client: TestClient):
    assert client.put("/instrument", json={"instrument": "   "}).status_code == 400
    assert client.put("/instrument", json={"instrument": ""}).status_code == 422


def test_retry_without_selection_conflicts(client: TestClient):
    assert client.post("/instrument/retry").status_code == 409


def test_retry_bumps_generation(client: TestClient):
    client.put("/instrument", json={"instrument": "IBM"})
    resp = client.post("/instrument/retry")
    assert resp.status_code == 200
    assert resp.json()["generation"] == 2


def test_stream_sends_current_view_first(client: TestClient):
    client.put("/instrument", json={"instrument": "IBM"})
    wait_for_status(client, lambda p: p["snapshot_loaded"])

    with client.websocket_connect("/series/stream") as ws:
        first = ws.receive_json()

    assert first["instrument"] == "IBM"
    assert len(first["bars"]) == 3
