"""REST client for the trading backend.

``historical`` feeds the chart snapshot; the other calls are pass-through
helpers for the dashboard's buttons and tables and return decoded JSON as is.
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import httpx

from ..exceptions import BackendRequestError, MalformedMessage, SnapshotFetchError
from ..live.messages import parse_snapshot
from ..live.models import Bar
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

RETRY_STATUSES = {429, 503}


class BackendClient:
    """Thin async wrapper over the backend's ``/api/v1/stock`` routes."""

    def __init__(
        self,
        api_base: str,
        *,
        timeout: float = 15.0,
        user_agent: str = "livechart",
        max_attempts: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._headers = {"User-Agent": user_agent, "Accept": "application/json"}
        self._max_attempts = max(1, int(max_attempts))
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout, headers=self._headers, transport=self._transport
        )

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.api_base}/{path.lstrip('/')}"
        delay = 0.5
        attempt = 0
        while True:
            attempt += 1
            async with self._client() as client:
                resp = await client.get(url, params=params)
            if resp.status_code in RETRY_STATUSES and attempt < self._max_attempts:
                LOGGER.warning(
                    "HTTP %s from %s, backing off (attempt %s/%s)",
                    resp.status_code,
                    url,
                    attempt,
                    self._max_attempts,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, 5.0)
                continue
            resp.raise_for_status()
            if not resp.content:
                return None
            try:
                return resp.json()
            except ValueError:
                return resp.text

    async def historical(self, instrument: str) -> List[Bar]:
        """Fetch the bulk bar snapshot for ``instrument``."""

        try:
            rows = await self._get_json(instrument)
            bars = parse_snapshot(instrument, rows)
        except httpx.HTTPStatusError as exc:
            raise SnapshotFetchError(instrument, f"HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise SnapshotFetchError(instrument, str(exc) or type(exc).__name__) from exc
        except MalformedMessage as exc:
            raise SnapshotFetchError(instrument, exc.reason) from exc
        except (TypeError, ValueError, OverflowError) as exc:
            raise SnapshotFetchError(instrument, f"unusable payload ({exc})") from exc
        LOGGER.info("Fetched %s historical bars for %s", len(bars), instrument)
        return bars

    async def _pass_through(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            return await self._get_json(path, params)
        except httpx.HTTPError as exc:
            raise BackendRequestError(f"GET {path} failed: {exc}") from exc

    async def trigger_ingest(self, instrument: str) -> Any:
        return await self._pass_through(f"{instrument}/fetch")

    async def run_sma_backtest(self, instrument: str, start_date: str, end_date: str) -> Any:
        return await self._pass_through(
            f"{instrument}/backtest/sma-crossover",
            {"startDate": start_date, "endDate": end_date},
        )

    async def backtest_results(self) -> Any:
        return await self._pass_through("backtest/results")

    async def simulated_trades(self) -> Any:
        return await self._pass_through("simulated-trades")
