"""Command line interface for the live chart engine."""
from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

from .config import get_settings
from .exceptions import BackendRequestError
from .io.backend import BackendClient
from .live.controller import SyncController
from .live.series_store import SeriesView
from .utils.logging import configure_logging, get_logger

LOGGER = get_logger(__name__)


def _backend() -> BackendClient:
    settings = get_settings()
    return BackendClient(
        settings.backend.api_base,
        timeout=settings.backend.request_timeout,
        user_agent=settings.backend.user_agent,
    )


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def describe_view(view: SeriesView) -> str:
    last = view.bars[-1] if view.bars else None
    last_text = f"last={last.time}@{last.close}" if last else "last=-"
    return (
        f"{view.instrument} gen={view.generation} status={view.status} "
        f"bars={len(view.bars)} {last_text} signals={len(view.signals)} "
        f"channels={','.join(sorted(view.indicator_channels)) or '-'}"
    )


async def watch(symbol: str, duration: Optional[float] = None) -> SeriesView:
    """Follow ``symbol`` live and log each change until ``duration`` elapses."""

    controller = SyncController.from_settings(get_settings())
    last_line: dict[str, str] = {}

    def log_view(view: SeriesView) -> None:
        line = describe_view(view)
        if last_line.get("text") != line:
            last_line["text"] = line
            LOGGER.info("%s", line)

    controller.add_listener(log_view)
    controller.switch_instrument(symbol)
    try:
        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)
    finally:
        view = controller.current_series()
        await controller.close()
    return view


def cmd_watch(symbol: str, duration: Optional[float]) -> None:
    try:
        view = asyncio.run(watch(symbol, duration))
    except KeyboardInterrupt:
        LOGGER.info("Stopped watching %s", symbol)
        return
    LOGGER.info("Final state: %s", describe_view(view))


def cmd_serve(host: str, port: int) -> None:
    import uvicorn

    uvicorn.run("livechart.api.app:app", host=host, port=port)


def _run_backend_call(call: Callable[[BackendClient], Awaitable[Any]]) -> None:
    try:
        payload = asyncio.run(call(_backend()))
    except BackendRequestError as exc:
        LOGGER.error("%s", exc)
        raise SystemExit(1) from exc
    _print_json(payload)


def main(argv: Optional[list[str]] = None) -> None:
    settings = get_settings()
    configure_logging(settings.log_level)

    parser = argparse.ArgumentParser(description="Live chart stream engine")
    sub = parser.add_subparsers(dest="command")

    watch_cmd = sub.add_parser("watch", help="Follow one instrument and log chart updates")
    watch_cmd.add_argument("symbol", nargs="?", default=settings.data.symbol)
    watch_cmd.add_argument("--duration", type=float, default=None)

    serve = sub.add_parser("serve", help="Run the HTTP/websocket API")
    serve.add_argument("--host", default=settings.api.host)
    serve.add_argument("--port", type=int, default=settings.api.port)

    ingest = sub.add_parser("ingest", help="Ask the backend to fetch fresh data")
    ingest.add_argument("symbol", nargs="?", default=settings.data.symbol)

    backtest = sub.add_parser("backtest", help="Run the SMA crossover backtest")
    backtest.add_argument("symbol", nargs="?", default=settings.data.symbol)
    backtest.add_argument("--start", default="2024-01-01")
    backtest.add_argument("--end", default="2024-01-05")

    sub.add_parser("results", help="List backtest results")
    sub.add_parser("trades", help="List simulated trades")

    args = parser.parse_args(argv)

    if args.command == "watch":
        cmd_watch(args.symbol.upper(), args.duration)
    elif args.command == "serve":
        cmd_serve(args.host, args.port)
    elif args.command == "ingest":
        _run_backend_call(lambda client: client.trigger_ingest(args.symbol.upper()))
    elif args.command == "backtest":
        _run_backend_call(
            lambda client: client.run_sma_backtest(args.symbol.upper(), args.start, args.end)
        )
    elif args.command == "results":
        _run_backend_call(lambda client: client.backtest_results())
    elif args.command == "trades":
        _run_backend_call(lambda client: client.simulated_trades())
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
