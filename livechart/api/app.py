"""FastAPI app exposing the live chart state to a display layer."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import pandas as pd
from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..config import get_settings
from ..live.controller import SyncController
from ..live.series_store import SeriesView
from ..utils.logging import get_logger
from ..version import APP_VERSION
from .dto import InstrumentRequest, InstrumentResponse, StatusResponse

LOGGER = get_logger(__name__)


def _frame_records(view: SeriesView) -> List[Dict[str, Any]]:
    frame = view.to_frame().reset_index()
    frame = frame.astype(object).where(pd.notna(frame), None)
    return frame.to_dict(orient="records")


def _controller(request: Request) -> SyncController:
    return request.app.state.controller


def create_app(controller: Optional[SyncController] = None) -> FastAPI:
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "controller", None) is None:
            app.state.controller = SyncController.from_settings(settings)
        try:
            yield
        finally:
            await app.state.controller.close()

    app = FastAPI(title="Live Chart API", version=APP_VERSION, lifespan=lifespan)
    app.state.controller = controller
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok", "version": APP_VERSION}

    @app.get("/series")
    async def series(
        request: Request,
        instrument: Optional[str] = Query(None, description="Defaults to the selected instrument"),
        frame: bool = Query(False, description="Include the time-aligned table"),
    ) -> JSONResponse:
        try:
            view = _controller(request).current_series(instrument)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        payload = view.as_dict()
        if frame:
            payload["frame"] = _frame_records(view)
        return JSONResponse(payload)

    @app.get("/status", response_model=StatusResponse)
    async def status(request: Request) -> StatusResponse:
        view = _controller(request).current_series()
        return StatusResponse(
            instrument=view.instrument or None,
            generation=view.generation,
            status=view.status,
            snapshot_loaded=view.snapshot_loaded,
            snapshot_error=view.snapshot_error,
            transport_error=view.transport_error,
            diagnostics=dict(view.diagnostics),
        )

    @app.put("/instrument", response_model=InstrumentResponse)
    async def select_instrument(request: Request, payload: InstrumentRequest) -> InstrumentResponse:
        controller = _controller(request)
        try:
            generation = controller.switch_instrument(payload.instrument)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return InstrumentResponse(instrument=controller.instrument or "", generation=generation)

    @app.post("/instrument/retry", response_model=InstrumentResponse)
    async def retry_instrument(request: Request) -> InstrumentResponse:
        controller = _controller(request)
        try:
            generation = controller.retry()
        except RuntimeError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return InstrumentResponse(instrument=controller.instrument or "", generation=generation)

    @app.websocket("/series/stream")
    async def series_stream(websocket: WebSocket) -> None:
        controller: SyncController = websocket.app.state.controller
        await websocket.accept()
        queue: asyncio.Queue[SeriesView] = asyncio.Queue(maxsize=64)

        def push(view: SeriesView) -> None:
            if queue.full():
                # slow client: keep only the newest views
                queue.get_nowait()
            queue.put_nowait(view)

        async def forward() -> None:
            while True:
                view = await queue.get()
                await websocket.send_json(view.as_dict())

        remove = controller.add_listener(push)
        sender: Optional[asyncio.Task] = None
        try:
            await websocket.send_json(controller.current_series().as_dict())
            sender = asyncio.ensure_future(forward())
            while True:
                message = await websocket.receive()
                if message.get("type") == "websocket.disconnect":
                    break
        except WebSocketDisconnect:
            pass
        finally:
            remove()
            if sender is not None:
                sender.cancel()
                await asyncio.gather(sender, return_exceptions=True)
            LOGGER.info("Series stream client disconnected")

    return app


app = create_app()
