"""Configuration loading utilities for the live chart engine."""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEFAULT_SETTINGS_PATH = Path("configs/settings.yaml")


class BackendSettings(BaseModel):
    api_base: str = "http://localhost:8080/api/v1/stock"
    ws_url: str = "ws://localhost:8080/ws/websocket"
    request_timeout: float = Field(15.0, gt=0.0)
    user_agent: str = "livechart"


class StreamSettings(BaseModel):
    price_topic: str = "/topic/stock-data/{instrument}"
    indicators_topic: str = "/topic/indicators/{instrument}"
    signals_topic: str = "/topic/trading-signals/{instrument}"
    connect_timeout: float = Field(10.0, gt=0.0)
    heartbeat_ms: int = Field(10_000, ge=0)
    stomp_host: str = "/"


class DataSettings(BaseModel):
    symbol: str = "IBM"
    max_points: int = Field(10_000, ge=1)
    indicator_channels: List[str] = Field(
        default_factory=lambda: ["sma", "rsi", "macd", "macdSignal", "macdHist"]
    )


class ApiSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(8000, ge=1, le=65535)
    allow_origins: List[str] = Field(default_factory=lambda: ["*"])


class Settings(BaseModel):
    backend: BackendSettings = Field(default_factory=BackendSettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)
    data: DataSettings = Field(default_factory=DataSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    log_level: str = "INFO"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_settings(path: Path | str = DEFAULT_SETTINGS_PATH) -> Settings:
    """Load settings from YAML and environment variables."""
    load_dotenv()
    raw = _load_yaml(Path(path))
    settings = Settings.model_validate(raw)

    # allow overriding via environment variables
    api_base = os.getenv("LIVECHART_API_BASE")
    ws_url = os.getenv("LIVECHART_WS_URL")
    symbol = os.getenv("SYMBOL")
    log_level = os.getenv("LIVECHART_LOG_LEVEL")
    if api_base:
        settings.backend.api_base = api_base.rstrip("/")
    if ws_url:
        settings.backend.ws_url = ws_url
    if symbol:
        settings.data.symbol = symbol.upper()
    if log_level:
        settings.log_level = log_level.upper()
    return settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
