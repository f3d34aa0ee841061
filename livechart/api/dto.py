"""DTOs for FastAPI endpoints."""
from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, Field


class InstrumentRequest(BaseModel):
    instrument: str = Field(..., min_length=1)


class InstrumentResponse(BaseModel):
    instrument: str
    generation: int


class StatusResponse(BaseModel):
    instrument: Optional[str] = None
    generation: int
    status: str
    snapshot_loaded: bool = False
    snapshot_error: Optional[str] = None
    transport_error: Optional[str] = None
    diagnostics: Dict[str, int] = Field(default_factory=dict)
