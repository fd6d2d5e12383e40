"""Pydantic schemas for the HTTP API layer."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from models.outcomes import EventStatus


class BatchStatus(str, Enum):
    """Batch lifecycle states exposed via the API."""

    received = "received"
    processing = "processing"
    succeeded = "succeeded"
    failed = "failed"
    deferred = "deferred"


class TelemetryEventIn(BaseModel):
    """One inbound device message."""

    device_id: str = Field(
        ..., min_length=1, description="Transport device id, e.g. 'sim-id.device-guid'."
    )
    payload: Union[Dict[str, Any], str] = Field(
        ..., description="Telemetry body as a JSON object or its JSON-encoded string."
    )


class BatchRequest(BaseModel):
    events: List[TelemetryEventIn] = Field(default_factory=list)


class BatchAcceptedResponse(BaseModel):
    """Immediate response payload after accepting a batch."""

    batch_id: str = Field(..., description="Generated identifier for the batch.")


class EventRecord(BaseModel):
    """Outcome of a single event within a batch."""

    index: int = Field(..., ge=0)
    device_id: Optional[str] = None
    status: EventStatus
    dt_id: Optional[str] = None
    asset_id: Optional[str] = None
    computed_health: Optional[float] = None
    reason: Optional[str] = None


class EventError(BaseModel):
    """Details about an event that failed processing."""

    index: int = Field(..., ge=0)
    device_id: Optional[str] = None
    kind: str
    reason: str


class BatchRecord(BaseModel):
    """Full record representing a processed batch."""

    batch_id: str
    status: BatchStatus
    received_at: datetime
    processed_at: Optional[datetime] = None
    processing_ms: Optional[int] = Field(
        default=None, description="Duration in milliseconds from start to finish."
    )
    event_count: int = Field(default=0, ge=0)
    events: List[EventRecord] = Field(default_factory=list)
    errors: List[EventError] = Field(default_factory=list)
    detail: Optional[str] = None
