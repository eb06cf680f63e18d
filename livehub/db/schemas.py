"""API request/response schemas."""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class HubStatsOut(BaseModel):
    """One hub (raw or derived)."""
    name: str
    state: str
    overflow: str
    buffer_size: int
    subscribers: int = 0
    anchored: bool = False
    pushed: int = 0
    dropped: int = 0
    # derived views only
    source: Optional[str] = None
    processed: Optional[int] = None
    gaps: Optional[int] = None


class StatsOut(BaseModel):
    """Hub, derived views and producer/sink/relay counters."""
    hub: HubStatsOut
    views: List[HubStatsOut] = []
    producer: Dict[str, Any] = {}
    sink: Dict[str, Any] = {}
    relay: Dict[str, Any] = {}
    worker: Optional[Dict[str, Any]] = None


class IngestRequest(BaseModel):
    destination: str = Field(min_length=1)
    records: List[Any]


class BatchOutcomeOut(BaseModel):
    index: int
    start: int
    size: int
    attempts: int
    ok: bool
    rejected: bool = False
    error: Optional[str] = None


class IngestResultOut(BaseModel):
    destination: str
    total: int
    written: int
    failed: int
    ok: bool
    batches: List[BatchOutcomeOut]
    record_results: Optional[List[Optional[str]]] = None
