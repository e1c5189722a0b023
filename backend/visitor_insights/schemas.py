"""Pydantic models for response bodies."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class UploadOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    filename: Optional[str] = None
    status: str = Field(..., description="processing, completed or error")
    row_count: Optional[int] = Field(None, description="Accepted events once the upload completed")
    error: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None


class VisitorProfileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    visitor_key: str
    window_start: datetime
    window_end: datetime
    first_seen_at: datetime
    last_seen_at: datetime
    visits_count: int
    total_events: int
    page_views: int
    unique_pages_count: int
    total_time_on_page_ms: int
    avg_time_on_page_ms: float
    max_scroll_percentage: float
    flags: Dict[str, bool]
    engagement_score: int
    engagement_segment: str
    lat: Optional[float] = None
    lng: Optional[float] = None
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    identity: Optional[Dict[str, str]] = None
    ip: Optional[str] = None


class RawEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_ts: datetime
    event_type: Optional[str] = None
    url: Optional[str] = None
    referrer_url: Optional[str] = None
    time_on_page_ms: Optional[int] = None
    scroll_pct: Optional[float] = None
    element_identifier: Optional[str] = None
    element_text: Optional[str] = None
    title: Optional[str] = None


class VisitorDetailOut(BaseModel):
    profile: VisitorProfileOut
    events: List[RawEventOut]


class UrlVisits(BaseModel):
    url: str
    visits: int


class EventTypeCount(BaseModel):
    event_type: str
    count: int


class HighIntentVisitor(BaseModel):
    visitor_key: str
    score: int
    visits: int
    time_on_page_ms: int
    ip: Optional[str] = None


class DashboardMetrics(BaseModel):
    total_visitors: int
    engaged_visitors: int
    repeat_visitors: int
    high_intent_visitors: int
    new_visitors: int
    returning_visitors: int
    engagement_breakdown: Dict[str, int]
    top_urls: List[UrlVisits]
    top_events: List[EventTypeCount]
    high_intent_list: List[HighIntentVisitor]


class DashboardOut(BaseModel):
    tenant_id: str
    window_start: datetime
    window_end: datetime
    metrics: DashboardMetrics
