"""SQLAlchemy models for uploads, raw events, visitor profiles and the geo cache."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

UPLOAD_PROCESSING = "processing"
UPLOAD_COMPLETED = "completed"
UPLOAD_ERROR = "error"
TERMINAL_UPLOAD_STATUSES = (UPLOAD_COMPLETED, UPLOAD_ERROR)


def utcnow() -> datetime:
    """Current time as naive UTC, the storage convention for every timestamp column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


class Upload(Base):
    __tablename__ = "uploads"

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(64), index=True, nullable=False)
    filename = Column(String(255), nullable=True)
    status = Column(String(16), nullable=False, default=UPLOAD_PROCESSING)
    row_count = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)


class RawEvent(Base):
    __tablename__ = "raw_events"
    __table_args__ = (
        Index("ix_raw_events_tenant_visitor", "tenant_id", "visitor_key"),
        Index("ix_raw_events_tenant_ts", "tenant_id", "event_ts"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False)
    upload_id = Column(String(36), ForeignKey("uploads.id"), index=True, nullable=False)
    visitor_key = Column(String(255), nullable=False)
    uuid = Column(String(255), nullable=True)
    ip = Column(String(64), nullable=True)
    event_ts = Column(DateTime, nullable=False)
    event_type = Column(String(128), nullable=True)
    url = Column(Text, nullable=True)
    referrer_url = Column(Text, nullable=True)
    time_on_page_ms = Column(Integer, nullable=True)
    idle_time_ms = Column(Integer, nullable=True)
    scroll_pct = Column(Float, nullable=True)
    threshold = Column(String(64), nullable=True)
    element_identifier = Column(Text, nullable=True)
    element_text = Column(Text, nullable=True)
    title = Column(Text, nullable=True)
    coordinates = Column(JSON(none_as_null=True), nullable=True)
    raw_json = Column(JSON(none_as_null=True), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class VisitorProfile(Base):
    __tablename__ = "visitor_profiles"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "window_start",
            "window_end",
            "visitor_key",
            name="uq_visitor_profiles_tenant_window_visitor",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), index=True, nullable=False)
    window_start = Column(DateTime, nullable=False)
    window_end = Column(DateTime, nullable=False)
    visitor_key = Column(String(255), index=True, nullable=False)
    first_seen_at = Column(DateTime, nullable=False)
    last_seen_at = Column(DateTime, nullable=False)
    visits_count = Column(Integer, nullable=False, default=0)
    total_events = Column(Integer, nullable=False, default=0)
    page_views = Column(Integer, nullable=False, default=0)
    unique_pages_count = Column(Integer, nullable=False, default=0)
    total_time_on_page_ms = Column(Integer, nullable=False, default=0)
    avg_time_on_page_ms = Column(Float, nullable=False, default=0.0)
    max_scroll_percentage = Column(Float, nullable=False, default=0.0)
    flags = Column(JSON, nullable=False, default=dict)
    engagement_score = Column(Integer, nullable=False, default=0)
    engagement_segment = Column(String(32), nullable=False)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    city = Column(String(128), nullable=True)
    region = Column(String(128), nullable=True)
    country = Column(String(128), nullable=True)
    identity = Column(JSON(none_as_null=True), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)


class GeoCacheEntry(Base):
    __tablename__ = "geo_cache"

    ip = Column(String(64), primary_key=True)
    city = Column(String(128), nullable=True)
    region = Column(String(128), nullable=True)
    country = Column(String(128), nullable=True)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
