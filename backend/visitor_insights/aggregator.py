"""Per-visitor profile aggregation and idempotent persistence."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy.orm import Session

from . import config, storage
from .geo import AddressQuery, GeoLocation, GeoResolver
from .normalizer import CanonicalEvent, RowFields
from .scoring import (
    HIGH_ATTENTION_MS,
    EngagementSegment,
    ScoringInput,
    VisitorFlags,
    calculate_engagement_score,
    get_engagement_segment,
    is_cta_click,
    is_exit_intent,
    is_key_page,
    is_page_view,
    is_video_engaged,
)
from .sessionizer import group_into_sessions, sort_events

logger = logging.getLogger(__name__)

# Identity overlay key -> logical source field.
IDENTITY_FIELDS = (
    ("first_name", "first_name"),
    ("last_name", "last_name"),
    ("company_name", "company_name"),
    ("company_domain", "company_domain"),
    ("job_title", "job_title"),
    ("seniority_level", "seniority_level"),
    ("business_email", "business_email"),
    ("phone", "direct_number"),
    ("mobile_phone", "mobile_phone"),
    ("address", "personal_address"),
    ("company_address", "company_address"),
    ("city", "personal_city"),
    ("state", "personal_state"),
    ("zip", "personal_zip"),
)


@dataclass
class TimeWindow:
    start: datetime
    end: datetime


@dataclass
class ProfileMetrics:
    first_seen_at: datetime
    last_seen_at: datetime
    visits_count: int
    total_events: int
    page_views: int
    unique_pages_count: int
    total_time_on_page_ms: int
    avg_time_on_page_ms: float
    max_scroll_percentage: float
    flags: VisitorFlags
    engagement_score: int
    engagement_segment: EngagementSegment
    identity: Dict[str, str] = field(default_factory=dict)
    geo: Optional[GeoLocation] = None


def to_storage_datetime(value: datetime) -> datetime:
    """Naive UTC, matching the convention of every stored timestamp."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def extract_identity(raw: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    if not raw:
        return {}
    fields = RowFields(raw)
    identity = {}
    for key, logical_name in IDENTITY_FIELDS:
        value = fields.get_str(logical_name)
        if value:
            identity[key] = value
    return identity


def extract_address(raw: Optional[Mapping[str, Any]], default_country: Optional[str] = None) -> AddressQuery:
    """Address components from the sheet, personal columns first, then company columns."""
    if not raw:
        return AddressQuery()
    fields = RowFields(raw)

    def pick(personal: str, company: str) -> Optional[str]:
        return fields.get_str(personal) or fields.get_str(company)

    return AddressQuery(
        address=pick("personal_address", "company_address"),
        city=pick("personal_city", "company_city"),
        state=pick("personal_state", "company_state"),
        zip=pick("personal_zip", "company_zip"),
        country=pick("personal_country", "company_country") or default_country,
    )


def compute_profile(
    visitor_key: str,
    events: Sequence[CanonicalEvent],
    resolver: Optional[GeoResolver] = None,
    default_country: Optional[str] = None,
) -> ProfileMetrics:
    """Derive every profile field from a visitor's events.

    Flags use any-event semantics across the whole event set. Identity comes
    from the first event's source row only.
    """
    if not events:
        raise ValueError(f"No events to aggregate for visitor {visitor_key!r}")

    sessions = group_into_sessions(events)
    ordered = sort_events(events)

    page_views = sum(1 for event in events if is_page_view(event.event_type))
    unique_pages = len({event.url for event in events if event.url})
    total_time_on_page_ms = sum(event.time_on_page_ms or 0 for event in events)
    avg_time_on_page_ms = total_time_on_page_ms / page_views if page_views else 0.0
    max_scroll_percentage = max([event.scroll_pct or 0.0 for event in events] + [0.0])

    visited_key_page = any(is_key_page(event.url) for event in events)
    cta_clicked = any(is_cta_click(event.element_identifier, event.url) for event in events)
    exit_intent_triggered = any(is_exit_intent(event.event_type) for event in events)
    video_engaged = any(is_video_engaged(event.event_type) for event in events)

    flags = VisitorFlags(
        is_repeat_visitor=len(sessions) >= 2,
        high_attention=total_time_on_page_ms >= HIGH_ATTENTION_MS,
        visited_key_page=visited_key_page,
        cta_clicked=cta_clicked,
        exit_intent_triggered=exit_intent_triggered,
        video_engaged=video_engaged,
    )
    score = calculate_engagement_score(
        ScoringInput(
            visits_count=len(sessions),
            total_time_on_page_ms=total_time_on_page_ms,
            max_scroll_percentage=max_scroll_percentage,
            visited_key_page=visited_key_page,
            cta_clicked=cta_clicked,
            exit_intent_triggered=exit_intent_triggered,
            video_engaged=video_engaged,
        )
    )

    first_raw = events[0].raw
    identity = extract_identity(first_raw)
    geo = None
    if resolver is not None:
        geo = resolver.resolve(visitor_key, events, extract_address(first_raw, default_country))

    return ProfileMetrics(
        first_seen_at=ordered[0].event_ts,
        last_seen_at=ordered[-1].event_ts,
        visits_count=len(sessions),
        total_events=len(events),
        page_views=page_views,
        unique_pages_count=unique_pages,
        total_time_on_page_ms=total_time_on_page_ms,
        avg_time_on_page_ms=avg_time_on_page_ms,
        max_scroll_percentage=max_scroll_percentage,
        flags=flags,
        engagement_score=score,
        engagement_segment=get_engagement_segment(score),
        identity=identity,
        geo=geo,
    )


def profile_row(tenant_id: str, visitor_key: str, window: TimeWindow, metrics: ProfileMetrics) -> Dict[str, Any]:
    geo = metrics.geo or GeoLocation()
    return {
        "tenant_id": tenant_id,
        "window_start": to_storage_datetime(window.start),
        "window_end": to_storage_datetime(window.end),
        "visitor_key": visitor_key,
        "first_seen_at": to_storage_datetime(metrics.first_seen_at),
        "last_seen_at": to_storage_datetime(metrics.last_seen_at),
        "visits_count": metrics.visits_count,
        "total_events": metrics.total_events,
        "page_views": metrics.page_views,
        "unique_pages_count": metrics.unique_pages_count,
        "total_time_on_page_ms": metrics.total_time_on_page_ms,
        "avg_time_on_page_ms": metrics.avg_time_on_page_ms,
        "max_scroll_percentage": metrics.max_scroll_percentage,
        "flags": metrics.flags.as_dict(),
        "engagement_score": metrics.engagement_score,
        "engagement_segment": metrics.engagement_segment.value,
        "lat": geo.lat,
        "lng": geo.lng,
        "city": geo.city,
        "region": geo.region,
        "country": geo.country,
        "identity": metrics.identity or None,
    }


def aggregate_visitor(
    db: Session,
    tenant_id: str,
    visitor_key: str,
    events: List[CanonicalEvent],
    window: TimeWindow,
    resolver: Optional[GeoResolver] = None,
) -> ProfileMetrics:
    """Compute and upsert the visitor's profile for ``window``."""
    metrics = compute_profile(
        visitor_key,
        events,
        resolver=resolver,
        default_country=config.get_geocode_default_country(),
    )
    storage.upsert_visitor_profile(db, profile_row(tenant_id, visitor_key, window, metrics))
    logger.debug(
        "Stored profile for visitor %s: score=%s segment=%s",
        visitor_key,
        metrics.engagement_score,
        metrics.engagement_segment.value,
    )
    return metrics
