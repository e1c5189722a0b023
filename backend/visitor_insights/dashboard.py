"""Tenant-level KPI summary over stored visitor profiles."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from . import schemas, storage
from .models import RawEvent, utcnow
from .scoring import EngagementSegment

DEFAULT_WINDOW_DAYS = 30
ENGAGED_SCORE = 3
HIGH_INTENT_SCORE = 6
TOP_N = 10


def parse_window(window: Optional[str]) -> int:
    """``L<days>`` selects a trailing window; anything else means the default."""
    if window and window[:1].upper() == "L":
        try:
            days = int(window[1:])
        except ValueError:
            return DEFAULT_WINDOW_DAYS
        if days > 0:
            return days
    return DEFAULT_WINDOW_DAYS


def build_dashboard(
    db: Session, tenant_id: str, days: int = DEFAULT_WINDOW_DAYS, now: Optional[datetime] = None
) -> schemas.DashboardOut:
    window_end = now or utcnow()
    window_start = window_end - timedelta(days=days)

    profiles = storage.list_profiles_overlapping(db, tenant_id, window_start, window_end)

    total = len(profiles)
    repeat = sum(1 for profile in profiles if (profile.flags or {}).get("is_repeat_visitor"))
    # Returning means more than one session in the window, so it equals the repeat count.
    returning = repeat
    breakdown = {segment.value: 0 for segment in EngagementSegment}
    for profile in profiles:
        breakdown[profile.engagement_segment] = breakdown.get(profile.engagement_segment, 0) + 1

    high_intent = sorted(
        (profile for profile in profiles if profile.engagement_score >= HIGH_INTENT_SCORE),
        key=lambda profile: (-profile.engagement_score, profile.visitor_key),
    )
    top_high_intent = high_intent[:TOP_N]
    ips = storage.first_ips(db, tenant_id, [profile.visitor_key for profile in top_high_intent])

    top_urls = storage.top_values(db, tenant_id, RawEvent.url, window_start, window_end, TOP_N)
    top_events = storage.top_values(db, tenant_id, RawEvent.event_type, window_start, window_end, TOP_N)

    metrics = schemas.DashboardMetrics(
        total_visitors=total,
        engaged_visitors=sum(1 for profile in profiles if profile.engagement_score >= ENGAGED_SCORE),
        repeat_visitors=repeat,
        high_intent_visitors=len(high_intent),
        new_visitors=total - returning,
        returning_visitors=returning,
        engagement_breakdown=breakdown,
        top_urls=[schemas.UrlVisits(url=url, visits=count) for url, count in top_urls],
        top_events=[schemas.EventTypeCount(event_type=event_type, count=count) for event_type, count in top_events],
        high_intent_list=[
            schemas.HighIntentVisitor(
                visitor_key=profile.visitor_key,
                score=profile.engagement_score,
                visits=profile.visits_count,
                time_on_page_ms=profile.total_time_on_page_ms,
                ip=ips.get(profile.visitor_key),
            )
            for profile in top_high_intent
        ],
    )
    return schemas.DashboardOut(
        tenant_id=tenant_id, window_start=window_start, window_end=window_end, metrics=metrics
    )
