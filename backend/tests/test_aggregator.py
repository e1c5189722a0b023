from datetime import datetime, timedelta, timezone

import pytest

from backend.visitor_insights import storage
from backend.visitor_insights.aggregator import (
    TimeWindow,
    aggregate_visitor,
    compute_profile,
    extract_address,
    extract_identity,
    profile_row,
)
from backend.visitor_insights.geo import AddressQuery, Coordinates, GeoLocation
from backend.visitor_insights.normalizer import CanonicalEvent
from backend.visitor_insights.scoring import EngagementSegment

START = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
WINDOW = TimeWindow(start=START, end=START + timedelta(hours=2))


def _event(minutes, **overrides):
    values = {"visitor_key": "abc", "event_ts": START + timedelta(minutes=minutes)}
    values.update(overrides)
    return CanonicalEvent(**values)


def test_compute_profile_metrics():
    events = [
        _event(65, event_type="page_view", url="https://example.com/blog", time_on_page_ms=30_000, scroll_pct=80),
        _event(0, event_type="PageView", url="https://example.com/", time_on_page_ms=10_000, scroll_pct=20),
        _event(10, event_type="click", url="https://example.com/", element_identifier="nav"),
    ]

    metrics = compute_profile("abc", events)

    assert metrics.first_seen_at == START
    assert metrics.last_seen_at == START + timedelta(minutes=65)
    assert metrics.visits_count == 2
    assert metrics.total_events == 3
    assert metrics.page_views == 2
    assert metrics.unique_pages_count == 2
    assert metrics.total_time_on_page_ms == 40_000
    assert metrics.avg_time_on_page_ms == 20_000
    assert metrics.max_scroll_percentage == 80
    assert metrics.flags.is_repeat_visitor
    assert not metrics.flags.high_attention
    # repeat (+2) and deep scroll (+1)
    assert metrics.engagement_score == 3
    assert metrics.engagement_segment is EngagementSegment.RESEARCHER


def test_average_is_zero_without_page_views():
    metrics = compute_profile("abc", [_event(0, event_type="click", time_on_page_ms=5_000)])

    assert metrics.page_views == 0
    assert metrics.avg_time_on_page_ms == 0.0
    assert metrics.max_scroll_percentage == 0.0


def test_flags_match_any_event():
    events = [
        _event(0, url="https://example.com/pricing"),
        _event(1, event_type="exit_intent"),
        _event(2, event_type="video_play"),
        _event(3, element_identifier="cta-primary"),
    ]

    flags = compute_profile("abc", events).flags

    assert flags.visited_key_page
    assert flags.exit_intent_triggered
    assert flags.video_engaged
    assert flags.cta_clicked
    assert not flags.is_repeat_visitor


def test_identity_comes_from_first_event_only():
    events = [
        _event(5, raw={"First Name": "Ada", "COMPANY_NAME": "Analytical Engines", "Direct Number": "555-0100"}),
        _event(0, raw={"First Name": "Grace", "Job Title": "Admiral"}),
    ]

    metrics = compute_profile("abc", events)

    assert metrics.identity == {"first_name": "Ada", "company_name": "Analytical Engines", "phone": "555-0100"}


def test_extract_identity_ignores_blank_columns():
    assert extract_identity({"FIRST_NAME": "  ", "LAST_NAME": "Lovelace"}) == {"last_name": "Lovelace"}
    assert extract_identity(None) == {}


def test_extract_address_prefers_personal_then_company_columns():
    raw = {"COMPANY_ADDRESS": "2 Market St", "Personal City": "Austin", "company_city": "Dallas", "COMPANY_ZIP": "75001"}

    query = extract_address(raw, default_country="US")

    assert query == AddressQuery(address="2 Market St", city="Austin", state=None, zip="75001", country="US")


def test_profile_uses_resolver_with_sheet_address(resolver, geocoder):
    geocoder.result = GeoLocation(lat=30.27, lng=-97.74)
    events = [_event(0, raw={"PERSONAL_CITY": "Austin", "PERSONAL_STATE": "TX"})]

    metrics = compute_profile("abc", events, resolver=resolver, default_country="US")

    assert (metrics.geo.lat, metrics.geo.lng, metrics.geo.city) == (30.27, -97.74, "Austin")
    assert geocoder.queries[0].to_query_string() == "Austin, TX, US"


def test_profile_row_uses_naive_utc():
    metrics = compute_profile("abc", [_event(0, coordinates=Coordinates(lat=1.0, lng=2.0))])

    row = profile_row("tenant-1", "abc", WINDOW, metrics)

    assert row["window_start"] == datetime(2024, 5, 1, 9, 0)
    assert row["first_seen_at"].tzinfo is None
    assert row["engagement_segment"] == "Casual"
    assert row["identity"] is None
    assert row["flags"]["is_repeat_visitor"] is False


def test_compute_profile_requires_events():
    with pytest.raises(ValueError):
        compute_profile("abc", [])


def test_upsert_overwrites_instead_of_accumulating(db_module, resolver):
    first = [_event(0, event_type="page_view", time_on_page_ms=60_000), _event(90, event_type="page_view")]
    second = [_event(0, event_type="page_view", url="https://example.com/pricing")]

    with db_module.session_scope() as db:
        aggregate_visitor(db, "tenant-1", "abc", first, WINDOW, resolver=resolver)
    with db_module.session_scope() as db:
        aggregate_visitor(db, "tenant-1", "abc", second, WINDOW, resolver=resolver)

    with db_module.session_scope() as db:
        profiles = storage.list_tenant_profiles(db, "tenant-1")
        assert len(profiles) == 1
        profile = profiles[0]
        assert profile.total_events == 1
        assert profile.visits_count == 1
        assert profile.total_time_on_page_ms == 0
        assert profile.engagement_score == 2
        assert profile.flags == {
            "is_repeat_visitor": False,
            "high_attention": False,
            "visited_key_page": True,
            "cta_clicked": False,
            "exit_intent_triggered": False,
            "video_engaged": False,
        }


def test_profiles_are_scoped_by_tenant(db_module):
    events = [_event(0)]

    with db_module.session_scope() as db:
        aggregate_visitor(db, "tenant-1", "abc", events, WINDOW)
        aggregate_visitor(db, "tenant-2", "abc", events, WINDOW)

    with db_module.session_scope() as db:
        assert len(storage.list_tenant_profiles(db, "tenant-1")) == 1
        assert len(storage.list_tenant_profiles(db, "tenant-2")) == 1
