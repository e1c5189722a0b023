import json
from datetime import datetime, timezone

import pytest

from backend.visitor_insights.exceptions import RowRejected
from backend.visitor_insights.geo import Coordinates
from backend.visitor_insights.normalizer import (
    MAX_TIME_ON_PAGE_MS,
    UNKNOWN_VISITOR,
    RowFields,
    canonical_header,
    normalize_row,
    normalize_rows,
    parse_timestamp,
)


@pytest.mark.parametrize(
    "column",
    ["EVENT_TIMESTAMP", "Event Timestamp", "event_timestamp", "timestamp", "Timestamp", "Time", "date"],
)
def test_timestamp_column_variants_are_recognised(column):
    event = normalize_row({column: "2024-05-01T09:00:00Z", "UUID": "abc"})

    assert event.event_ts == datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def test_first_parseable_timestamp_variant_wins():
    event = normalize_row(
        {
            "EVENT_TIMESTAMP": "not a date",
            "timestamp": "2024-05-01 09:00:00",
            "Date": "2023-01-01",
        }
    )

    assert event.event_ts == datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def test_row_without_timestamp_is_rejected():
    with pytest.raises(RowRejected):
        normalize_row({"UUID": "abc", "URL": "https://example.com"})


def test_reject_count_matches_dropped_rows():
    rows = [
        {"timestamp": "2024-05-01T09:00:00Z", "uuid": "a"},
        {"uuid": "b"},
        {"timestamp": "", "uuid": "c"},
        {"timestamp": "yesterday-ish", "uuid": "d"},
        {"timestamp": "2024-05-01T10:00:00Z", "uuid": "e"},
    ]

    events, rejected = normalize_rows(rows)

    assert [event.visitor_key for event in events] == ["a", "e"]
    assert rejected == len(rows) - len(events)


def test_visitor_key_prefers_uuid_then_ip_then_unknown():
    ts = "2024-05-01T09:00:00Z"

    assert normalize_row({"timestamp": ts, "UUID": "u-1", "IP_ADDRESS": "10.0.0.1"}).visitor_key == "u-1"
    assert normalize_row({"timestamp": ts, "Ip Address": "10.0.0.1"}).visitor_key == "10.0.0.1"
    assert normalize_row({"timestamp": ts}).visitor_key == UNKNOWN_VISITOR


def test_structured_payload_takes_priority_over_flat_columns():
    payload = {"url": "https://example.com/pricing", "title": "Pricing", "timeOnPage": 1500, "idleTime": 200}
    event = normalize_row(
        {
            "EVENT_TIMESTAMP": "2024-05-01T09:00:00Z",
            "EVENT_DATA": json.dumps(payload),
            "URL": "https://example.com/flat",
            "REFERRER_URL": "https://google.com",
            "TIME_ON_PAGE": "30",
        }
    )

    assert event.url == "https://example.com/pricing"
    assert event.title == "Pricing"
    assert event.time_on_page_ms == 1500
    assert event.idle_time_ms == 200
    # The payload has no referrer, so the flat column fills it in.
    assert event.referrer_url == "https://google.com"


def test_unparseable_payload_falls_back_to_flat_columns():
    event = normalize_row(
        {
            "EVENT_TIMESTAMP": "2024-05-01T09:00:00Z",
            "EVENT_DATA": "{not json",
            "Url": "https://example.com/about",
            "Timeonpage": "12",
            "Idletime": "3",
        }
    )

    assert event.url == "https://example.com/about"
    assert event.time_on_page_ms == 12_000
    assert event.idle_time_ms == 3_000


def test_flat_time_on_page_is_clamped_after_unit_conversion():
    event = normalize_row({"timestamp": "2024-05-01T09:00:00Z", "time_on_page": "999999"})

    assert event.time_on_page_ms == MAX_TIME_ON_PAGE_MS


def test_payload_time_on_page_is_clamped_to_range():
    high = normalize_row({"timestamp": "2024-05-01T09:00:00Z", "EVENT_DATA": '{"timeOnPage": 900000}'})
    low = normalize_row({"timestamp": "2024-05-01T09:00:00Z", "EVENT_DATA": '{"timeOnPage": -5}'})

    assert high.time_on_page_ms == MAX_TIME_ON_PAGE_MS
    assert low.time_on_page_ms == 0


def test_coordinates_from_column_and_payload():
    from_column = normalize_row({"timestamp": "2024-05-01T09:00:00Z", "Coordinates": "40.7128, -74.0060"})
    from_payload = normalize_row(
        {"timestamp": "2024-05-01T09:00:00Z", "EVENT_DATA": '{"coordinates": {"lat": 1.5, "lng": 2.5}}'}
    )
    garbage = normalize_row({"timestamp": "2024-05-01T09:00:00Z", "coordinates": "somewhere"})

    assert from_column.coordinates == Coordinates(lat=40.7128, lng=-74.006)
    assert from_payload.coordinates == Coordinates(lat=1.5, lng=2.5)
    assert garbage.coordinates is None


def test_flat_columns_are_mapped():
    event = normalize_row(
        {
            "Event Timestamp": "2024-05-01T09:00:00Z",
            "Event Type": "click",
            "Percentage": "75.5",
            "Threshold": "75",
            "Element Identifier": "btn-demo",
            "Element Text": "Book a demo",
        }
    )

    assert event.event_type == "click"
    assert event.scroll_pct == 75.5
    assert event.threshold == "75"
    assert event.element_identifier == "btn-demo"
    assert event.element_text == "Book a demo"


def test_raw_row_is_kept_for_identity_extraction():
    row = {"timestamp": "2024-05-01T09:00:00Z", "FIRST_NAME": "Ada", "Unmapped Column": "kept"}

    event = normalize_row(row)

    assert event.raw == row


def test_parse_timestamp_formats():
    assert parse_timestamp("2024-05-01T11:00:00+02:00") == datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
    assert parse_timestamp("05/01/2024 09:00") == datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
    assert parse_timestamp("1714554000") == datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
    assert parse_timestamp("1714554000000") == datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
    assert parse_timestamp("  ") is None
    assert parse_timestamp("soon") is None


def test_row_fields_ignore_case_and_spacing():
    fields = RowFields({"Ip Address": "10.0.0.9", "JOB_TITLE": "CTO"})

    assert canonical_header(" Event-Timestamp ") == "eventtimestamp"
    assert fields.get("ip") == "10.0.0.9"
    assert fields.get("job_title") == "CTO"
    assert fields.get("uuid") is None


@pytest.mark.parametrize("cell, expected", [("75%", 75.0), (" 42.5 % ", 42.5), ("60", 60.0), ("%", None), ("deep", None)])
def test_scroll_percentage_accepts_percent_sign(cell, expected):
    event = normalize_row({"uuid": "a", "timestamp": "2024-05-01T09:00:00Z", "Percentage": cell})

    assert event.scroll_pct == expected


@pytest.mark.parametrize(
    "value",
    [
        "2024-05-01 09:00:00 UTC",
        "2024-05-01 09:00:00 gmt",
        "Wed, 01 May 2024 09:00:00 GMT",
        "Wed, 01 May 2024 11:00:00 +0200",
    ],
)
def test_parse_timestamp_named_zones_and_rfc_2822(value):
    assert parse_timestamp(value) == datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def test_compact_date_is_not_read_as_epoch_seconds():
    assert parse_timestamp("20240501") == datetime(2024, 5, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", ["2024", "12345", "999999999"])
def test_short_numbers_are_not_timestamps(value):
    assert parse_timestamp(value) is None
