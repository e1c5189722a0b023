import random
from datetime import datetime, timedelta, timezone

from backend.visitor_insights.normalizer import CanonicalEvent
from backend.visitor_insights.sessionizer import SESSION_GAP, group_into_sessions

START = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def _event(minutes: float, label: str = "") -> CanonicalEvent:
    return CanonicalEvent(visitor_key="abc", event_ts=START + timedelta(minutes=minutes), event_type=label)


def test_gap_over_thirty_minutes_starts_new_session():
    events = [_event(0), _event(10), _event(65)]

    sessions = group_into_sessions(events)

    assert [len(session) for session in sessions] == [2, 1]
    assert sessions[0].start == START
    assert sessions[0].end == START + timedelta(minutes=10)
    assert sessions[1].start == START + timedelta(minutes=65)


def test_gap_of_exactly_thirty_minutes_stays_in_session():
    sessions = group_into_sessions([_event(0), _event(30)])

    assert len(sessions) == 1


def test_gap_just_over_threshold_splits():
    events = [_event(0), CanonicalEvent(visitor_key="abc", event_ts=START + SESSION_GAP + timedelta(seconds=1))]

    assert len(group_into_sessions(events)) == 2


def test_unordered_input_is_sorted_and_ties_stay_together():
    events = [_event(40, "c"), _event(0, "a"), _event(0, "b")]

    sessions = group_into_sessions(events)

    assert [[event.event_type for event in session.events] for session in sessions] == [["a", "b"], ["c"]]


def test_empty_input_has_no_sessions():
    assert group_into_sessions([]) == []


def test_sessions_partition_events():
    rng = random.Random(7)
    events = [_event(rng.uniform(0, 600), str(index)) for index in range(60)]

    sessions = group_into_sessions(events)

    flattened = [event for session in sessions for event in session.events]
    assert sorted(id(event) for event in flattened) == sorted(id(event) for event in events)
    for session in sessions:
        for previous, current in zip(session.events, session.events[1:]):
            assert current.event_ts - previous.event_ts <= SESSION_GAP
    for earlier, later in zip(sessions, sessions[1:]):
        assert later.start - earlier.end > SESSION_GAP


def test_resorting_sorted_input_is_stable():
    events = [_event(minutes) for minutes in (0, 5, 50, 51, 200)]

    first = group_into_sessions(events)
    second = group_into_sessions([event for session in first for event in session.events])

    assert [session.events for session in first] == [session.events for session in second]
