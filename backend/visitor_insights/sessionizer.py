"""Time-gap sessionization of a visitor's events."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Iterable, List

if TYPE_CHECKING:
    from .normalizer import CanonicalEvent

SESSION_GAP = timedelta(minutes=30)


@dataclass
class Session:
    events: List["CanonicalEvent"] = field(default_factory=list)

    @property
    def start(self) -> datetime:
        return self.events[0].event_ts

    @property
    def end(self) -> datetime:
        return self.events[-1].event_ts

    def __len__(self) -> int:
        return len(self.events)


def sort_events(events: Iterable["CanonicalEvent"]) -> List["CanonicalEvent"]:
    # sorted() is stable, so events sharing a timestamp keep their input order.
    return sorted(events, key=lambda event: event.event_ts)


def group_into_sessions(events: Iterable["CanonicalEvent"], gap: timedelta = SESSION_GAP) -> List[Session]:
    """Split one visitor's events into sessions.

    A new session starts whenever the time since the previous event exceeds
    ``gap``; a gap of exactly ``gap`` stays in the same session.
    """
    ordered = sort_events(events)
    if not ordered:
        return []

    sessions = [Session(events=[ordered[0]])]
    for previous, current in zip(ordered, ordered[1:]):
        if current.event_ts - previous.event_ts > gap:
            sessions.append(Session(events=[current]))
        else:
            sessions[-1].events.append(current)
    return sessions
