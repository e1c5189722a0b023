"""Normalization of heterogeneous CSV rows into canonical events."""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .exceptions import RowRejected
from .geo import Coordinates, parse_coordinates

logger = logging.getLogger(__name__)

UNKNOWN_VISITOR = "unknown"
MAX_TIME_ON_PAGE_MS = 600_000

# Ordered synonyms per logical field. Names are compared after canonicalization,
# so "EVENT_TIMESTAMP", "Event Timestamp" and "event-timestamp" are the same column.
FIELD_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "timestamp": ("event_timestamp", "timestamp", "time", "date"),
    "uuid": ("uuid", "visitor_id"),
    "ip": ("ip_address", "ip"),
    "event_data": ("event_data",),
    "event_type": ("event_type",),
    "url": ("url", "page_url"),
    "referrer": ("referrer_url", "referrer"),
    "time_on_page": ("time_on_page",),
    "idle_time": ("idle_time",),
    "scroll": ("percentage", "scroll_percentage"),
    "threshold": ("threshold",),
    "element_identifier": ("element_identifier",),
    "element_text": ("element_text",),
    "title": ("title", "page_title"),
    "coordinates": ("coordinates",),
    "first_name": ("first_name",),
    "last_name": ("last_name",),
    "company_name": ("company_name",),
    "company_domain": ("company_domain",),
    "job_title": ("job_title",),
    "seniority_level": ("seniority_level",),
    "business_email": ("business_email",),
    "direct_number": ("direct_number",),
    "mobile_phone": ("mobile_phone",),
    "personal_address": ("personal_address",),
    "company_address": ("company_address",),
    "personal_city": ("personal_city",),
    "company_city": ("company_city",),
    "personal_state": ("personal_state",),
    "company_state": ("company_state",),
    "personal_zip": ("personal_zip",),
    "company_zip": ("company_zip",),
    "personal_country": ("personal_country",),
    "company_country": ("company_country",),
}

_HEADER_NOISE = re.compile(r"[\s_\-]+")
_ZONE_NAME_SUFFIX = re.compile(r"\s+(?:UTC|GMT)$", re.IGNORECASE)

# Smallest number read as an epoch timestamp (September 2001).
EPOCH_MIN_SECONDS = 1e9

_TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d %H:%M:%S",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y",
    "%Y-%m-%d",
    "%Y%m%d",
)


def canonical_header(name: str) -> str:
    return _HEADER_NOISE.sub("", name.strip().lower())


class RowFields:
    """Resolves logical fields against one row's columns, whatever their spelling."""

    def __init__(self, row: Mapping[str, Any]) -> None:
        self._values: Dict[str, Any] = {}
        for name, value in row.items():
            if name is None:
                continue
            key = canonical_header(str(name))
            if key not in self._values or _is_blank(self._values[key]):
                self._values[key] = value

    def candidates(self, logical_name: str) -> List[Any]:
        """All non-blank values for a field, in synonym order."""
        values = []
        for synonym in FIELD_SYNONYMS[logical_name]:
            value = self._values.get(canonical_header(synonym))
            if not _is_blank(value):
                values.append(value.strip() if isinstance(value, str) else value)
        return values

    def get(self, logical_name: str) -> Optional[Any]:
        values = self.candidates(logical_name)
        return values[0] if values else None

    def get_str(self, logical_name: str) -> Optional[str]:
        value = self.get(logical_name)
        return None if value is None else str(value)


@dataclass
class CanonicalEvent:
    visitor_key: str
    event_ts: datetime
    uuid: Optional[str] = None
    ip: Optional[str] = None
    event_type: Optional[str] = None
    url: Optional[str] = None
    referrer_url: Optional[str] = None
    time_on_page_ms: Optional[int] = None
    idle_time_ms: Optional[int] = None
    scroll_pct: Optional[float] = None
    threshold: Optional[str] = None
    element_identifier: Optional[str] = None
    element_text: Optional[str] = None
    title: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a timestamp cell into an aware UTC datetime, or None."""
    if _is_blank(value):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        parsed = _parse_epoch(text)
        if parsed is None:
            parsed = _parse_text_timestamp(text)
        if parsed is None:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_epoch(text: str) -> Optional[datetime]:
    try:
        number = float(text)
    except ValueError:
        return None
    # Shorter numbers are compact dates such as 20240501.
    if abs(number) < EPOCH_MIN_SECONDS:
        return None
    # Values this large are milliseconds since the epoch.
    if abs(number) >= 1e11:
        number /= 1000.0
    try:
        return datetime.fromtimestamp(number, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _parse_text_timestamp(text: str) -> Optional[datetime]:
    local_text = _ZONE_NAME_SUFFIX.sub("", text)
    iso_text = local_text[:-1] + "+00:00" if local_text.endswith(("Z", "z")) else local_text
    try:
        return datetime.fromisoformat(iso_text)
    except ValueError:
        pass
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(local_text, fmt)
        except ValueError:
            continue
    # RFC 2822 dates such as "Wed, 01 May 2024 09:00:00 GMT".
    try:
        return parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return None


def _to_number(value: Any) -> Optional[float]:
    if _is_blank(value) or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def parse_percentage(value: Any) -> Optional[float]:
    """Numeric percentage from cells like ``75``, ``"75.5"`` or ``"75%"``."""
    if isinstance(value, str):
        value = value.strip().rstrip("%").strip()
    return _to_number(value)


def clamp_time_on_page(milliseconds: Optional[float]) -> Optional[int]:
    if milliseconds is None:
        return None
    return int(max(0, min(MAX_TIME_ON_PAGE_MS, milliseconds)))


def _floor_zero(milliseconds: Optional[float]) -> Optional[int]:
    if milliseconds is None:
        return None
    return int(max(0, milliseconds))


def _seconds_to_ms(value: Any) -> Optional[float]:
    seconds = _to_number(value)
    if seconds is None:
        return None
    return float(int(seconds) * 1000)


def parse_event_data(value: Any) -> Dict[str, Any]:
    """Parse the structured payload column; anything unusable is an empty payload."""
    if isinstance(value, dict):
        return value
    if _is_blank(value):
        return {}
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _payload_str(payload: Mapping[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if _is_blank(value) or isinstance(value, (dict, list)):
        return None
    return str(value).strip()


def _payload_coordinates(payload: Mapping[str, Any]) -> Optional[Coordinates]:
    coordinates = parse_coordinates(payload.get("coordinates"))
    if coordinates is None and "lat" in payload and "lng" in payload:
        coordinates = parse_coordinates({"lat": payload["lat"], "lng": payload["lng"]})
    return coordinates


def resolve_timestamp(fields: RowFields) -> Optional[datetime]:
    for candidate in fields.candidates("timestamp"):
        parsed = parse_timestamp(candidate)
        if parsed is not None:
            return parsed
    return None


def normalize_row(row: Mapping[str, Any]) -> CanonicalEvent:
    """Map one raw CSV row to a canonical event.

    Raises:
        RowRejected: if no timestamp column yields a parseable value.
    """
    fields = RowFields(row)

    event_ts = resolve_timestamp(fields)
    if event_ts is None:
        raise RowRejected("missing or unparseable timestamp", columns=list(row.keys())[:5])

    uuid = fields.get_str("uuid")
    ip = fields.get_str("ip")
    visitor_key = uuid or ip or UNKNOWN_VISITOR

    payload = parse_event_data(fields.get("event_data"))
    url = _payload_str(payload, "url")
    referrer_url = _payload_str(payload, "referrer")
    title = _payload_str(payload, "title")
    payload_time_on_page = _to_number(payload.get("timeOnPage"))
    payload_idle_time = _to_number(payload.get("idleTime"))
    time_on_page_ms = clamp_time_on_page(payload_time_on_page)
    idle_time_ms = _floor_zero(payload_idle_time)
    coordinates = _payload_coordinates(payload)

    if url is None:
        url = fields.get_str("url")
    if referrer_url is None:
        referrer_url = fields.get_str("referrer")
    if title is None:
        title = fields.get_str("title")
    if time_on_page_ms is None:
        time_on_page_ms = clamp_time_on_page(_seconds_to_ms(fields.get("time_on_page")))
    if idle_time_ms is None:
        idle_time_ms = _floor_zero(_seconds_to_ms(fields.get("idle_time")))
    if coordinates is None:
        coordinates = parse_coordinates(fields.get("coordinates"))

    return CanonicalEvent(
        visitor_key=visitor_key,
        event_ts=event_ts,
        uuid=uuid,
        ip=ip,
        event_type=fields.get_str("event_type"),
        url=url,
        referrer_url=referrer_url,
        time_on_page_ms=time_on_page_ms,
        idle_time_ms=idle_time_ms,
        scroll_pct=parse_percentage(fields.get("scroll")),
        threshold=fields.get_str("threshold"),
        element_identifier=fields.get_str("element_identifier"),
        element_text=fields.get_str("element_text"),
        title=title,
        coordinates=coordinates,
        raw={name: value for name, value in row.items() if name is not None},
    )


def normalize_rows(rows: Iterable[Mapping[str, Any]]) -> Tuple[List[CanonicalEvent], int]:
    """Normalize every row, returning accepted events and the number of rejected rows."""
    events: List[CanonicalEvent] = []
    rejected = 0
    for index, row in enumerate(rows):
        try:
            events.append(normalize_row(row))
        except RowRejected as exc:
            rejected += 1
            if rejected <= 5:
                logger.warning("Skipping row %s (%s); columns: %s", index, exc.reason, exc.columns)
    if rejected > 5:
        logger.warning("Skipped %s rows without a usable timestamp", rejected)
    return events, rejected
