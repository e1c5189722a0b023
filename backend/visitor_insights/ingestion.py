"""Top-level CSV upload processing."""
from __future__ import annotations

import csv
import io
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta
from typing import IO, Any, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from . import config, database, storage
from .aggregator import TimeWindow, aggregate_visitor, to_storage_datetime
from .exceptions import (
    EmptyBatch,
    PersistenceFailure,
    UploadAlreadyTerminal,
    UploadNotFound,
    VisitorAggregationFailure,
)
from .geo import GeoResolver, build_geo_resolver
from .models import TERMINAL_UPLOAD_STATUSES
from .normalizer import CanonicalEvent, normalize_rows

logger = logging.getLogger(__name__)

WINDOW_LENGTH = timedelta(days=30)

CsvSource = Union[bytes, str, IO[bytes], IO[str]]


@dataclass
class UploadResult:
    row_count: int
    error: Optional[str] = None
    rejected_rows: int = 0
    failed_visitors: List[str] = field(default_factory=list)


def _read_text(source: CsvSource) -> str:
    if hasattr(source, "read"):
        source = source.read()
    if isinstance(source, bytes):
        # utf-8-sig drops the BOM spreadsheet exports like to prepend.
        return source.decode("utf-8-sig", errors="replace")
    return source.lstrip("\ufeff")


def read_csv_rows(source: CsvSource) -> List[Dict[str, Any]]:
    """Parse CSV content with trimmed headers, skipping empty lines."""
    reader = csv.DictReader(io.StringIO(_read_text(source), newline=""))
    if reader.fieldnames is None:
        return []
    reader.fieldnames = [name.strip() for name in reader.fieldnames]
    rows = []
    for row in reader:
        if all(value is None or (isinstance(value, str) and not value.strip()) for value in row.values()):
            continue
        rows.append(row)
    return rows


def compute_window(events: List[CanonicalEvent]) -> TimeWindow:
    """Trailing window ending at the latest event, never starting before the earliest."""
    latest = max(event.event_ts for event in events)
    earliest = min(event.event_ts for event in events)
    return TimeWindow(start=max(earliest, latest - WINDOW_LENGTH), end=latest)


def group_by_visitor(events: List[CanonicalEvent]) -> Dict[str, List[CanonicalEvent]]:
    groups: Dict[str, List[CanonicalEvent]] = {}
    for event in events:
        groups.setdefault(event.visitor_key, []).append(event)
    return groups


def raw_event_row(tenant_id: str, upload_id: str, event: CanonicalEvent) -> Dict[str, Any]:
    coordinates = event.coordinates
    return {
        "tenant_id": tenant_id,
        "upload_id": upload_id,
        "visitor_key": event.visitor_key,
        "uuid": event.uuid,
        "ip": event.ip,
        "event_ts": to_storage_datetime(event.event_ts),
        "event_type": event.event_type,
        "url": event.url,
        "referrer_url": event.referrer_url,
        "time_on_page_ms": event.time_on_page_ms,
        "idle_time_ms": event.idle_time_ms,
        "scroll_pct": event.scroll_pct,
        "threshold": event.threshold,
        "element_identifier": event.element_identifier,
        "element_text": event.element_text,
        "title": event.title,
        "coordinates": {"lat": coordinates.lat, "lng": coordinates.lng} if coordinates else None,
        "raw_json": event.raw or None,
    }


def store_raw_events(tenant_id: str, upload_id: str, events: List[CanonicalEvent], batch_size: int) -> int:
    """Append raw events in fixed-size batches, each committed on its own."""
    stored = 0
    for offset in range(0, len(events), batch_size):
        batch = [raw_event_row(tenant_id, upload_id, event) for event in events[offset : offset + batch_size]]
        try:
            with database.session_scope() as db:
                stored += storage.insert_raw_events(db, batch)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(
                f"Failed to store raw events {offset}-{offset + len(batch) - 1} "
                f"after {stored} were stored: {exc}"
            ) from exc
    return stored


def _aggregate_one(
    tenant_id: str,
    visitor_key: str,
    events: List[CanonicalEvent],
    window: TimeWindow,
    resolver: Optional[GeoResolver],
) -> Optional[VisitorAggregationFailure]:
    try:
        with database.session_scope() as db:
            aggregate_visitor(db, tenant_id, visitor_key, events, window, resolver=resolver)
    except Exception as exc:
        failure = VisitorAggregationFailure(visitor_key, exc)
        logger.exception("%s", failure)
        return failure
    return None


def aggregate_visitors(
    tenant_id: str,
    groups: Dict[str, List[CanonicalEvent]],
    window: TimeWindow,
    resolver: Optional[GeoResolver],
    workers: int = 1,
) -> List[VisitorAggregationFailure]:
    """Build every visitor's profile; one visitor failing never stops the rest."""
    if workers <= 1 or len(groups) <= 1:
        outcomes = [
            _aggregate_one(tenant_id, visitor_key, events, window, resolver)
            for visitor_key, events in groups.items()
        ]
    else:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="visitor-aggregation") as executor:
            futures = [
                executor.submit(_aggregate_one, tenant_id, visitor_key, events, window, resolver)
                for visitor_key, events in groups.items()
            ]
            outcomes = [future.result() for future in futures]
    return [outcome for outcome in outcomes if outcome is not None]


def start_upload(tenant_id: str, filename: Optional[str] = None) -> str:
    """Register a new upload in ``processing`` and return its id."""
    with database.session_scope() as db:
        upload = storage.create_upload(db, tenant_id, filename)
        return upload.id


def _fail_upload(upload_id: str, message: str) -> None:
    with database.session_scope() as db:
        storage.mark_upload_failed(db, upload_id, message)


def process_upload(
    tenant_id: str,
    upload_id: str,
    source: CsvSource,
    resolver: Optional[GeoResolver] = None,
) -> UploadResult:
    """Ingest one CSV export and drive its upload to ``completed`` or ``error``.

    Raises:
        UploadNotFound: if ``upload_id`` is unknown for the tenant.
        UploadAlreadyTerminal: if the upload already completed or failed.
    """
    with database.session_scope() as db:
        upload = storage.get_upload(db, upload_id)
        if upload is None or upload.tenant_id != tenant_id:
            raise UploadNotFound(f"Upload {upload_id} not found for tenant {tenant_id}")
        if upload.status in TERMINAL_UPLOAD_STATUSES:
            raise UploadAlreadyTerminal(f"Upload {upload_id} is already {upload.status}")

    rejected = 0
    try:
        rows = read_csv_rows(source)
        logger.info("Parsed %s rows from CSV for upload %s", len(rows), upload_id)

        events, rejected = normalize_rows(rows)
        logger.info("Parsed %s events from %s rows for upload %s", len(events), len(rows), upload_id)
        if not events:
            raise EmptyBatch(len(rows))

        if resolver is None:
            resolver = build_geo_resolver()

        store_raw_events(tenant_id, upload_id, events, config.get_raw_event_batch_size())

        window = compute_window(events)
        groups = group_by_visitor(events)
        failures = aggregate_visitors(
            tenant_id, groups, window, resolver, workers=config.get_aggregation_workers()
        )
        if failures:
            logger.warning(
                "Upload %s: %s of %s visitors could not be aggregated", upload_id, len(failures), len(groups)
            )

        with database.session_scope() as db:
            storage.mark_upload_completed(db, upload_id, len(events))
    except EmptyBatch as exc:
        logger.error("Upload %s: %s", upload_id, exc)
        _fail_upload(upload_id, str(exc))
        return UploadResult(row_count=0, error=str(exc), rejected_rows=rejected)
    except Exception as exc:
        logger.exception("Error processing upload %s", upload_id)
        message = str(exc) or exc.__class__.__name__
        _fail_upload(upload_id, message)
        return UploadResult(row_count=0, error=message, rejected_rows=rejected)

    logger.info("Upload %s completed with %s events", upload_id, len(events))
    return UploadResult(
        row_count=len(events),
        rejected_rows=rejected,
        failed_visitors=[failure.visitor_key for failure in failures],
    )
