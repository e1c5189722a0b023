"""Tenant-scoped persistence operations used by the pipeline and the API."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import Select, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from .models import (
    UPLOAD_COMPLETED,
    UPLOAD_ERROR,
    UPLOAD_PROCESSING,
    GeoCacheEntry,
    RawEvent,
    Upload,
    VisitorProfile,
    utcnow,
)

PROFILE_KEY_COLUMNS = ("tenant_id", "window_start", "window_end", "visitor_key")


def _insert_for(db: Session, table):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upserts are not supported on the {dialect!r} dialect")


# Uploads


def create_upload(db: Session, tenant_id: str, filename: Optional[str] = None) -> Upload:
    upload = Upload(tenant_id=tenant_id, filename=filename, status=UPLOAD_PROCESSING)
    db.add(upload)
    db.flush()
    return upload


def get_upload(db: Session, upload_id: str) -> Optional[Upload]:
    return db.get(Upload, upload_id)


def _finish_upload(db: Session, upload_id: str, values: Dict[str, Any]) -> bool:
    # Only a processing upload may move; completed and error are terminal.
    result = db.execute(
        update(Upload)
        .where(Upload.id == upload_id, Upload.status == UPLOAD_PROCESSING)
        .values(processed_at=utcnow(), **values)
    )
    return result.rowcount == 1


def mark_upload_completed(db: Session, upload_id: str, row_count: int) -> bool:
    return _finish_upload(db, upload_id, {"status": UPLOAD_COMPLETED, "row_count": row_count, "error": None})


def mark_upload_failed(db: Session, upload_id: str, error: str, row_count: int = 0) -> bool:
    return _finish_upload(db, upload_id, {"status": UPLOAD_ERROR, "error": error, "row_count": row_count})


# Raw events


def insert_raw_events(db: Session, rows: List[Dict[str, Any]]) -> int:
    if not rows:
        return 0
    db.execute(RawEvent.__table__.insert(), rows)
    return len(rows)


def list_visitor_events(db: Session, tenant_id: str, visitor_key: str, limit: int = 1000) -> List[RawEvent]:
    stmt: Select[RawEvent] = (
        select(RawEvent)
        .where(RawEvent.tenant_id == tenant_id, RawEvent.visitor_key == visitor_key)
        .order_by(RawEvent.event_ts.asc(), RawEvent.id.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def top_values(
    db: Session,
    tenant_id: str,
    column,
    window_start: datetime,
    window_end: datetime,
    limit: int = 10,
) -> List[tuple]:
    """Most frequent non-null values of a raw event column within a time range."""
    count = func.count(column).label("count")
    stmt = (
        select(column, count)
        .where(
            RawEvent.tenant_id == tenant_id,
            RawEvent.event_ts >= window_start,
            RawEvent.event_ts <= window_end,
            column.is_not(None),
        )
        .group_by(column)
        .order_by(count.desc(), column.asc())
        .limit(limit)
    )
    return [tuple(row) for row in db.execute(stmt).all()]


# Visitor profiles


def upsert_visitor_profile(db: Session, values: Dict[str, Any]) -> None:
    """Create the profile or overwrite every derived field in one statement."""
    now = utcnow()
    row = dict(values, updated_at=now)
    stmt = _insert_for(db, VisitorProfile.__table__).values(created_at=now, **row)
    overwrite = {name: stmt.excluded[name] for name in row if name not in PROFILE_KEY_COLUMNS}
    stmt = stmt.on_conflict_do_update(index_elements=list(PROFILE_KEY_COLUMNS), set_=overwrite)
    db.execute(stmt)


def latest_visitor_profile(db: Session, tenant_id: str, visitor_key: str) -> Optional[VisitorProfile]:
    stmt: Select[VisitorProfile] = (
        select(VisitorProfile)
        .where(VisitorProfile.tenant_id == tenant_id, VisitorProfile.visitor_key == visitor_key)
        .order_by(VisitorProfile.updated_at.desc(), VisitorProfile.id.desc())
        .limit(1)
    )
    return db.execute(stmt).scalar_one_or_none()


def list_profiles_overlapping(
    db: Session, tenant_id: str, window_start: datetime, window_end: datetime
) -> List[VisitorProfile]:
    stmt: Select[VisitorProfile] = select(VisitorProfile).where(
        VisitorProfile.tenant_id == tenant_id,
        VisitorProfile.window_start <= window_end,
        VisitorProfile.window_end >= window_start,
    )
    return list(db.execute(stmt).scalars().all())


def list_tenant_profiles(
    db: Session, tenant_id: str, offset: int = 0, limit: Optional[int] = None
) -> List[VisitorProfile]:
    stmt: Select[VisitorProfile] = (
        select(VisitorProfile)
        .where(VisitorProfile.tenant_id == tenant_id)
        .order_by(VisitorProfile.visitor_key.asc(), VisitorProfile.window_start.asc())
        .offset(offset)
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def first_ips(db: Session, tenant_id: str, visitor_keys: Iterable[str]) -> Dict[str, str]:
    """First IP seen for each visitor, by event time."""
    keys = list(visitor_keys)
    if not keys:
        return {}
    stmt = (
        select(RawEvent.visitor_key, RawEvent.ip)
        .where(
            RawEvent.tenant_id == tenant_id,
            RawEvent.visitor_key.in_(keys),
            RawEvent.ip.is_not(None),
        )
        .order_by(RawEvent.event_ts.asc(), RawEvent.id.asc())
    )
    ips: Dict[str, str] = {}
    for visitor_key, ip in db.execute(stmt).all():
        ips.setdefault(visitor_key, ip)
    return ips


# Geo cache


def get_geo_cache_entry(db: Session, ip: str) -> Optional[GeoCacheEntry]:
    return db.get(GeoCacheEntry, ip)


def upsert_geo_cache_entry(db: Session, ip: str, location) -> None:
    values = {
        "city": location.city,
        "region": location.region,
        "country": location.country,
        "lat": location.lat,
        "lng": location.lng,
        "updated_at": utcnow(),
    }
    stmt = _insert_for(db, GeoCacheEntry.__table__).values(ip=ip, **values)
    stmt = stmt.on_conflict_do_update(index_elements=["ip"], set_=values)
    db.execute(stmt)
