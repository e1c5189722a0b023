"""FastAPI application entrypoint for the visitor ingestion API."""
from __future__ import annotations

import logging
from typing import Iterator, List

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, Query, UploadFile, status
from sqlalchemy.orm import Session

from . import database, schemas, storage
from .dashboard import build_dashboard, parse_window
from .exceptions import IngestionError
from .ingestion import process_upload

logger = logging.getLogger(__name__)

database.init_db()

app = FastAPI(
    title="Visitor Insights Ingestion API",
    description="API for uploading visitor event exports and reading the resulting visitor profiles.",
    version="0.1.0",
)


def get_db() -> Iterator[Session]:
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _mark_failed(upload_id: str, message: str) -> None:
    try:
        with database.session_scope() as db:
            storage.mark_upload_failed(db, upload_id, message)
    except Exception:
        logger.exception("Could not mark upload %s as failed", upload_id)


def run_upload(tenant_id: str, upload_id: str, content: bytes) -> None:
    """Background entry point; the upload record carries the outcome.

    Nothing propagates out of the task. An unexpected failure is logged and
    the upload is moved to ``error`` if it is still ``processing``.
    """
    try:
        result = process_upload(tenant_id, upload_id, content)
    except IngestionError:
        logger.exception("Upload %s could not be processed", upload_id)
        return
    except Exception as exc:
        logger.exception("Unexpected failure while processing upload %s", upload_id)
        _mark_failed(upload_id, str(exc) or exc.__class__.__name__)
        return
    if result.error:
        logger.warning("Upload %s failed: %s", upload_id, result.error)
    else:
        logger.info("Upload %s processed %s events", upload_id, result.row_count)


@app.post("/uploads", response_model=schemas.UploadOut, status_code=status.HTTP_202_ACCEPTED)
def create_upload(
    background_tasks: BackgroundTasks,
    tenant_id: str = Form(...),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
) -> schemas.UploadOut:
    tenant_id = tenant_id.strip()
    if not tenant_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="tenant_id is required")

    content = file.file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File is empty")

    upload = storage.create_upload(db, tenant_id, file.filename)
    db.commit()
    db.refresh(upload)

    background_tasks.add_task(run_upload, tenant_id, upload.id, content)
    return schemas.UploadOut.model_validate(upload)


@app.get("/uploads/{upload_id}", response_model=schemas.UploadOut)
def get_upload(upload_id: str, db: Session = Depends(get_db)) -> schemas.UploadOut:
    upload = storage.get_upload(db, upload_id)
    if upload is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Upload not found")
    return schemas.UploadOut.model_validate(upload)


@app.get("/visitors", response_model=List[schemas.VisitorProfileOut])
def list_visitors(
    tenant_id: str = Query(..., min_length=1),
    page: int = Query(1, ge=1),
    page_size: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> List[schemas.VisitorProfileOut]:
    offset = (page - 1) * page_size
    profiles = storage.list_tenant_profiles(db, tenant_id, offset=offset, limit=page_size)
    return [schemas.VisitorProfileOut.model_validate(profile) for profile in profiles]


@app.get("/visitors/{visitor_key}", response_model=schemas.VisitorDetailOut)
def get_visitor(
    visitor_key: str,
    tenant_id: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
) -> schemas.VisitorDetailOut:
    profile = storage.latest_visitor_profile(db, tenant_id, visitor_key)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Visitor not found")

    events = storage.list_visitor_events(db, tenant_id, visitor_key)
    profile_out = schemas.VisitorProfileOut.model_validate(profile)
    profile_out.ip = next((event.ip for event in events if event.ip), None)
    return schemas.VisitorDetailOut(
        profile=profile_out,
        events=[schemas.RawEventOut.model_validate(event) for event in events],
    )


@app.get("/dashboard", response_model=schemas.DashboardOut)
def get_dashboard(
    tenant_id: str = Query(..., min_length=1),
    window: str = Query("L30", description="Trailing window such as L7 or L30"),
    db: Session = Depends(get_db),
) -> schemas.DashboardOut:
    return build_dashboard(db, tenant_id, days=parse_window(window))
