"""Error taxonomy for the ingestion pipeline."""
from __future__ import annotations


class IngestionError(Exception):
    """Base class for pipeline errors."""


class RowRejected(IngestionError):
    """Raised when a CSV row cannot become an event (no usable timestamp)."""

    def __init__(self, reason: str, columns: list[str] | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.columns = columns or []


class EmptyBatch(IngestionError):
    """Raised when no row of an upload survives normalization."""

    def __init__(self, total_rows: int) -> None:
        super().__init__(
            f"No valid events found. CSV had {total_rows} rows but none had valid timestamps. "
            "Check that the CSV has a timestamp column."
        )
        self.total_rows = total_rows


class PersistenceFailure(IngestionError):
    """Raised when a storage write fails part way through an upload."""


class GeoLookupFailure(IngestionError):
    """Raised by geo providers for errors, timeouts and malformed responses."""


class VisitorAggregationFailure(IngestionError):
    """Raised when a single visitor's profile could not be built or stored."""

    def __init__(self, visitor_key: str, cause: BaseException) -> None:
        super().__init__(f"Failed to aggregate visitor {visitor_key!r}: {cause}")
        self.visitor_key = visitor_key
        self.cause = cause


class UploadNotFound(IngestionError):
    """Raised when an upload id does not match a stored upload."""


class UploadAlreadyTerminal(IngestionError):
    """Raised when processing is requested for a completed or failed upload."""
