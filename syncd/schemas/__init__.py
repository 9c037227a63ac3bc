"""Pydantic schemas for API requests and responses."""

from syncd.schemas.kv import (
    PutValueRequest,
    OperationResponse,
    EntryResponse,
    ListEntriesResponse,
    VersionResponse,
    ListVersionsResponse,
    ReconciliationReportResponse
)
from syncd.schemas.common import ErrorResponse, HealthResponse

__all__ = [
    "PutValueRequest",
    "OperationResponse",
    "EntryResponse",
    "ListEntriesResponse",
    "VersionResponse",
    "ListVersionsResponse",
    "ReconciliationReportResponse",
    "ErrorResponse",
    "HealthResponse"
]
