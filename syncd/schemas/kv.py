"""Pydantic schemas for KV and replication endpoints."""

from typing import List, Optional

from pydantic import BaseModel


class PutValueRequest(BaseModel):
    """Request model for writing a value."""
    value: str


class OperationResponse(BaseModel):
    """Response model for a local write: the operation that was emitted."""
    op: str
    bucket: str
    key: str
    value: Optional[str] = None
    ts: int
    nodeId: str


class EntryResponse(BaseModel):
    """Response model for a stored entry."""
    key: str
    value: Optional[str] = None
    is_tombstone: bool
    write_timestamp: int


class ListEntriesResponse(BaseModel):
    """Response model for listing a bucket, tombstones included."""
    bucket: str
    entries: List[EntryResponse]


class VersionResponse(BaseModel):
    """Response model for the accepted version of a key."""
    key: str
    ts: int
    nodeId: str
    tombstone: bool


class ListVersionsResponse(BaseModel):
    """Response model for the version metadata of a bucket."""
    bucket: str
    versions: List[VersionResponse]


class ReconciliationReportResponse(BaseModel):
    """Response model for a reconciliation cycle."""
    keys_examined: int
    copied_to_local: int
    copied_to_peer: int
    resolved: int
    converged: int
    failed_keys: List[str]
