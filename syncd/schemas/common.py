"""Common schemas used across multiple endpoints."""

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Response model for errors."""
    detail: str
    code: str


class HealthResponse(BaseModel):
    """Response model for the health check."""
    status: str
    node_id: str
    bucket: str
    clock: int
    tracked_keys: int
    reconciliation_enabled: bool
