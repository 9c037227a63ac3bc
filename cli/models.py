"""Command request data types for CLI."""

from dataclasses import dataclass
from typing import Literal


@dataclass(frozen=True)
class PutCommand:
    """Write a value."""

    key: str
    value: str
    command: Literal["put"] = "put"


@dataclass(frozen=True)
class GetCommand:
    """Read the local entry for a key."""

    key: str
    command: Literal["get"] = "get"


@dataclass(frozen=True)
class DeleteCommand:
    """Delete a key."""

    key: str
    command: Literal["delete"] = "delete"


@dataclass(frozen=True)
class ListCommand:
    """List every entry in the bucket."""

    command: Literal["list"] = "list"


@dataclass(frozen=True)
class VersionsCommand:
    """Show accepted versions, for one key or all."""

    key: str | None = None
    command: Literal["versions"] = "versions"


@dataclass(frozen=True)
class ReconcileCommand:
    """Run a reconciliation cycle now."""

    command: Literal["reconcile"] = "reconcile"


CommandRequest = (
    PutCommand
    | GetCommand
    | DeleteCommand
    | ListCommand
    | VersionsCommand
    | ReconcileCommand
)
