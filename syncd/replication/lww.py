"""
Last-Writer-Wins operations, versions and the conflict decision rule.

wins() is the single source of truth for every conflict decision made by the
replication consumer and the reconciliation engine.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from common.exceptions import OperationDecodeError


class OperationKind(str, Enum):
    """Kind of mutation carried by an Operation."""
    PUT = "put"
    DELETE = "delete"


@dataclass(frozen=True)
class Version:
    """
    Ordering metadata of an operation, without its payload.
    """
    timestamp: int
    origin_node: str
    is_tombstone: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ts": self.timestamp,
            "nodeId": self.origin_node,
            "tombstone": self.is_tombstone,
        }


@dataclass(frozen=True)
class Operation:
    """
    Immutable fact describing one mutation of one key.

    value is present if and only if kind is PUT; an empty string is a valid value.
    """
    kind: OperationKind
    bucket: str
    key: str
    timestamp: int
    origin_node: str
    value: Optional[str] = None

    def __post_init__(self):
        if self.kind is OperationKind.PUT and self.value is None:
            raise ValueError("put operation requires a value")
        if self.kind is OperationKind.DELETE and self.value is not None:
            raise ValueError("delete operation must not carry a value")

    @property
    def is_delete(self) -> bool:
        return self.kind is OperationKind.DELETE

    def to_dict(self) -> Dict[str, Any]:
        """
        Wire representation; 'value' is omitted entirely for deletes.
        """
        obj: Dict[str, Any] = {
            "op": self.kind.value,
            "bucket": self.bucket,
            "key": self.key,
        }
        if self.kind is OperationKind.PUT:
            obj["value"] = self.value
        obj["ts"] = self.timestamp
        obj["nodeId"] = self.origin_node
        return obj

    def to_json(self) -> bytes:
        """Serialize to JSON bytes."""
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes) -> Operation:
        """
        Deserialize from JSON bytes.

        Raises:
            OperationDecodeError: If the payload is not a well-formed operation
        """
        try:
            obj = json.loads(data)
        except (ValueError, UnicodeDecodeError) as e:
            raise OperationDecodeError(f"Payload is not valid JSON: {e}") from e

        if not isinstance(obj, dict):
            raise OperationDecodeError("Payload is not a JSON object")

        try:
            kind = OperationKind(obj.get("op"))
        except ValueError:
            raise OperationDecodeError(f"Unknown operation kind: {obj.get('op')!r}")

        bucket = _require_str(obj, "bucket")
        key = _require_str(obj, "key")
        origin_node = _require_str(obj, "nodeId")
        timestamp = _require_timestamp(obj)

        value = obj.get("value")
        if kind is OperationKind.PUT:
            if "value" not in obj or not isinstance(value, str):
                raise OperationDecodeError("put operation requires a string 'value'")
        elif value is not None:
            raise OperationDecodeError("delete operation must not carry a 'value'")

        # JSON escapes can carry lone surrogates that no store can encode
        for name, text in (("bucket", bucket), ("key", key), ("nodeId", origin_node), ("value", value)):
            if text is None:
                continue
            try:
                text.encode("utf-8")
            except UnicodeEncodeError as e:
                raise OperationDecodeError(f"Field '{name}' is not valid UTF-8 text") from e

        return cls(
            kind=kind,
            bucket=bucket,
            key=key,
            timestamp=timestamp,
            origin_node=origin_node,
            value=value,
        )


def _require_str(obj: Dict[str, Any], name: str) -> str:
    value = obj.get(name)
    if not isinstance(value, str):
        raise OperationDecodeError(f"Field '{name}' must be a string")
    return value


def _require_timestamp(obj: Dict[str, Any]) -> int:
    ts = obj.get("ts")
    # bool is an int subclass and never a valid timestamp
    if isinstance(ts, bool) or not isinstance(ts, (int, float)):
        raise OperationDecodeError("Field 'ts' must be a number")
    if isinstance(ts, float):
        if not ts.is_integer():
            raise OperationDecodeError(f"Field 'ts' must be integral, got {ts}")
        ts = int(ts)
    return ts


def version_from_operation(operation: Operation) -> Version:
    """
    Derive the ordering metadata of an operation.

    Args:
        operation: Operation to summarize

    Returns:
        Version with the operation's timestamp, origin and tombstone flag
    """
    return Version(
        timestamp=operation.timestamp,
        origin_node=operation.origin_node,
        is_tombstone=operation.is_delete,
    )


def wins(candidate: Version, incumbent: Optional[Version]) -> bool:
    """
    Decide whether the candidate version beats the incumbent.

    Rules, in order:
    1. No incumbent: candidate wins.
    2. Higher timestamp wins.
    3. Equal timestamps: the lexicographically greater origin node wins.

    Identical versions never win against each other, so re-applying the same
    operation is a no-op.

    Args:
        candidate: Version being considered
        incumbent: Currently accepted version, if any

    Returns:
        True if the candidate should replace the incumbent
    """
    if incumbent is None:
        return True

    if candidate.timestamp > incumbent.timestamp:
        return True
    if candidate.timestamp < incumbent.timestamp:
        return False

    return candidate.origin_node > incumbent.origin_node
