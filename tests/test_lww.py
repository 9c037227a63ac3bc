"""Tests for LWW operations and the conflict decision rule."""

import json

import pytest

from common.exceptions import OperationDecodeError
from syncd.replication.lww import (
    Operation,
    OperationKind,
    Version,
    version_from_operation,
    wins,
)


def _op_bytes(**fields) -> bytes:
    return json.dumps(fields).encode('utf-8')


class TestWins:
    """Test the LWW decision rule."""

    def test_no_incumbent(self):
        assert wins(Version(1, "a"), None)

    def test_higher_timestamp_wins(self):
        assert wins(Version(6, "a"), Version(5, "z"))
        assert not wins(Version(5, "z"), Version(6, "a"))

    def test_tie_broken_by_greater_node(self):
        assert wins(Version(5, "site-b"), Version(5, "site-a"))
        assert not wins(Version(5, "site-a"), Version(5, "site-b"))

    def test_identical_version_does_not_win(self):
        assert not wins(Version(5, "site-a"), Version(5, "site-a"))

    def test_tombstone_flag_is_ignored(self):
        put = Version(5, "site-a", is_tombstone=False)
        delete = Version(5, "site-a", is_tombstone=True)

        assert not wins(delete, put)
        assert not wins(put, delete)

    def test_exactly_one_side_wins_for_distinct_versions(self):
        versions = [Version(ts, node) for ts in (1, 2) for node in ("a", "b")]
        for x in versions:
            for y in versions:
                if x != y:
                    assert wins(x, y) != wins(y, x)


class TestOperation:
    """Test Operation construction and wire format."""

    def test_put_requires_value(self):
        with pytest.raises(ValueError):
            Operation(OperationKind.PUT, "config", "k", 1, "site-a")

    def test_delete_rejects_value(self):
        with pytest.raises(ValueError):
            Operation(OperationKind.DELETE, "config", "k", 1, "site-a", value="x")

    def test_empty_string_is_a_value(self):
        op = Operation(OperationKind.PUT, "config", "k", 1, "site-a", value="")

        assert Operation.from_json(op.to_json()).value == ""

    def test_put_wire_format(self):
        op = Operation(OperationKind.PUT, "config", "app.mode", 1713200000123, "site-a", value="blue")

        assert json.loads(op.to_json()) == {
            "op": "put",
            "bucket": "config",
            "key": "app.mode",
            "value": "blue",
            "ts": 1713200000123,
            "nodeId": "site-a",
        }

    def test_delete_wire_format_omits_value(self):
        op = Operation(OperationKind.DELETE, "config", "app.mode", 9, "site-b")

        obj = json.loads(op.to_json())
        assert "value" not in obj
        assert obj["op"] == "delete"

    def test_decode_put(self):
        op = Operation.from_json(
            _op_bytes(op="put", bucket="config", key="k", value="v", ts=42, nodeId="site-b")
        )

        assert op.kind is OperationKind.PUT
        assert op.value == "v"
        assert op.timestamp == 42
        assert op.origin_node == "site-b"

    def test_decode_delete_with_null_value(self):
        op = Operation.from_json(
            _op_bytes(op="delete", bucket="config", key="k", value=None, ts=42, nodeId="site-b")
        )

        assert op.is_delete
        assert op.value is None

    def test_decode_integral_float_timestamp(self):
        op = Operation.from_json(
            _op_bytes(op="put", bucket="config", key="k", value="v", ts=42.0, nodeId="site-b")
        )

        assert op.timestamp == 42
        assert isinstance(op.timestamp, int)

    def test_version_from_operation(self):
        op = Operation(OperationKind.DELETE, "config", "k", 7, "site-c")

        assert version_from_operation(op) == Version(7, "site-c", is_tombstone=True)


class TestOperationDecodeErrors:
    """Malformed payloads raise OperationDecodeError."""

    @pytest.mark.parametrize("payload", [
        b"not json",
        b"\xff\xfe",
        b"[1, 2, 3]",
        _op_bytes(op="merge", bucket="config", key="k", ts=1, nodeId="a"),
        _op_bytes(op="put", bucket="config", key="k", ts=1, nodeId="a"),
        _op_bytes(op="put", bucket="config", key="k", value=5, ts=1, nodeId="a"),
        _op_bytes(op="delete", bucket="config", key="k", value="x", ts=1, nodeId="a"),
        _op_bytes(op="put", key="k", value="v", ts=1, nodeId="a"),
        _op_bytes(op="put", bucket="config", key="k", value="v", ts="1", nodeId="a"),
        _op_bytes(op="put", bucket="config", key="k", value="v", ts=1.5, nodeId="a"),
        _op_bytes(op="put", bucket="config", key="k", value="v", ts=True, nodeId="a"),
        _op_bytes(op="put", bucket="config", key="k", value="v", ts=1),
    ])
    def test_rejected(self, payload):
        with pytest.raises(OperationDecodeError):
            Operation.from_json(payload)

    @pytest.mark.parametrize("field", ["value", "key", "nodeId"])
    def test_lone_surrogate_rejected(self, field):
        """Text that cannot be stored as UTF-8 is a decode error, not an apply error."""
        fields = dict(op="put", bucket="config", key="k", value="v", ts=1, nodeId="a")
        fields[field] = "bad\ud800"

        with pytest.raises(OperationDecodeError):
            Operation.from_json(_op_bytes(**fields))
