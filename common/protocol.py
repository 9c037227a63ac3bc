"""Shared RPC/protocol message definitions (serialization formats)."""

from dataclasses import dataclass, field
from typing import Optional, List
import json
import base64


def _b64encode(data: Optional[bytes]) -> Optional[str]:
    if data is None:
        return None
    return base64.b64encode(data).decode('ascii')


def _b64decode(data: Optional[str]) -> Optional[bytes]:
    if data is None:
        return None
    return base64.b64decode(data)


@dataclass
class KVPutRequest:
    """Request message for KVPut RPC."""
    bucket: str
    key: str
    value: bytes

    def to_json(self) -> bytes:
        """Serialize to JSON bytes."""
        return json.dumps({
            'bucket': self.bucket,
            'key': self.key,
            'value': _b64encode(self.value)
        }).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'KVPutRequest':
        """Deserialize from JSON bytes."""
        obj = json.loads(data)
        return cls(bucket=obj['bucket'], key=obj['key'], value=_b64decode(obj['value']))


@dataclass
class KVKeyRequest:
    """Request message for KVGet and KVDelete RPCs."""
    bucket: str
    key: str

    def to_json(self) -> bytes:
        """Serialize to JSON bytes."""
        return json.dumps({'bucket': self.bucket, 'key': self.key}).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'KVKeyRequest':
        """Deserialize from JSON bytes."""
        obj = json.loads(data)
        return cls(bucket=obj['bucket'], key=obj['key'])


@dataclass
class KVKeysRequest:
    """Request message for KVKeys RPC."""
    bucket: str

    def to_json(self) -> bytes:
        """Serialize to JSON bytes."""
        return json.dumps({'bucket': self.bucket}).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'KVKeysRequest':
        """Deserialize from JSON bytes."""
        obj = json.loads(data)
        return cls(bucket=obj['bucket'])


@dataclass
class KVEntryResponse:
    """Response message for KVGet RPC."""
    found: bool
    value: Optional[bytes] = None
    is_tombstone: bool = False
    write_timestamp: int = 0

    def to_json(self) -> bytes:
        """Serialize to JSON bytes."""
        return json.dumps({
            'found': self.found,
            'value': _b64encode(self.value),
            'is_tombstone': self.is_tombstone,
            'write_timestamp': self.write_timestamp
        }).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'KVEntryResponse':
        """Deserialize from JSON bytes."""
        obj = json.loads(data)
        return cls(
            found=obj['found'],
            value=_b64decode(obj.get('value')),
            is_tombstone=obj.get('is_tombstone', False),
            write_timestamp=obj.get('write_timestamp', 0)
        )


@dataclass
class KVKeysResponse:
    """Response message for KVKeys RPC."""
    keys: List[str] = field(default_factory=list)

    def to_json(self) -> bytes:
        """Serialize to JSON bytes."""
        return json.dumps({'keys': self.keys}).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'KVKeysResponse':
        """Deserialize from JSON bytes."""
        obj = json.loads(data)
        return cls(keys=obj.get('keys', []))


@dataclass
class PublishRequest:
    """
    Request message for Publish RPC.

    forwarded is set when one transport server relays a message to a route,
    so the receiving server does not relay it again.
    """
    subject: str
    data: bytes
    forwarded: bool = False

    def to_json(self) -> bytes:
        """Serialize to JSON bytes."""
        return json.dumps({
            'subject': self.subject,
            'data': _b64encode(self.data),
            'forwarded': self.forwarded
        }).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'PublishRequest':
        """Deserialize from JSON bytes."""
        obj = json.loads(data)
        return cls(
            subject=obj['subject'],
            data=_b64decode(obj['data']),
            forwarded=obj.get('forwarded', False)
        )


@dataclass
class SubscribeRequest:
    """Request message for Subscribe RPC (server streaming)."""
    subject: str
    durable_name: Optional[str] = None

    def to_json(self) -> bytes:
        """Serialize to JSON bytes."""
        return json.dumps({
            'subject': self.subject,
            'durable_name': self.durable_name
        }).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'SubscribeRequest':
        """Deserialize from JSON bytes."""
        obj = json.loads(data)
        return cls(subject=obj['subject'], durable_name=obj.get('durable_name'))


@dataclass
class DeliveredMessage:
    """
    One message streamed by the Subscribe RPC.

    seq is only set for durable subscriptions; it is the position to acknowledge.
    """
    subject: str
    data: bytes
    seq: Optional[int] = None
    delivery_count: int = 1

    def to_json(self) -> bytes:
        """Serialize to JSON bytes."""
        return json.dumps({
            'subject': self.subject,
            'data': _b64encode(self.data),
            'seq': self.seq,
            'delivery_count': self.delivery_count
        }).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'DeliveredMessage':
        """Deserialize from JSON bytes."""
        obj = json.loads(data)
        return cls(
            subject=obj['subject'],
            data=_b64decode(obj['data']),
            seq=obj.get('seq'),
            delivery_count=obj.get('delivery_count', 1)
        )


@dataclass
class AckRequest:
    """Request message for Ack RPC. action is 'ack' or 'term'."""
    durable_name: str
    seq: int
    action: str = 'ack'

    def to_json(self) -> bytes:
        """Serialize to JSON bytes."""
        return json.dumps({
            'durable_name': self.durable_name,
            'seq': self.seq,
            'action': self.action
        }).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'AckRequest':
        """Deserialize from JSON bytes."""
        obj = json.loads(data)
        return cls(durable_name=obj['durable_name'], seq=obj['seq'], action=obj.get('action', 'ack'))


@dataclass
class StatusResponse:
    """Generic response message for mutating RPCs."""
    success: bool
    error_message: Optional[str] = None

    def to_json(self) -> bytes:
        """Serialize to JSON bytes."""
        return json.dumps({
            'success': self.success,
            'error_message': self.error_message
        }).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'StatusResponse':
        """Deserialize from JSON bytes."""
        obj = json.loads(data)
        return cls(success=obj['success'], error_message=obj.get('error_message'))


@dataclass
class PingRequest:
    """Request message for Ping RPC (health check)."""
    pass

    def to_json(self) -> bytes:
        """Serialize to JSON bytes."""
        return json.dumps({}).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'PingRequest':
        """Deserialize from JSON bytes."""
        return cls()


@dataclass
class PingResponse:
    """Response message for Ping RPC."""
    available: bool

    def to_json(self) -> bytes:
        """Serialize to JSON bytes."""
        return json.dumps({'available': self.available}).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'PingResponse':
        """Deserialize from JSON bytes."""
        obj = json.loads(data)
        return cls(available=obj['available'])
