"""
RPC client for the transport server.

TransportClient speaks the kvsync.Transport service; RemoteKVStore and
RemoteChannel adapt it to the KVStore and ReplicationChannel contracts used
by the sync daemon. gRPC failures surface as TransportError (KVStoreError for
bucket calls) with the RpcError as __cause__.
"""

import asyncio
import logging
import re
from typing import List, Optional, Type

import grpc

from common.constants import (
    GRPC_KEEPALIVE_TIME_MS,
    GRPC_KEEPALIVE_TIMEOUT_MS,
    TRANSPORT_SERVICE_NAME,
    TRANSPORT_TIMEOUT_SECONDS,
)
from common.exceptions import KVStoreError, TransportError
from common.protocol import (
    AckRequest,
    DeliveredMessage,
    KVEntryResponse,
    KVKeyRequest,
    KVKeysRequest,
    KVKeysResponse,
    KVPutRequest,
    PingRequest,
    PingResponse,
    PublishRequest,
    StatusResponse,
    SubscribeRequest,
)
from common.types import Delivery, KVEntry, KVStore, ReplicationChannel, Subscription

logger = logging.getLogger(__name__)

_SCHEME_PREFIX = re.compile(r'^[a-z][a-z0-9+.-]*://', re.IGNORECASE)

TRANSIENT_CODES = (grpc.StatusCode.UNAVAILABLE, grpc.StatusCode.DEADLINE_EXCEEDED)


def grpc_target(address: str) -> str:
    """
    Turn a transport address into a gRPC target.

    Accepts plain host:port as well as URL forms such as nats://user:pw@host:4222.
    """
    target = _SCHEME_PREFIX.sub('', address.strip())
    if '@' in target:
        target = target.rsplit('@', 1)[1]
    return target.rstrip('/')


class TransportClient:
    """
    gRPC client for transport server operations.
    Handles connection management and RPC calls.
    """

    def __init__(
        self,
        address: str,
        timeout: float = TRANSPORT_TIMEOUT_SECONDS,
        max_retries: int = 3
    ):
        """
        Initialize client with lazy connection.

        Args:
            address: Transport server address
            timeout: Per-RPC deadline in seconds
            max_retries: Attempts for unary calls failing with a transient status
        """
        self.address = address
        self.timeout = timeout
        self.max_retries = max_retries
        self._target = grpc_target(address)
        self._channel: Optional[grpc.aio.Channel] = None

    def _ensure_channel(self) -> grpc.aio.Channel:
        """Ensure gRPC channel is established."""
        if self._channel is None:
            options = [
                ('grpc.keepalive_time_ms', GRPC_KEEPALIVE_TIME_MS),
                ('grpc.keepalive_timeout_ms', GRPC_KEEPALIVE_TIMEOUT_MS),
                ('grpc.keepalive_permit_without_calls', 1),
            ]
            self._channel = grpc.aio.insecure_channel(self._target, options=options)
            logger.info(f"Established gRPC channel to {self.address}")
        return self._channel

    async def close(self):
        """Close gRPC channel."""
        if self._channel:
            await self._channel.close()
            self._channel = None
            logger.debug(f"Closed gRPC channel to {self.address}")

    async def _unary(
        self,
        method: str,
        request_bytes: bytes,
        error_cls: Type[TransportError] = TransportError,
        retry: bool = True
    ) -> bytes:
        """
        Call a unary RPC, retrying transient failures with exponential backoff.

        With retry=False the call is attempted exactly once. Publish is not
        idempotent: a deadline can expire after the server stored the message.

        Raises:
            TransportError: (or error_cls) once retries are exhausted or on a non-transient status
        """
        multi_callable = self._ensure_channel().unary_unary(
            f'/{TRANSPORT_SERVICE_NAME}/{method}',
            request_serializer=lambda x: x,
            response_deserializer=lambda x: x,
        )

        attempts = self.max_retries if retry else 1
        for attempt in range(attempts):
            try:
                return await multi_callable(request_bytes, timeout=self.timeout)
            except grpc.RpcError as e:
                if e.code() in TRANSIENT_CODES and attempt < attempts - 1:
                    delay = 2 ** attempt * 0.1
                    logger.warning(
                        f"Transient failure calling {method} on {self.address}, retrying in {delay:.1f}s "
                        f"(attempt {attempt + 1}/{attempts}): {e.code()}"
                    )
                    await asyncio.sleep(delay)
                    continue
                raise error_cls(
                    f"{method} to {self.address} failed: {e.code()} - {e.details()}"
                ) from e

        raise error_cls(f"{method} to {self.address} failed")

    @staticmethod
    def _check_status(method: str, response_bytes: bytes, error_cls: Type[TransportError]) -> None:
        response = StatusResponse.from_json(response_bytes)
        if not response.success:
            raise error_cls(f"{method} rejected by server: {response.error_message}")

    async def kv_put(self, bucket: str, key: str, value: bytes) -> None:
        request = KVPutRequest(bucket=bucket, key=key, value=value)
        response_bytes = await self._unary('KVPut', request.to_json(), KVStoreError)
        self._check_status('KVPut', response_bytes, KVStoreError)

    async def kv_get(self, bucket: str, key: str) -> Optional[KVEntry]:
        request = KVKeyRequest(bucket=bucket, key=key)
        response = KVEntryResponse.from_json(
            await self._unary('KVGet', request.to_json(), KVStoreError)
        )
        if not response.found:
            return None
        return KVEntry(
            value=response.value,
            is_tombstone=response.is_tombstone,
            write_timestamp=response.write_timestamp
        )

    async def kv_delete(self, bucket: str, key: str) -> None:
        request = KVKeyRequest(bucket=bucket, key=key)
        response_bytes = await self._unary('KVDelete', request.to_json(), KVStoreError)
        self._check_status('KVDelete', response_bytes, KVStoreError)

    async def kv_keys(self, bucket: str) -> List[str]:
        request = KVKeysRequest(bucket=bucket)
        response = KVKeysResponse.from_json(
            await self._unary('KVKeys', request.to_json(), KVStoreError)
        )
        return response.keys

    async def publish(self, subject: str, data: bytes, forwarded: bool = False) -> None:
        """
        Publish a payload on a subject.

        Raises:
            TransportError: If the server is unreachable or refuses the message
        """
        request = PublishRequest(subject=subject, data=data, forwarded=forwarded)
        response_bytes = await self._unary('Publish', request.to_json(), retry=False)
        self._check_status('Publish', response_bytes, TransportError)

    async def ack(self, durable_name: str, seq: int, action: str = 'ack') -> None:
        request = AckRequest(durable_name=durable_name, seq=seq, action=action)
        response_bytes = await self._unary('Ack', request.to_json())
        self._check_status('Ack', response_bytes, TransportError)

    async def ping(self) -> bool:
        """
        Health check.

        Returns:
            True if the server answered and reports itself available
        """
        try:
            response_bytes = await self._unary('Ping', PingRequest().to_json())
        except TransportError as e:
            logger.debug(f"Ping to {self.address} failed: {e}")
            return False
        return PingResponse.from_json(response_bytes).available

    async def subscribe(self, subject: str, durable_name: Optional[str] = None) -> 'RemoteSubscription':
        """
        Open a Subscribe stream.

        Raises:
            TransportError: If the server cannot be reached
        """
        multi_callable = self._ensure_channel().unary_stream(
            f'/{TRANSPORT_SERVICE_NAME}/Subscribe',
            request_serializer=lambda x: x,
            response_deserializer=lambda x: x,
        )
        request = SubscribeRequest(subject=subject, durable_name=durable_name)
        call = multi_callable(request.to_json())

        try:
            await asyncio.wait_for(call.wait_for_connection(), timeout=self.timeout)
        except (grpc.RpcError, asyncio.TimeoutError) as e:
            call.cancel()
            raise TransportError(f"Subscribe to {subject} on {self.address} failed: {e}") from e

        logger.info(
            f"Subscribed to {subject} on {self.address} [durable={durable_name or 'none'}]"
        )
        return RemoteSubscription(self, call, subject, durable_name)


class RemoteDelivery(Delivery):
    """Delivery received over gRPC; ack/reject are no-ops for non-durable subscriptions."""

    def __init__(self, client: TransportClient, message: DeliveredMessage, durable_name: Optional[str]):
        self.client = client
        self.message = message
        self.data = message.data
        self.durable_name = durable_name

    async def ack(self) -> None:
        if self.durable_name and self.message.seq is not None:
            await self.client.ack(self.durable_name, self.message.seq, 'ack')

    async def reject(self) -> None:
        if self.durable_name and self.message.seq is not None:
            await self.client.ack(self.durable_name, self.message.seq, 'term')


class RemoteSubscription(Subscription):

    def __init__(self, client: TransportClient, call, subject: str, durable_name: Optional[str]):
        self.client = client
        self.call = call
        self.subject = subject
        self.durable_name = durable_name
        self.closed = False

    async def next_delivery(self) -> Optional[Delivery]:
        """
        Raises:
            TransportError: If the stream fails while the subscription is open
        """
        if self.closed:
            return None

        try:
            response_bytes = await self.call.read()
        except asyncio.CancelledError:
            if self.closed:
                return None
            raise
        except grpc.RpcError as e:
            if self.closed or e.code() == grpc.StatusCode.CANCELLED:
                return None
            raise TransportError(
                f"Subscription to {self.subject} on {self.client.address} failed: "
                f"{e.code()} - {e.details()}"
            ) from e

        if response_bytes is grpc.aio.EOF:
            if self.closed:
                return None
            raise TransportError(f"Subscription to {self.subject} closed by {self.client.address}")

        message = DeliveredMessage.from_json(response_bytes)
        return RemoteDelivery(self.client, message, self.durable_name)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.call.cancel()


class RemoteChannel(ReplicationChannel):
    """ReplicationChannel over a transport server."""

    def __init__(self, client: TransportClient):
        self.client = client

    async def publish(self, subject: str, data: bytes) -> None:
        await self.client.publish(subject, data)

    async def subscribe(self, subject: str, durable_name: Optional[str] = None) -> Subscription:
        return await self.client.subscribe(subject, durable_name)

    async def close(self) -> None:
        await self.client.close()


class RemoteKVStore(KVStore):
    """KVStore for one bucket on a transport server."""

    def __init__(self, client: TransportClient, bucket: str):
        self.client = client
        self.bucket = bucket

    async def put(self, key: str, value: bytes) -> None:
        await self.client.kv_put(self.bucket, key, value)

    async def get(self, key: str) -> Optional[KVEntry]:
        return await self.client.kv_get(self.bucket, key)

    async def delete(self, key: str) -> None:
        await self.client.kv_delete(self.bucket, key)

    async def keys(self) -> List[str]:
        return await self.client.kv_keys(self.bucket)

    async def close(self) -> None:
        await self.client.close()
