"""gRPC server implementation for the transport server."""

import asyncio
import logging
from typing import AsyncIterator, Dict, List, Optional, Set

import grpc
from grpc import aio

from common.constants import (
    DEFAULT_KV_HISTORY_PER_KEY,
    GRPC_KEEPALIVE_TIME_MS,
    GRPC_KEEPALIVE_TIMEOUT_MS,
    TRANSPORT_SERVICE_NAME,
)
from common.exceptions import TransportError
from common.protocol import (
    AckRequest,
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
from kvserver.broker import TERM, Broker
from kvserver.client import TransportClient
from kvserver.database import Database
from kvserver.kv_store import SqliteKVStore

logger = logging.getLogger(__name__)


class TransportServicer:
    """
    gRPC service implementation for KV buckets and subject pub/sub.
    """

    def __init__(
        self,
        database: Database,
        broker: Broker,
        routes: Optional[List[str]] = None,
        kv_history: int = DEFAULT_KV_HISTORY_PER_KEY
    ):
        """
        Initialize servicer.

        Args:
            database: Transport database holding the KV buckets
            broker: Subject broker
            routes: Addresses of peer transport servers to forward publishes to
            kv_history: Rows kept per key in each bucket
        """
        self.database = database
        self.broker = broker
        self.kv_history = kv_history
        self.routes: Dict[str, TransportClient] = {
            address: TransportClient(address) for address in (routes or [])
        }

        self._buckets: Dict[str, SqliteKVStore] = {}
        self._forward_tasks: Set[asyncio.Task] = set()

    def bucket(self, name: str) -> SqliteKVStore:
        store = self._buckets.get(name)
        if store is None:
            store = SqliteKVStore(self.database, name, history=self.kv_history)
            self._buckets[name] = store
        return store

    async def KVPut(self, request_bytes: bytes, context: grpc.aio.ServicerContext) -> bytes:
        """
        Handle KVPut RPC.

        Args:
            request_bytes: Serialized KVPutRequest
            context: gRPC context

        Returns:
            Serialized StatusResponse
        """
        try:
            request = KVPutRequest.from_json(request_bytes)
            await self.bucket(request.bucket).put(request.key, request.value)
            return StatusResponse(success=True).to_json()
        except Exception as e:
            logger.error(f"Error handling KVPut: {e}", exc_info=True)
            return StatusResponse(success=False, error_message=str(e)).to_json()

    async def KVGet(self, request_bytes: bytes, context: grpc.aio.ServicerContext) -> bytes:
        """
        Handle KVGet RPC.

        Returns:
            Serialized KVEntryResponse; found is False for keys never written
        """
        try:
            request = KVKeyRequest.from_json(request_bytes)
            entry = await self.bucket(request.bucket).get(request.key)
        except Exception as e:
            logger.error(f"Error handling KVGet: {e}", exc_info=True)
            await context.abort(grpc.StatusCode.INTERNAL, f"Error reading key: {e}")
            return b""

        if entry is None:
            return KVEntryResponse(found=False).to_json()

        return KVEntryResponse(
            found=True,
            value=entry.value,
            is_tombstone=entry.is_tombstone,
            write_timestamp=entry.write_timestamp
        ).to_json()

    async def KVDelete(self, request_bytes: bytes, context: grpc.aio.ServicerContext) -> bytes:
        """
        Handle KVDelete RPC.

        Returns:
            Serialized StatusResponse
        """
        try:
            request = KVKeyRequest.from_json(request_bytes)
            await self.bucket(request.bucket).delete(request.key)
            return StatusResponse(success=True).to_json()
        except Exception as e:
            logger.error(f"Error handling KVDelete: {e}", exc_info=True)
            return StatusResponse(success=False, error_message=str(e)).to_json()

    async def KVKeys(self, request_bytes: bytes, context: grpc.aio.ServicerContext) -> bytes:
        """
        Handle KVKeys RPC.

        Returns:
            Serialized KVKeysResponse
        """
        try:
            request = KVKeysRequest.from_json(request_bytes)
            keys = await self.bucket(request.bucket).keys()
        except Exception as e:
            logger.error(f"Error handling KVKeys: {e}", exc_info=True)
            await context.abort(grpc.StatusCode.INTERNAL, f"Error listing keys: {e}")
            return b""

        return KVKeysResponse(keys=keys).to_json()

    async def Publish(self, request_bytes: bytes, context: grpc.aio.ServicerContext) -> bytes:
        """
        Handle Publish RPC.

        Messages published by clients are forwarded once to every route;
        messages that arrived from a route are not forwarded again.

        Returns:
            Serialized StatusResponse
        """
        try:
            request = PublishRequest.from_json(request_bytes)
            await self.broker.publish(request.subject, request.data)
        except Exception as e:
            logger.error(f"Error handling Publish: {e}", exc_info=True)
            return StatusResponse(success=False, error_message=str(e)).to_json()

        if not request.forwarded and self.routes:
            for address, client in self.routes.items():
                task = asyncio.create_task(self._forward(address, client, request))
                self._forward_tasks.add(task)
                task.add_done_callback(self._forward_tasks.discard)

        return StatusResponse(success=True).to_json()

    async def Subscribe(
        self,
        request_bytes: bytes,
        context: grpc.aio.ServicerContext
    ) -> AsyncIterator[bytes]:
        """
        Handle Subscribe RPC (server streaming).

        Streams DeliveredMessage until the client cancels or the broker closes.

        Yields:
            Serialized DeliveredMessage messages
        """
        request = SubscribeRequest.from_json(request_bytes)

        try:
            if request.durable_name:
                subscription = self.broker.subscribe_durable(request.subject, request.durable_name)
            else:
                subscription = self.broker.subscribe(request.subject)
        except TransportError as e:
            logger.warning(f"Subscribe to {request.subject} refused: {e}")
            await context.abort(grpc.StatusCode.FAILED_PRECONDITION, str(e))
            return

        try:
            while True:
                message = await subscription.next_message()
                if message is None:
                    break
                yield message.to_json()
        finally:
            subscription.close()
            logger.info(
                f"Subscription on {request.subject} ended "
                f"[durable={request.durable_name or 'none'}]"
            )

    async def Ack(self, request_bytes: bytes, context: grpc.aio.ServicerContext) -> bytes:
        """
        Handle Ack RPC.

        Returns:
            Serialized StatusResponse
        """
        try:
            request = AckRequest.from_json(request_bytes)
            if request.action == TERM:
                await self.broker.terminate(request.durable_name, request.seq)
            else:
                await self.broker.ack(request.durable_name, request.seq)
            return StatusResponse(success=True).to_json()
        except Exception as e:
            logger.error(f"Error handling Ack: {e}", exc_info=True)
            return StatusResponse(success=False, error_message=str(e)).to_json()

    async def Ping(self, request_bytes: bytes, context: grpc.aio.ServicerContext) -> bytes:
        """
        Handle Ping RPC (health check).

        Returns:
            Serialized PingResponse
        """
        PingRequest.from_json(request_bytes)
        return PingResponse(available=not self.broker.closed).to_json()

    async def close(self) -> None:
        """Wait for in-flight forwards and close route clients."""
        if self._forward_tasks:
            await asyncio.gather(*self._forward_tasks, return_exceptions=True)

        for client in self.routes.values():
            await client.close()

    async def _forward(self, address: str, client: TransportClient, request: PublishRequest) -> None:
        try:
            await client.publish(request.subject, request.data, forwarded=True)
            logger.debug(f"Forwarded message on {request.subject} to route {address}")
        except TransportError as e:
            logger.warning(f"Failed to forward message on {request.subject} to route {address}: {e}")


def create_server(servicer: TransportServicer) -> aio.Server:
    """
    Create and configure gRPC server.

    Args:
        servicer: TransportServicer instance

    Returns:
        Configured gRPC server
    """
    server = aio.server(options=[
        ('grpc.keepalive_time_ms', GRPC_KEEPALIVE_TIME_MS),
        ('grpc.keepalive_timeout_ms', GRPC_KEEPALIVE_TIMEOUT_MS),
        ('grpc.http2.min_ping_interval_without_data_ms', GRPC_KEEPALIVE_TIME_MS),
        ('grpc.keepalive_permit_without_calls', 1),
    ])

    server.add_generic_rpc_handlers((
        grpc.method_handlers_generic_handler(
            TRANSPORT_SERVICE_NAME,
            {
                'KVPut': grpc.unary_unary_rpc_method_handler(
                    servicer.KVPut,
                    request_deserializer=lambda x: x,
                    response_serializer=lambda x: x,
                ),
                'KVGet': grpc.unary_unary_rpc_method_handler(
                    servicer.KVGet,
                    request_deserializer=lambda x: x,
                    response_serializer=lambda x: x,
                ),
                'KVDelete': grpc.unary_unary_rpc_method_handler(
                    servicer.KVDelete,
                    request_deserializer=lambda x: x,
                    response_serializer=lambda x: x,
                ),
                'KVKeys': grpc.unary_unary_rpc_method_handler(
                    servicer.KVKeys,
                    request_deserializer=lambda x: x,
                    response_serializer=lambda x: x,
                ),
                'Publish': grpc.unary_unary_rpc_method_handler(
                    servicer.Publish,
                    request_deserializer=lambda x: x,
                    response_serializer=lambda x: x,
                ),
                'Subscribe': grpc.unary_stream_rpc_method_handler(
                    servicer.Subscribe,
                    request_deserializer=lambda x: x,
                    response_serializer=lambda x: x,
                ),
                'Ack': grpc.unary_unary_rpc_method_handler(
                    servicer.Ack,
                    request_deserializer=lambda x: x,
                    response_serializer=lambda x: x,
                ),
                'Ping': grpc.unary_unary_rpc_method_handler(
                    servicer.Ping,
                    request_deserializer=lambda x: x,
                    response_serializer=lambda x: x,
                ),
            }
        ),
    ))

    return server
