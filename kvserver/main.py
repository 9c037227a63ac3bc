"""Entry point for the transport server.
Opens the database, starts the broker and serves the kvsync.Transport gRPC service.
"""

import argparse
import asyncio
import signal
import sys
from typing import List, Optional

from common.logging_config import setup_logging
from kvserver.broker import Broker
from kvserver.config import (
    KVSERVER_ACK_WAIT_SECONDS,
    KVSERVER_DATABASE_PATH,
    KVSERVER_KV_HISTORY,
    KVSERVER_LISTEN_ADDR,
    KVSERVER_MAX_MESSAGES_PER_SUBJECT,
    KVSERVER_ROUTES,
    SHUTDOWN_GRACE_SECONDS,
)
from kvserver.database import Database
from kvserver.grpc_server import TransportServicer, create_server

logger = setup_logging('kvserver')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kvserver",
        description="KV bucket and pub/sub transport server for kvsync sites"
    )
    parser.add_argument("--listen", default=KVSERVER_LISTEN_ADDR, help="Listen address (host:port)")
    parser.add_argument("--db", default=KVSERVER_DATABASE_PATH, help="SQLite database path, or :memory:")
    parser.add_argument(
        "--route",
        action="append",
        default=None,
        help="Peer transport server to forward published messages to (repeatable)"
    )
    parser.add_argument("--ack-wait", type=float, default=KVSERVER_ACK_WAIT_SECONDS,
                        help="Seconds before unacknowledged durable deliveries are redelivered")
    parser.add_argument("--max-messages", type=int, default=KVSERVER_MAX_MESSAGES_PER_SUBJECT,
                        help="Messages retained per subject")
    parser.add_argument("--kv-history", type=int, default=KVSERVER_KV_HISTORY,
                        help="Log rows retained per key")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


async def serve(database: Database, broker: Broker, listen_addr: str, routes: List[str], kv_history: int) -> None:
    """
    Start and run gRPC server.

    Args:
        database: Opened transport database
        broker: Subject broker
        listen_addr: Address to bind
        routes: Peer transport servers to forward publishes to
        kv_history: Rows retained per key
    """
    servicer = TransportServicer(database, broker, routes=routes, kv_history=kv_history)
    server = create_server(servicer)
    server.add_insecure_port(listen_addr)

    logger.info(f"Starting transport server on {listen_addr} [routes={routes or 'none'}]")
    await server.start()

    async def shutdown(sig=None):
        if sig:
            logger.info(f"Received signal {sig}, shutting down...")
        else:
            logger.info("Shutting down...")

        broker.close()
        await server.stop(SHUTDOWN_GRACE_SECONDS)
        await servicer.close()
        logger.info("Transport server stopped")

    if sys.platform != 'win32':
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(shutdown(s)))

    try:
        await server.wait_for_termination()
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
        await shutdown()


def main(argv: Optional[List[str]] = None) -> None:
    """Bootstrap transport server."""
    args = build_parser().parse_args(argv)
    if args.debug:
        setup_logging('kvserver', 'DEBUG')

    routes = args.route if args.route is not None else KVSERVER_ROUTES

    logger.info(f"Initializing transport server [db={args.db}]")
    database = Database(args.db)
    broker = Broker(
        database,
        ack_wait=args.ack_wait,
        max_messages_per_subject=args.max_messages
    )

    try:
        asyncio.run(serve(database, broker, args.listen, routes, args.kv_history))
    except KeyboardInterrupt:
        logger.info("Transport server shutdown complete")
    except Exception as e:
        logger.error(f"Server error: {e}", exc_info=True)
        raise
    finally:
        database.close()


if __name__ == "__main__":
    main()
