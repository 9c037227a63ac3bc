"""Entry point for the sync daemon."""

import argparse
import time
import uuid
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from common.exceptions import (
    ConfigurationError,
    KeyNotFoundError,
    KVStoreError,
    KVSyncError,
    ReconciliationDisabledError,
    TransportError,
)
from common.logging_config import setup_logging
from syncd.config import SyncConfig, parse_interval
from syncd.node import SyncNode
from syncd.routes.kv_routes import router as kv_router
from syncd.routes.kv_routes import set_node
from syncd.schemas.common import ErrorResponse, HealthResponse

logger = setup_logging('syncd')


def _error_response(request: Request, exc: Exception, status_code: int, code: str, log_error: bool = False):
    request_id = getattr(request.state, 'request_id', 'unknown')
    message = f"{type(exc).__name__}: {exc} [request_id={request_id}] path={request.url.path}"
    if log_error:
        logger.error(message, exc_info=True)
    else:
        logger.warning(message)
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(detail=str(exc), code=code).model_dump()
    )


def create_app(node: SyncNode) -> FastAPI:
    """
    Build the HTTP API for a site.

    The node is started on application startup and stopped on shutdown.

    Args:
        node: SyncNode to expose

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="kvsync",
        description="Multi-site LWW key-value synchronization daemon",
        version="1.0.0"
    )
    app.state.node = node
    set_node(node)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """
        Middleware to log all HTTP requests and responses.
        """
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        start_time = time.time()

        logger.info(f"Request started: {request.method} {request.url.path} [request_id={request_id}]")

        response = await call_next(request)

        duration = time.time() - start_time

        logger.info(
            f"Request completed: {request.method} {request.url.path} "
            f"status={response.status_code} duration={duration:.3f}s [request_id={request_id}]"
        )

        response.headers["X-Request-ID"] = request_id

        return response

    @app.on_event("startup")
    async def startup_event():
        """
        Start replication and reconciliation on application startup.
        """
        logger.info("Sync daemon starting up...")
        await node.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        """
        Stop background tasks and close transport handles on shutdown.
        """
        logger.info("Sync daemon shutting down...")
        await node.stop()

    @app.exception_handler(KeyNotFoundError)
    async def key_not_found_handler(request: Request, exc: KeyNotFoundError):
        return _error_response(request, exc, status.HTTP_404_NOT_FOUND, "KEY_NOT_FOUND")

    @app.exception_handler(ReconciliationDisabledError)
    async def reconciliation_disabled_handler(request: Request, exc: ReconciliationDisabledError):
        return _error_response(request, exc, status.HTTP_409_CONFLICT, "RECONCILIATION_DISABLED")

    @app.exception_handler(KVStoreError)
    async def kv_store_error_handler(request: Request, exc: KVStoreError):
        return _error_response(request, exc, status.HTTP_502_BAD_GATEWAY, "KV_STORE_UNAVAILABLE", log_error=True)

    @app.exception_handler(TransportError)
    async def transport_error_handler(request: Request, exc: TransportError):
        return _error_response(request, exc, status.HTTP_502_BAD_GATEWAY, "TRANSPORT_UNAVAILABLE", log_error=True)

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        return _error_response(
            request, exc, status.HTTP_500_INTERNAL_SERVER_ERROR, "CONFIGURATION_ERROR", log_error=True
        )

    @app.exception_handler(KVSyncError)
    async def kvsync_exception_handler(request: Request, exc: KVSyncError):
        return _error_response(request, exc, status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR", log_error=True)

    app.include_router(kv_router)

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """
        Health check endpoint.
        Returns 200 while the daemon is alive, even if replication is degraded.
        """
        return HealthResponse(status="healthy", **node.status())

    return app


def build_parser(defaults: SyncConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kvsyncd",
        description="Keep a KV bucket consistent across sites with LWW replication"
    )
    parser.add_argument("--transport-url", default=defaults.local_transport_address,
                        help="Local transport server address")
    parser.add_argument("--peer-transport-url", default=defaults.peer_transport_address,
                        help="Peer site's transport server; enables reconciliation")
    parser.add_argument("--bucket", default=defaults.bucket_name, help="KV bucket name")
    parser.add_argument("--node-id", default=defaults.local_node_id, help="Unique identifier of this site")
    parser.add_argument("--rep-subj", default=defaults.replication_channel_name, help="Replication subject")
    parser.add_argument("--use-durable", action="store_true", default=defaults.use_durable_channel,
                        help="Use a durable, acknowledged consumer")
    parser.add_argument("--reconcile-interval", default=str(defaults.reconciliation_interval_ms),
                        help="Milliseconds between reconciliation cycles (0 disables)")
    parser.add_argument("--host", default=defaults.api_host, help="HTTP API host")
    parser.add_argument("--port", type=int, default=defaults.api_port, help="HTTP API port")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def parse_config(argv: Optional[List[str]] = None) -> SyncConfig:
    """
    Build the site configuration from environment defaults and command-line flags.

    An unparsable --reconcile-interval disables periodic reconciliation.

    Raises:
        ConfigurationError: If the resulting configuration is invalid
    """
    defaults = SyncConfig.from_env()
    args = build_parser(defaults).parse_args(argv)

    config = SyncConfig(
        local_transport_address=args.transport_url,
        peer_transport_address=args.peer_transport_url or None,
        bucket_name=args.bucket,
        local_node_id=args.node_id,
        replication_channel_name=args.rep_subj,
        use_durable_channel=args.use_durable,
        reconciliation_interval_ms=parse_interval(args.reconcile_interval, 0),
        api_host=args.host,
        api_port=args.port,
        log_level="DEBUG" if args.debug else defaults.log_level,
    )
    config.validate()
    return config


def main(argv: Optional[List[str]] = None) -> None:
    """
    Start the sync daemon with uvicorn.
    """
    config = parse_config(argv)
    setup_logging('syncd', config.log_level)

    node = SyncNode.connect(config)
    app = create_app(node)

    uvicorn.run(
        app,
        host=config.api_host,
        port=config.api_port,
        log_level=config.log_level.lower()
    )


if __name__ == "__main__":
    main()
