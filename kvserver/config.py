"""Configuration settings for the transport server."""

import os

from common.constants import (
    DEFAULT_ACK_WAIT_SECONDS,
    DEFAULT_KV_HISTORY_PER_KEY,
    DEFAULT_MAX_MESSAGES_PER_SUBJECT,
)


KVSERVER_LISTEN_ADDR = os.environ.get("KVSERVER_LISTEN_ADDR", "[::]:4222")

KVSERVER_DATABASE_PATH = os.environ.get("KVSERVER_DATABASE_PATH", "/app/data/kvserver.db")

# Comma-separated addresses of peer transport servers that published messages are forwarded to
KVSERVER_ROUTES = [
    route.strip()
    for route in os.environ.get("KVSERVER_ROUTES", "").split(",")
    if route.strip()
]

KVSERVER_ACK_WAIT_SECONDS = float(os.environ.get("KVSERVER_ACK_WAIT_SECONDS", str(DEFAULT_ACK_WAIT_SECONDS)))

KVSERVER_MAX_MESSAGES_PER_SUBJECT = int(
    os.environ.get("KVSERVER_MAX_MESSAGES_PER_SUBJECT", str(DEFAULT_MAX_MESSAGES_PER_SUBJECT))
)

KVSERVER_KV_HISTORY = int(os.environ.get("KVSERVER_KV_HISTORY", str(DEFAULT_KV_HISTORY_PER_KEY)))

SHUTDOWN_GRACE_SECONDS = 5
