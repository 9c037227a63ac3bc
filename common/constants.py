"""Project-wide constants (default addresses, subjects, timeouts)."""

DEFAULT_TRANSPORT_ADDRESS: str = "localhost:4222"
DEFAULT_BUCKET: str = "config"
DEFAULT_NODE_ID: str = "site-a"
DEFAULT_REPLICATION_SUBJECT: str = "rep.kv.ops"
DEFAULT_RECONCILE_INTERVAL_MS: int = 60_000

DEFAULT_API_HOST: str = "0.0.0.0"
DEFAULT_API_PORT: int = 8080

DURABLE_CONSUMER_PREFIX: str = "rep-kv-"

# Reconciliation tags synthesized versions with these suffixes so they never
# collide with live node identifiers.
RECONCILE_LOCAL_SUFFIX: str = "-local"
RECONCILE_PEER_SUFFIX: str = "-peer"

TRANSPORT_SERVICE_NAME: str = "kvsync.Transport"
TRANSPORT_TIMEOUT_SECONDS: float = 10.0
GRPC_KEEPALIVE_TIME_MS: int = 30_000
GRPC_KEEPALIVE_TIMEOUT_MS: int = 10_000

DEFAULT_ACK_WAIT_SECONDS: float = 30.0
DEFAULT_MAX_MESSAGES_PER_SUBJECT: int = 100_000
DEFAULT_KV_HISTORY_PER_KEY: int = 1
SUBSCRIPTION_QUEUE_SIZE: int = 10_000
