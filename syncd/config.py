"""Configuration settings for the sync daemon."""

import os
from dataclasses import dataclass
from typing import Optional

from common.constants import (
    DEFAULT_API_HOST,
    DEFAULT_API_PORT,
    DEFAULT_BUCKET,
    DEFAULT_NODE_ID,
    DEFAULT_RECONCILE_INTERVAL_MS,
    DEFAULT_REPLICATION_SUBJECT,
    DEFAULT_TRANSPORT_ADDRESS,
    DURABLE_CONSUMER_PREFIX,
)
from common.exceptions import ConfigurationError

ENV_PREFIX = "KVSYNC_"

_TRUE_VALUES = ("1", "true", "yes", "on")


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def parse_bool(value: Optional[str]) -> bool:
    """Interpret an environment flag."""
    if value is None:
        return False
    return value.strip().lower() in _TRUE_VALUES


def parse_interval(value, default: int = 0) -> int:
    """
    Parse a reconciliation interval in milliseconds.

    Unparsable values yield the default, which disables periodic
    reconciliation when it is 0.
    """
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class SyncConfig:
    """
    Settings for one site.

    peer_transport_address is None when no peer site is configured, which
    disables reconciliation entirely.
    """
    local_transport_address: str = DEFAULT_TRANSPORT_ADDRESS
    peer_transport_address: Optional[str] = None
    bucket_name: str = DEFAULT_BUCKET
    local_node_id: str = DEFAULT_NODE_ID
    replication_channel_name: str = DEFAULT_REPLICATION_SUBJECT
    use_durable_channel: bool = False
    reconciliation_interval_ms: int = DEFAULT_RECONCILE_INTERVAL_MS
    api_host: str = DEFAULT_API_HOST
    api_port: int = DEFAULT_API_PORT
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> 'SyncConfig':
        """
        Build a configuration from KVSYNC_* environment variables.

        Returns:
            SyncConfig with unset variables left at their defaults
        """
        peer = _env("PEER_TRANSPORT_URL") or None
        return cls(
            local_transport_address=_env("TRANSPORT_URL", DEFAULT_TRANSPORT_ADDRESS),
            peer_transport_address=peer,
            bucket_name=_env("BUCKET", DEFAULT_BUCKET),
            local_node_id=_env("NODE_ID", DEFAULT_NODE_ID),
            replication_channel_name=_env("REP_SUBJ", DEFAULT_REPLICATION_SUBJECT),
            use_durable_channel=parse_bool(_env("USE_DURABLE")),
            reconciliation_interval_ms=parse_interval(
                _env("RECONCILE_INTERVAL_MS"), DEFAULT_RECONCILE_INTERVAL_MS
            ),
            api_host=_env("API_HOST", DEFAULT_API_HOST),
            api_port=parse_interval(_env("API_PORT"), DEFAULT_API_PORT),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )

    def validate(self) -> None:
        """
        Check that the configuration is usable.

        Raises:
            ConfigurationError: If a required value is empty or out of range
        """
        if not self.local_transport_address:
            raise ConfigurationError("local transport address must not be empty")
        if not self.bucket_name:
            raise ConfigurationError("bucket name must not be empty")
        if not self.local_node_id:
            raise ConfigurationError("local node id must not be empty")
        if not self.replication_channel_name:
            raise ConfigurationError("replication channel name must not be empty")
        if isinstance(self.reconciliation_interval_ms, bool) or not isinstance(
            self.reconciliation_interval_ms, int
        ):
            raise ConfigurationError(
                f"reconciliation interval must be an integer, got {self.reconciliation_interval_ms!r}"
            )
        if self.reconciliation_interval_ms < 0:
            raise ConfigurationError(
                f"reconciliation interval must not be negative, got {self.reconciliation_interval_ms}"
            )
        if not 0 < self.api_port < 65536:
            raise ConfigurationError(f"invalid API port {self.api_port}")

    @property
    def reconciliation_enabled(self) -> bool:
        return bool(self.peer_transport_address) and self.reconciliation_interval_ms > 0

    @property
    def durable_name(self) -> Optional[str]:
        """Durable consumer name, or None when durable delivery is off."""
        if not self.use_durable_channel:
            return None
        return f"{DURABLE_CONSUMER_PREFIX}{self.local_node_id}"
