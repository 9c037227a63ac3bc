"""Configuration management for kvctl."""

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from common.constants import DEFAULT_API_PORT

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / '.kvsync' / 'config.json'

HOST_ENV = 'KVSYNC_API_HOST'
PORT_ENV = 'KVSYNC_API_PORT'


class Config:
    """
    kvctl settings persisted as JSON.

    Missing keys fall back to DEFAULT_CONFIG. KVSYNC_API_HOST and
    KVSYNC_API_PORT override the stored daemon address for the current
    process only and are never written back to disk.
    """

    DEFAULT_CONFIG: Dict[str, Any] = {
        "syncd_host": "localhost",
        "syncd_port": DEFAULT_API_PORT,
        "timeout": 30,
        "max_retries": 3,
        "retry_backoff_multiplier": 2,
    }

    def __init__(self, config_path: Path = DEFAULT_CONFIG_PATH):
        self.config_path = config_path
        self._overrides: Dict[str, Any] = {}
        self._ensure_directory()
        self.data = self._load()

    def _ensure_directory(self) -> None:
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
        except PermissionError:
            self.config_path = Path(tempfile.gettempdir()) / '.kvsync' / 'config.json'
            self.config_path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> Dict[str, Any]:
        merged = dict(self.DEFAULT_CONFIG)

        if not self.config_path.exists():
            self.data = merged
            self.save()
            return merged

        try:
            stored = json.loads(self.config_path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Unreadable config {self.config_path}, falling back to defaults: {e}")
            self._backup()
            return merged

        merged.update(stored)
        return merged

    def _backup(self) -> None:
        try:
            shutil.copy(self.config_path, self.config_path.with_suffix('.json.bak'))
        except OSError as e:
            logger.debug(f"Config backup failed: {e}")

    def save(self) -> None:
        """Write the current settings to the config file."""
        try:
            self.config_path.write_text(json.dumps(self.data, indent=2))
        except OSError as e:
            logger.warning(f"Could not save config file {self.config_path}: {e}")

    def override_address(self, host: Optional[str] = None, port: Optional[int] = None) -> None:
        """Use host/port for this process only, ahead of env vars and the file."""
        if host:
            self._overrides['syncd_host'] = host
        if port:
            self._overrides['syncd_port'] = port

    def get_base_url(self) -> str:
        """Sync daemon base URL, e.g. http://localhost:8080."""
        host = (
            self._overrides.get('syncd_host')
            or os.environ.get(HOST_ENV)
            or self.data.get('syncd_host', 'localhost')
        )
        port = (
            self._overrides.get('syncd_port')
            or os.environ.get(PORT_ENV)
            or self.data.get('syncd_port', DEFAULT_API_PORT)
        )
        return f"http://{host}:{port}"

    def get_timeout(self) -> int:
        return self.data.get('timeout', 30)

    def get_retry_config(self) -> Dict[str, int]:
        return {
            'max_retries': self.data.get('max_retries', 3),
            'retry_backoff_multiplier': self.data.get('retry_backoff_multiplier', 2),
        }
