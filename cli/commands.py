"""Command handler functions for CLI operations."""

from typing import Optional

from common.logging_config import get_logger
from cli.config import Config
from cli.models import (
    DeleteCommand,
    GetCommand,
    ListCommand,
    PutCommand,
    ReconcileCommand,
    VersionsCommand,
)
from cli.syncd_client import SyncdClient

logger = get_logger(__name__)


_client: Optional[SyncdClient] = None


def get_client() -> SyncdClient:
    """
    Get or create global SyncdClient instance.

    Returns:
        SyncdClient instance
    """
    global _client
    if _client is None:
        logger.debug("Creating new SyncdClient instance")
        _client = SyncdClient(Config())
    return _client


def handle_put(cmd: PutCommand, client: Optional[SyncdClient] = None) -> str:
    """
    Handle 'put' command.

    Args:
        cmd: PutCommand with key and value
        client: Optional SyncdClient for dependency injection (testing)

    Returns:
        Success or error message
    """
    logger.info(f"Executing put command: key={cmd.key}")
    if client is None:
        client = get_client()
    return client.put(cmd.key, cmd.value)


def handle_get(cmd: GetCommand, client: Optional[SyncdClient] = None) -> str:
    if client is None:
        client = get_client()
    return client.get(cmd.key)


def handle_delete(cmd: DeleteCommand, client: Optional[SyncdClient] = None) -> str:
    """
    Handle 'delete' command.

    Args:
        cmd: DeleteCommand with key
        client: Optional SyncdClient for dependency injection (testing)

    Returns:
        Success or error message
    """
    logger.info(f"Executing delete command: key={cmd.key}")
    if client is None:
        client = get_client()
    return client.delete(cmd.key)


def handle_list(cmd: ListCommand, client: Optional[SyncdClient] = None) -> str:
    if client is None:
        client = get_client()
    return client.list_entries()


def handle_versions(cmd: VersionsCommand, client: Optional[SyncdClient] = None) -> str:
    """
    Handle 'versions' command.

    Args:
        cmd: VersionsCommand with optional key
        client: Optional SyncdClient for dependency injection (testing)

    Returns:
        Formatted version listing
    """
    if client is None:
        client = get_client()
    return client.versions(cmd.key)


def handle_reconcile(cmd: ReconcileCommand, client: Optional[SyncdClient] = None) -> str:
    """
    Handle 'reconcile' command.

    Returns:
        Cycle summary or error message
    """
    logger.info("Executing reconcile command")
    if client is None:
        client = get_client()
    result = client.reconcile()
    logger.debug("Reconcile command completed")
    return result
