"""KV and replication API routes."""

from fastapi import APIRouter, Depends, HTTPException, status

from common.logging_config import get_logger
from common.types import KVEntry
from syncd.node import SyncNode
from syncd.replication.lww import Operation, Version
from syncd.schemas.kv import (
    EntryResponse,
    ListEntriesResponse,
    ListVersionsResponse,
    OperationResponse,
    PutValueRequest,
    ReconciliationReportResponse,
    VersionResponse,
)

logger = get_logger(__name__)

router = APIRouter(tags=["KV"])

_node: SyncNode = None


def set_node(node: SyncNode):
    """Set the global sync node instance"""
    global _node
    _node = node


def get_node() -> SyncNode:
    """Dependency to get the sync node"""
    if _node is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync node not initialized"
        )
    return _node


def _operation_response(operation: Operation) -> OperationResponse:
    return OperationResponse(**operation.to_dict())


def _entry_response(key: str, entry: KVEntry) -> EntryResponse:
    return EntryResponse(
        key=key,
        value=entry.value.decode('utf-8', errors='replace') if entry.value is not None else None,
        is_tombstone=entry.is_tombstone,
        write_timestamp=entry.write_timestamp,
    )


def _version_response(key: str, version: Version) -> VersionResponse:
    return VersionResponse(key=key, **version.to_dict())


@router.put("/kv/{key}", response_model=OperationResponse)
async def put_value(
    key: str,
    request: PutValueRequest,
    node: SyncNode = Depends(get_node)
):
    """
    Write a value locally and replicate it.

    Parameters:
        - key: Key to write
        - value: String value (JSON body)

    Returns:
        - The emitted operation (op, bucket, key, value, ts, nodeId)

    Raises:
        - 502: Local KV store unavailable (nothing was published)
    """
    operation = await node.gateway.put(key, request.value)
    return _operation_response(operation)


@router.delete("/kv/{key}", response_model=OperationResponse)
async def delete_value(key: str, node: SyncNode = Depends(get_node)):
    """
    Tombstone a key locally and replicate the delete.

    Returns:
        - The emitted operation (op, bucket, key, ts, nodeId)
    """
    operation = await node.gateway.delete(key)
    return _operation_response(operation)


@router.get("/kv/{key}", response_model=EntryResponse)
async def get_value(key: str, node: SyncNode = Depends(get_node)):
    """
    Read the local entry for a key.

    Raises:
        - 404: Key was never written
    """
    entry = await node.get_entry(key)
    return _entry_response(key, entry)


@router.get("/kv", response_model=ListEntriesResponse)
async def list_values(node: SyncNode = Depends(get_node)):
    """
    List every entry in the bucket, tombstones included.
    """
    entries = await node.list_entries()
    return ListEntriesResponse(
        bucket=node.config.bucket_name,
        entries=[_entry_response(key, entry) for key, entry in sorted(entries.items())]
    )


@router.get("/versions", response_model=ListVersionsResponse)
async def list_versions(node: SyncNode = Depends(get_node)):
    """
    Return the accepted version of every key this site has seen.
    """
    versions = node.versions()
    return ListVersionsResponse(
        bucket=node.config.bucket_name,
        versions=[_version_response(key, version) for key, version in sorted(versions.items())]
    )


@router.get("/versions/{key}", response_model=VersionResponse)
async def get_version(key: str, node: SyncNode = Depends(get_node)):
    """
    Return the accepted version of one key.

    Raises:
        - 404: No version recorded for the key
    """
    return _version_response(key, node.version(key))


@router.post("/reconcile", response_model=ReconciliationReportResponse)
async def reconcile(node: SyncNode = Depends(get_node)):
    """
    Run one reconciliation cycle against the peer now.

    Raises:
        - 409: No peer configured
        - 502: Transport unreachable
    """
    report = await node.reconcile_now()
    logger.info(f"Manual reconciliation finished: {report.to_dict()}")
    return ReconciliationReportResponse(**report.to_dict())
