"""Custom exception classes shared by the sync daemon, transport server and CLI."""


class KVSyncError(Exception):
    """
    Base exception class for all kvsync errors.
    """
    pass


class ConfigurationError(KVSyncError):
    """
    Raised when a configuration value is missing or invalid.
    """
    pass


class TransportError(KVSyncError):
    """
    Raised when a connect, publish, subscribe or RPC call to the transport fails.
    """
    pass


class KVStoreError(TransportError):
    """
    Raised when the KV store cannot complete a put, get, delete or keys call.
    """
    pass


class OperationDecodeError(KVSyncError):
    """
    Raised when a replicated payload is not a well-formed Operation.
    """
    pass


class KeyNotFoundError(KVSyncError):
    """
    Raised when a requested key has no entry in the bucket.
    """
    pass


class ReconciliationDisabledError(KVSyncError):
    """
    Raised when reconciliation is requested but no peer site is configured.
    """
    pass
