"""Credential synchronisation primitives."""

from .lock import LockAlreadyHeld, LockHandle, LockRecord, LockStore
from .manager import (
    CredentialSyncManager,
    LastSync,
    LastValidated,
    LockContentionError,
    compute_credential_hash,
    is_credential_error,
)

__all__ = [
    "CredentialSyncManager",
    "LastSync",
    "LastValidated",
    "LockAlreadyHeld",
    "LockContentionError",
    "LockHandle",
    "LockRecord",
    "LockStore",
    "compute_credential_hash",
    "is_credential_error",
]
