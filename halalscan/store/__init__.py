"""SQLite-backed local state storage."""

from .schema import ensure_schema
from .secure import SecureStorage, StorageQuotaExceeded, StorageWriteFailed

__all__ = [
    "SecureStorage",
    "StorageQuotaExceeded",
    "StorageWriteFailed",
    "ensure_schema",
]
