"""Obfuscated key-value storage for local app state.

Values are JSON-encoded then base64-wrapped so they are not human-editable at
a glance. This is obfuscation, not encryption. Reads never raise: a missing,
tampered or corrupt value yields the caller's default.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from .schema import ensure_schema

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "HALAL_SCAN_SECURE_"
DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024


class StorageWriteFailed(Exception):
    """A value could not be persisted. Callers treat this as non-fatal."""


class StorageQuotaExceeded(StorageWriteFailed):
    pass


class SecureStorage:
    """Manages the kv_store table."""

    def __init__(
        self,
        db_path: str | Path = "~/.config/halal-scan/state.db",
        *,
        prefix: str = DEFAULT_PREFIX,
        quota_bytes: int = DEFAULT_QUOTA_BYTES,
    ) -> None:
        self._db_path = db_path
        self._prefix = prefix
        self._quota_bytes = quota_bytes
        self._conn: sqlite3.Connection | None = None

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = ensure_schema(self._db_path)
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    @staticmethod
    def encode(value: Any) -> str:
        raw = json.dumps(value, ensure_ascii=False).encode("utf-8")
        return base64.b64encode(raw).decode("ascii")

    @staticmethod
    def decode(encoded: str) -> Any:
        raw = base64.b64decode(encoded.encode("ascii"), validate=True)
        return json.loads(raw.decode("utf-8"))

    def set_item(self, key: str, value: Any) -> None:
        """Persist ``value`` under ``key``.

        Raises:
            StorageQuotaExceeded: If the write would exceed the storage quota.
            StorageWriteFailed: If the value can't be serialized or written.
        """
        try:
            encoded = self.encode(value)
        except (TypeError, ValueError) as e:
            raise StorageWriteFailed(f"value for {key!r} is not serializable: {e}") from e

        full_key = self._key(key)
        try:
            conn = self._get_conn()
            row = conn.execute(
                "SELECT COALESCE(SUM(LENGTH(value)), 0) AS used FROM kv_store WHERE key != ?",
                (full_key,),
            ).fetchone()
            if row["used"] + len(encoded) > self._quota_bytes:
                raise StorageQuotaExceeded(
                    f"writing {key!r} ({len(encoded)} bytes) exceeds the "
                    f"{self._quota_bytes} byte storage quota"
                )
            conn.execute(
                """INSERT INTO kv_store (key, value) VALUES (?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                     value=excluded.value,
                     updated_at=datetime('now', 'localtime')""",
                (full_key, encoded),
            )
            conn.commit()
        except sqlite3.Error as e:
            raise StorageWriteFailed(f"writing {key!r} failed: {e}") from e

    def get_item(self, key: str, default: Any = None) -> Any:
        """Return the stored value for ``key`` or ``default``."""
        try:
            row = self._get_conn().execute(
                "SELECT value FROM kv_store WHERE key = ?",
                (self._key(key),),
            ).fetchone()
        except sqlite3.Error as e:
            logger.warning("Storage read failed for %s: %s", key, e)
            return default
        if row is None:
            return default
        try:
            return self.decode(row["value"])
        except (binascii.Error, UnicodeDecodeError, ValueError) as e:
            logger.warning("Stored value for %s is unreadable, using default: %s", key, e)
            return default

    def remove_item(self, key: str) -> None:
        try:
            conn = self._get_conn()
            conn.execute("DELETE FROM kv_store WHERE key = ?", (self._key(key),))
            conn.commit()
        except sqlite3.Error as e:
            logger.warning("Storage delete failed for %s: %s", key, e)
