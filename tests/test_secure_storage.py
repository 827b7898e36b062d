"""Tests for the obfuscated key-value store."""

import base64
import json

import pytest

from halalscan.store import SecureStorage, StorageQuotaExceeded, StorageWriteFailed


@pytest.fixture
def storage(tmp_path):
    s = SecureStorage(tmp_path / "state.db")
    yield s
    s.close()


class TestSecureStorage:
    def test_round_trip(self, storage):
        storage.set_item("scanHistory", [{"id": "1", "reason": "حلال"}])
        assert storage.get_item("scanHistory") == [{"id": "1", "reason": "حلال"}]

    def test_missing_key_returns_default(self, storage):
        assert storage.get_item("nope") is None
        assert storage.get_item("nope", 0) == 0

    def test_values_are_base64_json_under_prefix(self, storage):
        storage.set_item("isPremium", True)

        row = storage._get_conn().execute(
            "SELECT key, value FROM kv_store"
        ).fetchone()
        assert row["key"] == "HALAL_SCAN_SECURE_isPremium"
        assert json.loads(base64.b64decode(row["value"])) is True

    def test_tampered_value_falls_back_to_default(self, storage):
        conn = storage._get_conn()
        conn.execute(
            "INSERT INTO kv_store (key, value) VALUES (?, ?)",
            ("HALAL_SCAN_SECURE_scanCount", "%%% not base64 %%%"),
        )
        conn.commit()

        assert storage.get_item("scanCount", 0) == 0

    def test_non_json_payload_falls_back_to_default(self, storage):
        conn = storage._get_conn()
        conn.execute(
            "INSERT INTO kv_store (key, value) VALUES (?, ?)",
            ("HALAL_SCAN_SECURE_isPremium", base64.b64encode(b"{broken").decode()),
        )
        conn.commit()

        assert storage.get_item("isPremium", False) is False

    def test_overwrite(self, storage):
        storage.set_item("scanCount", 1)
        storage.set_item("scanCount", 2)
        assert storage.get_item("scanCount") == 2

    def test_remove_item(self, storage):
        storage.set_item("scanCount", 3)
        storage.remove_item("scanCount")
        assert storage.get_item("scanCount") is None

    def test_quota_exceeded(self, tmp_path):
        s = SecureStorage(tmp_path / "state.db", quota_bytes=100)
        s.set_item("small", "x")
        with pytest.raises(StorageQuotaExceeded):
            s.set_item("big", "y" * 200)
        assert s.get_item("big") is None
        s.close()

    def test_quota_ignores_value_being_replaced(self, tmp_path):
        s = SecureStorage(tmp_path / "state.db", quota_bytes=100)
        s.set_item("k", "a" * 50)
        s.set_item("k", "b" * 50)
        assert s.get_item("k") == "b" * 50
        s.close()

    def test_quota_error_is_write_failure(self):
        assert issubclass(StorageQuotaExceeded, StorageWriteFailed)

    def test_unserializable_value(self, storage):
        with pytest.raises(StorageWriteFailed, match="not serializable"):
            storage.set_item("bad", object())

    def test_persists_across_instances(self, tmp_path):
        s1 = SecureStorage(tmp_path / "state.db")
        s1.set_item("isPremium", True)
        s1.close()

        s2 = SecureStorage(tmp_path / "state.db")
        assert s2.get_item("isPremium") is True
        s2.close()
