"""Tests for the key-value stores."""

import json
import threading

import pytest

from ledgersheet.store import FileKeyValueStore, InMemoryKeyValueStore


@pytest.fixture(params=["memory", "file"])
def kv(request, tmp_path):
    if request.param == "memory":
        return InMemoryKeyValueStore()
    return FileKeyValueStore(tmp_path / "nested" / "store.json")


class TestKeyValueStore:
    """Behaviour shared by both backends."""

    def test_get_default(self, kv):
        assert kv.get("missing") is None
        assert kv.get("missing", []) == []

    def test_set_and_get(self, kv):
        kv.set("dataset_1", {"name": "Customers", "params": {"query": "SELECT * FROM Customer"}})
        assert kv.get("dataset_1")["params"]["query"] == "SELECT * FROM Customer"

    def test_get_returns_copy(self, kv):
        kv.set("dataset_index", ["a"])
        kv.get("dataset_index").append("b")
        assert kv.get("dataset_index") == ["a"]

    def test_delete(self, kv):
        kv.set("job_1", {"status": "running"})
        assert kv.delete("job_1") is True
        assert kv.delete("job_1") is False
        assert kv.get("job_1") is None

    def test_delete_key_holding_none(self, kv):
        kv.set("nothing", None)
        assert kv.delete("nothing") is True

    def test_keys_by_prefix_sorted(self, kv):
        for key in ("job_b", "dataset_x", "job_a"):
            kv.set(key, 1)
        assert kv.keys("job_") == ["job_a", "job_b"]
        assert kv.keys() == ["dataset_x", "job_a", "job_b"]

    def test_update_creates_and_replaces(self, kv):
        assert kv.update("dataset_index", lambda ids: (ids or []) + ["ds_1"]) == ["ds_1"]
        assert kv.update("dataset_index", lambda ids: (ids or []) + ["ds_2"]) == ["ds_1", "ds_2"]
        assert kv.get("dataset_index") == ["ds_1", "ds_2"]

    def test_update_returning_none_deletes(self, kv):
        kv.set("lock_9130", {"owner": "a"})
        assert kv.update("lock_9130", lambda record: None) is None
        assert kv.get("lock_9130") is None
        assert kv.update("missing", lambda record: None) is None
        assert kv.keys() == []

    def test_update_keeps_current_value(self, kv):
        kv.set("lock_9130", {"owner": "a"})
        assert kv.update("lock_9130", lambda record: record) == {"owner": "a"}

    def test_concurrent_writers_keep_every_key(self, kv):
        def write(worker):
            for i in range(40):
                kv.set(f"job_{worker}_{i}", i)

        threads = [threading.Thread(target=write, args=(w,)) for w in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(kv.keys("job_")) == 80


class TestFileKeyValueStore:
    """File backend specifics."""

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "store.json"
        FileKeyValueStore(path).set("qbo_realm_id", "9130")
        assert FileKeyValueStore(path).get("qbo_realm_id") == "9130"

    def test_file_is_json_object(self, tmp_path):
        path = tmp_path / "store.json"
        FileKeyValueStore(path).set("a", [1, 2])
        assert json.loads(path.read_text()) == {"a": [1, 2]}

    def test_empty_file_reads_as_empty(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("")
        assert FileKeyValueStore(path).keys() == []

    def test_non_object_file_rejected(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("[1, 2]")
        with pytest.raises(ValueError, match="JSON object"):
            FileKeyValueStore(path).get("a")

    def test_no_temp_files_left(self, tmp_path):
        store = FileKeyValueStore(tmp_path / "store.json")
        store.set("a", 1)
        store.set("b", 2)
        names = {p.name for p in tmp_path.iterdir()}
        assert not [n for n in names if n.startswith(".store-")]
        assert "store.json" in names

    def test_separate_handles_do_not_drop_keys(self, tmp_path):
        path = tmp_path / "store.json"

        def write(worker):
            store = FileKeyValueStore(path)
            for i in range(40):
                store.set(f"job_{worker}_{i}", i)

        threads = [threading.Thread(target=write, args=(w,)) for w in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(FileKeyValueStore(path).keys("job_")) == 80

    def test_update_across_handles_is_atomic(self, tmp_path):
        path = tmp_path / "store.json"

        def bump():
            store = FileKeyValueStore(path)
            for _ in range(25):
                store.update("counter", lambda n: (n or 0) + 1)

        threads = [threading.Thread(target=bump) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert FileKeyValueStore(path).get("counter") == 75
