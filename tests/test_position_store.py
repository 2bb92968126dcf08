"""
Tests for PositionStore and its storage adapters.
"""

import json
import threading

import pytest

from position_store import (
    JsonFileStorageAdapter, MemoryStorageAdapter, PositionStore, SqliteStorageAdapter,
    StorageAdapter, make_adapter,
)
from positions import CLOSED, OPEN, OpenPosition, PersistenceError, ValidationError


def _position(pid, opened_at, side="BUY", price=2000.0):
    return OpenPosition(id=pid, side=side, price_usd=price, opened_at=opened_at)


@pytest.fixture(params=["memory", "json", "sqlite"])
def any_store(request, tmp_path):
    """The same store contract over every backend."""
    adapter = make_adapter(request.param, tmp_path, "cbc_positions")
    yield PositionStore(adapter)
    if isinstance(adapter, SqliteStorageAdapter):
        adapter.close()


class TestPositionStore:
    def test_empty(self, any_store):
        assert any_store.list_all() == []

    def test_list_is_newest_first(self, any_store):
        any_store.add(_position("a", "2025-01-01T00:00:00.000Z"))
        any_store.add(_position("c", "2025-03-01T00:00:00.000Z"))
        any_store.add(_position("b", "2025-02-01T00:00:00.000Z"))
        assert [p.id for p in any_store.list_all()] == ["c", "b", "a"]

    def test_duplicate_id_rejected(self, any_store):
        any_store.add(_position("a", "2025-01-01T00:00:00.000Z"))
        with pytest.raises(ValidationError):
            any_store.add(_position("a", "2025-01-02T00:00:00.000Z"))
        assert len(any_store.list_all()) == 1

    def test_update_merges_close_fields_once(self, any_store):
        any_store.add(_position("a", "2025-01-01T00:00:00.000Z"))
        assert any_store.update("a", {
            "status": CLOSED,
            "closedAt": "2025-01-02T00:00:00.000Z",
            "closePriceUsd": 2200.0,
            "profitLoss": 200.0,
            "profitLossPercent": 10.0,
        })
        positions = any_store.list_all()
        assert len(positions) == 1
        assert positions[0].status == CLOSED
        assert positions[0].profit_loss == 200.0

    def test_update_unknown_id(self, any_store):
        assert any_store.update("missing", {"amount": 1.0}) is False

    def test_update_cannot_break_close_invariant(self, any_store):
        any_store.add(_position("a", "2025-01-01T00:00:00.000Z"))
        with pytest.raises(ValidationError):
            any_store.update("a", {"status": CLOSED})
        assert any_store.get("a").status == OPEN

    def test_delete(self, any_store):
        any_store.add(_position("a", "2025-01-01T00:00:00.000Z"))
        assert any_store.delete("a") is True
        assert any_store.delete("a") is False
        assert any_store.list_all() == []


class TestPersistedLayout:
    def test_versioned_key_holds_json_array(self):
        adapter = MemoryStorageAdapter()
        store = PositionStore(adapter)
        store.add(_position("a", "2025-01-01T00:00:00.000Z"))
        assert store.key == "cbc_positions_v1.0"
        assert json.loads(adapter.get("cbc_positions_v1.0"))[0]["id"] == "a"

    def test_other_versions_are_not_read(self):
        adapter = MemoryStorageAdapter({"cbc_positions_v0.9": json.dumps([
            {"id": "old", "side": "BUY", "priceUsd": 1, "openedAt": "2024-01-01T00:00:00Z"},
        ])})
        assert PositionStore(adapter).list_all() == []
        assert len(PositionStore(adapter, version="0.9").list_all()) == 1

    @pytest.mark.parametrize("payload", ["{not json", '{"a": 1}', '"text"', "42"])
    def test_corrupt_payload_reads_as_empty(self, payload):
        store = PositionStore(MemoryStorageAdapter({"cbc_positions_v1.0": payload}))
        assert store.list_all() == []

    def test_bad_records_are_skipped(self):
        payload = json.dumps([
            {"id": "ok", "side": "BUY", "priceUsd": 10, "openedAt": "2025-01-01T00:00:00Z"},
            {"id": "bad", "side": "BUY", "priceUsd": -1, "openedAt": "2025-01-01T00:00:00Z"},
            "junk",
        ])
        store = PositionStore(MemoryStorageAdapter({"cbc_positions_v1.0": payload}))
        assert [p.id for p in store.list_all()] == ["ok"]

    def test_write_failure_raises_persistence_error(self):
        class FullAdapter(MemoryStorageAdapter):
            def set(self, key, value):
                raise OSError("quota exceeded")

        store = PositionStore(FullAdapter())
        with pytest.raises(PersistenceError):
            store.add(_position("a", "2025-01-01T00:00:00.000Z"))

    def test_json_file_survives_reopen(self, tmp_path):
        path = tmp_path / "positions.json"
        PositionStore(JsonFileStorageAdapter(path)).add(_position("a", "2025-01-01T00:00:00.000Z"))
        assert [p.id for p in PositionStore(JsonFileStorageAdapter(path)).list_all()] == ["a"]

    def test_corrupt_json_file_reads_as_empty(self, tmp_path):
        path = tmp_path / "positions.json"
        path.write_text("][")
        assert PositionStore(JsonFileStorageAdapter(path)).list_all() == []

    def test_corrupt_json_file_is_not_overwritten(self, tmp_path):
        path = tmp_path / "positions.json"
        path.write_text("][")
        store = PositionStore(JsonFileStorageAdapter(path))
        with pytest.raises(PersistenceError):
            store.add(_position("a", "2025-01-01T00:00:00.000Z"))
        assert path.read_text() == "]["
        assert store.list_all() == []

    def test_sqlite_get_all(self, tmp_path):
        adapter = SqliteStorageAdapter(tmp_path / "kv.db")
        adapter.set("a", "1")
        adapter.set("a", "2")
        adapter.set("b", "3")
        adapter.delete("b")
        assert adapter.get_all() == {"a": "2"}
        adapter.close()


class TestMutationsOverUnreadableState:
    RECORD_OK = {"id": "ok", "side": "BUY", "priceUsd": 10, "openedAt": "2025-01-02T00:00:00Z"}
    RECORD_LEGACY = {"id": "legacy", "side": "BUY", "priceUsd": 10,
                     "openedAt": "2025-01-01T00:00:00Z", "amount": 0}

    def test_failed_read_does_not_wipe_history(self):
        class LockedOnceAdapter(MemoryStorageAdapter):
            fail_next_get = False

            def get(self, key):
                if self.fail_next_get:
                    self.fail_next_get = False
                    raise OSError("database is locked")
                return super().get(key)

        adapter = LockedOnceAdapter()
        store = PositionStore(adapter)
        for i in range(3):
            store.add(_position(f"p{i}", f"2025-01-0{i + 1}T00:00:00.000Z"))

        adapter.fail_next_get = True
        with pytest.raises(PersistenceError):
            store.add(_position("p9", "2025-01-09T00:00:00.000Z"))
        assert sorted(p.id for p in store.list_all()) == ["p0", "p1", "p2"]

    @pytest.mark.parametrize("payload", ["{not json", '{"a": 1}', "42"])
    @pytest.mark.parametrize("mutate", [
        lambda s: s.add(_position("a", "2025-01-01T00:00:00.000Z")),
        lambda s: s.update("a", {"amount": 1.0}),
        lambda s: s.delete("a"),
    ], ids=["add", "update", "delete"])
    def test_corrupt_payload_is_left_in_place(self, payload, mutate):
        adapter = MemoryStorageAdapter({"cbc_positions_v1.0": payload})
        store = PositionStore(adapter)
        with pytest.raises(PersistenceError):
            mutate(store)
        assert adapter.get("cbc_positions_v1.0") == payload

    def test_empty_payload_still_accepts_writes(self):
        adapter = MemoryStorageAdapter({"cbc_positions_v1.0": ""})
        store = PositionStore(adapter)
        store.add(_position("a", "2025-01-01T00:00:00.000Z"))
        assert [p.id for p in store.list_all()] == ["a"]

    def _seeded(self):
        adapter = MemoryStorageAdapter({"cbc_positions_v1.0": json.dumps(
            [self.RECORD_LEGACY, self.RECORD_OK, "junk"])})
        return adapter, PositionStore(adapter)

    @staticmethod
    def _stored(adapter):
        return json.loads(adapter.get("cbc_positions_v1.0"))

    def test_unparseable_records_survive_add(self):
        adapter, store = self._seeded()
        store.add(_position("new", "2025-01-03T00:00:00.000Z"))
        stored = self._stored(adapter)
        assert stored[0] == self.RECORD_LEGACY
        assert stored[2] == "junk"
        assert [r["id"] for r in stored if isinstance(r, dict)] == ["legacy", "ok", "new"]
        assert [p.id for p in store.list_all()] == ["new", "ok"]

    def test_unparseable_records_survive_update_and_delete(self):
        adapter, store = self._seeded()
        store.add(_position("new", "2025-01-03T00:00:00.000Z"))
        assert store.update("ok", {"amount": 2.5})
        assert store.delete("new")
        stored = self._stored(adapter)
        assert stored[0] == self.RECORD_LEGACY
        assert "junk" in stored
        assert store.get("ok").amount == 2.5

    def test_duplicate_check_sees_unparseable_records(self):
        _, store = self._seeded()
        with pytest.raises(ValidationError):
            store.add(_position("legacy", "2025-01-03T00:00:00.000Z"))


def test_base_adapter_is_abstract():
    with pytest.raises(NotImplementedError):
        StorageAdapter().get("x")


def test_unknown_backend(tmp_path):
    with pytest.raises(ValueError):
        make_adapter("redis", tmp_path)


def test_concurrent_adds_are_all_kept(tmp_path):
    store = PositionStore(JsonFileStorageAdapter(tmp_path / "p.json"))

    def worker(n):
        for i in range(10):
            store.add(_position(f"{n}-{i}", f"2025-01-01T00:00:{i:02d}.000Z"))

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(store.list_all()) == 40
