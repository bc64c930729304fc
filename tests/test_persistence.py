"""Tests for chain stores."""

import pytest

from billchain.errors import StorageError
from billchain.persistence import FileChainStore, InMemoryChainStore


class TestInMemoryChainStore:
    def test_save_load_list(self, scenario_chain, issued):
        store = InMemoryChainStore()
        assert store.load_chain(issued.bill_id) is None
        store.save_chain(issued.bill_id, issued)
        store.save_chain(scenario_chain.bill_id, scenario_chain)
        assert store.load_chain(issued.bill_id) == scenario_chain
        assert store.list_bill_ids() == [issued.bill_id]

    def test_save_under_wrong_id(self, issued):
        with pytest.raises(StorageError):
            InMemoryChainStore().save_chain("0" * 64, issued)

    def test_save_replaces_without_merging(self, issued, scenario_chain):
        store = InMemoryChainStore()
        store.save_chain(scenario_chain.bill_id, scenario_chain)
        store.save_chain(issued.bill_id, issued)
        assert len(store.load_chain(issued.bill_id)) == 1


class TestFileChainStore:
    def test_round_trip(self, tmp_path, scenario_chain):
        store = FileChainStore(tmp_path / "chains")
        store.save_chain(scenario_chain.bill_id, scenario_chain)
        assert (tmp_path / "chains" / f"{scenario_chain.bill_id}.json").exists()
        assert store.load_chain(scenario_chain.bill_id) == scenario_chain
        assert store.list_bill_ids() == [scenario_chain.bill_id]

    def test_unknown_bill_and_missing_root(self, tmp_path):
        store = FileChainStore(tmp_path / "absent")
        assert store.load_chain("a" * 64) is None
        assert store.list_bill_ids() == []

    def test_invalid_bill_id(self, tmp_path):
        store = FileChainStore(tmp_path)
        with pytest.raises(StorageError):
            store.load_chain("../etc/passwd")

    def test_corrupt_file(self, tmp_path, issued):
        store = FileChainStore(tmp_path)
        (tmp_path / f"{issued.bill_id}.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(StorageError):
            store.load_chain(issued.bill_id)

    def test_file_holding_another_bill(self, tmp_path, issued):
        store = FileChainStore(tmp_path)
        store.save_chain(issued.bill_id, issued)
        other = "b" * 64
        (tmp_path / f"{other}.json").write_bytes((tmp_path / f"{issued.bill_id}.json").read_bytes())
        with pytest.raises(StorageError):
            store.load_chain(other)

    def test_list_ignores_foreign_files(self, tmp_path, issued):
        store = FileChainStore(tmp_path)
        store.save_chain(issued.bill_id, issued)
        (tmp_path / "notes.json").write_text("{}", encoding="utf-8")
        assert store.list_bill_ids() == [issued.bill_id]
