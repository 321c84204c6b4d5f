"""Tests for SQLiteStateStore."""

import sqlite3

from converge.domain.entities.resource_node import NodeStatus
from converge.domain.entities.state_record import NodeState, StateRecord
from converge.infrastructure.repositories.sqlite_state_store import SQLiteStateStore


def _record(serial=0):
    return StateRecord(
        nodes={
            "net": NodeState(
                "net", "network", NodeStatus.CREATED, {"cidr": "10.0.0.0/16"}, {"id": "n-1"}
            ),
            "vm": NodeState(
                "vm", "instance", NodeStatus.FAILED, {"net": "n-1"}, dependencies=("net",)
            ),
        },
        create_order=(("net",),),
        serial=serial,
    )


class TestState:
    def test_empty_database(self, state_store):
        assert state_store.load() == StateRecord.empty()

    def test_save_and_load(self, state_store):
        saved = state_store.save(_record())
        loaded = state_store.load()

        assert saved.serial == 1
        assert loaded == saved
        assert loaded.nodes["vm"].dependencies == ("net",)
        assert loaded.nodes["net"].remote_attributes == {"id": "n-1"}

    def test_serial_increases_every_save(self, state_store):
        state_store.save(_record())
        state_store.save(_record())
        assert state_store.load().serial == 2

    def test_save_replaces_nodes(self, state_store):
        state_store.save(_record())
        state_store.save(StateRecord(nodes={}, serial=1))
        assert state_store.load().nodes == {}

    def test_survives_reconnect(self, tmp_path):
        path = str(tmp_path / "state.db")
        first = SQLiteStateStore(path)
        first.save(_record())
        first.close()

        second = SQLiteStateStore(path)
        try:
            assert set(second.load().nodes) == {"net", "vm"}
        finally:
            second.close()

    def test_wal_mode(self, state_store, tmp_path):
        state_store.save(_record())
        conn = sqlite3.connect(str(tmp_path / "state.db"))
        try:
            mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        finally:
            conn.close()
        assert mode == "wal"


class TestRuns:
    def test_record_and_list(self, state_store):
        first = state_store.record_run("apply", "2026-01-01T00:00:00", "success", {"created": 3})
        second = state_store.record_run("destroy", "2026-01-02T00:00:00", "failed", details="net: boom")

        runs = state_store.list_runs()
        assert [r["id"] for r in runs] == [second, first]
        assert runs[0]["details"] == "net: boom"
        assert runs[0]["counts"] == {}
        assert runs[1]["counts"] == {"created": 3}

    def test_limit(self, state_store):
        for i in range(5):
            state_store.record_run(f"run{i}", "2026-01-01T00:00:00", "success")
        assert [r["command"] for r in state_store.list_runs(limit=2)] == ["run4", "run3"]
