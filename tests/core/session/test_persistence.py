"""Tests for the SQLite session store."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from tether.core.session import SessionRecord, SessionStore


def make_record(session_id: str = "s1", **kwargs) -> SessionRecord:
    defaults = dict(
        id=session_id,
        user_id="u1",
        channel_id="c1",
        status="active",
        model="default",
        created_at=1_000,
        updated_at=2_000,
        data={"messages": [], "messageCount": 0},
    )
    defaults.update(kwargs)
    return SessionRecord(**defaults)


@pytest.fixture
def store(tmp_path: Path):
    store = SessionStore(tmp_path / "nested" / "sessions.db")
    store.open()
    yield store
    store.close()


class TestSessionStore:
    """Tests for SessionStore."""

    def test_open_creates_directory(self, store, tmp_path: Path):
        assert (tmp_path / "nested" / "sessions.db").exists()

    def test_upsert_and_get(self, store):
        record = make_record(data={"messages": [{"role": "user", "content": "x"}]})
        store.upsert(record)

        assert store.get("s1") == record
        assert store.get("missing") is None

    def test_upsert_replaces(self, store):
        store.upsert(make_record(status="active"))
        store.upsert(make_record(status="stopped", updated_at=3_000))

        loaded = store.get("s1")
        assert loaded.status == "stopped"
        assert loaded.updated_at == 3_000
        assert len(list(store.load())) == 1

    def test_delete(self, store):
        store.upsert(make_record())
        store.delete("s1")
        assert store.get("s1") is None

    def test_load_filters(self, store):
        store.upsert(make_record("s1", created_at=1))
        store.upsert(make_record("s2", created_at=2, status="stopped"))
        store.upsert(make_record("s3", created_at=3, user_id="u2"))

        assert [r.id for r in store.load()] == ["s1", "s2", "s3"]
        assert [r.id for r in store.load(status="active")] == ["s1", "s3"]
        assert [r.id for r in store.load(user_id="u2")] == ["s3"]

    def test_corrupt_rows_skipped(self, store):
        store.upsert(make_record("good"))
        conn = sqlite3.connect(store.path)
        conn.execute(
            "INSERT INTO sessions VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            ("bad", "u1", "c1", "active", None, 5, 5, "{not json"),
        )
        conn.commit()
        conn.close()

        assert [r.id for r in store.load(status="active")] == ["good"]

    def test_message_count(self):
        assert make_record(data={"messageCount": 3}).message_count == 3
        assert make_record(data={"messages": [{}, {}]}).message_count == 2

    def test_closed_store_raises(self, tmp_path: Path):
        store = SessionStore(tmp_path / "x.db")
        with pytest.raises(sqlite3.ProgrammingError):
            store.upsert(make_record())

    def test_in_memory(self):
        store = SessionStore()
        store.open()
        store.upsert(make_record())
        assert store.get("s1") is not None
        store.close()
