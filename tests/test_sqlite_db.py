from __future__ import annotations

from pathlib import Path

import pytest

from seasonpool.runtime.sqlite_db import SqliteDB


def _db(tmp_path: Path) -> SqliteDB:
    db = SqliteDB(path=str(tmp_path / "nested" / "seasonpool.db"))
    db.init_schema()
    return db


def test_init_schema_is_idempotent_and_uses_wal(tmp_path: Path) -> None:
    db = _db(tmp_path)
    db.init_schema()
    with db.connection() as con:
        assert str(con.execute("PRAGMA journal_mode;").fetchone()[0]).lower() == "wal"
        row = con.execute("SELECT value FROM meta WHERE key='schema_version';").fetchone()
    assert int(row["value"]) == SqliteDB.SCHEMA_VERSION


def test_schema_version_mismatch_refuses_to_start(tmp_path: Path) -> None:
    db = _db(tmp_path)
    with db.write_tx() as con:
        con.execute("UPDATE meta SET value='99' WHERE key='schema_version';")
    with pytest.raises(RuntimeError, match="schema_version mismatch"):
        db.init_schema()


def test_write_tx_rolls_back_on_error(tmp_path: Path) -> None:
    db = _db(tmp_path)
    with pytest.raises(ValueError):
        with db.write_tx() as con:
            con.execute("INSERT INTO meta(key, value) VALUES('k', 'v');")
            raise ValueError("boom")
    with db.connection() as con:
        assert con.execute("SELECT 1 FROM meta WHERE key='k';").fetchone() is None


@pytest.mark.parametrize(
    "mode,override,expected",
    [
        ("prod", None, "FULL"),
        ("dev", None, "NORMAL"),
        ("dev", "extra", "EXTRA"),
        ("prod", "bogus", "FULL"),
    ],
)
def test_synchronous_pragma(monkeypatch, mode, override, expected) -> None:
    monkeypatch.setenv("SEASONPOOL_MODE", mode)
    if override is None:
        monkeypatch.delenv("SEASONPOOL_SQLITE_SYNCHRONOUS", raising=False)
    else:
        monkeypatch.setenv("SEASONPOOL_SQLITE_SYNCHRONOUS", override)
    assert SqliteDB._sqlite_synchronous_pragma() == expected
