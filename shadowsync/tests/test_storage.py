# shadowsync/tests/test_storage.py
import pytest

from shadowsync.storage import SQLiteDB, parse_dsn


def test_parse_dsn():
    assert parse_dsn(None) is None
    assert parse_dsn("mem://") is None
    assert parse_dsn("sqlite:///:memory:") == ":memory:"
    assert parse_dsn("sqlite:///var/shadow.db") == "var/shadow.db"
    with pytest.raises(ValueError):
        parse_dsn("sqlite:///")
    with pytest.raises(ValueError):
        parse_dsn("redis://x")


def test_components_keep_separate_schema_versions(tmp_path):
    path = str(tmp_path / "shared.db")
    a = SQLiteDB(path, label="a")
    b = SQLiteDB(path, label="b")
    assert a.migrate(["CREATE TABLE a1 (x INTEGER);", "CREATE TABLE a2 (x INTEGER);"]) == 2
    assert b.migrate(["CREATE TABLE b1 (x INTEGER);"]) == 1
    b.execute("INSERT INTO b1(x) VALUES (1)")
    assert b.execute("SELECT COUNT(*) FROM b1").fetchone()[0] == 1

    # re-running applies only the new step
    assert a.migrate(
        ["CREATE TABLE a1 (x INTEGER);", "CREATE TABLE a2 (x INTEGER);", "CREATE TABLE a3 (x INTEGER);"]
    ) == 3
    a.close()
    b.close()


def test_tx_rolls_back_on_error(tmp_path):
    db = SQLiteDB(str(tmp_path / "t.db"), label="t")
    db.migrate(["CREATE TABLE t (x INTEGER);"])
    with pytest.raises(RuntimeError):
        with db.tx() as conn:
            conn.execute("INSERT INTO t(x) VALUES (1)")
            raise RuntimeError("abort")
    assert db.execute("SELECT COUNT(*) FROM t").fetchone()[0] == 0
    db.close()
