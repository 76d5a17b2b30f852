# shadowsync/storage.py
"""
SQLite plumbing shared by the shadow-side backends (ledger and mediator).

  - One shared connection per database handle (check_same_thread=False),
    guarded by a re-entrant lock so FastAPI worker threads serialize writes.
  - WAL journal and busy_timeout so the ledger and the mediator can keep
    separate handles on the same file.
  - Versioned migrations tracked per component in a schema_versions table,
    so the ledger and the mediator can live in one file.
  - IMMEDIATE transactions; a batch either commits as a whole or not at all.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Iterator, Optional, Sequence

from prometheus_client import Histogram

logger = logging.getLogger(__name__)

_TX_LAT = Histogram(
    "shadowsync_sqlite_tx_latency_seconds",
    "SQLite transaction latency (seconds)",
    ["db"],
    buckets=(0.001, 0.002, 0.005, 0.010, 0.020, 0.050, 0.1, 0.2, 0.5),
)


def parse_dsn(dsn: Optional[str]) -> Optional[str]:
    """
    Map a backend DSN to a SQLite path.

      - None, "" or "mem://"      -> None (in-memory backend)
      - "sqlite:///:memory:"      -> ":memory:"
      - "sqlite:///path/to/db"    -> "path/to/db"

    Anything else raises ValueError.
    """
    if not dsn or dsn.strip().lower().startswith("mem://"):
        return None
    d = dsn.strip()
    if d.lower().startswith("sqlite:///"):
        path = d[len("sqlite:///") :]
        if path in (":memory:", ":mem:"):
            return ":memory:"
        if not path:
            raise ValueError(f"sqlite dsn without a path: {dsn}")
        return path
    raise ValueError(f"Unsupported shadow backend dsn: {dsn}")


class SQLiteDB:
    """Small wrapper around sqlite3 to centralize connection, migrations and transactions."""

    def __init__(self, path: str, *, label: str = "shadow"):
        self._path = path
        self._label = label
        self._g = threading.RLock()
        self._conn = sqlite3.connect(
            self._path,
            timeout=30.0,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.execute("PRAGMA busy_timeout=30000")
        if path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")

    @property
    def path(self) -> str:
        return self._path

    def migrate(self, steps: Sequence[str]) -> int:
        """
        Apply schema steps in order; steps[i] upgrades this handle's
        component from version i to i+1. Versions are kept per label in
        schema_versions, so several components can share one file.
        Returns the resulting schema version.
        """
        with self._g:
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_versions ("
                "component TEXT PRIMARY KEY, version INTEGER NOT NULL)"
            )
            row = self._conn.execute(
                "SELECT version FROM schema_versions WHERE component=?", (self._label,)
            ).fetchone()
            ver = int(row[0]) if row else 0
            for i in range(ver, len(steps)):
                self._conn.executescript(steps[i])
                self._conn.execute(
                    "INSERT INTO schema_versions(component, version) VALUES(?,?) "
                    "ON CONFLICT(component) DO UPDATE SET version=excluded.version",
                    (self._label, i + 1),
                )
                ver = i + 1
            return ver

    def execute(self, sql: str, params: Sequence = ()) -> sqlite3.Cursor:
        with self._g:
            return self._conn.execute(sql, params)

    @contextmanager
    def tx(self) -> Iterator[sqlite3.Connection]:
        t0 = time.perf_counter()
        with self._g:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                _TX_LAT.labels(self._label).observe(time.perf_counter() - t0)
                raise
            self._conn.execute("COMMIT")
            _TX_LAT.labels(self._label).observe(time.perf_counter() - t0)

    def close(self) -> None:
        with self._g:
            try:
                self._conn.close()
            except sqlite3.Error:
                logger.warning("closing sqlite handle %s failed", self._path, exc_info=True)
