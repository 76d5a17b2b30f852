"""
Shadow ledger: read-only mirror of token ownership.

Goals:
  - Current owner per token and balance per owner, mutated only through
    authorized assignment batches
  - One transition rule shared by the single, array and packed entry points,
    so all three produce identical state for equivalent input
  - Total supply counts first-time mirrors and is never decremented; burns
    clear the owner and are counted separately, so the balances always sum
    to supply minus burned
  - Backends: in-memory (tests / dev) and SQLite (WAL, versioned schema)

Notes:
  - The ledger does not know about sequence numbers beyond echoing the
    caller-supplied sequence_ref in the batch summary; ordering is enforced
    by the mediator in front of it.
  - There is no transfer or approval path. A burn on the primary arrives as
    an unassign batch from the updater.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Sequence, Tuple

from prometheus_client import Counter

from .codec import ZERO_ADDRESS, to_address, to_token_id, to_word, unpack_ownership
from .errors import AuthorizationError, ValidationError
from .storage import SQLiteDB, parse_dsn

logger = logging.getLogger(__name__)

# ---------- Metrics ----------

_ASSIGN_APPLIED = Counter(
    "shadowsync_ledger_assign_total",
    "Applied ownership assignments",
    ["path"],
)
_ASSIGN_MINTED = Counter(
    "shadowsync_ledger_first_assign_total",
    "Tokens mirrored for the first time (supply increments)",
)
_BURNED = Counter(
    "shadowsync_ledger_burn_total",
    "Mirrored tokens cleared by a burn",
)
_ASSIGN_REJECTED = Counter(
    "shadowsync_ledger_reject_total",
    "Rejected ledger calls",
    ["reason"],
)

_MAX_RECENT_NOTIFICATIONS = 1024


# ---------- Data Models ----------


@dataclass(frozen=True)
class OwnershipMirrored:
    token_id: int
    previous_owner: Optional[str]
    new_owner: str


@dataclass(frozen=True)
class OwnershipCleared:
    token_id: int
    previous_owner: str


@dataclass(frozen=True)
class BatchMirrored:
    count: int
    sequence_ref: int


@dataclass
class ApplyResult:
    applied: int
    items: List[Any]  # OwnershipMirrored | OwnershipCleared
    summary: Optional[BatchMirrored] = None


Notification = Any  # OwnershipMirrored | OwnershipCleared | BatchMirrored
Listener = Callable[[Notification], None]


# ---------- Base Interface ----------


class ShadowLedger:
    """
    State machine shared by all backends.

    Backends provide storage primitives inside a transaction (_state());
    authorization, validation and the transition rule live here.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._listeners: List[Listener] = []
        self._recent: Deque[Notification] = deque(maxlen=_MAX_RECENT_NOTIFICATIONS)

    # ----- storage primitives (backend) -----

    @contextmanager
    def _state(self) -> Iterator["_StateView"]:
        raise NotImplementedError
        yield  # pragma: no cover

    def _get_meta(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def _set_meta(self, key: str, value: str) -> None:
        raise NotImplementedError

    def _snapshot(self) -> Tuple[Dict[int, str], Dict[str, int], int]:
        """Return (owners, non-zero balances, supply) for digests and audits."""
        raise NotImplementedError

    def close(self) -> None:
        pass

    # ----- authorization -----

    @property
    def admin_owner(self) -> str:
        return self._get_meta("owner") or ZERO_ADDRESS

    @property
    def current_updater(self) -> str:
        return self._get_meta("updater") or ZERO_ADDRESS

    def _require_updater(self, caller: Any) -> None:
        who = to_address(caller)
        if who == ZERO_ADDRESS or who != self.current_updater:
            _ASSIGN_REJECTED.labels("unauthorized").inc()
            raise AuthorizationError("caller is not the ledger updater", caller=who)

    def set_updater(self, caller: Any, new_updater: Any) -> None:
        who = to_address(caller)
        if who != self.admin_owner:
            _ASSIGN_REJECTED.labels("unauthorized").inc()
            raise AuthorizationError("only the ledger owner may set the updater", caller=who)
        new = to_address(new_updater)
        with self._lock:
            old = self.current_updater
            self._set_meta("updater", new)
        logger.info("ledger updater changed %s -> %s", old, new)

    # ----- mutation entry points -----

    def assign_one(self, caller: Any, token_id: Any, new_owner: Any) -> ApplyResult:
        self._require_updater(caller)
        items = self._validate_items([(to_token_id(token_id), new_owner)])
        return self._apply(items, path="single", sequence_ref=None)

    def assign_many(
        self,
        caller: Any,
        token_ids: Sequence[Any],
        new_owners: Sequence[Any],
        sequence_ref: int,
    ) -> ApplyResult:
        self._require_updater(caller)
        if len(token_ids) != len(new_owners):
            _ASSIGN_REJECTED.labels("length_mismatch").inc()
            raise ValidationError(
                f"array length mismatch: {len(token_ids)} token ids, {len(new_owners)} owners"
            )
        items = self._validate_items(
            [(to_token_id(t), o) for t, o in zip(token_ids, new_owners)]
        )
        return self._apply(items, path="bulk", sequence_ref=int(sequence_ref))

    def assign_packed(self, caller: Any, words: Sequence[Any], sequence_ref: int) -> ApplyResult:
        self._require_updater(caller)
        items = self._validate_items([unpack_ownership(to_word(w)) for w in words])
        return self._apply(items, path="packed", sequence_ref=int(sequence_ref))

    def unassign(self, caller: Any, token_ids: Sequence[Any], sequence_ref: int) -> ApplyResult:
        """
        Clear the owner of each listed token after a burn on the primary.
        Supply is left as is; tokens that are not mirrored are skipped.
        """
        self._require_updater(caller)
        tids = [to_token_id(t) for t in token_ids]
        cleared: List[OwnershipCleared] = []
        with self._lock:
            with self._state() as st:
                for tid in tids:
                    prev = st.owner(tid)
                    if prev is None:
                        continue
                    st.add_balance(prev, -1)
                    st.clear_owner(tid)
                    st.bump_burned()
                    cleared.append(OwnershipCleared(tid, prev))
            summary = BatchMirrored(len(cleared), int(sequence_ref))
            for n in cleared:
                self._emit(n)
            self._emit(summary)
        _BURNED.inc(len(cleared))
        logger.debug(
            "cleared %d burned token(s)",
            len(cleared),
            extra={"batch_size": len(cleared), "sequence": sequence_ref, "path": "burn"},
        )
        return ApplyResult(applied=len(cleared), items=cleared, summary=summary)

    def _validate_items(self, items: Sequence[Tuple[int, Any]]) -> List[Tuple[int, str]]:
        # Whole batch is checked before anything is applied.
        out: List[Tuple[int, str]] = []
        for tid, owner in items:
            addr = to_address(owner)
            if addr == ZERO_ADDRESS:
                _ASSIGN_REJECTED.labels("zero_owner").inc()
                raise ValidationError(f"zero owner for token {tid}")
            out.append((tid, addr))
        return out

    def _apply(
        self,
        items: List[Tuple[int, str]],
        *,
        path: str,
        sequence_ref: Optional[int],
    ) -> ApplyResult:
        mirrored: List[OwnershipMirrored] = []
        with self._lock:
            with self._state() as st:
                for tid, new_owner in items:
                    prev = st.owner(tid)
                    if prev is None:
                        st.bump_supply()
                        _ASSIGN_MINTED.inc()
                    if prev != new_owner:
                        if prev is not None:
                            st.add_balance(prev, -1)
                        st.add_balance(new_owner, 1)
                        st.set_owner(tid, new_owner)
                    mirrored.append(OwnershipMirrored(tid, prev, new_owner))
            summary = None
            if sequence_ref is not None:
                summary = BatchMirrored(len(mirrored), sequence_ref)
            for n in mirrored:
                self._emit(n)
            if summary is not None:
                self._emit(summary)
        _ASSIGN_APPLIED.labels(path).inc(len(mirrored))
        logger.debug(
            "applied %d assignment(s) via %s",
            len(mirrored),
            path,
            extra={"batch_size": len(mirrored), "sequence": sequence_ref},
        )
        return ApplyResult(applied=len(mirrored), items=mirrored, summary=summary)

    # ----- notifications -----

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def _emit(self, notification: Notification) -> None:
        self._recent.append(notification)
        for fn in list(self._listeners):
            try:
                fn(notification)
            except Exception:
                logger.warning("ledger listener failed for %r", notification, exc_info=True)

    def recent_notifications(self, limit: int = 100) -> List[Notification]:
        with self._lock:
            items = list(self._recent)
        return items[-limit:] if limit > 0 else items

    # ----- reads -----

    def owner_of(self, token_id: Any) -> str:
        tid = to_token_id(token_id)
        with self._state() as st:
            owner = st.owner(tid)
        if owner is None:
            raise LookupError(f"token {tid} has not been mirrored")
        return owner

    def exists(self, token_id: Any) -> bool:
        with self._state() as st:
            return st.owner(to_token_id(token_id)) is not None

    def balance_of(self, owner: Any) -> int:
        addr = to_address(owner)
        if addr == ZERO_ADDRESS:
            raise ValidationError("balance query for the zero address")
        with self._state() as st:
            return st.balance(addr)

    def total_supply(self) -> int:
        with self._state() as st:
            return st.supply()

    def burned_count(self) -> int:
        """Mirrored tokens that were later cleared by a burn."""
        with self._state() as st:
            return st.burned()

    def state_digest(self) -> str:
        """
        Stable digest over (owners, balances, supply). Two ledgers with the
        same digest hold byte-identical mirrored state.
        """
        owners, balances, supply = self._snapshot()
        h = hashlib.blake2s(digest_size=32, person=b"shadowst")
        for tid in sorted(owners):
            h.update(b"o|%d|%s\n" % (tid, owners[tid].encode("ascii")))
        for addr in sorted(balances):
            h.update(b"b|%s|%d\n" % (addr.encode("ascii"), balances[addr]))
        h.update(b"s|%d\n" % supply)
        return h.hexdigest()


class _StateView:
    """Storage primitives used by the transition rule."""

    def owner(self, token_id: int) -> Optional[str]:
        raise NotImplementedError

    def set_owner(self, token_id: int, owner: str) -> None:
        raise NotImplementedError

    def balance(self, owner: str) -> int:
        raise NotImplementedError

    def add_balance(self, owner: str, delta: int) -> None:
        raise NotImplementedError

    def supply(self) -> int:
        raise NotImplementedError

    def bump_supply(self) -> None:
        raise NotImplementedError

    def clear_owner(self, token_id: int) -> None:
        raise NotImplementedError

    def burned(self) -> int:
        raise NotImplementedError

    def bump_burned(self) -> None:
        raise NotImplementedError


def _seed_meta(ledger: ShadowLedger, admin_owner: Any, updater: Any) -> None:
    owner = to_address(admin_owner)
    if owner == ZERO_ADDRESS:
        raise ValidationError("ledger owner must not be the zero address")
    stored = ledger._get_meta("owner")
    if stored is None:
        ledger._set_meta("owner", owner)
        ledger._set_meta("updater", to_address(updater) if updater is not None else ZERO_ADDRESS)
    elif stored != owner:
        logger.warning("ledger owner %s differs from persisted owner %s; keeping persisted", owner, stored)


# ---------- In-Memory Implementation (tests / dev) ----------


class _MemoryView(_StateView):
    def __init__(self, ledger: "InMemoryShadowLedger"):
        self._l = ledger

    def owner(self, token_id: int) -> Optional[str]:
        return self._l._owners.get(token_id)

    def set_owner(self, token_id: int, owner: str) -> None:
        self._l._owners[token_id] = owner

    def balance(self, owner: str) -> int:
        return self._l._balances.get(owner, 0)

    def add_balance(self, owner: str, delta: int) -> None:
        n = self._l._balances.get(owner, 0) + delta
        if n:
            self._l._balances[owner] = n
        else:
            self._l._balances.pop(owner, None)

    def supply(self) -> int:
        return self._l._supply

    def bump_supply(self) -> None:
        self._l._supply += 1

    def clear_owner(self, token_id: int) -> None:
        self._l._owners.pop(token_id, None)

    def burned(self) -> int:
        return self._l._burned

    def bump_burned(self) -> None:
        self._l._burned += 1


class InMemoryShadowLedger(ShadowLedger):
    def __init__(self, *, admin_owner: Any, updater: Any = None):
        super().__init__()
        self._owners: Dict[int, str] = {}
        self._balances: Dict[str, int] = {}
        self._supply = 0
        self._burned = 0
        self._meta: Dict[str, str] = {}
        _seed_meta(self, admin_owner, updater)

    @contextmanager
    def _state(self) -> Iterator[_StateView]:
        with self._lock:
            yield _MemoryView(self)

    def _get_meta(self, key: str) -> Optional[str]:
        return self._meta.get(key)

    def _set_meta(self, key: str, value: str) -> None:
        with self._lock:
            self._meta[key] = value

    def _snapshot(self) -> Tuple[Dict[int, str], Dict[str, int], int]:
        with self._lock:
            return dict(self._owners), dict(self._balances), self._supply


# ---------- SQLite Implementation (production) ----------

# Token ids are unbounded, so they are stored as decimal TEXT.
_SCHEMA_V1 = """
CREATE TABLE IF NOT EXISTS shadow_owners (
  token_id   TEXT PRIMARY KEY,
  owner      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS shadow_balances (
  owner      TEXT PRIMARY KEY,
  balance    INTEGER NOT NULL CHECK (balance > 0)
);

CREATE TABLE IF NOT EXISTS shadow_meta (
  k          TEXT PRIMARY KEY,
  v          TEXT NOT NULL
);
"""

_SCHEMA_V2 = """
CREATE INDEX IF NOT EXISTS idx_shadow_owners_owner ON shadow_owners(owner);
INSERT OR IGNORE INTO shadow_meta(k, v) VALUES('supply', '0');
"""

_SCHEMA_V3 = """
INSERT OR IGNORE INTO shadow_meta(k, v) VALUES('burned', '0');
"""


class _SQLiteView(_StateView):
    def __init__(self, conn):
        self._c = conn

    def owner(self, token_id: int) -> Optional[str]:
        row = self._c.execute(
            "SELECT owner FROM shadow_owners WHERE token_id=?", (str(token_id),)
        ).fetchone()
        return row[0] if row else None

    def set_owner(self, token_id: int, owner: str) -> None:
        self._c.execute(
            "INSERT INTO shadow_owners(token_id, owner) VALUES(?,?) "
            "ON CONFLICT(token_id) DO UPDATE SET owner=excluded.owner",
            (str(token_id), owner),
        )

    def balance(self, owner: str) -> int:
        row = self._c.execute(
            "SELECT balance FROM shadow_balances WHERE owner=?", (owner,)
        ).fetchone()
        return int(row[0]) if row else 0

    def add_balance(self, owner: str, delta: int) -> None:
        n = self.balance(owner) + delta
        if n > 0:
            self._c.execute(
                "INSERT INTO shadow_balances(owner, balance) VALUES(?,?) "
                "ON CONFLICT(owner) DO UPDATE SET balance=excluded.balance",
                (owner, n),
            )
        else:
            self._c.execute("DELETE FROM shadow_balances WHERE owner=?", (owner,))

    def supply(self) -> int:
        row = self._c.execute("SELECT v FROM shadow_meta WHERE k='supply'").fetchone()
        return int(row[0]) if row else 0

    def bump_supply(self) -> None:
        self._c.execute(
            "UPDATE shadow_meta SET v=CAST(CAST(v AS INTEGER) + 1 AS TEXT) WHERE k='supply'"
        )

    def clear_owner(self, token_id: int) -> None:
        self._c.execute("DELETE FROM shadow_owners WHERE token_id=?", (str(token_id),))

    def burned(self) -> int:
        row = self._c.execute("SELECT v FROM shadow_meta WHERE k='burned'").fetchone()
        return int(row[0]) if row else 0

    def bump_burned(self) -> None:
        self._c.execute(
            "UPDATE shadow_meta SET v=CAST(CAST(v AS INTEGER) + 1 AS TEXT) WHERE k='burned'"
        )


class SQLiteShadowLedger(ShadowLedger):
    """
    Durable single-file shadow ledger. A batch is one IMMEDIATE transaction:
    either every assignment in it lands or none does.
    """

    def __init__(self, path: str, *, admin_owner: Any, updater: Any = None):
        super().__init__()
        self._db = SQLiteDB(path, label="ledger")
        self._db.migrate([_SCHEMA_V1, _SCHEMA_V2, _SCHEMA_V3])
        _seed_meta(self, admin_owner, updater)

    @contextmanager
    def _state(self) -> Iterator[_StateView]:
        with self._lock, self._db.tx() as conn:
            yield _SQLiteView(conn)

    def _get_meta(self, key: str) -> Optional[str]:
        row = self._db.execute("SELECT v FROM shadow_meta WHERE k=?", (key,)).fetchone()
        return row[0] if row else None

    def _set_meta(self, key: str, value: str) -> None:
        with self._lock, self._db.tx() as conn:
            conn.execute(
                "INSERT INTO shadow_meta(k, v) VALUES(?,?) "
                "ON CONFLICT(k) DO UPDATE SET v=excluded.v",
                (key, value),
            )

    def _snapshot(self) -> Tuple[Dict[int, str], Dict[str, int], int]:
        with self._lock:
            owners = {
                int(t): o
                for t, o in self._db.execute("SELECT token_id, owner FROM shadow_owners").fetchall()
            }
            balances = {
                o: int(b)
                for o, b in self._db.execute("SELECT owner, balance FROM shadow_balances").fetchall()
            }
            row = self._db.execute("SELECT v FROM shadow_meta WHERE k='supply'").fetchone()
            return owners, balances, int(row[0]) if row else 0

    def close(self) -> None:
        self._db.close()


# ---------- Factory ----------


def make_shadow_ledger(dsn: Optional[str], *, admin_owner: Any, updater: Any = None) -> ShadowLedger:
    """
    Accepted DSNs: None / "mem://" (in-memory), "sqlite:///path" and
    "sqlite:///:memory:".
    """
    path = parse_dsn(dsn)
    if path is None:
        return InMemoryShadowLedger(admin_owner=admin_owner, updater=updater)
    return SQLiteShadowLedger(path, admin_owner=admin_owner, updater=updater)


__all__ = [
    "OwnershipMirrored",
    "OwnershipCleared",
    "BatchMirrored",
    "ApplyResult",
    "ShadowLedger",
    "InMemoryShadowLedger",
    "SQLiteShadowLedger",
    "make_shadow_ledger",
]
