"""
Oracle mediator: relayer allow-list and sequence gate in front of the shadow ledger.

Two-tier trust model:
  - The ledger trusts exactly one updater address (normally the mediator).
  - The mediator trusts its owner plus an allow-list of relayers, so relay
    operators can be rotated without touching the ledger's updater.

Ordering:
  - last_processed_block is a logical clock. Every relay call must carry a
    sequence strictly greater than the stored value; on success the stored
    value becomes that sequence. A rejected call has no state effect.
  - This gate is the only concurrency control between independent relays.
  - On SQLite the ledger batch and the stored sequence commit in separate
    transactions. A crash between the two leaves the batch applied with the
    sequence not advanced; the relay then resubmits it under a new sequence,
    which reapplies the same per-token assignments and changes nothing.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional, Sequence, Set

from prometheus_client import Counter, Gauge

from .codec import ZERO_ADDRESS, to_address
from .errors import AuthorizationError, SequenceConflictError, ValidationError
from .ledger import ApplyResult, ShadowLedger
from .storage import SQLiteDB, parse_dsn

logger = logging.getLogger(__name__)

_RELAY_OK = Counter(
    "shadowsync_mediator_relay_total",
    "Relay calls forwarded to the ledger",
    ["path"],
)
_RELAY_REJECT = Counter(
    "shadowsync_mediator_reject_total",
    "Relay calls rejected by the mediator",
    ["reason"],
)
_SEQUENCE = Gauge(
    "shadowsync_mediator_last_processed_block",
    "Mediator sequence number (last processed block)",
)


class Mediator:
    """Base mediator; backends provide persistence of owner, sequence and relayers."""

    def __init__(self, ledger: ShadowLedger, *, address: Any):
        self._ledger = ledger
        self._address = to_address(address)
        if self._address == ZERO_ADDRESS:
            raise ValidationError("mediator address must not be the zero address")
        self._lock = threading.RLock()

    # ----- persistence primitives (backend) -----

    def _load_owner(self) -> Optional[str]:
        raise NotImplementedError

    def _store_owner(self, owner: str) -> None:
        raise NotImplementedError

    def _load_sequence(self) -> int:
        raise NotImplementedError

    def _store_sequence(self, sequence: int) -> None:
        raise NotImplementedError

    def _relayer_set(self) -> Set[str]:
        raise NotImplementedError

    def _store_relayer(self, addr: str, allowed: bool) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def _seed(self, owner: Any) -> None:
        if self._load_owner() is None:
            o = to_address(owner)
            if o == ZERO_ADDRESS:
                raise ValidationError("mediator owner must not be the zero address")
            self._store_owner(o)
        _SEQUENCE.set(self._load_sequence())

    # ----- reads -----

    @property
    def address(self) -> str:
        return self._address

    @property
    def ledger(self) -> ShadowLedger:
        return self._ledger

    @property
    def owner(self) -> str:
        return self._load_owner() or ZERO_ADDRESS

    @property
    def last_processed_block(self) -> int:
        return self._load_sequence()

    def is_relayer(self, addr: Any) -> bool:
        return to_address(addr) in self._relayer_set()

    def relayers(self) -> Set[str]:
        return set(self._relayer_set())

    # ----- administration -----

    def _require_owner(self, caller: Any) -> str:
        who = to_address(caller)
        if who != self.owner:
            _RELAY_REJECT.labels("not_owner").inc()
            raise AuthorizationError("only the mediator owner may do this", caller=who)
        return who

    def add_relayer(self, caller: Any, addr: Any) -> None:
        self._require_owner(caller)
        a = to_address(addr)
        if a == ZERO_ADDRESS:
            raise ValidationError("relayer must not be the zero address")
        with self._lock:
            self._store_relayer(a, True)
        logger.info("relayer added: %s", a)

    def remove_relayer(self, caller: Any, addr: Any) -> None:
        self._require_owner(caller)
        a = to_address(addr)
        with self._lock:
            self._store_relayer(a, False)
        logger.info("relayer removed: %s", a)

    def transfer_ownership(self, caller: Any, new_owner: Any) -> None:
        self._require_owner(caller)
        o = to_address(new_owner)
        if o == ZERO_ADDRESS:
            raise ValidationError("mediator owner must not be the zero address")
        with self._lock:
            self._store_owner(o)
        logger.info("mediator ownership transferred to %s", o)

    # ----- relay entry points -----

    def relay_packed(self, caller: Any, words: Sequence[Any], sequence: int) -> ApplyResult:
        return self._relay(
            caller, sequence, "packed",
            lambda: self._ledger.assign_packed(self._address, words, sequence),
        )

    def relay_bulk(
        self,
        caller: Any,
        token_ids: Sequence[Any],
        owners: Sequence[Any],
        sequence: int,
    ) -> ApplyResult:
        return self._relay(
            caller, sequence, "bulk",
            lambda: self._ledger.assign_many(self._address, token_ids, owners, sequence),
        )

    def relay_one(self, caller: Any, token_id: Any, owner: Any, sequence: int) -> ApplyResult:
        return self._relay(
            caller, sequence, "single",
            lambda: self._ledger.assign_one(self._address, token_id, owner),
        )

    def relay_burn(self, caller: Any, token_ids: Sequence[Any], sequence: int) -> ApplyResult:
        return self._relay(
            caller, sequence, "burn",
            lambda: self._ledger.unassign(self._address, token_ids, sequence),
        )

    def _relay(
        self,
        caller: Any,
        sequence: int,
        path: str,
        forward: Callable[[], ApplyResult],
    ) -> ApplyResult:
        who = to_address(caller)
        seq = int(sequence)
        with self._lock:
            if who not in self._relayer_set() and who != self.owner:
                _RELAY_REJECT.labels("not_relayer").inc()
                raise AuthorizationError("caller is not an authorized relayer", caller=who)
            stored = self._load_sequence()
            if seq <= stored:
                _RELAY_REJECT.labels("stale_sequence").inc()
                raise SequenceConflictError(seq, stored)
            result = forward()
            self._store_sequence(seq)
        _RELAY_OK.labels(path).inc()
        _SEQUENCE.set(seq)
        logger.info(
            "relayed %d update(s) at sequence %d",
            result.applied,
            seq,
            extra={"sequence": seq, "batch_size": result.applied, "relayer": who},
        )
        return result


# ---------- In-Memory Implementation ----------


class InMemoryMediator(Mediator):
    def __init__(self, ledger: ShadowLedger, *, address: Any, owner: Any):
        super().__init__(ledger, address=address)
        self._owner: Optional[str] = None
        self._sequence = 0
        self._relayers: Set[str] = set()
        self._seed(owner)

    def _load_owner(self) -> Optional[str]:
        return self._owner

    def _store_owner(self, owner: str) -> None:
        self._owner = owner

    def _load_sequence(self) -> int:
        return self._sequence

    def _store_sequence(self, sequence: int) -> None:
        self._sequence = sequence

    def _relayer_set(self) -> Set[str]:
        return self._relayers

    def _store_relayer(self, addr: str, allowed: bool) -> None:
        if allowed:
            self._relayers.add(addr)
        else:
            self._relayers.discard(addr)


# ---------- SQLite Implementation ----------

_SCHEMA_V1 = """
CREATE TABLE IF NOT EXISTS mediator_meta (
  k          TEXT PRIMARY KEY,
  v          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS mediator_relayers (
  address    TEXT PRIMARY KEY
);

INSERT OR IGNORE INTO mediator_meta(k, v) VALUES('last_processed_block', '0');
"""


class SQLiteMediator(Mediator):
    def __init__(self, ledger: ShadowLedger, path: str, *, address: Any, owner: Any):
        super().__init__(ledger, address=address)
        self._db = SQLiteDB(path, label="mediator")
        self._db.migrate([_SCHEMA_V1])
        self._seed(owner)

    def _meta(self, key: str) -> Optional[str]:
        row = self._db.execute("SELECT v FROM mediator_meta WHERE k=?", (key,)).fetchone()
        return row[0] if row else None

    def _put_meta(self, key: str, value: str) -> None:
        with self._db.tx() as conn:
            conn.execute(
                "INSERT INTO mediator_meta(k, v) VALUES(?,?) "
                "ON CONFLICT(k) DO UPDATE SET v=excluded.v",
                (key, value),
            )

    def _load_owner(self) -> Optional[str]:
        return self._meta("owner")

    def _store_owner(self, owner: str) -> None:
        self._put_meta("owner", owner)

    def _load_sequence(self) -> int:
        return int(self._meta("last_processed_block") or 0)

    def _store_sequence(self, sequence: int) -> None:
        self._put_meta("last_processed_block", str(int(sequence)))

    def _relayer_set(self) -> Set[str]:
        return {r[0] for r in self._db.execute("SELECT address FROM mediator_relayers").fetchall()}

    def _store_relayer(self, addr: str, allowed: bool) -> None:
        with self._db.tx() as conn:
            if allowed:
                conn.execute("INSERT OR IGNORE INTO mediator_relayers(address) VALUES(?)", (addr,))
            else:
                conn.execute("DELETE FROM mediator_relayers WHERE address=?", (addr,))

    def close(self) -> None:
        self._db.close()


def make_mediator(ledger: ShadowLedger, dsn: Optional[str], *, address: Any, owner: Any) -> Mediator:
    path = parse_dsn(dsn)
    if path is None:
        return InMemoryMediator(ledger, address=address, owner=owner)
    return SQLiteMediator(ledger, path, address=address, owner=owner)


__all__ = [
    "Mediator",
    "InMemoryMediator",
    "SQLiteMediator",
    "make_mediator",
]
