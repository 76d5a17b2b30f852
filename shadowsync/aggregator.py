# shadowsync/aggregator.py
"""
Pending-update aggregator: conflates observed transfers per token.

Only the latest owner of each token matters for the mirror, so repeated
transfers of one token between flushes collapse into a single entry. A burn
is an entry whose owner is the zero address; it replaces any pending
assignment and is relayed as an unassign. Each entry also remembers the
primary position at which it was observed; the lowest such position bounds
how far the checkpoint may advance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from prometheus_client import Gauge

from .codec import ZERO_ADDRESS, to_address, to_token_id

logger = logging.getLogger(__name__)

_PENDING = Gauge(
    "shadowsync_relay_pending_updates",
    "Tokens waiting to be relayed to the shadow ledger",
)


@dataclass(frozen=True)
class PendingEntry:
    owner: str
    position: int

    @property
    def is_burn(self) -> bool:
        return self.owner == ZERO_ADDRESS


@dataclass(frozen=True)
class Batch:
    """Immutable view of the aggregator taken at flush time."""

    entries: Mapping[int, PendingEntry]

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[int]:
        return iter(self.entries)

    def token_ids(self) -> List[int]:
        """Tokens to assign, in insertion order (burns excluded)."""
        return [tid for tid, e in self.entries.items() if not e.is_burn]

    def owners(self) -> List[str]:
        return [e.owner for e in self.entries.values() if not e.is_burn]

    def pairs(self) -> List[Tuple[int, str]]:
        return [(tid, e.owner) for tid, e in self.entries.items() if not e.is_burn]

    def burns(self) -> List[int]:
        return [tid for tid, e in self.entries.items() if e.is_burn]

    def max_position(self) -> Optional[int]:
        if not self.entries:
            return None
        return max(e.position for e in self.entries.values())


class PendingUpdates:
    """
    token -> (owner or burn, observed position), latest observation wins.

    Owned by the relay's event loop; not thread-safe.
    """

    def __init__(self) -> None:
        self._entries: Dict[int, PendingEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def size(self) -> int:
        return len(self._entries)

    def __contains__(self, token_id: object) -> bool:
        return token_id in self._entries

    def get(self, token_id: int) -> Optional[PendingEntry]:
        return self._entries.get(token_id)

    def enqueue(self, token_id: int, owner: str, position: int) -> None:
        """Record the latest owner; the zero address records a burn."""
        tid = to_token_id(token_id)
        self._entries[tid] = PendingEntry(to_address(owner), int(position))
        _PENDING.set(len(self._entries))

    def burn(self, token_id: int, position: int) -> None:
        self.enqueue(token_id, ZERO_ADDRESS, position)

    def discard(self, token_id: int) -> None:
        if self._entries.pop(to_token_id(token_id), None) is not None:
            _PENDING.set(len(self._entries))

    def snapshot(self) -> Batch:
        return Batch(MappingProxyType(dict(self._entries)))

    def settle(self, batch: Batch) -> int:
        """
        Remove entries that were part of `batch` and have not been re-observed
        since. Returns the number of entries removed.
        """
        removed = 0
        for tid, entry in batch.entries.items():
            if self._entries.get(tid) == entry:
                del self._entries[tid]
                removed += 1
        _PENDING.set(len(self._entries))
        return removed

    def low_watermark(self) -> Optional[int]:
        """Lowest observed position among pending entries, or None if empty."""
        if not self._entries:
            return None
        return min(e.position for e in self._entries.values())

    def clear(self) -> None:
        self._entries.clear()
        _PENDING.set(0)


__all__ = ["PendingEntry", "Batch", "PendingUpdates"]
