# shadowsync/ingestion.py
"""Chunked, lazy scan of the primary transfer log."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, List

from prometheus_client import Counter

from .primary import PrimarySource, TransferEvent

logger = logging.getLogger(__name__)

_EVENTS = Counter(
    "shadowsync_ingested_events_total",
    "Transfer events read from the primary",
    ["kind"],
)
_CHUNKS = Counter(
    "shadowsync_ingested_chunks_total",
    "Position windows scanned on the primary",
)


@dataclass(frozen=True)
class Chunk:
    start: int
    end: int
    transfers: List[TransferEvent] = field(default_factory=list)


class EventIngestor:
    def __init__(self, primary: PrimarySource, *, chunk_size: int = 500):
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self.primary = primary
        self.chunk_size = int(chunk_size)

    async def scan(self, start: int, end: int) -> AsyncIterator[Chunk]:
        """
        Yield [start, end] in windows of chunk_size positions.

        The next window is fetched only when the consumer asks for it, so a
        consumer that checkpoints between chunks never runs ahead of what the
        primary has actually delivered.
        """
        lo = max(0, int(start))
        while lo <= end:
            hi = min(lo + self.chunk_size - 1, end)
            events = await self.primary.transfers(lo, hi)
            events.sort(key=lambda ev: (ev.position, ev.log_index))
            _CHUNKS.inc()
            for ev in events:
                _EVENTS.labels("burn" if ev.is_burn else "mint" if ev.is_mint else "transfer").inc()
            logger.debug(
                "scanned %d event(s)",
                len(events),
                extra={"chunk_start": lo, "chunk_end": hi},
            )
            yield Chunk(lo, hi, events)
            lo = hi + 1


__all__ = ["Chunk", "EventIngestor"]
