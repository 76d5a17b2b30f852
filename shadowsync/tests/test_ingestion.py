# shadowsync/tests/test_ingestion.py
import asyncio

import pytest

from conftest import ALICE, BOB
from shadowsync.ingestion import EventIngestor


def test_chunks_cover_range(primary):
    primary.add(1, ALICE, 3)
    primary.add(2, BOB, 15)
    primary.add(1, BOB, 25)

    async def go():
        return [c async for c in EventIngestor(primary, chunk_size=10).scan(0, 25)]

    chunks = asyncio.run(go())
    assert [(c.start, c.end) for c in chunks] == [(0, 9), (10, 19), (20, 25)]
    assert [[e.token_id for e in c.transfers] for c in chunks] == [[1], [2], [1]]


def test_events_ordered_within_chunk(primary):
    primary.add(1, ALICE, 5, log_index=2)
    primary.add(2, ALICE, 4, log_index=7)
    primary.add(3, ALICE, 5, log_index=0)

    async def go():
        return [c async for c in EventIngestor(primary, chunk_size=100).scan(0, 10)]

    (chunk,) = asyncio.run(go())
    assert [e.token_id for e in chunk.transfers] == [2, 3, 1]


def test_scan_is_lazy(primary):
    async def go():
        gen = EventIngestor(primary, chunk_size=5).scan(0, 100)
        first = await gen.__anext__()
        calls = list(primary.transfer_calls)
        await gen.aclose()
        return first, calls

    first, calls = asyncio.run(go())
    assert (first.start, first.end) == (0, 4)
    assert calls == [(0, 4)]


def test_empty_range(primary):
    async def go():
        return [c async for c in EventIngestor(primary).scan(10, 9)]

    assert asyncio.run(go()) == []


def test_chunk_size_must_be_positive(primary):
    with pytest.raises(ValueError):
        EventIngestor(primary, chunk_size=0)
