# shadowsync/resync.py
"""
One-shot resync of existing ownership from the primary to the shadow ledger.

Used to seed a fresh shadow ledger, or to repair one after a long outage,
without waiting for every token to move again. Ownership is collected
either by token id (when the primary exposes totalSupply) or by replaying
the whole transfer log, then relayed in fixed-size batches.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .codec import fits_packed, pack_many
from .config import Settings
from .errors import ConfigurationError, SequenceConflictError
from .ingestion import EventIngestor
from .pipeline import arbitrate_sequence
from .primary import JsonRpcPrimary, PrimarySource
from .shadow_client import HttpShadowClient, ShadowClient

logger = logging.getLogger(__name__)

METHODS = ("auto", "token-id", "events")


@dataclass
class ResyncReport:
    method: str
    collected: int = 0
    batches: int = 0
    relayed: int = 0
    skipped_batches: int = 0
    sequences: List[int] = field(default_factory=list)


async def collect_by_token_id(
    primary: PrimarySource,
    *,
    start_id: int = 0,
) -> Optional[Dict[int, str]]:
    """
    Query owner_of for ids start_id .. start_id + supply - 1. Returns None
    when the primary has no totalSupply; ids without an owner are skipped.
    """
    supply = await primary.total_supply()
    if supply is None:
        return None
    out: Dict[int, str] = {}
    missing = 0
    for tid in range(int(start_id), int(start_id) + int(supply)):
        owner = await primary.owner_of(tid)
        if owner is None:
            missing += 1
            continue
        out[tid] = owner
    logger.info(
        "collected %d owner(s) by token id (%d id(s) without owner)",
        len(out),
        missing,
        extra={"start": start_id, "supply": supply},
    )
    return out


async def collect_by_events(
    primary: PrimarySource,
    *,
    chunk_size: int = 500,
    start: int = 0,
    end: Optional[int] = None,
) -> Dict[int, str]:
    """Replay the transfer log; the last transfer of each token wins, burns remove it."""
    if end is None:
        end = await primary.head()
    out: Dict[int, str] = {}
    async for chunk in EventIngestor(primary, chunk_size=chunk_size).scan(start, end):
        for ev in chunk.transfers:
            if ev.is_burn:
                out.pop(ev.token_id, None)
            else:
                out[ev.token_id] = ev.to_address
    logger.info("collected %d owner(s) from the transfer log", len(out), extra={"position": end})
    return out


def _batches(items: List[Tuple[int, str]], size: int) -> List[List[Tuple[int, str]]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


async def relay_in_batches(
    shadow: ShadowClient,
    primary: PrimarySource,
    ownership: Dict[int, str],
    *,
    batch_size: int = 50,
    method: str = "auto",
) -> ResyncReport:
    """
    Relay `ownership` in batches. Batch i is sent with sequence base + i,
    bumped past the mediator when that is already stale. A sequence conflict
    skips the batch; any other error aborts the run.
    """
    report = ResyncReport(method=method, collected=len(ownership))
    items = sorted(ownership.items())
    if not items:
        logger.info("nothing to resync")
        return report

    base = arbitrate_sequence(await primary.head(), await shadow.last_processed_block())
    for i, batch in enumerate(_batches(items, max(1, int(batch_size)))):
        seq = arbitrate_sequence(base + i, await shadow.last_processed_block())
        try:
            if all(fits_packed(tid) for tid, _ in batch):
                await shadow.relay_packed(pack_many(batch), seq)
            else:
                await shadow.relay_bulk([t for t, _ in batch], [o for _, o in batch], seq)
        except SequenceConflictError as e:
            report.skipped_batches += 1
            logger.warning(
                "resync batch %d skipped: %s",
                i,
                e,
                extra={"sequence": seq, "batch_size": len(batch)},
            )
            continue
        report.batches += 1
        report.relayed += len(batch)
        report.sequences.append(seq)
        logger.info(
            "resync batch %d relayed",
            i,
            extra={"sequence": seq, "batch_size": len(batch)},
        )
    return report


async def resync(
    primary: PrimarySource,
    shadow: ShadowClient,
    *,
    method: str = "auto",
    token_id_start: int = 0,
    batch_size: int = 50,
    chunk_size: int = 500,
) -> ResyncReport:
    if method not in METHODS:
        raise ValueError(f"unknown resync method {method!r}; expected one of {METHODS}")
    ownership: Optional[Dict[int, str]] = None
    used = method
    if method in ("auto", "token-id"):
        ownership = await collect_by_token_id(primary, start_id=token_id_start)
        used = "token-id"
        if ownership is None and method == "token-id":
            raise ConfigurationError("primary does not expose totalSupply(); use method 'events'")
        if method == "auto" and not ownership:
            # missing or zero totalSupply, or every id lacked an owner
            logger.info("nothing collected by token id, falling back to the transfer log")
            ownership = None
    if ownership is None:
        ownership = await collect_by_events(primary, chunk_size=chunk_size)
        used = "events"
    return await relay_in_batches(shadow, primary, ownership, batch_size=batch_size, method=used)


async def run_resync(settings: Settings, *, method: str = "auto") -> ResyncReport:
    settings.require("primary_rpc_url", "primary_contract", "shadow_url")
    shadow = HttpShadowClient(settings.shadow_url, settings.shadow_token, timeout=settings.rpc_timeout_s)
    try:
        async with JsonRpcPrimary(
            settings.primary_rpc_url,
            settings.primary_contract,
            timeout=settings.rpc_timeout_s,
            max_retries=settings.rpc_max_retries,
        ) as primary:
            report = await resync(
                primary,
                shadow,
                method=method,
                token_id_start=settings.token_id_start,
                batch_size=settings.sync_batch_size,
                chunk_size=settings.chunk_size,
            )
    finally:
        await shadow.aclose()
    logger.info(
        "resync finished: %d relayed in %d batch(es), %d skipped",
        report.relayed,
        report.batches,
        report.skipped_batches,
    )
    return report


__all__ = [
    "METHODS",
    "ResyncReport",
    "collect_by_token_id",
    "collect_by_events",
    "relay_in_batches",
    "resync",
    "run_resync",
]
