# shadowsync/relay.py
"""
Relay scheduler: one asyncio loop driving ingestion, batching and checkpoints.

Lifecycle:
  initialize()  verify the relay identity against the mediator, load the
                checkpoint and decide where scanning resumes
  backfill()    scan [start, end] chunk by chunk; flush on threshold and
                checkpoint after every chunk
  run()         backfill to the head, then poll for new positions and flush
                on the interval timer until stopped
  shutdown()    stop taking events, flush once, persist the checkpoint

The persisted checkpoint is the highest fully scanned position, clamped to
one below the lowest position of any observation still pending. Resuming
from it after a crash re-reads every un-submitted observation; anything
re-read that was already applied is harmless because assignments are
per-token idempotent.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import List, Optional

from prometheus_client import Gauge, start_http_server

from .aggregator import PendingUpdates
from .checkpoint import CheckpointStore, JsonCheckpointStore
from .codec import to_address
from .config import Settings
from .errors import AuthorizationError, ConfigurationError, TransientIOError
from .ingestion import EventIngestor
from .logging import bind, unbind
from .primary import JsonRpcPrimary, PrimarySource, TransferEvent
from .pipeline import BatchSubmitter, FlushOutcome
from .shadow_client import HttpShadowClient, ShadowClient

logger = logging.getLogger(__name__)

_SCANNED = Gauge(
    "shadowsync_relay_scanned_position",
    "Highest primary position fully scanned by the relay",
)
_HEAD = Gauge(
    "shadowsync_relay_primary_head",
    "Last primary head observed by the relay",
)

_SETTLED = (FlushOutcome.APPLIED, FlushOutcome.DISCARDED, FlushOutcome.REJECTED)


async def _sleep_or_stop(stop: asyncio.Event, timeout: float) -> None:
    with contextlib.suppress(asyncio.TimeoutError):
        await asyncio.wait_for(stop.wait(), timeout)


class Relay:
    def __init__(
        self,
        settings: Settings,
        *,
        primary: PrimarySource,
        shadow: ShadowClient,
        checkpoints: CheckpointStore,
        relayer_address: Optional[str] = None,
    ):
        self.settings = settings
        self.primary = primary
        self.shadow = shadow
        self.checkpoints = checkpoints
        self.relayer = to_address(relayer_address or settings.relayer_address)
        self.pending = PendingUpdates()
        self.ingestor = EventIngestor(primary, chunk_size=settings.chunk_size)
        self.submitter = BatchSubmitter(self.pending, shadow, primary)
        self.batch_size = int(settings.batch_size)
        self.scanned = int(settings.start_block) - 1
        self._accepting = True
        self._stop: Optional[asyncio.Event] = None
        # set when a threshold flush could not reach the shadow side; the
        # next retry waits for the interval timer
        self._hold = False

    # ----- startup -----

    async def initialize(self) -> int:
        """Returns the first position to scan."""
        owner = await self.shadow.mediator_owner()
        if self.relayer != owner and not await self.shadow.is_relayer(self.relayer):
            raise ConfigurationError(
                f"relayer {self.relayer} is neither an allowed relayer nor the mediator owner"
            )
        cp = self.checkpoints.load()
        if cp is None:
            start = int(self.settings.start_block)
        else:
            start = cp.last_processed_position + 1
        self.scanned = start - 1
        self._accepting = True
        logger.info(
            "relay initialized; resuming at position %d (config %s, origin %s)",
            start,
            self.settings.config_hash(),
            self.settings.config_origin,
            extra={
                "relayer": self.relayer,
                "position": start,
                "batch_size": self.batch_size,
                "chunk_size": self.settings.chunk_size,
                "batch_interval_s": self.settings.batch_interval_s,
                "checkpoint": cp.last_processed_position if cp else None,
            },
        )
        return start

    # ----- checkpointing -----

    def safe_position(self) -> int:
        pos = self.scanned
        low = self.pending.low_watermark()
        if low is not None:
            pos = min(pos, low - 1)
        return pos

    def persist_checkpoint(self) -> None:
        pos = self.safe_position()
        if pos < 0:
            return
        self.checkpoints.save_position(pos)

    # ----- event handling -----

    def observe(self, ev: TransferEvent) -> None:
        if ev.is_burn:
            self.pending.burn(ev.token_id, ev.position)
            logger.debug("burn observed", extra={"token_id": ev.token_id, "position": ev.position})
        else:
            self.pending.enqueue(ev.token_id, ev.to_address, ev.position)

    async def flush(self) -> FlushOutcome:
        outcome = await self.submitter.flush()
        if outcome in _SETTLED:
            self.persist_checkpoint()
        return outcome

    async def _flush_on_threshold(self) -> None:
        if self._hold or len(self.pending) < self.batch_size:
            return
        if await self.flush() is FlushOutcome.RETAINED:
            self._hold = True

    def _stopping(self) -> bool:
        return not self._accepting or (self._stop is not None and self._stop.is_set())

    async def ingest(self, start: int, end: int) -> None:
        """Scan [start, end] into the aggregator, checkpointing per chunk."""
        async for chunk in self.ingestor.scan(start, end):
            for ev in chunk.transfers:
                self.observe(ev)
                await self._flush_on_threshold()
            self.scanned = max(self.scanned, chunk.end)
            _SCANNED.set(self.scanned)
            self.persist_checkpoint()
            if self._stopping():
                break

    async def backfill(self, start: int, end: int) -> None:
        logger.info("backfill starting", extra={"chunk_start": start, "chunk_end": end})
        await self.ingest(start, end)
        await self.flush()
        logger.info(
            "backfill done",
            extra={"position": self.scanned, "pending": len(self.pending)},
        )

    # ----- live mode -----

    async def poll_once(self) -> None:
        head = await self.primary.head()
        _HEAD.set(head)
        if head > self.scanned:
            await self.ingest(self.scanned + 1, head)

    async def _poll_loop(self, stop: asyncio.Event) -> None:
        interval = float(self.settings.poll_interval_s)
        while not stop.is_set():
            try:
                await self.poll_once()
            except TransientIOError as e:
                logger.warning("primary poll failed: %s", e)
            await _sleep_or_stop(stop, interval)

    async def _timer_loop(self, stop: asyncio.Event) -> None:
        interval = float(self.settings.batch_interval_s)
        while not stop.is_set():
            await _sleep_or_stop(stop, interval)
            if stop.is_set():
                break
            self._hold = False
            await self.flush()

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        self._stop = stop
        bind(component="relay", relayer=self.relayer)
        try:
            await self._run(stop)
        finally:
            unbind("component", "relayer")

    async def _run(self, stop: asyncio.Event) -> None:
        start = await self.initialize()
        halted = False
        try:
            try:
                head = await self.primary.head()
                _HEAD.set(head)
                if head >= start:
                    await self.backfill(start, head)
            except TransientIOError as e:
                # every finished chunk is checkpointed; polling picks up after it
                logger.warning(
                    "backfill interrupted by the primary, live polling resumes at %d: %s",
                    self.scanned + 1,
                    e,
                    extra={"position": self.scanned, "pending": len(self.pending)},
                )
            if stop.is_set():
                return
            tasks: List[asyncio.Task] = [
                asyncio.create_task(self._poll_loop(stop)),
                asyncio.create_task(self._timer_loop(stop)),
            ]
            waiter = asyncio.create_task(stop.wait())
            done, _ = await asyncio.wait(tasks + [waiter], return_when=asyncio.FIRST_COMPLETED)
            for t in tasks + [waiter]:
                t.cancel()
            await asyncio.gather(*tasks, waiter, return_exceptions=True)
            for t in done:
                if t is not waiter and not t.cancelled() and t.exception() is not None:
                    raise t.exception()
        except AuthorizationError:
            halted = True
            logger.error("relay is not authorized on the shadow side; halting")
            raise
        finally:
            await self.shutdown(flush=not halted)

    async def shutdown(self, *, flush: bool = True) -> None:
        self._accepting = False
        try:
            if flush:
                outcome = await self.flush()
                logger.info(
                    "final flush: %s",
                    outcome.value,
                    extra={"outcome": outcome.value, "pending": len(self.pending)},
                )
        finally:
            self.persist_checkpoint()
            logger.info("relay stopped", extra={"position": self.safe_position()})


async def run_relay(settings: Settings, *, stop: Optional[asyncio.Event] = None) -> None:
    """Build the production clients and run the relay until SIGINT/SIGTERM."""
    settings.require("primary_rpc_url", "primary_contract", "shadow_url", "relayer_address")
    if settings.prometheus_port:
        start_http_server(settings.prometheus_port)
        logger.info("metrics exporter listening on :%d", settings.prometheus_port)

    loop = asyncio.get_running_loop()
    stop = stop or asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    shadow = HttpShadowClient(
        settings.shadow_url,
        settings.shadow_token,
        timeout=settings.rpc_timeout_s,
    )
    try:
        async with JsonRpcPrimary(
            settings.primary_rpc_url,
            settings.primary_contract,
            timeout=settings.rpc_timeout_s,
            max_retries=settings.rpc_max_retries,
        ) as primary:
            relay = Relay(
                settings,
                primary=primary,
                shadow=shadow,
                checkpoints=JsonCheckpointStore(settings.checkpoint_path),
            )
            await relay.run(stop)
    finally:
        await shadow.aclose()


__all__ = ["Relay", "run_relay"]
