# shadowsync/pipeline.py
"""
Batch submission: aggregator snapshot -> sequence arbitration -> shadow relay.

Assignments go out on one call (packed, or bulk when an id does not fit
96 bits). Burns go out on a second call at the next sequence. If the burn
call fails after the assignments landed, the whole batch is retried;
reapplying the assignments changes nothing.

Failure policy (keyed on exception type):

  SequenceConflictError  the mediator is already past this sequence; the
                         batch is treated as applied and dropped
  TransientIOError       the batch stays pending for the next trigger
  ValidationError        the shadow side refused the content; resubmitting
                         it unchanged cannot succeed, so it is dropped
  AuthorizationError     propagated, the relay stops
"""

from __future__ import annotations

import enum
import logging
import time
from typing import Optional

from prometheus_client import Counter, Histogram

from .aggregator import Batch, PendingUpdates
from .codec import fits_packed, pack_many
from .errors import SequenceConflictError, TransientIOError, ValidationError
from .primary import PrimarySource
from .shadow_client import ShadowClient

logger = logging.getLogger(__name__)

_BATCHES = Counter(
    "shadowsync_relay_batches_total",
    "Flush attempts by outcome",
    ["outcome"],
)
_BATCH_ITEMS = Counter(
    "shadowsync_relay_batch_items_total",
    "Token updates contained in submitted batches",
    ["path"],
)
_SUBMIT_LAT = Histogram(
    "shadowsync_relay_submit_latency_seconds",
    "Latency from snapshot to shadow acknowledgement (seconds)",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


class FlushOutcome(str, enum.Enum):
    IDLE = "idle"  # nothing pending
    BUSY = "busy"  # a submission is already in flight
    APPLIED = "applied"
    DISCARDED = "discarded"
    RETAINED = "retained"
    REJECTED = "rejected"


def arbitrate_sequence(head: int, mediator_sequence: int) -> int:
    """
    Pick the sequence number for the next batch. The primary head is used
    while it is ahead of the mediator; otherwise the mediator's value is
    bumped by one so the strictly-increasing gate still accepts the batch.
    """
    head = int(head)
    mediator_sequence = int(mediator_sequence)
    return head if head > mediator_sequence else mediator_sequence + 1


class BatchSubmitter:
    def __init__(self, pending: PendingUpdates, shadow: ShadowClient, primary: PrimarySource):
        self.pending = pending
        self.shadow = shadow
        self.primary = primary
        self._in_flight = False
        self.last_sequence: Optional[int] = None
        self.last_outcome: Optional[FlushOutcome] = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def flush(self) -> FlushOutcome:
        if self._in_flight:
            return FlushOutcome.BUSY
        if not len(self.pending):
            return FlushOutcome.IDLE

        self._in_flight = True
        try:
            outcome = await self._submit(self.pending.snapshot())
        finally:
            self._in_flight = False
        _BATCHES.labels(outcome.value).inc()
        self.last_outcome = outcome
        return outcome

    async def _submit(self, batch: Batch) -> FlushOutcome:
        t0 = time.perf_counter()
        seq: Optional[int] = None
        assignments = batch.pairs()
        burns = batch.burns()
        path = "burn"
        try:
            head = await self.primary.head()
            seq = arbitrate_sequence(head, await self.shadow.last_processed_block())
            if assignments:
                if all(fits_packed(tid) for tid, _ in assignments):
                    path = "packed"
                    await self.shadow.relay_packed(pack_many(assignments), seq)
                else:
                    path = "bulk"
                    await self.shadow.relay_bulk(batch.token_ids(), batch.owners(), seq)
            if burns:
                if assignments:
                    # the assignment call consumed seq
                    seq += 1
                await self.shadow.relay_burn(burns, seq)
        except SequenceConflictError as e:
            self.pending.settle(batch)
            logger.warning(
                "batch superseded at the mediator, dropping it: %s",
                e,
                extra={"sequence": e.supplied, "mediator_sequence": e.stored,
                       "batch_size": len(batch), "outcome": "discarded"},
            )
            return FlushOutcome.DISCARDED
        except TransientIOError as e:
            logger.warning(
                "batch submission failed, keeping it for the next trigger: %s",
                e,
                extra={"sequence": seq, "batch_size": len(batch), "outcome": "retained"},
            )
            return FlushOutcome.RETAINED
        except ValidationError as e:
            self.pending.settle(batch)
            logger.error(
                "shadow side rejected batch content, dropping it: %s",
                e,
                extra={"sequence": seq, "batch_size": len(batch), "outcome": "rejected"},
            )
            return FlushOutcome.REJECTED

        self.pending.settle(batch)
        self.last_sequence = seq
        dt = time.perf_counter() - t0
        _SUBMIT_LAT.observe(dt)
        if assignments:
            _BATCH_ITEMS.labels(path).inc(len(assignments))
        if burns:
            _BATCH_ITEMS.labels("burn").inc(len(burns))
        logger.info(
            "relayed batch of %d update(s), %d burn(s)",
            len(batch),
            len(burns),
            extra={"sequence": seq, "batch_size": len(batch), "path": path,
                   "outcome": "applied", "latency_ms": round(dt * 1000.0, 3)},
        )
        return FlushOutcome.APPLIED


__all__ = ["FlushOutcome", "BatchSubmitter", "arbitrate_sequence"]
