# shadowsync/checkpoint.py
"""
Local checkpoint store for the relay.

One record, {"last_processed_position": N, "updated_ts": T}, read at startup
and overwritten after every ingestion chunk and every settled batch. Writes
go to a temp file that is fsynced and then renamed over the target, so a
crash leaves either the old record or the new one, never a torn file.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Optional

from prometheus_client import Gauge

logger = logging.getLogger(__name__)

_CHECKPOINT = Gauge(
    "shadowsync_relay_checkpoint_position",
    "Last persisted primary position",
)


@dataclass(frozen=True)
class Checkpoint:
    last_processed_position: int
    updated_ts: float = 0.0

    def to_json(self) -> str:
        return json.dumps(
            {
                "last_processed_position": int(self.last_processed_position),
                "updated_ts": float(self.updated_ts),
            },
            sort_keys=True,
            separators=(",", ":"),
        )


class CheckpointStore:
    def load(self) -> Optional[Checkpoint]:
        raise NotImplementedError

    def save(self, checkpoint: Checkpoint) -> None:
        raise NotImplementedError

    def save_position(self, position: int) -> Checkpoint:
        cp = Checkpoint(int(position), time.time())
        self.save(cp)
        return cp


class InMemoryCheckpointStore(CheckpointStore):
    def __init__(self, initial: Optional[Checkpoint] = None):
        self._cp = initial
        self.saves = 0

    def load(self) -> Optional[Checkpoint]:
        return self._cp

    def save(self, checkpoint: Checkpoint) -> None:
        self._cp = checkpoint
        self.saves += 1
        _CHECKPOINT.set(checkpoint.last_processed_position)


def _fsync_dir_for_path(path: str) -> None:
    dirname = os.path.dirname(os.path.abspath(path)) or "."
    try:
        fd = os.open(dirname, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        logger.debug("directory fsync unsupported for %s", dirname)
    finally:
        os.close(fd)


class JsonCheckpointStore(CheckpointStore):
    """Single JSON file, replaced atomically on every save."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def load(self) -> Optional[Checkpoint]:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                doc = json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("checkpoint %s is unreadable (%s); starting fresh", self.path, e)
            return None
        try:
            cp = Checkpoint(
                int(doc["last_processed_position"]),
                float(doc.get("updated_ts", 0.0)),
            )
        except (TypeError, KeyError, ValueError, AttributeError):
            logger.warning("checkpoint %s has no valid position; starting fresh", self.path)
            return None
        if cp.last_processed_position < 0:
            logger.warning("checkpoint %s holds a negative position; starting fresh", self.path)
            return None
        _CHECKPOINT.set(cp.last_processed_position)
        return cp

    def save(self, checkpoint: Checkpoint) -> None:
        tmp_path = self.path + ".tmp"
        with self._lock:
            parent = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(parent, exist_ok=True)
            try:
                with open(tmp_path, "w", encoding="utf-8") as fh:
                    fh.write(checkpoint.to_json())
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_path, self.path)
            except OSError:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
            _fsync_dir_for_path(self.path)
        _CHECKPOINT.set(checkpoint.last_processed_position)
        logger.debug(
            "checkpoint saved",
            extra={"position": checkpoint.last_processed_position},
        )


__all__ = ["Checkpoint", "CheckpointStore", "InMemoryCheckpointStore", "JsonCheckpointStore"]
