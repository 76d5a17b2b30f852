# shadowsync/primary.py
"""
Primary-side reads: transfer log, chain head, point-in-time ownership and supply.

JsonRpcPrimary talks Ethereum JSON-RPC over httpx. Transport failures
(timeouts, connection errors, HTTP 429/5xx) are retried with exponential
backoff and then surface as TransientIOError. A JSON-RPC error reply is
raised at once as RpcError; retrying a deterministic rejection only burns
the request budget.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from prometheus_client import Counter, Histogram

from .codec import ZERO_ADDRESS, to_address
from .errors import RpcError, TransientIOError

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

_SEL_OWNER_OF = "0x6352211e"  # ownerOf(uint256)
_SEL_TOTAL_SUPPLY = "0x18160ddd"  # totalSupply()

_RPC_CALLS = Counter(
    "shadowsync_primary_rpc_total",
    "JSON-RPC calls to the primary endpoint",
    ["method", "status"],
)
_RPC_LAT = Histogram(
    "shadowsync_primary_rpc_latency_seconds",
    "JSON-RPC round-trip latency (seconds)",
    ["method"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)


@dataclass(frozen=True)
class TransferEvent:
    token_id: int
    from_address: str
    to_address: str
    position: int
    log_index: int = 0
    tx_hash: str = ""

    @property
    def is_burn(self) -> bool:
        return self.to_address == ZERO_ADDRESS

    @property
    def is_mint(self) -> bool:
        return self.from_address == ZERO_ADDRESS


class PrimarySource:
    """Read-only view of the primary ledger."""

    async def head(self) -> int:
        raise NotImplementedError

    async def transfers(self, start: int, end: int) -> List[TransferEvent]:
        """Transfer events with start <= position <= end, in chain order."""
        raise NotImplementedError

    async def owner_of(self, token_id: int) -> Optional[str]:
        """Current owner, or None when the token does not exist."""
        raise NotImplementedError

    async def total_supply(self) -> Optional[int]:
        """Current supply, or None when the primary does not expose one."""
        raise NotImplementedError

    async def aclose(self) -> None:
        pass

    async def __aenter__(self) -> "PrimarySource":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


def _topic_to_address(topic: str) -> str:
    return to_address("0x" + topic[-40:])


def _hex_to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16)


def decode_transfer_log(log: Dict[str, Any]) -> Optional[TransferEvent]:
    """
    Decode one eth_getLogs entry. Returns None for entries that are not an
    ERC-721 Transfer (ERC-20 transfers carry the id in data, not a 4th topic)
    and for logs removed by a reorg.
    """
    topics = log.get("topics") or []
    if len(topics) != 4 or str(topics[0]).lower() != TRANSFER_TOPIC:
        return None
    if log.get("removed"):
        return None
    return TransferEvent(
        token_id=_hex_to_int(topics[3]),
        from_address=_topic_to_address(topics[1]),
        to_address=_topic_to_address(topics[2]),
        position=_hex_to_int(log["blockNumber"]),
        log_index=_hex_to_int(log.get("logIndex") or 0),
        tx_hash=str(log.get("transactionHash") or ""),
    )


class JsonRpcPrimary(PrimarySource):
    def __init__(
        self,
        url: str,
        contract: str,
        *,
        timeout: float = 12.0,
        max_retries: int = 5,
        backoff_s: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.contract = to_address(contract)
        self.max_retries = max(1, int(max_retries))
        self._backoff_s = float(backoff_s)
        self._timeout = float(timeout)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._id = 1

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    async def __aenter__(self) -> "JsonRpcPrimary":
        self._http()
        return self

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def call(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        self._id += 1

        backoff = self._backoff_s
        last: Optional[BaseException] = None
        for attempt in range(1, self.max_retries + 1):
            t0 = time.perf_counter()
            try:
                resp = await self._http().post(self.url, json=payload)
                if resp.status_code == 429 or resp.status_code >= 500:
                    raise TransientIOError(f"{method}: HTTP {resp.status_code}")
                resp.raise_for_status()
                data = resp.json()
            except (httpx.TimeoutException, httpx.NetworkError, TransientIOError) as e:
                last = e
                _RPC_CALLS.labels(method, "retry").inc()
                logger.warning(
                    "primary rpc %s failed (attempt %d/%d): %s",
                    method, attempt, self.max_retries, e,
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(backoff)
                    backoff *= 2
                continue
            except (httpx.HTTPStatusError, ValueError) as e:
                _RPC_CALLS.labels(method, "bad_reply").inc()
                raise TransientIOError(f"{method}: unusable reply from primary: {e}") from e
            finally:
                _RPC_LAT.labels(method).observe(time.perf_counter() - t0)

            if isinstance(data, dict) and data.get("error"):
                err = data["error"]
                _RPC_CALLS.labels(method, "rpc_error").inc()
                if isinstance(err, dict):
                    raise RpcError(method, err.get("code"), str(err.get("message", "")))
                raise RpcError(method, None, str(err))
            _RPC_CALLS.labels(method, "ok").inc()
            return data.get("result") if isinstance(data, dict) else None

        raise TransientIOError(
            f"{method}: primary unreachable after {self.max_retries} attempt(s): {last}"
        ) from last

    async def head(self) -> int:
        return _hex_to_int(await self.call("eth_blockNumber", []))

    async def transfers(self, start: int, end: int) -> List[TransferEvent]:
        if end < start:
            return []
        flt = {
            "fromBlock": hex(start),
            "toBlock": hex(end),
            "address": self.contract,
            "topics": [TRANSFER_TOPIC],
        }
        logs = await self.call("eth_getLogs", [flt]) or []
        events = [ev for ev in (decode_transfer_log(lg) for lg in logs) if ev is not None]
        events.sort(key=lambda ev: (ev.position, ev.log_index))
        return events

    async def eth_call(self, data: str) -> str:
        return await self.call("eth_call", [{"to": self.contract, "data": data}, "latest"])

    async def owner_of(self, token_id: int) -> Optional[str]:
        data = _SEL_OWNER_OF + format(int(token_id), "064x")
        try:
            result = await self.eth_call(data)
        except RpcError as e:
            if e.reverted:
                return None
            raise
        if not result or result == "0x":
            return None
        owner = to_address("0x" + result[-40:])
        return None if owner == ZERO_ADDRESS else owner

    async def total_supply(self) -> Optional[int]:
        try:
            result = await self.eth_call(_SEL_TOTAL_SUPPLY)
        except RpcError as e:
            logger.info("primary does not expose totalSupply(): %s", e)
            return None
        if not result or result == "0x":
            return None
        return int(result, 16)


__all__ = [
    "TRANSFER_TOPIC",
    "TransferEvent",
    "PrimarySource",
    "JsonRpcPrimary",
    "decode_transfer_log",
]
