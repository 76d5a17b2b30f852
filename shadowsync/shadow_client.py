# shadowsync/shadow_client.py
"""
Relay-side handle on the shadow ledger and its mediator.

Both implementations expose the same async surface and raise the same
exception types, so the pipeline's failure policy does not depend on
whether the shadow side is in-process or behind the HTTP service.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence

import httpx

from .codec import to_address
from .errors import (
    AuthorizationError,
    SequenceConflictError,
    TransientIOError,
    ValidationError,
)
from .mediator import Mediator

logger = logging.getLogger(__name__)


class ShadowClient:
    # ----- relay (mediator) -----

    async def relay_packed(self, words: Sequence[int], sequence: int) -> int:
        raise NotImplementedError

    async def relay_bulk(self, token_ids: Sequence[int], owners: Sequence[str], sequence: int) -> int:
        raise NotImplementedError

    async def relay_one(self, token_id: int, owner: str, sequence: int) -> int:
        raise NotImplementedError

    async def relay_burn(self, token_ids: Sequence[int], sequence: int) -> int:
        raise NotImplementedError

    async def last_processed_block(self) -> int:
        raise NotImplementedError

    async def is_relayer(self, address: str) -> bool:
        raise NotImplementedError

    async def mediator_owner(self) -> str:
        raise NotImplementedError

    # ----- ledger reads -----

    async def owner_of(self, token_id: int) -> str:
        raise NotImplementedError

    async def balance_of(self, owner: str) -> int:
        raise NotImplementedError

    async def exists(self, token_id: int) -> bool:
        raise NotImplementedError

    async def total_supply(self) -> int:
        raise NotImplementedError

    async def current_updater(self) -> str:
        raise NotImplementedError

    async def aclose(self) -> None:
        pass


class LocalShadowClient(ShadowClient):
    """Calls an in-process mediator as `caller`."""

    def __init__(self, mediator: Mediator, caller: Any):
        self.mediator = mediator
        self.caller = to_address(caller)

    async def relay_packed(self, words: Sequence[int], sequence: int) -> int:
        return self.mediator.relay_packed(self.caller, list(words), sequence).applied

    async def relay_bulk(self, token_ids: Sequence[int], owners: Sequence[str], sequence: int) -> int:
        return self.mediator.relay_bulk(self.caller, list(token_ids), list(owners), sequence).applied

    async def relay_one(self, token_id: int, owner: str, sequence: int) -> int:
        return self.mediator.relay_one(self.caller, token_id, owner, sequence).applied

    async def relay_burn(self, token_ids: Sequence[int], sequence: int) -> int:
        return self.mediator.relay_burn(self.caller, list(token_ids), sequence).applied

    async def last_processed_block(self) -> int:
        return self.mediator.last_processed_block

    async def is_relayer(self, address: str) -> bool:
        return self.mediator.is_relayer(address)

    async def mediator_owner(self) -> str:
        return self.mediator.owner

    async def owner_of(self, token_id: int) -> str:
        return self.mediator.ledger.owner_of(token_id)

    async def balance_of(self, owner: str) -> int:
        return self.mediator.ledger.balance_of(owner)

    async def exists(self, token_id: int) -> bool:
        return self.mediator.ledger.exists(token_id)

    async def total_supply(self) -> int:
        return self.mediator.ledger.total_supply()

    async def current_updater(self) -> str:
        return self.mediator.ledger.current_updater


def _detail(resp: httpx.Response) -> Dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return {"detail": resp.text[:256]}
    return body if isinstance(body, dict) else {"detail": str(body)}


def raise_for_shadow_status(resp: httpx.Response) -> None:
    """Map a shadow-service error reply onto the shared exception types."""
    code = resp.status_code
    if code < 400:
        return
    body = _detail(resp)
    msg = str(body.get("detail") or f"HTTP {code}")
    if code in (401, 403):
        raise AuthorizationError(msg, caller=body.get("caller"))
    if code in (400, 422):
        raise ValidationError(msg)
    if code == 409:
        raise SequenceConflictError(int(body.get("supplied", 0)), int(body.get("stored", 0)))
    if code == 404:
        raise LookupError(msg)
    if code == 429 or code >= 500:
        raise TransientIOError(f"shadow service HTTP {code}: {msg}")
    raise ValidationError(f"unexpected shadow service reply HTTP {code}: {msg}")


class HttpShadowClient(ShadowClient):
    """Client for the shadow HTTP service (see service_http)."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        *,
        timeout: float = 12.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kw: Any) -> Dict[str, Any]:
        try:
            resp = await self._client.request(method, path, **kw)
        except httpx.TimeoutException as e:
            raise TransientIOError(f"shadow service timeout on {method} {path}") from e
        except httpx.TransportError as e:
            raise TransientIOError(f"shadow service unreachable on {method} {path}: {e}") from e
        raise_for_shadow_status(resp)
        try:
            return resp.json()
        except ValueError as e:
            raise TransientIOError(f"shadow service returned non-JSON on {method} {path}") from e

    async def relay_packed(self, words: Sequence[int], sequence: int) -> int:
        body = {"words": [hex(int(w)) for w in words], "sequence": int(sequence)}
        return int((await self._request("POST", "/v1/relay/packed", json=body))["applied"])

    async def relay_bulk(self, token_ids: Sequence[int], owners: Sequence[str], sequence: int) -> int:
        body = {
            "token_ids": [str(int(t)) for t in token_ids],
            "owners": [to_address(o) for o in owners],
            "sequence": int(sequence),
        }
        return int((await self._request("POST", "/v1/relay/bulk", json=body))["applied"])

    async def relay_one(self, token_id: int, owner: str, sequence: int) -> int:
        body = {"token_id": str(int(token_id)), "owner": to_address(owner), "sequence": int(sequence)}
        return int((await self._request("POST", "/v1/relay/one", json=body))["applied"])

    async def relay_burn(self, token_ids: Sequence[int], sequence: int) -> int:
        body = {"token_ids": [str(int(t)) for t in token_ids], "sequence": int(sequence)}
        return int((await self._request("POST", "/v1/relay/burn", json=body))["applied"])

    async def last_processed_block(self) -> int:
        return int((await self._request("GET", "/v1/mediator"))["last_processed_block"])

    async def is_relayer(self, address: str) -> bool:
        doc = await self._request("GET", f"/v1/mediator/relayers/{to_address(address)}")
        return bool(doc["relayer"])

    async def mediator_owner(self) -> str:
        return str((await self._request("GET", "/v1/mediator"))["owner"])

    async def owner_of(self, token_id: int) -> str:
        doc = await self._request("GET", f"/v1/tokens/{int(token_id)}")
        if not doc.get("exists"):
            raise LookupError(f"token {int(token_id)} has not been mirrored")
        return str(doc["owner"])

    async def balance_of(self, owner: str) -> int:
        doc = await self._request("GET", f"/v1/owners/{to_address(owner)}/balance")
        return int(doc["balance"])

    async def exists(self, token_id: int) -> bool:
        doc = await self._request("GET", f"/v1/tokens/{int(token_id)}")
        return bool(doc.get("exists"))

    async def total_supply(self) -> int:
        return int((await self._request("GET", "/v1/supply"))["total_supply"])

    async def current_updater(self) -> str:
        return str((await self._request("GET", "/v1/ledger/updater"))["updater"])


__all__ = [
    "ShadowClient",
    "LocalShadowClient",
    "HttpShadowClient",
    "raise_for_shadow_status",
]
