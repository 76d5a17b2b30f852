# FILE: shadowsync/service_http.py
"""
HTTP surface of the shadow side: the mediator's relay entry points, ledger
administration, and unauthenticated reads.

Callers are identified by bearer token. Each configured token maps to one
caller address; that address is what the ledger and mediator authorize
against, exactly as an in-process caller argument would be.
"""

from __future__ import annotations

import hmac
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from pydantic import BaseModel, Field

from . import __version__
from .codec import to_address, to_token_id
from .config import Settings
from .errors import AuthorizationError, SequenceConflictError, ValidationError
from .ledger import (
    BatchMirrored,
    OwnershipCleared,
    OwnershipMirrored,
    ShadowLedger,
    make_shadow_ledger,
)
from .mediator import Mediator, make_mediator

logger = logging.getLogger("shadowsync.http")

_REQ_COUNTER = Counter(
    "shadowsync_http_requests_total",
    "HTTP requests",
    ["route", "status"],
)
_REQ_LATENCY = Histogram(
    "shadowsync_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["route"],
)

IntLike = Union[int, str]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RelayPackedRequest(BaseModel):
    words: List[IntLike] = Field(default_factory=list, max_length=10_000)
    sequence: int


class RelayBulkRequest(BaseModel):
    token_ids: List[IntLike] = Field(default_factory=list, max_length=10_000)
    owners: List[str] = Field(default_factory=list, max_length=10_000)
    sequence: int


class RelayOneRequest(BaseModel):
    token_id: IntLike
    owner: str
    sequence: int


class RelayBurnRequest(BaseModel):
    token_ids: List[IntLike] = Field(default_factory=list, max_length=10_000)
    sequence: int


class AddressRequest(BaseModel):
    address: str


# ---------------------------------------------------------------------------
# Context + auth
# ---------------------------------------------------------------------------


@dataclass
class ServiceContext:
    ledger: ShadowLedger
    mediator: Mediator
    # bearer token -> caller address
    tokens: Dict[str, str] = field(default_factory=dict)
    config_hash: str = ""

    def __post_init__(self) -> None:
        self.tokens = {t: to_address(a) for t, a in self.tokens.items()}

    def close(self) -> None:
        self.mediator.close()
        self.ledger.close()


def build_context(settings: Settings) -> ServiceContext:
    """
    Ledger and mediator on the same DSN. The ledger's updater is seeded with
    the mediator's address, the production topology.
    """
    settings.require("admin_owner", "mediator_address")
    ledger = make_shadow_ledger(
        settings.shadow_dsn,
        admin_owner=settings.admin_owner,
        updater=settings.mediator_address,
    )
    mediator = make_mediator(
        ledger,
        settings.shadow_dsn,
        address=settings.mediator_address,
        owner=settings.admin_owner,
    )
    return ServiceContext(
        ledger=ledger,
        mediator=mediator,
        tokens=dict(settings.service_tokens),
        config_hash=settings.config_hash(),
    )


class BearerCaller:
    """Resolve `Authorization: Bearer <token>` to the caller address bound to it."""

    def __init__(self, tokens: Dict[str, str]) -> None:
        self.tokens = tokens

    def __call__(self, authorization: Optional[str] = Header(default=None)) -> str:
        scheme, _, presented = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not presented.strip():
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="bearer token required",
                headers={"WWW-Authenticate": "Bearer"},
            )
        presented = presented.strip()
        caller: Optional[str] = None
        # every token is compared so timing does not reveal which one matched
        for token, addr in self.tokens.items():
            if hmac.compare_digest(presented.encode("utf-8"), token.encode("utf-8")):
                caller = addr
        if caller is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="unknown token",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return caller


def _notification_view(n: Any) -> Dict[str, Any]:
    if isinstance(n, OwnershipMirrored):
        return {
            "type": "ownership_mirrored",
            "token_id": str(n.token_id),
            "previous_owner": n.previous_owner,
            "new_owner": n.new_owner,
        }
    if isinstance(n, OwnershipCleared):
        return {
            "type": "ownership_cleared",
            "token_id": str(n.token_id),
            "previous_owner": n.previous_owner,
        }
    if isinstance(n, BatchMirrored):
        return {"type": "batch_mirrored", "count": n.count, "sequence_ref": n.sequence_ref}
    return {"type": type(n).__name__}


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(ctx: ServiceContext) -> FastAPI:
    app = FastAPI(title="shadowsync", version=__version__)
    app.state.ctx = ctx
    caller_of = BearerCaller(ctx.tokens)
    ledger = ctx.ledger
    mediator = ctx.mediator

    # ----- error mapping -----

    @app.exception_handler(AuthorizationError)
    async def _on_auth(request: Request, exc: AuthorizationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={"detail": str(exc), "caller": exc.caller},
        )

    @app.exception_handler(ValidationError)
    async def _on_validation(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"detail": str(exc)},
        )

    @app.exception_handler(SequenceConflictError)
    async def _on_conflict(request: Request, exc: SequenceConflictError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": str(exc), "supplied": exc.supplied, "stored": exc.stored},
        )

    @app.exception_handler(LookupError)
    async def _on_lookup(request: Request, exc: LookupError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": str(exc.args[0]) if exc.args else "not found"},
        )

    @app.middleware("http")
    async def _metrics_mw(request: Request, call_next):
        t0 = time.perf_counter()
        response = await call_next(request)
        route = getattr(request.scope.get("route"), "path", "unmatched")
        _REQ_LATENCY.labels(route).observe(max(0.0, time.perf_counter() - t0))
        _REQ_COUNTER.labels(route, str(response.status_code)).inc()
        if ctx.config_hash:
            response.headers["X-Shadowsync-Config-Hash"] = ctx.config_hash
        return response

    # ----- health / metrics -----

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {
            "ok": True,
            "version": __version__,
            "config_hash": ctx.config_hash,
            "last_processed_block": mediator.last_processed_block,
            "total_supply": ledger.total_supply(),
            "burned": ledger.burned_count(),
        }

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # ----- relay (mediator) -----

    @app.post("/v1/relay/packed")
    def relay_packed(req: RelayPackedRequest, caller: str = Depends(caller_of)) -> Dict[str, Any]:
        res = mediator.relay_packed(caller, req.words, req.sequence)
        return {"applied": res.applied, "sequence": req.sequence}

    @app.post("/v1/relay/bulk")
    def relay_bulk(req: RelayBulkRequest, caller: str = Depends(caller_of)) -> Dict[str, Any]:
        res = mediator.relay_bulk(caller, req.token_ids, req.owners, req.sequence)
        return {"applied": res.applied, "sequence": req.sequence}

    @app.post("/v1/relay/one")
    def relay_one(req: RelayOneRequest, caller: str = Depends(caller_of)) -> Dict[str, Any]:
        res = mediator.relay_one(caller, req.token_id, req.owner, req.sequence)
        return {"applied": res.applied, "sequence": req.sequence}

    @app.post("/v1/relay/burn")
    def relay_burn(req: RelayBurnRequest, caller: str = Depends(caller_of)) -> Dict[str, Any]:
        res = mediator.relay_burn(caller, req.token_ids, req.sequence)
        return {"applied": res.applied, "sequence": req.sequence}

    # ----- administration -----

    @app.put("/v1/ledger/updater")
    def set_updater(req: AddressRequest, caller: str = Depends(caller_of)) -> Dict[str, Any]:
        ledger.set_updater(caller, req.address)
        return {"updater": ledger.current_updater}

    @app.post("/v1/mediator/relayers")
    def add_relayer(req: AddressRequest, caller: str = Depends(caller_of)) -> Dict[str, Any]:
        mediator.add_relayer(caller, req.address)
        return {"address": to_address(req.address), "relayer": True}

    @app.delete("/v1/mediator/relayers/{address}")
    def remove_relayer(address: str, caller: str = Depends(caller_of)) -> Dict[str, Any]:
        mediator.remove_relayer(caller, address)
        return {"address": to_address(address), "relayer": False}

    @app.put("/v1/mediator/owner")
    def transfer_mediator(req: AddressRequest, caller: str = Depends(caller_of)) -> Dict[str, Any]:
        mediator.transfer_ownership(caller, req.address)
        return {"owner": mediator.owner}

    # ----- reads -----

    @app.get("/v1/tokens/{token_id}")
    def token(token_id: str) -> Dict[str, Any]:
        tid = to_token_id(token_id)
        try:
            owner: Optional[str] = ledger.owner_of(tid)
        except LookupError:
            owner = None
        return {"token_id": str(tid), "exists": owner is not None, "owner": owner}

    @app.get("/v1/owners/{address}/balance")
    def balance(address: str) -> Dict[str, Any]:
        return {"owner": to_address(address), "balance": ledger.balance_of(address)}

    @app.get("/v1/supply")
    def supply() -> Dict[str, Any]:
        return {"total_supply": ledger.total_supply(), "burned": ledger.burned_count()}

    @app.get("/v1/ledger/updater")
    def get_updater() -> Dict[str, Any]:
        return {"updater": ledger.current_updater, "owner": ledger.admin_owner}

    @app.get("/v1/ledger/digest")
    def digest() -> Dict[str, Any]:
        return {"digest": ledger.state_digest(), "total_supply": ledger.total_supply()}

    @app.get("/v1/ledger/notifications")
    def notifications(limit: int = 100) -> Dict[str, Any]:
        limit = max(1, min(int(limit), 1024))
        return {"items": [_notification_view(n) for n in ledger.recent_notifications(limit)]}

    @app.get("/v1/mediator")
    def get_mediator() -> Dict[str, Any]:
        return {
            "address": mediator.address,
            "owner": mediator.owner,
            "last_processed_block": mediator.last_processed_block,
        }

    @app.get("/v1/mediator/relayers/{address}")
    def is_relayer(address: str) -> Dict[str, Any]:
        return {"address": to_address(address), "relayer": mediator.is_relayer(address)}

    return app


def serve(settings: Settings) -> None:
    """Run the shadow service under uvicorn until interrupted."""
    import uvicorn

    ctx = build_context(settings)
    if not ctx.tokens:
        logger.warning("no service tokens configured; every mutating route will answer 401")
    logger.info(
        "shadow service listening on %s:%d",
        settings.service_host,
        settings.service_port,
        extra={"config_hash": ctx.config_hash, "dsn": settings.shadow_dsn},
    )
    try:
        uvicorn.run(
            create_app(ctx),
            host=settings.service_host,
            port=settings.service_port,
            log_config=None,
        )
    finally:
        ctx.close()


__all__ = ["ServiceContext", "BearerCaller", "build_context", "create_app", "serve"]
