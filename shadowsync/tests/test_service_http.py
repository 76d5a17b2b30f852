# shadowsync/tests/test_service_http.py
import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import ADMIN, ALICE, BOB, MEDIATOR, RELAYER, STRANGER
from shadowsync.codec import ZERO_ADDRESS, pack_ownership
from shadowsync.config import Settings
from shadowsync.errors import (
    AuthorizationError,
    SequenceConflictError,
    TransientIOError,
    ValidationError,
)
from shadowsync.service_http import ServiceContext, build_context, create_app
from shadowsync.shadow_client import HttpShadowClient

TOKENS = {"relayer-token": RELAYER, "admin-token": ADMIN, "stranger-token": STRANGER}


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def app(ledger, mediator):
    return create_app(ServiceContext(ledger=ledger, mediator=mediator, tokens=dict(TOKENS)))


@pytest.fixture
def client(app):
    return TestClient(app)


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert r.json()["last_processed_block"] == 0


def test_relay_packed_then_read(client):
    words = [hex(pack_ownership(1, ALICE)), pack_ownership(2, BOB)]
    r = client.post("/v1/relay/packed", json={"words": words, "sequence": 10}, headers=_auth("relayer-token"))
    assert r.status_code == 200
    assert r.json() == {"applied": 2, "sequence": 10}

    body = client.get("/v1/tokens/1").json()
    assert body == {"token_id": "1", "exists": True, "owner": ALICE}
    assert client.get("/v1/tokens/0x2").json()["owner"] == BOB
    assert client.get("/v1/tokens/3").json()["exists"] is False
    assert client.get(f"/v1/owners/{ALICE}/balance").json()["balance"] == 1
    assert client.get("/v1/supply").json() == {"total_supply": 2, "burned": 0}
    assert client.get("/v1/mediator").json()["last_processed_block"] == 10


def test_relay_bulk_and_one(client):
    big = str(2**200)
    r = client.post(
        "/v1/relay/bulk",
        json={"token_ids": [big, 5], "owners": [ALICE, BOB], "sequence": 3},
        headers=_auth("relayer-token"),
    )
    assert r.status_code == 200
    assert client.get(f"/v1/tokens/{big}").json()["owner"] == ALICE
    r = client.post(
        "/v1/relay/one",
        json={"token_id": 5, "owner": ALICE, "sequence": 4},
        headers=_auth("relayer-token"),
    )
    assert r.status_code == 200
    assert client.get(f"/v1/owners/{ALICE}/balance").json()["balance"] == 2


def test_missing_or_unknown_token_is_401(client):
    body = {"token_id": 1, "owner": ALICE, "sequence": 1}
    assert client.post("/v1/relay/one", json=body).status_code == 401
    assert client.post("/v1/relay/one", json=body, headers=_auth("nope")).status_code == 401
    assert client.post("/v1/relay/one", json=body, headers={"Authorization": "Basic x"}).status_code == 401


def test_unauthorized_caller_is_403(client):
    r = client.post(
        "/v1/relay/one",
        json={"token_id": 1, "owner": ALICE, "sequence": 1},
        headers=_auth("stranger-token"),
    )
    assert r.status_code == 403
    assert r.json()["caller"] == STRANGER


def test_stale_sequence_is_409(client):
    h = _auth("relayer-token")
    client.post("/v1/relay/one", json={"token_id": 1, "owner": ALICE, "sequence": 7}, headers=h)
    r = client.post("/v1/relay/one", json={"token_id": 1, "owner": BOB, "sequence": 7}, headers=h)
    assert r.status_code == 409
    assert r.json()["supplied"] == 7
    assert r.json()["stored"] == 7


def test_invalid_content_is_422(client):
    h = _auth("relayer-token")
    r = client.post("/v1/relay/one", json={"token_id": 1, "owner": ZERO_ADDRESS, "sequence": 1}, headers=h)
    assert r.status_code == 422
    r = client.post("/v1/relay/bulk", json={"token_ids": [1, 2], "owners": [ALICE], "sequence": 1}, headers=h)
    assert r.status_code == 422
    assert client.get("/v1/owners/0xnothex/balance").status_code == 422
    assert client.get("/v1/mediator").json()["last_processed_block"] == 0


def test_administration(client):
    admin = _auth("admin-token")
    r = client.post("/v1/mediator/relayers", json={"address": STRANGER}, headers=admin)
    assert r.status_code == 200
    assert client.get(f"/v1/mediator/relayers/{STRANGER}").json()["relayer"] is True

    r = client.delete(f"/v1/mediator/relayers/{STRANGER}", headers=admin)
    assert r.status_code == 200
    assert client.get(f"/v1/mediator/relayers/{STRANGER}").json()["relayer"] is False

    assert client.post(
        "/v1/mediator/relayers", json={"address": STRANGER}, headers=_auth("relayer-token")
    ).status_code == 403

    assert client.get("/v1/ledger/updater").json() == {"updater": MEDIATOR, "owner": ADMIN}
    r = client.put("/v1/ledger/updater", json={"address": STRANGER}, headers=admin)
    assert r.status_code == 200
    assert client.get("/v1/ledger/updater").json()["updater"] == STRANGER


def test_notifications_and_digest(client):
    client.post(
        "/v1/relay/one",
        json={"token_id": 1, "owner": ALICE, "sequence": 1},
        headers=_auth("relayer-token"),
    )
    items = client.get("/v1/ledger/notifications").json()["items"]
    assert items[-1] == {"type": "ownership_mirrored", "token_id": "1", "previous_owner": None, "new_owner": ALICE}
    assert len(client.get("/v1/ledger/digest").json()["digest"]) == 64


def test_relay_burn_route(client):
    h = _auth("relayer-token")
    client.post("/v1/relay/bulk", json={"token_ids": [1, 2], "owners": [ALICE, BOB], "sequence": 1}, headers=h)
    r = client.post("/v1/relay/burn", json={"token_ids": ["1"], "sequence": 2}, headers=h)
    assert r.status_code == 200
    assert r.json() == {"applied": 1, "sequence": 2}
    assert client.get("/v1/tokens/1").json()["exists"] is False
    assert client.get("/v1/supply").json() == {"total_supply": 2, "burned": 1}
    items = client.get("/v1/ledger/notifications").json()["items"]
    assert items[-2] == {"type": "ownership_cleared", "token_id": "1", "previous_owner": ALICE}
    assert client.post("/v1/relay/burn", json={"token_ids": [2], "sequence": 2}, headers=h).status_code == 409
    assert client.post("/v1/relay/burn", json={"token_ids": [2], "sequence": 3}).status_code == 401


def test_metrics(client):
    client.get("/healthz")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "shadowsync_http_requests_total" in r.text


def test_build_context_from_settings():
    settings = Settings(
        admin_owner=ADMIN,
        mediator_address=MEDIATOR,
        service_tokens={"t": RELAYER},
    )
    ctx = build_context(settings)
    assert ctx.ledger.current_updater == MEDIATOR
    assert ctx.mediator.owner == ADMIN
    assert ctx.tokens == {"t": RELAYER}
    ctx.close()


# ---------- HttpShadowClient against the real app ----------


def _http_client(app, token):
    return HttpShadowClient("http://shadow", token, transport=httpx.ASGITransport(app=app))


def test_http_client_round_trip(app, mediator):
    mediator.add_relayer(ADMIN, RELAYER)

    async def go():
        c = _http_client(app, "relayer-token")
        try:
            assert await c.is_relayer(RELAYER)
            assert await c.mediator_owner() == ADMIN
            assert await c.relay_packed([pack_ownership(1, ALICE)], 5) == 1
            assert await c.relay_bulk([2**100], [BOB], 6) == 1
            assert await c.relay_one(3, BOB, 7) == 1
            assert await c.last_processed_block() == 7
            assert await c.owner_of(2**100) == BOB
            assert await c.balance_of(BOB) == 2
            assert await c.exists(1)
            assert await c.total_supply() == 3
            assert await c.current_updater() == MEDIATOR
            assert await c.relay_burn([3], 8) == 1
            assert not await c.exists(3)
            assert await c.balance_of(BOB) == 1
            with pytest.raises(LookupError):
                await c.owner_of(404)
        finally:
            await c.aclose()

    asyncio.run(go())


def test_http_client_error_mapping(app):
    async def go():
        relayer = _http_client(app, "relayer-token")
        stranger = _http_client(app, "stranger-token")
        anonymous = _http_client(app, "")
        try:
            await relayer.relay_one(1, ALICE, 10)
            with pytest.raises(SequenceConflictError) as ei:
                await relayer.relay_one(1, BOB, 9)
            assert (ei.value.supplied, ei.value.stored) == (9, 10)
            with pytest.raises(ValidationError):
                await relayer.relay_one(2, ZERO_ADDRESS, 11)
            with pytest.raises(AuthorizationError):
                await stranger.relay_one(2, ALICE, 12)
            with pytest.raises(AuthorizationError):
                await anonymous.relay_one(2, ALICE, 12)
        finally:
            for c in (relayer, stranger, anonymous):
                await c.aclose()

    asyncio.run(go())


def test_http_client_transient_failures():
    def unavailable(request):
        return httpx.Response(503, json={"detail": "maintenance"})

    def refused(request):
        raise httpx.ConnectError("refused", request=request)

    async def go(handler):
        c = HttpShadowClient("http://shadow", "t", transport=httpx.MockTransport(handler))
        try:
            await c.relay_one(1, ALICE, 1)
        finally:
            await c.aclose()

    for handler in (unavailable, refused):
        with pytest.raises(TransientIOError):
            asyncio.run(go(handler))
