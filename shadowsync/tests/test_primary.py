# shadowsync/tests/test_primary.py
import asyncio
import json

import httpx
import pytest

from conftest import ALICE, BOB, CONTRACT
from shadowsync.codec import ZERO_ADDRESS
from shadowsync.errors import RpcError, TransientIOError
from shadowsync.primary import TRANSFER_TOPIC, JsonRpcPrimary, decode_transfer_log


def _topic(addr: str) -> str:
    return "0x" + "0" * 24 + addr[2:]


def _log(block, idx, frm, to, tid, n_topics=4):
    topics = [TRANSFER_TOPIC, _topic(frm), _topic(to), "0x" + format(tid, "064x")]
    return {
        "blockNumber": hex(block),
        "logIndex": hex(idx),
        "transactionHash": "0x" + "e" * 64,
        "topics": topics[:n_topics],
    }


def _rpc(handler_fn, calls):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        calls.append(body["method"])
        return handler_fn(body)

    return httpx.MockTransport(handler)


def _ok(result):
    return lambda body: httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


def _primary(transport, **kw):
    return JsonRpcPrimary("http://rpc.test", CONTRACT, transport=transport, backoff_s=0.0, **kw)


def test_head():
    calls = []

    async def go():
        async with _primary(_rpc(_ok("0x1f4"), calls)) as p:
            return await p.head()

    assert asyncio.run(go()) == 500
    assert calls == ["eth_blockNumber"]


def test_transfers_decoded_and_ordered():
    logs = [
        _log(12, 1, ALICE, BOB, 2),
        _log(11, 0, ZERO_ADDRESS, ALICE, 1),
        _log(12, 0, ZERO_ADDRESS, ALICE, 2),
        _log(12, 3, ALICE, BOB, 5, n_topics=3),  # ERC-20 style, ignored
    ]
    seen = {}

    def handler(body):
        seen["filter"] = body["params"][0]
        return _ok(logs)(body)

    async def go():
        async with _primary(_rpc(handler, [])) as p:
            return await p.transfers(10, 20)

    events = asyncio.run(go())
    assert [(e.position, e.log_index, e.token_id) for e in events] == [(11, 0, 1), (12, 0, 2), (12, 1, 2)]
    assert events[0].is_mint
    assert events[2].from_address == ALICE and events[2].to_address == BOB
    assert seen["filter"]["fromBlock"] == "0xa"
    assert seen["filter"]["address"] == CONTRACT


def test_removed_log_is_skipped():
    lg = _log(1, 0, ZERO_ADDRESS, ALICE, 1)
    lg["removed"] = True
    assert decode_transfer_log(lg) is None


def test_owner_of():
    word = "0x" + "0" * 24 + BOB[2:]

    async def go():
        async with _primary(_rpc(_ok(word), [])) as p:
            return await p.owner_of(3)

    assert asyncio.run(go()) == BOB


def test_owner_of_revert_is_none():
    def handler(body):
        return httpx.Response(
            200,
            json={"jsonrpc": "2.0", "id": body["id"],
                  "error": {"code": 3, "message": "execution reverted: invalid token"}},
        )

    async def go():
        async with _primary(_rpc(handler, [])) as p:
            return await p.owner_of(3)

    assert asyncio.run(go()) is None


def test_total_supply_missing_is_none():
    def handler(body):
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"],
                                         "error": {"code": -32000, "message": "execution reverted"}})

    async def go():
        async with _primary(_rpc(handler, [])) as p:
            return await p.total_supply()

    assert asyncio.run(go()) is None


def test_retries_transient_http_failures():
    calls = []
    replies = iter([httpx.Response(503), httpx.Response(502)])

    def handler(body):
        nxt = next(replies, None)
        return nxt if nxt is not None else _ok("0x10")(body)

    async def go():
        async with _primary(_rpc(handler, calls), max_retries=3) as p:
            return await p.head()

    assert asyncio.run(go()) == 16
    assert len(calls) == 3


def test_gives_up_as_transient():
    calls = []

    async def go():
        async with _primary(_rpc(lambda body: httpx.Response(500), calls), max_retries=2) as p:
            await p.head()

    with pytest.raises(TransientIOError):
        asyncio.run(go())
    assert len(calls) == 2


def test_network_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async def go():
        async with _primary(httpx.MockTransport(handler), max_retries=2) as p:
            await p.head()

    with pytest.raises(TransientIOError):
        asyncio.run(go())


def test_rpc_error_not_retried():
    calls = []

    def handler(body):
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"],
                                         "error": {"code": -32602, "message": "invalid params"}})

    async def go():
        async with _primary(_rpc(handler, calls), max_retries=4) as p:
            await p.head()

    with pytest.raises(RpcError) as ei:
        asyncio.run(go())
    assert ei.value.code == -32602
    assert isinstance(ei.value, TransientIOError)
    assert calls == ["eth_blockNumber"]
