from __future__ import annotations

import json

import pytest
import websockets

from stealthmax_services.adapters.eth_ws import ChainTransportError, EthWsClient

pytestmark = pytest.mark.asyncio


def _reply(msg, **body):
    return json.dumps({"jsonrpc": "2.0", "id": msg["id"], **body})


async def node(ws):
    """Tiny JSON-RPC node: one newHeads notification, blocks by number."""
    async for raw in ws:
        msg = json.loads(raw)
        if msg["method"] == "eth_subscribe":
            assert msg["params"] == ["newHeads"]
            await ws.send(_reply(msg, result="0xsub"))
            await ws.send(
                json.dumps(
                    {
                        "jsonrpc": "2.0",
                        "method": "eth_subscription",
                        "params": {"subscription": "0xsub", "result": {"number": "0x10"}},
                    }
                )
            )
        elif msg["method"] == "eth_getBlockByNumber":
            number, full = msg["params"]
            if number == "0x11":
                await ws.send(_reply(msg, error={"code": -32000, "message": "header not found"}))
            else:
                await ws.send(_reply(msg, result={"number": number, "full": full, "transactions": []}))
        elif msg["method"] == "bye":
            await ws.close()


@pytest.fixture
async def ws_url():
    async with websockets.serve(node, "127.0.0.1", 0) as server:
        port = next(iter(server.sockets)).getsockname()[1]
        yield f"ws://127.0.0.1:{port}"


async def test_heads_and_get_block(ws_url):
    client = EthWsClient(ws_url, ping_interval=None)
    heads = client.heads()
    try:
        assert await heads.__anext__() == 16
        block = await client.get_block(16)
        assert block == {"number": "0x10", "full": True, "transactions": []}
    finally:
        await heads.aclose()
        await client.close()


async def test_rpc_error_is_transport_error(ws_url):
    async with EthWsClient(ws_url, ping_interval=None) as client:
        with pytest.raises(ChainTransportError, match="header not found"):
            await client.get_block(17)


async def test_closed_socket_ends_heads(ws_url):
    client = EthWsClient(ws_url, ping_interval=None, request_timeout=2)
    heads = client.heads()
    try:
        assert await heads.__anext__() == 16
        with pytest.raises(ChainTransportError):
            await client.request("bye")
        with pytest.raises(ChainTransportError):
            await heads.__anext__()
    finally:
        await heads.aclose()
        await client.close()


async def test_connect_failure():
    client = EthWsClient("ws://127.0.0.1:9", connect_timeout=2)
    with pytest.raises(ChainTransportError):
        await client.connect()
