from __future__ import annotations

"""
Websocket JSON-RPC transport for Ethereum block notifications.

- Uses the `websockets` package.
- Correlates requests by `id`; `eth_subscription` notifications for the
  `newHeads` subscription are queued and yielded as block numbers.
- `get_block(number)` fetches a full block (`eth_getBlockByNumber [hex, true]`).

The watcher depends only on the small `BlockSource` protocol, so tests can feed
blocks from memory.

Example:
    async with EthWsClient("wss://eth-sepolia.g.alchemy.com/v2/KEY") as ws:
        async for number in ws.heads():
            block = await ws.get_block(number)
"""

import asyncio
import json
from dataclasses import dataclass, field
from itertools import count
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Protocol

import websockets
from websockets.exceptions import ConnectionClosed

from ..logging import get_logger

log = get_logger(__name__)


class ChainTransportError(Exception):
    """Connection or protocol failure on the chain websocket."""


class BlockSource(Protocol):
    def heads(self) -> AsyncIterator[int]: ...

    async def get_block(self, number: int) -> Optional[Mapping[str, Any]]: ...

    async def close(self) -> None: ...


def hex_to_int(v: Any) -> int:
    if v is None:
        return 0
    if isinstance(v, int):
        return v
    s = str(v)
    return int(s, 16) if s.lower().startswith("0x") else int(s)


@dataclass
class EthWsClient:
    url: str
    connect_timeout: float = 15.0
    request_timeout: float = 30.0
    ping_interval: Optional[float] = 20.0
    _ids: Any = field(default_factory=lambda: count(1))
    _ws: Any = field(init=False, default=None)
    _reader_task: Optional[asyncio.Task] = field(init=False, default=None)
    _pending: Dict[int, asyncio.Future] = field(init=False, default_factory=dict)
    _heads: Optional[asyncio.Queue] = field(init=False, default=None)
    _subscription: Optional[str] = field(init=False, default=None)

    # ------------- context manager -------------

    async def __aenter__(self) -> "EthWsClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------- lifecycle -------------------

    async def connect(self) -> None:
        try:
            self._ws = await asyncio.wait_for(
                websockets.connect(self.url, ping_interval=self.ping_interval),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
            raise ChainTransportError(f"websocket connect failed: {e}") from e
        self._heads = asyncio.Queue()
        self._reader_task = asyncio.create_task(self._reader_loop(), name="EthWsClient.reader")
        log.info("eth_ws.connected")

    async def close(self) -> None:
        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        self._fail_pending(ChainTransportError("websocket closed"))
        self._subscription = None

    def _fail_pending(self, exc: Exception) -> None:
        for fut in list(self._pending.values()):
            if not fut.done():
                fut.set_exception(exc)
        self._pending.clear()

    async def _reader_loop(self) -> None:
        assert self._ws is not None and self._heads is not None
        try:
            async for raw in self._ws:
                try:
                    msg = json.loads(raw)
                except ValueError:
                    log.warning("eth_ws.bad_frame")
                    continue
                self._dispatch(msg)
        except ConnectionClosed as e:
            err = ChainTransportError(f"websocket closed: {e}")
        else:
            err = ChainTransportError("websocket closed by peer")
        self._fail_pending(err)
        await self._heads.put(err)

    def _dispatch(self, msg: Mapping[str, Any]) -> None:
        if "id" in msg and msg.get("id") in self._pending:
            fut = self._pending.pop(msg["id"])
            if fut.done():
                return
            if msg.get("error") is not None:
                err = msg["error"]
                fut.set_exception(ChainTransportError(f"RPC error {err.get('code')}: {err.get('message')}"))
            else:
                fut.set_result(msg.get("result"))
            return
        if msg.get("method") == "eth_subscription":
            params = msg.get("params") or {}
            # one subscription per client; notifications can beat the subscribe reply
            if self._subscription is not None and params.get("subscription") != self._subscription:
                return
            head = params.get("result") or {}
            number = head.get("number")
            if number is not None and self._heads is not None:
                self._heads.put_nowait(hex_to_int(number))

    # ------------- RPC primitives --------------

    async def request(self, method: str, params: Optional[list] = None) -> Any:
        if self._ws is None:
            await self.connect()
        req_id = next(self._ids)
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut
        payload = {"jsonrpc": "2.0", "id": req_id, "method": method, "params": params or []}
        try:
            await self._ws.send(json.dumps(payload, separators=(",", ":")))
        except ConnectionClosed as e:
            self._pending.pop(req_id, None)
            raise ChainTransportError(f"websocket send failed: {e}") from e
        try:
            return await asyncio.wait_for(fut, timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            raise ChainTransportError(f"{method} timed out") from e
        finally:
            self._pending.pop(req_id, None)

    # ------------- BlockSource -----------------

    async def heads(self) -> AsyncIterator[int]:
        """Subscribe to ``newHeads`` and yield block numbers until the socket fails."""
        if self._ws is None:
            await self.connect()
        self._subscription = await self.request("eth_subscribe", ["newHeads"])
        log.info("eth_ws.subscribed", subscription=self._subscription)
        assert self._heads is not None
        while True:
            item = await self._heads.get()
            if isinstance(item, Exception):
                raise item
            yield item

    async def get_block(self, number: int) -> Optional[Mapping[str, Any]]:
        return await self.request("eth_getBlockByNumber", [hex(number), True])


__all__ = [
    "ChainTransportError",
    "BlockSource",
    "EthWsClient",
    "hex_to_int",
]
