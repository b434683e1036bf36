from __future__ import annotations

"""
Chain watcher

Follows new blocks, picks out native-asset transfers to registered receiving
addresses and hands each one to the settlement orchestrator.

Key properties
--------------
- The monitored set is an immutable ``frozenset`` snapshot. The refresher
  swaps it wholesale; ``match()`` reads it without locking. A failed refresh
  keeps the previous snapshot. A rotation swaps the old receiving address for
  the new one right away.
- Blocks are processed one at a time; matched transfers within a block are
  settled sequentially in transaction order, with no deduplication. A block
  that fails to process is logged (``watcher.block_failed``) and skipped; the
  subscription stays up.
- Transport failures restart the subscription after ``restart_delay``.
  ``max_restarts`` (0 = unlimited) bounds consecutive restarts; past it the
  watcher stops and logs ``watcher.gave_up``. ``stop`` is honoured while
  waiting for the next head.
- ``settlement_timeout`` only reports slow cycles (``watcher.cycle_stuck``);
  a running cycle is never cancelled.
"""

import asyncio
import contextlib
from dataclasses import dataclass
from decimal import Decimal
from typing import (Any, AsyncIterator, Callable, FrozenSet, Iterable, List,
                    Mapping, Optional)

from ..adapters.eth_ws import BlockSource, hex_to_int
from ..domain import MatchedTransfer, SettlementResult
from ..logging import get_logger
from ..metrics import Metrics

log = get_logger(__name__)

WEI_PER_ETH = Decimal(10) ** 18


@dataclass(frozen=True)
class WatcherConfig:
    refresh_seconds: float = 300.0
    restart_delay: float = 10.0
    max_restarts: int = 0
    settlement_timeout: Optional[float] = None


def match_transfers(block: Mapping[str, Any], monitored: FrozenSet[str]) -> List[MatchedTransfer]:
    """Transfers in ``block`` with ``to`` in ``monitored`` and a positive value, in block order."""
    number = hex_to_int(block.get("number"))
    out: List[MatchedTransfer] = []
    for tx in block.get("transactions") or []:
        if not isinstance(tx, Mapping):
            # hash-only block bodies carry no values
            continue
        to = tx.get("to")
        if not to or to.lower() not in monitored:
            continue
        try:
            value = hex_to_int(tx.get("value"))
        except ValueError:
            log.warning("watcher.bad_tx", block=number, tx_hash=tx.get("hash"), value=tx.get("value"))
            continue
        if value <= 0:
            continue
        out.append(
            MatchedTransfer(
                recipient=to,
                sender=str(tx.get("from") or ""),
                amount=Decimal(value) / WEI_PER_ETH,
                value_wei=value,
                tx_hash=str(tx.get("hash") or ""),
                block_number=hex_to_int(tx.get("blockNumber")) if tx.get("blockNumber") is not None else number,
            )
        )
    return out


class ChainWatcher:
    def __init__(
        self,
        *,
        directory: Any,
        orchestrator: Any,
        source_factory: Callable[[], BlockSource],
        config: WatcherConfig | None = None,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self.directory = directory
        self.orchestrator = orchestrator
        self.source_factory = source_factory
        self.config = config or WatcherConfig()
        self.metrics = metrics
        self.log = get_logger(__name__).bind(role="watcher")
        self._snapshot: FrozenSet[str] = frozenset()
        self._running = False
        self._gave_up = False

    # ---- snapshot ----

    @property
    def snapshot(self) -> FrozenSet[str]:
        return self._snapshot

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def gave_up(self) -> bool:
        return self._gave_up

    def replace_snapshot(self, addresses: Iterable[str]) -> FrozenSet[str]:
        snap = frozenset(a.lower() for a in addresses if a)
        self._snapshot = snap
        if self.metrics is not None:
            self.metrics.monitored_addresses.set(len(snap))
        return snap

    async def refresh(self) -> FrozenSet[str]:
        try:
            entries = await self.directory.list_entries()
        except Exception as e:
            self.log.warning("watcher.refresh_failed", error=f"{type(e).__name__}: {e}", kept=len(self._snapshot))
            return self._snapshot
        snap = self.replace_snapshot(e.address for e in entries)
        self.log.info("watcher.refreshed", addresses=len(snap), names=[e.name for e in entries])
        return snap

    async def run_refresher(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.config.refresh_seconds)
            except asyncio.TimeoutError:
                await self.refresh()

    def match(self, block: Mapping[str, Any]) -> List[MatchedTransfer]:
        return match_transfers(block, self._snapshot)

    # ---- blocks ----

    async def process_block(self, source: BlockSource, number: int) -> List[Optional[SettlementResult]]:
        block = await source.get_block(number)
        if self.metrics is not None:
            self.metrics.watcher_blocks.inc()
        if not block:
            self.log.warning("watcher.block_missing", block=number)
            return []
        matched = self.match(block)
        results: List[Optional[SettlementResult]] = []
        for transfer in matched:
            if self.metrics is not None:
                self.metrics.watcher_matched_transfers.inc()
            self.log.info(
                "watcher.transfer",
                block=transfer.block_number,
                to=transfer.recipient,
                sender=transfer.sender,
                amount=str(transfer.amount),
                tx_hash=transfer.tx_hash,
            )
            result = await self._settle(transfer)
            if result is not None and result.rotated and result.receiving_address:
                self._swap_address(transfer.recipient, result.receiving_address)
            results.append(result)
        return results

    def _swap_address(self, old: str, new: str) -> None:
        """Watch the rotated address now instead of at the next refresh."""
        snap = self.replace_snapshot((self._snapshot - {old.lower()}) | {new.lower()})
        self.log.info("watcher.address_rotated", old=old, new=new, addresses=len(snap))

    async def _settle(self, transfer: MatchedTransfer) -> Optional[SettlementResult]:
        task = asyncio.ensure_future(self.orchestrator.handle_transfer(transfer))
        timeout = self.config.settlement_timeout
        waited = 0.0
        while True:
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if done:
                return task.result()
            waited += timeout or 0.0
            self.log.warning("watcher.cycle_stuck", tx_hash=transfer.tx_hash, waited_s=waited)

    # ---- supervised loop ----

    async def _next_head(self, heads: AsyncIterator[int], stop: asyncio.Event) -> Optional[int]:
        """Next block number, or None once ``stop`` is set first."""
        nxt = asyncio.ensure_future(_anext(heads))
        stop_wait = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({nxt, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_wait.cancel()
            if not nxt.done():
                nxt.cancel()
        if not nxt.done() or nxt.cancelled():
            with contextlib.suppress(asyncio.CancelledError):
                await nxt
            return None
        return nxt.result()

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        """Watch until ``stop`` is set or the restart limit is reached."""
        stop = stop or asyncio.Event()
        self._running = True
        self._gave_up = False
        restarts = 0
        try:
            await self.refresh()
            while not stop.is_set():
                source = self.source_factory()
                try:
                    self.log.info("watcher.started", addresses=len(self._snapshot))
                    heads = source.heads()
                    while not stop.is_set():
                        try:
                            number = await self._next_head(heads, stop)
                        except StopAsyncIteration:
                            raise ConnectionError("block stream ended") from None
                        if number is None:
                            break
                        restarts = 0
                        try:
                            await self.process_block(source, number)
                        except Exception as e:
                            # a bad block must not cost the subscription
                            self.log.error("watcher.block_failed", block=number, error=f"{type(e).__name__}: {e}")
                except Exception as e:
                    restarts += 1
                    if self.metrics is not None:
                        self.metrics.watcher_restarts.inc()
                    self.log.error("watcher.error", error=f"{type(e).__name__}: {e}", restarts=restarts)
                    if self.config.max_restarts and restarts > self.config.max_restarts:
                        self._gave_up = True
                        self.log.error("watcher.gave_up", restarts=restarts - 1)
                        return
                    self.log.info("watcher.restart", delay_s=self.config.restart_delay)
                    try:
                        await asyncio.wait_for(stop.wait(), timeout=self.config.restart_delay)
                    except asyncio.TimeoutError:
                        pass
                finally:
                    await source.close()
        finally:
            self._running = False
            self.log.info("watcher.stopped")


async def _anext(it: AsyncIterator[int]) -> int:
    return await it.__anext__()


__all__ = ["WatcherConfig", "ChainWatcher", "match_transfers", "WEI_PER_ETH"]
