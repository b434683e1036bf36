from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from stealthmax_services.keys import derive_address
from stealthmax_services.metrics import Metrics
from stealthmax_services.tasks.scheduler import SchedulerConfig, TaskScheduler
from stealthmax_services.tasks.watcher import (ChainWatcher, WatcherConfig,
                                               match_transfers)

from .conftest import SECRET
from .fakes import FailingBlockSource, FakeBlockSource, make_tx

OTHER = "0x" + "22" * 20


class RecordingLog:
    def __init__(self) -> None:
        self.events = []

    def _rec(self, level):
        def emit(event, **kw):
            self.events.append((level, event, kw))

        return emit

    def __getattr__(self, level):
        return self._rec(level)

    def names(self):
        return [e[1] for e in self.events]


def block(number, *txs):
    return {"number": hex(number), "transactions": list(txs)}


def make_watcher(directory, orchestrator, sources, **cfg):
    it = iter(sources)
    config = WatcherConfig(restart_delay=0, **cfg)
    return ChainWatcher(
        directory=directory,
        orchestrator=orchestrator,
        source_factory=lambda: next(it),
        config=config,
    )


# ----------------------------
# Matching
# ----------------------------


def test_match_transfers_filters_recipient_and_value():
    mine = "0x" + "ab" * 20
    blk = block(
        7,
        make_tx(mine.upper().replace("0X", "0x"), 10**18, tx_hash="0x1"),
        make_tx(OTHER, 10**18, tx_hash="0x2"),
        make_tx(mine, 0, tx_hash="0x3"),
        make_tx(None, 5, tx_hash="0x4"),
        "0xhashonly",
    )
    matched = match_transfers(blk, frozenset({mine}))
    assert [m.tx_hash for m in matched] == ["0x1"]
    assert matched[0].amount == Decimal(1)
    assert matched[0].value_wei == 10**18


def test_match_transfers_keeps_block_order():
    mine = "0x" + "ab" * 20
    blk = block(7, make_tx(mine, 1, tx_hash="0xa"), make_tx(mine, 2, tx_hash="0xb"))
    assert [m.tx_hash for m in match_transfers(blk, frozenset({mine}))] == ["0xa", "0xb"]


def test_match_transfers_skips_malformed_value():
    mine = "0x" + "ab" * 20
    bad = dict(make_tx(mine, 1, tx_hash="0xbad"), value="0xZZ")
    blk = block(7, bad, make_tx(mine, 10**18, tx_hash="0xgood"))
    assert [m.tx_hash for m in match_transfers(blk, frozenset({mine}))] == ["0xgood"]


# ----------------------------
# Snapshot
# ----------------------------


@pytest.mark.asyncio
async def test_refresh_builds_lowercase_snapshot(directory, orchestrator, alice):
    watcher = make_watcher(directory, orchestrator, [])
    snap = await watcher.refresh()
    assert snap == frozenset({alice.lower()})


@pytest.mark.asyncio
async def test_failed_refresh_keeps_previous_snapshot(directory, orchestrator, registry, alice):
    watcher = make_watcher(directory, orchestrator, [])
    await watcher.refresh()
    registry.fail_get = ConnectionError("registry down")
    assert await watcher.refresh() == frozenset({alice.lower()})


@pytest.mark.asyncio
async def test_refresh_updates_gauge(directory, orchestrator, alice):
    metrics = Metrics(service_name="test")
    watcher = ChainWatcher(
        directory=directory, orchestrator=orchestrator, source_factory=lambda: None, metrics=metrics
    )
    await watcher.refresh()
    assert metrics.registry.get_sample_value("monitored_addresses") == 1


# ----------------------------
# Blocks
# ----------------------------


@pytest.mark.asyncio
async def test_process_block_settles_matches_in_order(directory, orchestrator, ledger, alice):
    src = FakeBlockSource({5: block(5, make_tx(OTHER, 10**18), make_tx(alice, 10**18, tx_hash="0x1"))})
    watcher = make_watcher(directory, orchestrator, [])
    await watcher.refresh()

    results = await watcher.process_block(src, 5)

    assert len(results) == 1
    assert results[0].success is True
    assert (await directory.find_by_name("alice")).counter == 1


@pytest.mark.asyncio
async def test_double_payment_in_one_block_runs_two_cycles(directory, orchestrator, ledger, alice):
    src = FakeBlockSource(
        {5: block(5, make_tx(alice, 10**18, tx_hash="0x1"), make_tx(alice, 2 * 10**18, tx_hash="0x2"))}
    )
    watcher = make_watcher(directory, orchestrator, [])
    await watcher.refresh()

    results = await watcher.process_block(src, 5)

    # the first cycle rotated the address, so the second finds no owner
    assert results[0].success is True
    assert results[1] is None
    assert [c[1] for c in ledger.calls].count("deposit") == 1
    assert (await directory.find_by_name("alice")).counter == 1


@pytest.mark.asyncio
async def test_rotated_address_is_watched_before_next_refresh(directory, orchestrator, ledger, alice):
    rotated = derive_address(SECRET, "alice", 0)
    src = FakeBlockSource(
        {
            1: block(1, make_tx(alice, 10**18, tx_hash="0x1")),
            2: block(2, make_tx(rotated, 10**18, tx_hash="0x2")),
        }
    )
    watcher = make_watcher(directory, orchestrator, [])
    await watcher.refresh()

    await watcher.process_block(src, 1)
    assert watcher.snapshot == frozenset({rotated.lower()})

    results = await watcher.process_block(src, 2)
    assert len(results) == 1 and results[0].success is True
    assert [c[1] for c in ledger.calls].count("deposit") == 2
    assert (await directory.find_by_name("alice")).counter == 2


@pytest.mark.asyncio
async def test_missing_block_is_skipped(directory, orchestrator):
    watcher = make_watcher(directory, orchestrator, [])
    assert await watcher.process_block(FakeBlockSource({}), 99) == []


@pytest.mark.asyncio
async def test_slow_cycle_is_reported_not_cancelled(directory, alice):
    class SlowOrchestrator:
        async def handle_transfer(self, transfer):
            await asyncio.sleep(0.05)
            self.finished = True

    slow = SlowOrchestrator()
    watcher = make_watcher(directory, slow, [], settlement_timeout=0.01)
    watcher.log = RecordingLog()
    await watcher.refresh()

    results = await watcher.process_block(FakeBlockSource({1: block(1, make_tx(alice, 1))}), 1)

    assert results == [None]
    assert slow.finished is True
    assert "watcher.cycle_stuck" in watcher.log.names()


# ----------------------------
# Supervised loop
# ----------------------------


@pytest.mark.asyncio
async def test_gives_up_after_max_restarts(directory, orchestrator):
    sources = [FailingBlockSource() for _ in range(3)]
    watcher = make_watcher(directory, orchestrator, sources, max_restarts=2)

    await asyncio.wait_for(watcher.run(), timeout=5)

    assert watcher.gave_up is True
    assert watcher.is_running is False
    assert all(s.subscriptions == 1 and s.closed == 1 for s in sources)


@pytest.mark.asyncio
async def test_processed_block_resets_restart_count(directory, orchestrator, ledger, alice):
    sources = [
        FailingBlockSource(),
        FakeBlockSource({3: block(3, make_tx(alice, 10**18))}, fail_after=1),
        FailingBlockSource(),
        FailingBlockSource(),
    ]
    watcher = make_watcher(directory, orchestrator, sources, max_restarts=1)

    await asyncio.wait_for(watcher.run(), timeout=5)

    assert watcher.gave_up is True
    assert [c[1] for c in ledger.calls].count("deposit") == 1
    assert sources[2].subscriptions == 1
    assert sources[3].subscriptions == 0


@pytest.mark.asyncio
async def test_stop_event_ends_run(directory, orchestrator):
    stop = asyncio.Event()
    stop.set()
    watcher = make_watcher(directory, orchestrator, [])
    await asyncio.wait_for(watcher.run(stop), timeout=5)
    assert watcher.gave_up is False


# ----------------------------
# Scheduler
# ----------------------------


@pytest.mark.asyncio
async def test_scheduler_starts_and_stops_watcher(directory, orchestrator, alice):
    src = FakeBlockSource({})
    watcher = make_watcher(directory, orchestrator, [src], refresh_seconds=60)
    scheduler = TaskScheduler(watcher=watcher, config=SchedulerConfig(start_delay=0, shutdown_timeout=0.1))

    async with scheduler:
        assert scheduler.started is True
        for _ in range(50):
            if src.subscriptions:
                break
            await asyncio.sleep(0.01)
        assert watcher.is_running is True
        assert watcher.snapshot == frozenset({alice.lower()})

    assert src.closed == 1
    assert watcher.is_running is False


@pytest.mark.asyncio
async def test_rotated_address_is_derivable(directory, orchestrator, alice):
    src = FakeBlockSource({1: block(1, make_tx(alice, 10**18))})
    watcher = make_watcher(directory, orchestrator, [])
    await watcher.refresh()
    await watcher.process_block(src, 1)
    await watcher.refresh()
    assert watcher.snapshot == frozenset({derive_address(SECRET, "alice", 0).lower()})


# ----------------------------
# Loop resilience
# ----------------------------


class BrokenFirstBlock(FakeBlockSource):
    async def get_block(self, number):
        if number == 1:
            raise ValueError("malformed block body")
        return await super().get_block(number)


async def _until(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


@pytest.mark.asyncio
async def test_failed_block_keeps_subscription(directory, orchestrator, ledger, alice):
    src = BrokenFirstBlock({1: block(1), 2: block(2, make_tx(alice, 10**18, tx_hash="0x2"))})
    watcher = make_watcher(directory, orchestrator, [src])
    watcher.log = RecordingLog()
    stop = asyncio.Event()
    task = asyncio.create_task(watcher.run(stop))

    await _until(lambda: [c[1] for c in ledger.calls].count("deposit") == 1)
    stop.set()
    await asyncio.wait_for(task, timeout=5)

    assert "watcher.block_failed" in watcher.log.names()
    assert "watcher.error" not in watcher.log.names()
    assert src.subscriptions == 1


@pytest.mark.asyncio
async def test_stop_interrupts_idle_subscription(directory, orchestrator):
    src = FakeBlockSource({})
    watcher = make_watcher(directory, orchestrator, [src])
    stop = asyncio.Event()
    task = asyncio.create_task(watcher.run(stop))

    await _until(lambda: src.subscriptions == 1)
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    assert src.closed == 1
    assert watcher.is_running is False
    assert watcher.gave_up is False
