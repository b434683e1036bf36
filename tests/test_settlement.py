from __future__ import annotations

from decimal import Decimal

import pytest

from stealthmax_services.errors import BadRequest, SettlementFailed
from stealthmax_services.keys import derive, derive_address
from stealthmax_services.domain import MatchedTransfer, NameRecord, SettlementAttempt
from stealthmax_services.metrics import Metrics
from stealthmax_services.services.directory import encode_description
from stealthmax_services.services.settlement import (STEPS,
                                                     SettlementOrchestrator,
                                                     parse_amount,
                                                     to_base_units)

from .conftest import SECRET
from .fakes import ETH

ONE_AND_HALF = 1_500_000_000_000_000_000


def transfer_to(address: str, wei: int = ONE_AND_HALF, tx_hash: str = "0xfeed") -> MatchedTransfer:
    return MatchedTransfer(
        recipient=address,
        sender="0x" + "11" * 20,
        amount=Decimal(wei) / Decimal(10) ** 18,
        value_wei=wei,
        tx_hash=tx_hash,
        block_number=42,
    )


def user_calls(ledger):
    return [c[1] for c in ledger.calls if c[0] == "user"]


def master_calls(ledger):
    return [c[1] for c in ledger.calls if c[0] == "master"]


# ----------------------------
# Amount helpers
# ----------------------------


def test_to_base_units_rounds_half_up():
    assert to_base_units(Decimal("1.5"), 18) == ONE_AND_HALF
    assert to_base_units(Decimal("0.0000000000000000005"), 18) == 1
    assert to_base_units(Decimal("0.0000000000000000004"), 18) == 0
    assert to_base_units(Decimal("2.5"), 0) == 3


@pytest.mark.parametrize("bad", ["", "abc", "0", "-1", "NaN", "Infinity"])
def test_parse_amount_rejects(bad):
    with pytest.raises(BadRequest):
        parse_amount(bad)


def test_parse_amount_accepts_decimal_strings():
    assert parse_amount(" 0.25 ") == Decimal("0.25")


# ----------------------------
# Full cycle
# ----------------------------


@pytest.mark.asyncio
async def test_happy_path_deposits_and_rotates(orchestrator, ledger, registry, directory, alice):
    result = await orchestrator.handle_transfer(transfer_to(alice))

    assert result is not None
    assert result.success is True
    assert result.tx_hash == "0xdeposit"
    assert result.amount == "1.5"
    assert result.name == "alice"
    assert result.settlement_address == "intmax-master"
    assert result.error is None
    assert result.rotated is True

    deposit = next(c for c in ledger.calls if c[:2] == ("user", "deposit"))
    params = deposit[2]
    assert params.amount == ONE_AND_HALF
    assert params.address == "intmax-master"
    assert params.token == ETH
    assert params.is_mining is False

    rec = await directory.find_by_name("alice")
    assert rec.counter == 1
    assert rec.receiving_address == derive_address(SECRET, "alice", 0)
    assert rec.settlement_address == "intmax-alice"
    assert await directory.find(alice) is None


@pytest.mark.asyncio
async def test_user_identity_uses_registration_derivation(orchestrator, factory, alice):
    await orchestrator.handle_transfer(transfer_to(alice))
    assert derive(SECRET, "alice").private_key_hex in factory.keys


@pytest.mark.asyncio
async def test_unfunded_master_skips_relay(orchestrator, ledger, alice):
    result = await orchestrator.handle_transfer(transfer_to(alice))
    assert result.success is True
    calls = master_calls(ledger)
    assert "fetch_token_balances" in calls
    assert "get_transfer_fee" not in calls
    assert "broadcast_transaction" not in calls
    assert result.steps["master_relay"] == "ok"


@pytest.mark.asyncio
async def test_funded_master_relays_to_settlement_address(orchestrator, ledger, alice):
    ledger.balances["intmax-master"] = 2 * 10**18
    await orchestrator.handle_transfer(transfer_to(alice))

    broadcast = next(c for c in ledger.calls if c[:2] == ("master", "broadcast_transaction"))
    (transfer,) = broadcast[2]
    assert transfer.address == "intmax-alice"
    assert transfer.amount == "1.5"
    assert "get_transfer_fee" in master_calls(ledger)


@pytest.mark.asyncio
async def test_step_order(orchestrator, ledger, alice):
    ledger.balances["intmax-master"] = 2 * 10**18
    await orchestrator.handle_transfer(transfer_to(alice))
    who_method = [c[:2] for c in ledger.calls]
    assert who_method.index(("master", "logout")) < who_method.index(("user", "login"))
    assert who_method[-1] == ("user", "logout")


@pytest.mark.asyncio
async def test_failed_deposit_still_rotates(orchestrator, ledger, directory, alice):
    ledger.fail["user.deposit"] = RuntimeError("insufficient L1 funds")
    result = await orchestrator.handle_transfer(transfer_to(alice))

    assert result.success is False
    assert "insufficient L1 funds" in result.error
    assert result.tx_hash is None
    assert result.rotated is True
    assert result.steps["user_deposit"] == "failed"
    assert (await directory.find_by_name("alice")).counter == 1
    assert user_calls(ledger)[-1] == "logout"


@pytest.mark.asyncio
async def test_gas_estimate_failure_is_not_fatal(orchestrator, ledger, alice):
    ledger.fail["user.estimate_deposit_gas"] = RuntimeError("estimator down")
    result = await orchestrator.handle_transfer(transfer_to(alice))
    assert result.success is True


@pytest.mark.asyncio
async def test_unknown_recipient_touches_nothing(orchestrator, ledger, registry, alice):
    result = await orchestrator.handle_transfer(transfer_to("0x" + "99" * 20))
    assert result is None
    assert ledger.calls == []
    assert registry.set_calls == []


@pytest.mark.asyncio
async def test_registry_failure_aborts_before_ledger(orchestrator, ledger, registry, alice):
    registry.fail_get = ConnectionError("registry down")
    result = await orchestrator.handle_transfer(transfer_to(alice))
    assert result is not None
    assert result.success is False
    assert result.steps["resolve_target"] == "failed"
    assert ledger.calls == []


@pytest.mark.asyncio
async def test_master_login_failure_aborts_cycle(orchestrator, ledger, registry, directory, alice):
    ledger.fail["master.login"] = RuntimeError("gateway unreachable")
    result = await orchestrator.handle_transfer(transfer_to(alice))

    assert result.success is False
    assert "master_init" in result.error
    assert result.rotated is False
    assert user_calls(ledger) == []
    assert master_calls(ledger) == ["login"]
    assert registry.set_calls == []
    assert (await directory.find_by_name("alice")).counter == 0
    assert result.steps["master_logout"] == "skipped"
    assert result.steps["rotate_address"] == "skipped"


@pytest.mark.asyncio
async def test_missing_native_token_aborts_but_logs_master_out(orchestrator, ledger, registry, alice):
    ledger.tokens = [t for t in ledger.tokens if t is not ETH]
    result = await orchestrator.handle_transfer(transfer_to(alice))

    assert result.success is False
    assert "ETH token not found" in result.error
    assert master_calls(ledger) == ["login", "get_tokens_list", "logout"]
    assert user_calls(ledger) == []
    assert registry.set_calls == []


@pytest.mark.asyncio
async def test_user_login_failure_skips_deposit_and_rotation(orchestrator, ledger, registry, alice):
    ledger.fail["user.login"] = RuntimeError("bad key")
    result = await orchestrator.handle_transfer(transfer_to(alice))

    assert result.success is False
    assert "master_logout" in result.steps and result.steps["master_logout"] == "ok"
    assert user_calls(ledger) == ["login"]
    assert result.steps["user_deposit"] == "skipped"
    assert result.steps["rotate_address"] == "skipped"
    assert result.steps["user_logout"] == "skipped"
    assert registry.set_calls == []


@pytest.mark.asyncio
async def test_logout_failure_does_not_change_success(orchestrator, ledger, alice):
    ledger.fail["logout"] = RuntimeError("session expired")
    result = await orchestrator.handle_transfer(transfer_to(alice))
    assert result.success is True
    assert result.steps["master_logout"] == "failed"
    assert result.steps["user_logout"] == "failed"


# ----------------------------
# Rotation
# ----------------------------


@pytest.mark.asyncio
async def test_rotation_retries_with_stored_counter(orchestrator, directory, registry, alice):
    # the stored record already moved to counter 2
    registry.seed("alice", alice, {"description": encode_description("intmax-alice", 2)})
    stale = NameRecord(name="alice", receiving_address=alice, counter=0, settlement_address="intmax-alice")

    result = await orchestrator.settle(stale, name="alice", settlement_address="intmax-alice", amount="1")

    assert result.rotated is True
    rec = await directory.find_by_name("alice")
    assert rec.counter == 3
    assert rec.receiving_address == derive_address(SECRET, "alice", 2)


@pytest.mark.asyncio
async def test_rotation_gives_up_after_retries(directory, factory, registry, alice):
    orchestrator = SettlementOrchestrator(directory, factory, SECRET, rotation_retries=1)
    registry.seed("alice", alice, {"description": encode_description("intmax-alice", 2)})
    stale = NameRecord(name="alice", receiving_address=alice, counter=0, settlement_address="intmax-alice")

    result = await orchestrator.settle(stale, name="alice", settlement_address="intmax-alice", amount="1")

    assert result.success is True
    assert result.rotated is False
    assert result.steps["rotate_address"] == "failed"
    assert result.receiving_address is None
    assert (await directory.find_by_name("alice")).counter == 2


@pytest.mark.asyncio
async def test_rotation_write_failure_keeps_deposit(orchestrator, registry, alice):
    registry.fail_set = ConnectionError("registry write failed")
    result = await orchestrator.handle_transfer(transfer_to(alice))
    assert result.success is True
    assert result.rotated is False
    assert result.steps["rotate_address"] == "failed"


@pytest.mark.asyncio
async def test_two_payments_in_sequence_advance_counter_twice(orchestrator, directory, alice):
    await orchestrator.handle_transfer(transfer_to(alice, tx_hash="0x01"))
    first = await directory.find_by_name("alice")
    await orchestrator.handle_transfer(transfer_to(first.receiving_address, tx_hash="0x02"))
    second = await directory.find_by_name("alice")
    assert second.counter == 2
    assert second.receiving_address == derive_address(SECRET, "alice", 1)


@pytest.mark.asyncio
async def test_settle_without_record_never_rotates(orchestrator, registry):
    result = await orchestrator.settle(None, name="bob", settlement_address="intmax-bob", amount="0.1")
    assert result.success is True
    assert result.rotated is False
    assert result.steps["resolve_target"] == "skipped"
    assert result.steps["rotate_address"] == "skipped"
    assert registry.set_calls == []


@pytest.mark.asyncio
async def test_settle_rejects_bad_amount(orchestrator):
    with pytest.raises(BadRequest):
        await orchestrator.settle(None, name="bob", settlement_address="intmax-bob", amount="zero")


# ----------------------------
# Metrics
# ----------------------------


@pytest.mark.asyncio
async def test_outcomes_are_counted(directory, factory, ledger, alice):
    metrics = Metrics(service_name="test")
    orchestrator = SettlementOrchestrator(directory, factory, SECRET, metrics=metrics)
    ledger.fail["user.deposit"] = RuntimeError("nope")

    await orchestrator.handle_transfer(transfer_to(alice))
    await orchestrator.handle_transfer(transfer_to("0x" + "99" * 20))

    reg = metrics.registry
    assert reg.get_sample_value("settlement_cycles_total", {"outcome": "failed"}) == 1
    assert reg.get_sample_value("settlement_cycles_total", {"outcome": "unassociated"}) == 1
    assert reg.get_sample_value("settlement_step_failures_total", {"step": "user_deposit"}) == 1


@pytest.mark.asyncio
async def test_every_step_reports_in_order(orchestrator, alice):
    result = await orchestrator.handle_transfer(transfer_to(alice))
    assert list(result.steps) == [s.name for s in STEPS]
    assert set(result.steps.values()) == {"ok"}


@pytest.mark.asyncio
async def test_result_carries_new_receiving_address(orchestrator, alice):
    result = await orchestrator.handle_transfer(transfer_to(alice))
    assert result.receiving_address == derive_address(SECRET, "alice", 0)
    assert result.to_dict()["receivingAddress"] == result.receiving_address


@pytest.mark.asyncio
async def test_ledger_steps_require_open_sessions(orchestrator):
    attempt = SettlementAttempt(name="alice", settlement_address="intmax-alice", amount=Decimal(1))
    with pytest.raises(SettlementFailed, match="master session"):
        await orchestrator._master_relay(attempt, None)
    with pytest.raises(SettlementFailed, match="user session"):
        await orchestrator._user_deposit(attempt, None)
