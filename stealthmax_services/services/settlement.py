"""
Settlement orchestrator: one cycle per matched transfer.

A cycle moves value across two ledgers and then rotates the payee's
receiving address:

    1. resolve_target   ABORT      find the NameRecord for the recipient
    2. master_init      ABORT      master login + native token lookup
    3. master_relay     CONTINUE   master -> user rollup transfer, if funded
    4. master_logout    cleanup
    5. user_init        ABORT      per-name identity login (legacy derivation)
    6. user_deposit     CONTINUE   user identity deposits into the master account
    7. rotate_address   CONTINUE   conditional counter bump + new receiving address
    8. user_logout      cleanup

Every step runs through ``_run``, which records the outcome and applies the
step's policy. A failed ABORT step skips every later step except the cleanup
logouts for sessions already opened. Only ``user_deposit`` decides
``success``. Rotation failures are logged and never undo ledger effects.

Public API
----------
SettlementOrchestrator.handle_transfer(transfer) -> SettlementResult | None
SettlementOrchestrator.settle(record, name=..., settlement_address=..., amount=...) -> SettlementResult
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from ..adapters.intmax import (NATIVE_TOKEN_ADDRESS, DepositParams,
                               IntmaxClient, Token, Transfer,
                               deposit_status_label)
from ..domain import MatchedTransfer, NameRecord, SettlementAttempt, SettlementResult
from ..errors import BadRequest, RotationConflict, SettlementFailed
from ..keys import derive, derive_address, master_keypair
from ..logging import get_logger
from ..metrics import Metrics

log = get_logger(__name__)

OK = "ok"
FAILED = "failed"
SKIPPED = "skipped"


# ------------------------ Steps ------------------------


class StepPolicy(Enum):
    ABORT = "abort"
    CONTINUE = "continue"


@dataclass(frozen=True)
class Step:
    name: str
    policy: StepPolicy
    cleanup: bool = False


RESOLVE_TARGET = Step("resolve_target", StepPolicy.ABORT)
MASTER_INIT = Step("master_init", StepPolicy.ABORT)
MASTER_RELAY = Step("master_relay", StepPolicy.CONTINUE)
MASTER_LOGOUT = Step("master_logout", StepPolicy.CONTINUE, cleanup=True)
USER_INIT = Step("user_init", StepPolicy.ABORT)
USER_DEPOSIT = Step("user_deposit", StepPolicy.CONTINUE)
ROTATE_ADDRESS = Step("rotate_address", StepPolicy.CONTINUE)
USER_LOGOUT = Step("user_logout", StepPolicy.CONTINUE, cleanup=True)

STEPS = (
    RESOLVE_TARGET,
    MASTER_INIT,
    MASTER_RELAY,
    MASTER_LOGOUT,
    USER_INIT,
    USER_DEPOSIT,
    ROTATE_ADDRESS,
    USER_LOGOUT,
)


@dataclass(frozen=True)
class StepResult:
    status: str
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == OK

    @classmethod
    def success(cls, value: Any = None) -> "StepResult":
        return cls(OK, value=value)

    @classmethod
    def failure(cls, error: BaseException) -> "StepResult":
        return cls(FAILED, error=error)

    @classmethod
    def skipped(cls) -> "StepResult":
        return cls(SKIPPED)


# ------------------------ Helpers ------------------------


def parse_amount(amount: Union[str, Decimal, int, float]) -> Decimal:
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError) as e:
        raise BadRequest(f"Invalid amount: {amount!r}") from e
    if not value.is_finite() or value <= 0:
        raise BadRequest(f"Amount must be a positive number, got {amount!r}")
    return value


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Scale to the token's smallest unit, rounding half up."""
    scaled = amount * (Decimal(10) ** decimals)
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def format_amount(amount: Decimal) -> str:
    return format(amount.normalize(), "f")


class _Sessions:
    """Clients opened during one cycle; logouts only run for logged-in ones."""

    def __init__(self) -> None:
        self.master: Optional[IntmaxClient] = None
        self.user: Optional[IntmaxClient] = None


# ------------------------ Orchestrator ------------------------


class SettlementOrchestrator:
    def __init__(
        self,
        directory: Any,
        client_factory: Any,
        secret: Union[str, bytes],
        *,
        native_token_address: str = NATIVE_TOKEN_ADDRESS,
        rotation_retries: int = 3,
        default_decimals: int = 18,
        metrics: Optional[Metrics] = None,
    ):
        self.directory = directory
        self.client_factory = client_factory
        self._secret = secret
        self.native_token_address = native_token_address.lower()
        self.rotation_retries = max(1, rotation_retries)
        self.default_decimals = default_decimals
        self.metrics = metrics

    # ---- entry points ----

    async def handle_transfer(self, transfer: MatchedTransfer) -> Optional[SettlementResult]:
        attempt = SettlementAttempt(name="", settlement_address="", amount=transfer.amount)
        resolved = await self._run(attempt, RESOLVE_TARGET, lambda: self.directory.find(transfer.recipient))
        if not resolved.ok:
            return self._finish(attempt, outcome="aborted")

        record: Optional[NameRecord] = resolved.value
        if record is None:
            log.info(
                "settlement.unassociated",
                recipient=transfer.recipient,
                tx_hash=transfer.tx_hash,
                amount=format_amount(transfer.amount),
            )
            self._count("unassociated")
            return None

        attempt.name = record.name
        attempt.settlement_address = record.settlement_address
        log.info(
            "settlement.start",
            name=record.name,
            counter=record.counter,
            amount=format_amount(transfer.amount),
            tx_hash=transfer.tx_hash,
            block=transfer.block_number,
        )
        return await self._settle(attempt, record, rotate=True)

    async def settle(
        self,
        record: Optional[NameRecord],
        *,
        name: str,
        settlement_address: str,
        amount: Union[str, Decimal],
        rotate: bool = True,
    ) -> SettlementResult:
        """
        Steps 2-8 for an already resolved target. ``record=None`` (manual
        deposit for a name without a settleable record) never rotates.
        """
        attempt = SettlementAttempt(name=name, settlement_address=settlement_address, amount=parse_amount(amount))
        attempt.steps[RESOLVE_TARGET.name] = SKIPPED
        return await self._settle(attempt, record, rotate=rotate)

    # ---- cycle ----

    async def _settle(self, attempt: SettlementAttempt, record: Optional[NameRecord], *, rotate: bool) -> SettlementResult:
        sessions = _Sessions()

        await self._run(attempt, MASTER_INIT, lambda: self._master_init(attempt, sessions))
        await self._run(attempt, MASTER_RELAY, lambda: self._master_relay(attempt, sessions.master))
        await self._logout(attempt, MASTER_LOGOUT, sessions.master)
        sessions.master = None

        await self._run(attempt, USER_INIT, lambda: self._user_init(attempt, sessions))
        deposit = await self._run(attempt, USER_DEPOSIT, lambda: self._user_deposit(attempt, sessions.user))
        if deposit.ok:
            attempt.deposit_tx_hash = deposit.value
        elif deposit.error is not None:
            attempt.deposit_error = str(deposit.error)

        if record is not None and rotate:
            await self._run(attempt, ROTATE_ADDRESS, lambda: self._rotate(attempt, record))
        else:
            attempt.steps[ROTATE_ADDRESS.name] = SKIPPED

        await self._logout(attempt, USER_LOGOUT, sessions.user)
        sessions.user = None

        if attempt.abort_error is not None:
            outcome = "aborted"
        elif deposit.ok:
            outcome = "success"
        else:
            outcome = "failed"
        return self._finish(attempt, outcome=outcome, success=deposit.ok)

    async def _run(self, attempt: SettlementAttempt, step: Step, fn: Callable[[], Awaitable[Any]]) -> StepResult:
        if attempt.abort_error is not None and not step.cleanup:
            attempt.steps[step.name] = SKIPPED
            return StepResult.skipped()
        try:
            value = await fn()
        except Exception as exc:
            attempt.steps[step.name] = FAILED
            if self.metrics is not None:
                self.metrics.settlement_step_failures.labels(step.name).inc()
            log.warning(
                "settlement.step_failed",
                name=attempt.name,
                step=step.name,
                policy=step.policy.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            if step.policy is StepPolicy.ABORT:
                attempt.abort_error = f"{step.name}: {exc}"
            return StepResult.failure(exc)
        attempt.steps[step.name] = OK
        return StepResult.success(value)

    async def _logout(self, attempt: SettlementAttempt, step: Step, client: Optional[IntmaxClient]) -> None:
        if client is None:
            attempt.steps[step.name] = SKIPPED
            return
        await self._run(attempt, step, client.logout)

    def _finish(self, attempt: SettlementAttempt, *, outcome: str, success: bool = False) -> SettlementResult:
        error = attempt.deposit_error or attempt.abort_error
        if not success and error is None:
            error = "deposit did not run"
        result = SettlementResult(
            success=success,
            amount=format_amount(attempt.amount),
            name=attempt.name,
            tx_hash=attempt.deposit_tx_hash,
            settlement_address=attempt.master_address,
            error=None if success else error,
            rotated=attempt.rotated,
            receiving_address=attempt.receiving_address,
            steps=dict(attempt.steps),
        )
        self._count(outcome)
        log.info(
            "settlement.finished",
            name=attempt.name,
            outcome=outcome,
            success=success,
            tx_hash=result.tx_hash,
            rotated=result.rotated,
            steps=result.steps,
        )
        return result

    def _count(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.settlement_cycles.labels(outcome).inc()

    # ---- step bodies ----

    async def _master_init(self, attempt: SettlementAttempt, sessions: _Sessions) -> str:
        client = self.client_factory.for_private_key(master_keypair(self._secret).private_key_hex)
        address = await client.login()
        sessions.master = client
        attempt.master_address = address or client.address
        log.info("settlement.master_ready", master_address=attempt.master_address)

        tokens = await client.get_tokens_list()
        token = self._native_token(tokens)
        if token is None:
            raise LookupError("ETH token not found in INTMAX token list")
        attempt.token = token
        return attempt.master_address

    def _native_token(self, tokens: Any) -> Optional[Token]:
        for t in tokens:
            if t.contract_address.lower() == self.native_token_address:
                return t
        return None

    def _decimals(self, token: Token) -> int:
        return token.decimals or self.default_decimals

    async def _master_relay(self, attempt: SettlementAttempt, master: Optional[IntmaxClient]) -> bool:
        if master is None or attempt.token is None:
            raise SettlementFailed("master session is not open")
        token: Token = attempt.token
        decimals = self._decimals(token)

        await self._diagnose_deposits(master, decimals)

        balances = await master.fetch_token_balances()
        raw = next((b.amount for b in balances if b.token.token_index == token.token_index), 0)
        balance = Decimal(raw) / (Decimal(10) ** decimals)
        log.info("settlement.master_balance", balance=str(balance), raw=str(raw))

        if balance < attempt.amount:
            log.info(
                "settlement.relay_skipped",
                name=attempt.name,
                balance=str(balance),
                amount=format_amount(attempt.amount),
            )
            return False

        fee = await master.get_transfer_fee()
        log.info("settlement.transfer_fee", token_index=fee.token_index, fee_amount=fee.amount)
        transfer = Transfer(amount=format_amount(attempt.amount), token=token, address=attempt.settlement_address)
        result = await master.broadcast_transaction([transfer])
        log.info("settlement.relayed", name=attempt.name, to=attempt.settlement_address, result=dict(result))

        try:
            transfers = await master.fetch_transfers()
        except Exception as exc:
            log.warning("settlement.transfer_check_failed", error=str(exc))
        else:
            pending = [t for t in transfers if t.is_pending_transfer]
            log.info("settlement.transfer_check", recent=len(transfers), pending=len(pending))
        return True

    async def _diagnose_deposits(self, master: IntmaxClient, decimals: int) -> None:
        try:
            deposits = await master.fetch_deposits()
        except Exception as exc:
            log.warning("settlement.deposit_history_failed", error=str(exc))
            return
        histogram: dict = {}
        for d in deposits:
            label = deposit_status_label(d.status)
            histogram[label] = histogram.get(label, 0) + 1
        completed = sum(d.amount for d in deposits if d.status == 2)
        log.info(
            "settlement.deposit_history",
            statuses=histogram,
            completed=str(Decimal(completed) / (Decimal(10) ** decimals)),
            pending=sum(1 for d in deposits if d.is_pending_deposit),
        )

    async def _user_init(self, attempt: SettlementAttempt, sessions: _Sessions) -> str:
        keypair = derive(self._secret, attempt.name)
        log.debug("settlement.user_key", name=attempt.name, derived_address=keypair.address)
        client = self.client_factory.for_private_key(keypair.private_key_hex)
        address = await client.login()
        sessions.user = client
        log.info("settlement.user_ready", name=attempt.name, user_intmax_address=address)
        return address

    async def _user_deposit(self, attempt: SettlementAttempt, user: Optional[IntmaxClient]) -> Optional[str]:
        if user is None or attempt.token is None or attempt.master_address is None:
            raise SettlementFailed("user session is not open")
        token: Token = attempt.token
        wei = to_base_units(attempt.amount, self._decimals(token))
        params = DepositParams(amount=wei, token=token, address=attempt.master_address, is_mining=False)

        try:
            gas = await user.estimate_deposit_gas(params)
        except Exception as exc:
            log.warning("settlement.gas_estimate_failed", name=attempt.name, error=str(exc))
        else:
            log.info("settlement.gas_estimate", name=attempt.name, gas=str(gas))

        result = await user.deposit(params)
        log.info("settlement.deposited", name=attempt.name, amount_wei=str(wei), tx_hash=result.tx_hash)

        try:
            deposits = await user.fetch_deposits()
        except Exception as exc:
            log.warning("settlement.deposit_check_failed", name=attempt.name, error=str(exc))
        else:
            pending = [d for d in deposits if d.is_pending_deposit]
            log.info("settlement.deposit_check", name=attempt.name, recent=len(deposits), pending=len(pending))
        return result.tx_hash

    async def _rotate(self, attempt: SettlementAttempt, record: NameRecord) -> NameRecord:
        counter = record.counter
        for n in range(1, self.rotation_retries + 1):
            new_address = derive_address(self._secret, record.name, counter)
            try:
                rotated = await self.directory.rotate(record.name, expected_counter=counter, new_address=new_address)
            except RotationConflict as exc:
                log.warning(
                    "settlement.rotation_conflict",
                    name=record.name,
                    expected=exc.expected,
                    found=exc.found,
                    attempt=n,
                )
                if n == self.rotation_retries or exc.found is None:
                    raise
                counter = exc.found
                continue
            attempt.rotated = True
            attempt.receiving_address = rotated.receiving_address
            log.info(
                "settlement.rotated",
                name=record.name,
                counter=rotated.counter,
                receiving_address=rotated.receiving_address,
            )
            return rotated
        raise AssertionError("unreachable")


__all__ = [
    "StepPolicy",
    "Step",
    "StepResult",
    "STEPS",
    "parse_amount",
    "to_base_units",
    "format_amount",
    "SettlementOrchestrator",
]
