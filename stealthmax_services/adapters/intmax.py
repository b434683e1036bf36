"""
INTMAX rollup client.

The rollup is reached through an INTMAX SDK gateway: a small sidecar that
wraps the official server SDK and exposes it as JSON-RPC over HTTP. One
gateway serves many identities; ``intmax_login`` opens a session for an
Ethereum private key and every later call carries the session id.

This module provides:
- the ``IntmaxClient`` protocol the settlement flow is written against,
- value types for tokens, balances, fees, transfers and deposits,
- ``IntmaxGatewayClient``: a retrying async JSON-RPC implementation over httpx,
- ``IntmaxClientFactory``: builds one client per private key.

Amounts are integers in the token's smallest unit on the wire, except
``Transfer.amount`` which the SDK takes as a decimal string in whole tokens.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import httpx

from ..logging import get_logger

log = get_logger(__name__)

NATIVE_TOKEN_ADDRESS = "0x0000000000000000000000000000000000000000"


# ----------------------------- Errors ---------------------------------------


class IntmaxError(Exception):
    """Base class for all rollup client errors."""


class IntmaxTransportError(IntmaxError):
    """Network/HTTP transport-level error talking to the gateway."""


class IntmaxResponseError(IntmaxError):
    """JSON-RPC error object returned by the gateway."""

    def __init__(self, code: int, message: str, data: Any | None = None):
        super().__init__(f"INTMAX error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data


# ----------------------------- Types ----------------------------------------


class DepositStatus(IntEnum):
    READY_TO_CLAIM = 0
    PROCESSING = 1
    COMPLETED = 2
    REJECTED = 3
    NEED_TO_CLAIM = 4

    @property
    def label(self) -> str:
        return {
            0: "ReadyToClaim",
            1: "Processing",
            2: "Completed",
            3: "Rejected",
            4: "NeedToClaim",
        }[int(self)]


def deposit_status_label(status: Any) -> str:
    try:
        return DepositStatus(int(status)).label
    except (TypeError, ValueError):
        return "Unknown"


@dataclass(frozen=True)
class Token:
    token_index: int
    contract_address: str
    decimals: Optional[int] = None
    token_type: Optional[int] = None
    symbol: Optional[str] = None

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "Token":
        decimals = data.get("decimals")
        return cls(
            token_index=int(data.get("tokenIndex", 0)),
            contract_address=str(data.get("contractAddress") or ""),
            decimals=int(decimals) if decimals is not None else None,
            token_type=data.get("tokenType"),
            symbol=data.get("symbol"),
        )

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "tokenIndex": self.token_index,
            "contractAddress": self.contract_address,
        }
        if self.decimals is not None:
            out["decimals"] = self.decimals
        if self.token_type is not None:
            out["tokenType"] = self.token_type
        if self.symbol is not None:
            out["symbol"] = self.symbol
        return out

    @property
    def is_native(self) -> bool:
        return self.contract_address.lower() == NATIVE_TOKEN_ADDRESS


@dataclass(frozen=True)
class TokenBalance:
    token: Token
    amount: int

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "TokenBalance":
        return cls(token=Token.from_json(data.get("token") or {}), amount=_int(data.get("amount")))

    def to_json(self) -> Dict[str, Any]:
        return {"token": self.token.to_json(), "amount": str(self.amount)}


@dataclass(frozen=True)
class TransferFee:
    token_index: Optional[int]
    amount: Optional[int]

    @classmethod
    def from_json(cls, data: Optional[Mapping[str, Any]]) -> "TransferFee":
        fee = (data or {}).get("fee") or {}
        idx = fee.get("token_index")
        amount = fee.get("amount")
        return cls(
            token_index=int(idx) if idx is not None else None,
            amount=_int(amount) if amount is not None else None,
        )


@dataclass(frozen=True)
class Transfer:
    amount: str
    token: Token
    address: str

    def to_json(self) -> Dict[str, Any]:
        return {"amount": self.amount, "token": self.token.to_json(), "address": self.address}


@dataclass(frozen=True)
class DepositParams:
    amount: int
    token: Token
    address: str
    is_mining: bool = False

    def to_json(self, *, gas_estimation: bool = False) -> Dict[str, Any]:
        out = {
            "amount": str(self.amount),
            "token": self.token.to_json(),
            "address": self.address,
            "isMining": self.is_mining,
        }
        if gas_estimation:
            out["isGasEstimation"] = True
        return out


@dataclass(frozen=True)
class DepositResult:
    tx_hash: Optional[str]
    raw: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HistoryEntry:
    """One deposit or transfer from the rollup history."""

    amount: int
    status: Any
    raw: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "HistoryEntry":
        return cls(amount=_int(data.get("amount")), status=data.get("status"), raw=dict(data))

    # deposits and transfers use different codes for "not yet settled"
    @property
    def is_pending_deposit(self) -> bool:
        return self.status in (DepositStatus.PROCESSING, "pending")

    @property
    def is_pending_transfer(self) -> bool:
        return self.status in (0, "pending")

    def to_json(self) -> Dict[str, Any]:
        return dict(self.raw)


def _int(v: Any) -> int:
    if v is None:
        return 0
    if isinstance(v, bool):
        raise ValueError("boolean is not an amount")
    if isinstance(v, int):
        return v
    s = str(v).strip()
    if s.lower().startswith("0x"):
        return int(s, 16)
    return int(s)


# ----------------------------- Protocol -------------------------------------


class IntmaxClient(Protocol):
    """What the settlement flow needs from one rollup identity."""

    @property
    def address(self) -> Optional[str]: ...

    async def login(self) -> str: ...

    async def logout(self) -> None: ...

    async def get_tokens_list(self) -> List[Token]: ...

    async def fetch_token_balances(self) -> List[TokenBalance]: ...

    async def get_transfer_fee(self) -> TransferFee: ...

    async def broadcast_transaction(self, transfers: Sequence[Transfer]) -> Mapping[str, Any]: ...

    async def estimate_deposit_gas(self, params: DepositParams) -> Any: ...

    async def deposit(self, params: DepositParams) -> DepositResult: ...

    async def fetch_deposits(self) -> List[HistoryEntry]: ...

    async def fetch_transfers(self) -> List[HistoryEntry]: ...


# ----------------------------- Gateway client -------------------------------


@dataclass
class IntmaxConfig:
    gateway_url: str = "http://127.0.0.1:8790"
    environment: str = "testnet"
    l1_rpc_url: str = "https://sepolia.gateway.tenderly.co"
    timeout_s: float = 30.0
    max_retries: int = 3
    backoff_base_s: float = 0.25
    headers: Optional[Dict[str, str]] = None


class IntmaxGatewayClient:
    """
    Async JSON-RPC client bound to one private key.

    The key is sent only with ``intmax_login``; the gateway answers with a
    session id and the rollup address.
    """

    def __init__(
        self,
        config: IntmaxConfig,
        private_key: str,
        *,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self._cfg = config
        self._private_key = private_key
        self._session: Optional[str] = None
        self._address: Optional[str] = None
        self._id = 0
        self._owns_http = http is None
        self._client = http

    @property
    def address(self) -> Optional[str]:
        return self._address

    # ---------- core transport ----------

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"content-type": "application/json", "accept": "application/json"}
            if self._cfg.headers:
                headers.update(self._cfg.headers)
            self._client = httpx.AsyncClient(
                base_url=self._cfg.gateway_url.rstrip("/"),
                timeout=self._cfg.timeout_s,
                headers=headers,
            )
        return self._client

    async def _call(self, method: str, params: Any | None = None) -> Any:
        client = await self._ensure_client()
        self._id += 1
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params or {}}

        attempt = 0
        while True:
            attempt += 1
            try:
                resp = await client.post("/rpc", json=payload)
                status = resp.status_code
                if status == 200:
                    data = json.loads(resp.content)
                    if data.get("error") is not None:
                        err = data["error"]
                        raise IntmaxResponseError(
                            err.get("code", -32000), err.get("message", "Unknown error"), err.get("data")
                        )
                    return data.get("result")
                if status in (502, 503, 504):
                    raise IntmaxTransportError(f"HTTP {status}: {resp.text[:256]!r}")
                # not retried
                raise IntmaxResponseError(-32000, f"HTTP {status}: {resp.text[:256]}")
            except (httpx.TimeoutException, httpx.TransportError, IntmaxTransportError) as exc:
                if attempt > self._cfg.max_retries:
                    raise IntmaxTransportError(f"{method} failed after {attempt} attempts: {exc}") from exc
                await asyncio.sleep(self._cfg.backoff_base_s * (2 ** (attempt - 1)))
            except ValueError as exc:
                raise IntmaxResponseError(-32700, "gateway returned invalid JSON") from exc

    async def _session_call(self, method: str, **params: Any) -> Any:
        if self._session is None:
            raise IntmaxError(f"{method} requires login()")
        return await self._call(method, {"session": self._session, **params})

    # ---------- session ----------

    async def login(self) -> str:
        result = await self._call(
            "intmax_login",
            {
                "environment": self._cfg.environment,
                "eth_private_key": self._private_key,
                "l1_rpc_url": self._cfg.l1_rpc_url,
            },
        )
        if not isinstance(result, Mapping) or not result.get("session") or not result.get("address"):
            raise IntmaxResponseError(-32000, "login returned no session")
        self._session = str(result["session"])
        self._address = str(result["address"])
        return self._address

    async def logout(self) -> None:
        try:
            if self._session is not None:
                await self._call("intmax_logout", {"session": self._session})
        finally:
            self._session = None
            if self._owns_http and self._client is not None:
                await self._client.aclose()
                self._client = None

    # ---------- typed methods ----------

    async def get_tokens_list(self) -> List[Token]:
        result = await self._session_call("intmax_getTokensList")
        return [Token.from_json(t) for t in result or []]

    async def fetch_token_balances(self) -> List[TokenBalance]:
        result = await self._session_call("intmax_fetchTokenBalances")
        balances = (result or {}).get("balances", []) if isinstance(result, Mapping) else result or []
        return [TokenBalance.from_json(b) for b in balances]

    async def get_transfer_fee(self) -> TransferFee:
        return TransferFee.from_json(await self._session_call("intmax_getTransferFee"))

    async def broadcast_transaction(self, transfers: Sequence[Transfer]) -> Mapping[str, Any]:
        result = await self._session_call(
            "intmax_broadcastTransaction", transfers=[t.to_json() for t in transfers]
        )
        return result or {}

    async def estimate_deposit_gas(self, params: DepositParams) -> Any:
        return await self._session_call(
            "intmax_estimateDepositGas", params=params.to_json(gas_estimation=True)
        )

    async def deposit(self, params: DepositParams) -> DepositResult:
        result = await self._session_call("intmax_deposit", params=params.to_json())
        result = result or {}
        return DepositResult(tx_hash=result.get("txHash"), raw=dict(result))

    async def fetch_deposits(self) -> List[HistoryEntry]:
        result = await self._session_call("intmax_fetchDeposits")
        return [HistoryEntry.from_json(d) for d in result or []]

    async def fetch_transfers(self) -> List[HistoryEntry]:
        result = await self._session_call("intmax_fetchTransfers")
        return [HistoryEntry.from_json(d) for d in result or []]


class IntmaxClientFactory:
    """Builds a fresh client per private key; the key never leaves the factory's call."""

    def __init__(self, config: IntmaxConfig):
        self._cfg = config

    def for_private_key(self, private_key: str) -> IntmaxClient:
        return IntmaxGatewayClient(self._cfg, private_key)


__all__ = [
    "NATIVE_TOKEN_ADDRESS",
    "IntmaxError",
    "IntmaxTransportError",
    "IntmaxResponseError",
    "DepositStatus",
    "deposit_status_label",
    "Token",
    "TokenBalance",
    "TransferFee",
    "Transfer",
    "DepositParams",
    "DepositResult",
    "HistoryEntry",
    "IntmaxClient",
    "IntmaxConfig",
    "IntmaxGatewayClient",
    "IntmaxClientFactory",
]
