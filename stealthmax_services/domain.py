from __future__ import annotations

"""
Domain types shared by the watcher, the directory and the settlement flow.

All of these are plain dataclasses; API models live in
``stealthmax_services.models`` and are built from them at the HTTP boundary.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class DerivedKeypair:
    """Secp256k1 keypair derived from the root secret. Never stored."""

    private_key: bytes
    address: str

    @property
    def private_key_hex(self) -> str:
        return "0x" + self.private_key.hex()

    def __repr__(self) -> str:
        return f"DerivedKeypair(address={self.address!r})"


@dataclass(frozen=True)
class NameRecord:
    """
    One registered subname.

    ``receiving_address`` is where the next incoming payment is expected;
    ``counter`` is the number of completed rotations and only ever grows.
    """

    name: str
    receiving_address: str
    counter: int
    settlement_address: str
    text_records: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "text_records", MappingProxyType(dict(self.text_records)))


@dataclass(frozen=True)
class MatchedTransfer:
    """A native-asset transfer to a monitored address, observed in one block."""

    recipient: str
    sender: str
    amount: Decimal
    value_wei: int
    tx_hash: str
    block_number: int


@dataclass
class SettlementAttempt:
    """Progress of one settlement cycle. Lives only for the duration of the call."""

    name: str
    settlement_address: str
    amount: Decimal
    master_address: Optional[str] = None
    token: Optional[Any] = None
    deposit_tx_hash: Optional[str] = None
    deposit_error: Optional[str] = None
    abort_error: Optional[str] = None
    rotated: bool = False
    receiving_address: Optional[str] = None
    steps: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SettlementResult:
    success: bool
    amount: str
    name: str
    tx_hash: Optional[str] = None
    settlement_address: Optional[str] = None
    error: Optional[str] = None
    rotated: bool = False
    receiving_address: Optional[str] = None
    steps: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "txHash": self.tx_hash,
            "settlementAddress": self.settlement_address,
            "amount": self.amount,
            "error": self.error,
            "name": self.name,
            "rotated": self.rotated,
            "receivingAddress": self.receiving_address,
            "steps": dict(self.steps),
        }


__all__ = [
    "DerivedKeypair",
    "NameRecord",
    "MatchedTransfer",
    "SettlementAttempt",
    "SettlementResult",
]
