"""
Name directory: NameRecord view over the subname registry.

Each subname lives in the registry as ``{name, address, text_records}``. The
settlement-relevant state is packed into the ``description`` text record:

    {"intmax_address": "<rollup address>", "nonce": <rotation counter>}

Older registrations stored the bare rollup address as the description; those
decode with counter 0.

Design goals
------------
- One decoding decision point: ``decode_description`` returns a tagged variant.
- Conditional rotation: ``rotate`` re-reads the record under a per-name lock and
  refuses to write when the counter moved (RotationConflict).
- No caching: every read goes to the registry, so writes are visible at once.

Public API
----------
decode_description(raw) -> Description
encode_description(settlement_address, counter) -> str
NameDirectory(registry, domain, *, default_text_records=None)
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Union

from ..adapters.namestone import NameEntry
from ..domain import NameRecord
from ..errors import RotationConflict
from ..logging import get_logger

log = get_logger(__name__)

DESCRIPTION_KEY = "description"
BAD_NONCE = "bad nonce"


# ------------------------ Description codec ------------------------


@dataclass(frozen=True)
class StructuredDescription:
    intmax_address: str
    nonce: int


@dataclass(frozen=True)
class LegacyDescription:
    intmax_address: str
    nonce: int = 0


@dataclass(frozen=True)
class EmptyDescription:
    reason: str = "missing"


Description = Union[StructuredDescription, LegacyDescription, EmptyDescription]


def decode_description(raw: Optional[str]) -> Description:
    if raw is None or not str(raw).strip():
        return EmptyDescription("missing")
    text = str(raw).strip()
    try:
        data = json.loads(text)
    except ValueError:
        return LegacyDescription(intmax_address=text)
    if not isinstance(data, dict):
        # JSON scalars ("123", "true") are not our format either
        return LegacyDescription(intmax_address=text)
    address = data.get("intmax_address")
    if not address:
        return EmptyDescription("no intmax_address")
    nonce = _nonce(data.get("nonce"))
    if nonce is None:
        # a guessed counter would re-derive an address already handed out
        return EmptyDescription(BAD_NONCE)
    return StructuredDescription(intmax_address=str(address), nonce=nonce)


def _nonce(v: Any) -> Optional[int]:
    """Stored rotation counter, or None when it is not a non-negative integer."""
    if v is None:
        return 0
    if isinstance(v, bool):
        return None
    if isinstance(v, int):
        return v if v >= 0 else None
    if isinstance(v, str) and v.strip().isdigit():
        return int(v)
    return None


def encode_description(settlement_address: str, counter: int) -> str:
    return json.dumps({"intmax_address": settlement_address, "nonce": counter})


# ------------------------ Directory ------------------------


class Registry(Protocol):
    async def get_names(self, domain: str) -> List[NameEntry]: ...

    async def search_names(self, domain: str, name: str, *, exact_match: bool = True) -> List[NameEntry]: ...

    async def set_name(self, name: str, domain: str, address: str, text_records: Mapping[str, str]) -> Any: ...


def record_from_entry(entry: NameEntry) -> Optional[NameRecord]:
    raw = entry.text_records.get(DESCRIPTION_KEY)
    desc = decode_description(raw)
    if isinstance(desc, EmptyDescription):
        if desc.reason == BAD_NONCE:
            log.warning("directory.bad_nonce", name=entry.name, description=raw)
        return None
    return NameRecord(
        name=entry.name,
        receiving_address=entry.address,
        counter=desc.nonce,
        settlement_address=desc.intmax_address,
        text_records=entry.text_records,
    )


class NameDirectory:
    def __init__(
        self,
        registry: Registry,
        domain: str,
        *,
        default_text_records: Optional[Mapping[str, str]] = None,
    ):
        self.registry = registry
        self.domain = domain
        self._defaults: Dict[str, str] = dict(default_text_records or {})
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    # ---- reads ----

    async def list_entries(self) -> List[NameEntry]:
        return await self.registry.get_names(self.domain)

    async def list_records(self) -> List[NameRecord]:
        out: List[NameRecord] = []
        for entry in await self.list_entries():
            rec = record_from_entry(entry)
            if rec is not None:
                out.append(rec)
        return out

    async def find(self, address: str) -> Optional[NameRecord]:
        """Record whose receiving address matches ``address`` (case-insensitive)."""
        wanted = address.lower()
        for entry in await self.list_entries():
            if entry.address.lower() != wanted:
                continue
            rec = record_from_entry(entry)
            if rec is None:
                log.warning("directory.unsettleable", name=entry.name, address=entry.address)
            return rec
        return None

    async def search(self, name: str) -> List[NameEntry]:
        """Raw registry hits for ``name``; ``exact_match`` is only a hint on some deployments."""
        return await self.registry.search_names(self.domain, name, exact_match=True)

    async def find_entry(self, name: str) -> Optional[NameEntry]:
        for entry in await self.search(name):
            if entry.name == name:
                return entry
        return None

    async def find_by_name(self, name: str) -> Optional[NameRecord]:
        entry = await self.find_entry(name)
        return record_from_entry(entry) if entry is not None else None

    # ---- writes ----

    async def upsert(
        self,
        name: str,
        receiving_address: str,
        settlement_address: str,
        counter: int,
        text_records: Optional[Mapping[str, str]] = None,
    ) -> Any:
        records = dict(self._defaults)
        if text_records:
            records.update(text_records)
        records[DESCRIPTION_KEY] = encode_description(settlement_address, counter)
        log.info("directory.upsert", name=name, address=receiving_address, counter=counter)
        return await self.registry.set_name(name, self.domain, receiving_address, records)

    async def rotate(self, name: str, *, expected_counter: int, new_address: str) -> NameRecord:
        """
        Point ``name`` at ``new_address`` and bump its counter, provided the
        stored counter still equals ``expected_counter``.
        """
        async with self._lock_for(name):
            current = await self.find_by_name(name)
            if current is None or current.counter != expected_counter:
                raise RotationConflict(
                    name,
                    expected=expected_counter,
                    found=current.counter if current is not None else None,
                )
            await self.upsert(
                name,
                new_address,
                current.settlement_address,
                expected_counter + 1,
                text_records=current.text_records,
            )
            return NameRecord(
                name=name,
                receiving_address=new_address,
                counter=expected_counter + 1,
                settlement_address=current.settlement_address,
                text_records={
                    **current.text_records,
                    DESCRIPTION_KEY: encode_description(current.settlement_address, expected_counter + 1),
                },
            )


__all__ = [
    "StructuredDescription",
    "LegacyDescription",
    "EmptyDescription",
    "Description",
    "decode_description",
    "encode_description",
    "record_from_entry",
    "Registry",
    "NameDirectory",
]
