"""
Registration and query service behind the HTTP surface.

Routers stay thin: they validate input with pydantic models and hand the
values to this service, which talks to the directory, the key derivation and
the rollup.

Public API
----------
RegistrationService.register(subname, intmax_address) -> dict
RegistrationService.derive(parameter) -> dict
RegistrationService.list_names() -> dict
RegistrationService.monitoring_status(monitoring=...) -> dict
RegistrationService.monitoring_details(monitoring=...) -> dict
RegistrationService.manual_deposit(parameter, amount, intmax_address=None) -> SettlementResult
RegistrationService.rollup_query(parameter, what) -> list
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Optional, Union

from ..adapters.intmax import IntmaxClient, IntmaxError, IntmaxTransportError
from ..config import Settings
from ..domain import SettlementResult
from ..errors import BadRequest, NameConflict, RollupError
from ..keys import derive, derive_address
from ..logging import get_logger
from .directory import DESCRIPTION_KEY, NameDirectory, decode_description, LegacyDescription, StructuredDescription
from .settlement import SettlementOrchestrator, parse_amount

log = get_logger(__name__)

ROLLUP_QUERIES = ("balances", "deposits", "transfers")


def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z")


class RegistrationService:
    def __init__(
        self,
        settings: Settings,
        directory: NameDirectory,
        orchestrator: SettlementOrchestrator,
        client_factory: Any,
    ):
        self.settings = settings
        self.directory = directory
        self.orchestrator = orchestrator
        self.client_factory = client_factory

    @property
    def domain(self) -> str:
        return self.directory.domain

    @property
    def _secret(self) -> str:
        return self.settings.require_secret()

    # ---- registration ----

    async def register(self, subname: str, intmax_address: str) -> Dict[str, Any]:
        subname = subname.strip()
        intmax_address = intmax_address.strip()
        if not subname or not intmax_address:
            raise BadRequest("Missing required fields: subname and intmax_address are required")

        # any hit blocks registration, even a loose one
        found = await self.directory.search(subname)
        if found:
            existing = next((e for e in found if e.name == subname), found[0])
            log.info("register.conflict", name=subname, existing=existing.name)
            raise NameConflict(subname, existing=existing.to_json())

        derived = derive_address(self._secret, subname)
        response = await self.directory.upsert(subname, derived, intmax_address, 0)
        log.info("register.ok", name=subname, derived_address=derived)
        return {
            "message": "Registration completed successfully!",
            "namestone_response": response,
            "request_data": {
                "domain": self.domain,
                "subname": subname,
                "intmax_address": intmax_address,
                "derived_address": derived,
            },
        }

    def derive(self, parameter: str, counter: Optional[int] = None) -> Dict[str, Any]:
        if not parameter:
            raise BadRequest("Parameter is required")
        out: Dict[str, Any] = {
            "parameter": parameter,
            "derived_address": derive_address(self._secret, parameter, counter),
        }
        if counter is not None:
            out["counter"] = counter
        return out

    # ---- listings ----

    async def list_names(self) -> Dict[str, Any]:
        entries = await self.directory.list_entries()
        return {
            "domain": self.domain,
            "count": len(entries),
            "names": [{"name": e.name, "address": e.address} for e in entries],
        }

    async def monitoring_status(self, *, monitoring: bool) -> Dict[str, Any]:
        entries = await self.directory.list_entries()
        addresses = [
            {
                "name": e.name,
                "address": e.address,
                "etherscan": self.settings.explorer_address_url(e.address),
            }
            for e in entries
        ]
        return {
            "monitoring": monitoring,
            "network": self.settings.network_name,
            "addresses_count": len(addresses),
            "addresses": addresses,
            "last_updated": _now_iso(),
        }

    async def monitoring_details(self, *, monitoring: bool) -> Dict[str, Any]:
        entries = await self.directory.list_entries()
        addresses: List[Dict[str, Any]] = []
        for e in entries:
            desc = decode_description(e.text_records.get(DESCRIPTION_KEY))
            if isinstance(desc, (StructuredDescription, LegacyDescription)):
                intmax_address: Optional[str] = desc.intmax_address
                nonce = desc.nonce
            else:
                intmax_address, nonce = None, 0
            addresses.append(
                {
                    "name": e.name,
                    "subdomain": f"{e.name}.{self.domain}",
                    "ethereum_address": e.address,
                    "intmax_address": intmax_address or "Not set",
                    "nonce": nonce,
                    "text_records": dict(e.text_records),
                    "etherscan": self.settings.explorer_address_url(e.address),
                }
            )
        return {
            "monitoring": monitoring,
            "network": self.settings.network_name,
            "domain": self.domain,
            "addresses_count": len(addresses),
            "addresses": addresses,
            "last_updated": _now_iso(),
        }

    # ---- rollup ----

    async def manual_deposit(
        self,
        parameter: str,
        amount: Union[str, float],
        intmax_address: Optional[str] = None,
    ) -> SettlementResult:
        """
        Run the ledger steps for ``parameter`` by hand. Never rotates: the
        receiving address only moves when an on-chain payment is observed.
        """
        if not parameter or amount in (None, ""):
            raise BadRequest("Parameter and amount are required")
        value = parse_amount(amount)

        target = (intmax_address or "").strip() or None
        record = await self.directory.find_by_name(parameter)
        if target is None:
            if record is None:
                raise BadRequest(
                    "INTMAX address not found. Please provide intmax_address or register the name first."
                )
            target = record.settlement_address

        log.info("deposit.manual", name=parameter, amount=str(value), registered=record is not None)
        return await self.orchestrator.settle(
            record,
            name=parameter,
            settlement_address=target,
            amount=value,
            rotate=False,
        )

    async def rollup_query(self, parameter: str, what: str) -> List[Dict[str, Any]]:
        if what not in ROLLUP_QUERIES:
            raise BadRequest(f"Unknown query {what!r}")
        keypair = derive(self._secret, parameter)
        client: IntmaxClient = self.client_factory.for_private_key(keypair.private_key_hex)
        try:
            await client.login()
            try:
                if what == "balances":
                    return [b.to_json() for b in await client.fetch_token_balances()]
                if what == "deposits":
                    return [d.to_json() for d in await client.fetch_deposits()]
                return [t.to_json() for t in await client.fetch_transfers()]
            finally:
                await client.logout()
        except IntmaxTransportError as exc:
            raise RollupError(str(exc), status=503, details={"query": what}) from exc
        except IntmaxError as exc:
            raise RollupError(str(exc), details={"query": what}) from exc


__all__ = ["RegistrationService", "ROLLUP_QUERIES"]
