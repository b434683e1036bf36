"""
Async client for the NameStone subname registry.

NameStone stores offchain ENS subnames under a parent domain. Each entry has
a ``name``, an ``address`` and a free-form ``text_records`` mapping. The
public API used here:

  * GET  /get-names?domain=...
  * GET  /search-names?domain=...&name=...&exact_match=1
  * POST /set-name  {name, domain, address, text_records}

The API key travels in the ``Authorization`` header.

Error mapping
-------------
* 401 / 403                          -> AuthenticationError
* transport errors, 502/503/504      -> retried, then NetworkError
* any other non-2xx                  -> RegistryError
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import httpx

from ..errors import AuthenticationError, NetworkError, RegistryError
from ..logging import get_logger

log = get_logger(__name__)

RETRY_STATUSES = (502, 503, 504)


# ----------------------------- Types ----------------------------------------


@dataclass(frozen=True)
class NameEntry:
    """One registry entry as returned by NameStone."""

    name: str
    address: str
    domain: Optional[str] = None
    text_records: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "NameEntry":
        records = data.get("text_records") or {}
        return cls(
            name=str(data.get("name") or ""),
            address=str(data.get("address") or ""),
            domain=data.get("domain"),
            text_records={str(k): str(v) for k, v in records.items() if v is not None},
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "address": self.address,
            "domain": self.domain,
            "text_records": dict(self.text_records),
        }


@dataclass
class NamestoneConfig:
    api_key: str
    base_url: str = "https://namestone.com/api/public_v1"
    timeout_s: float = 10.0
    max_retries: int = 3
    backoff_base_s: float = 0.25


# ----------------------------- Client ---------------------------------------


class NamestoneClient:
    """
    Minimal async NameStone client with retry on transient failures.
    """

    def __init__(self, config: NamestoneConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._cfg = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    # ---------- lifecycle ----------

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._cfg.base_url.rstrip("/"),
                timeout=self._cfg.timeout_s,
                headers={
                    "accept": "application/json",
                    "content-type": "application/json",
                    "authorization": self._cfg.api_key,
                },
                transport=self._transport,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "NamestoneClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ---------- core transport ----------

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        if self._client is None:
            await self.start()
        assert self._client is not None

        attempt = 0
        while True:
            attempt += 1
            try:
                resp = await self._client.request(method, path, **kwargs)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                if attempt > self._cfg.max_retries:
                    raise NetworkError(
                        f"Name registry unreachable after {attempt} attempts: {exc}"
                    ) from exc
                await asyncio.sleep(self._cfg.backoff_base_s * (2 ** (attempt - 1)))
                continue

            status = resp.status_code
            if status in RETRY_STATUSES:
                if attempt > self._cfg.max_retries:
                    raise NetworkError(
                        f"Name registry returned HTTP {status} after {attempt} attempts",
                        details={"status": status},
                    )
                log.warning("namestone.retry", path=path, status=status, attempt=attempt)
                await asyncio.sleep(self._cfg.backoff_base_s * (2 ** (attempt - 1)))
                continue
            if status in (401, 403):
                raise AuthenticationError(details={"status": status})
            if status < 200 or status >= 300:
                raise RegistryError(
                    f"Name registry returned HTTP {status}",
                    details={"status": status, "body": resp.text[:256]},
                )
            if not resp.content:
                return None
            try:
                return resp.json()
            except ValueError as exc:
                raise RegistryError("Name registry returned a non-JSON body") from exc

    # ---------- typed methods ----------

    async def get_names(self, domain: str) -> List[NameEntry]:
        data = await self._request("GET", "/get-names", params={"domain": domain})
        return [NameEntry.from_json(item) for item in _as_list(data)]

    async def search_names(self, domain: str, name: str, *, exact_match: bool = True) -> List[NameEntry]:
        params = {"domain": domain, "name": name, "exact_match": 1 if exact_match else 0}
        data = await self._request("GET", "/search-names", params=params)
        return [NameEntry.from_json(item) for item in _as_list(data)]

    async def set_name(
        self,
        name: str,
        domain: str,
        address: str,
        text_records: Mapping[str, str],
    ) -> Any:
        payload = {
            "name": name,
            "domain": domain,
            "address": address,
            "text_records": dict(text_records),
        }
        log.info("namestone.set_name", name=name, domain=domain, address=address)
        return await self._request("POST", "/set-name", json=payload)


def _as_list(data: Any) -> List[Mapping[str, Any]]:
    if data is None:
        return []
    if isinstance(data, list):
        return [d for d in data if isinstance(d, Mapping)]
    raise RegistryError("Name registry returned an unexpected payload", details={"type": type(data).__name__})


__all__ = [
    "NameEntry",
    "NamestoneConfig",
    "NamestoneClient",
]
