from __future__ import annotations

from typing import AsyncIterator

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from stealthmax_services.app import create_app
from stealthmax_services.config import Settings
from stealthmax_services.keys import derive_address
from stealthmax_services.services.directory import NameDirectory, encode_description
from stealthmax_services.services.settlement import SettlementOrchestrator

from .fakes import FakeClientFactory, FakeLedger, FakeRegistry

SECRET = "0x" + "4f" * 32
DOMAIN = "stealthmax.eth"


# ----------------------------
# Settings
# ----------------------------
@pytest.fixture
def settings() -> Settings:
    return Settings(
        private_key=SECRET,
        namestone_api_key="ns-test-key",
        main_domain=DOMAIN,
        enable_watcher=False,
        watch_start_delay_seconds=0,
        _env_file=None,
    )


# ----------------------------
# Fakes and services
# ----------------------------
@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger(SECRET)


@pytest.fixture
def factory(ledger: FakeLedger) -> FakeClientFactory:
    return FakeClientFactory(ledger)


@pytest.fixture
def directory(registry: FakeRegistry, settings: Settings) -> NameDirectory:
    return NameDirectory(registry, DOMAIN, default_text_records=settings.text_records)


@pytest.fixture
def orchestrator(directory: NameDirectory, factory: FakeClientFactory) -> SettlementOrchestrator:
    return SettlementOrchestrator(directory, factory, SECRET)


@pytest.fixture
def alice(registry: FakeRegistry) -> str:
    """Register 'alice' the way POST /api/register does; returns the receiving address."""
    address = derive_address(SECRET, "alice")
    registry.seed("alice", address, {"description": encode_description("intmax-alice", 0), "url": "https://x"})
    return address


# ----------------------------
# FastAPI application fixtures
# ----------------------------
@pytest.fixture
def app(settings: Settings, directory: NameDirectory, factory: FakeClientFactory) -> FastAPI:
    return create_app(settings, directory=directory, client_factory=factory)


@pytest.fixture
async def aclient(app: FastAPI) -> AsyncIterator[AsyncClient]:
    """Async HTTP client bound to the ASGI app, with the lifespan running."""
    async with app.router.lifespan_context(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            yield client
