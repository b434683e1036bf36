from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from fastapi import FastAPI

from .adapters.eth_ws import BlockSource, EthWsClient
from .adapters.intmax import IntmaxClientFactory, IntmaxConfig
from .adapters.namestone import NamestoneClient, NamestoneConfig
from .config import Config, load_config
from .keys import normalize_secret
from .logging import get_logger
from .metrics import Metrics, setup_metrics
from .middleware.errors import install_error_handlers
from .middleware.request_id import install_request_id_middleware
from .routers import build_router
from .services.directory import NameDirectory
from .services.registration import RegistrationService
from .services.settlement import SettlementOrchestrator
from .tasks.scheduler import SchedulerConfig, TaskScheduler
from .tasks.watcher import ChainWatcher, WatcherConfig
from .version import SERVICE_NAME, __version__

log = get_logger(__name__)


def build_directory(cfg: Config) -> tuple[NameDirectory, NamestoneClient]:
    registry = NamestoneClient(NamestoneConfig(api_key=cfg.require_namestone_key(), base_url=cfg.namestone_url))
    return NameDirectory(registry, cfg.main_domain, default_text_records=cfg.text_records), registry


def build_client_factory(cfg: Config) -> IntmaxClientFactory:
    return IntmaxClientFactory(
        IntmaxConfig(
            gateway_url=cfg.intmax_gateway_url,
            environment=cfg.intmax_environment,
            l1_rpc_url=cfg.intmax_l1_rpc_url,
            timeout_s=cfg.intmax_timeout_s,
        )
    )


def build_watcher(
    cfg: Config,
    *,
    directory: NameDirectory,
    orchestrator: SettlementOrchestrator,
    block_source: Optional[BlockSource] = None,
    metrics: Optional[Metrics] = None,
) -> ChainWatcher:
    if block_source is not None:
        source_factory: Callable[[], BlockSource] = lambda: block_source  # noqa: E731
    else:
        ws_url = cfg.require_ws_url()
        source_factory = lambda: EthWsClient(ws_url)  # noqa: E731
    return ChainWatcher(
        directory=directory,
        orchestrator=orchestrator,
        source_factory=source_factory,
        config=WatcherConfig(
            refresh_seconds=cfg.address_refresh_seconds,
            restart_delay=cfg.watch_restart_delay_seconds,
            max_restarts=cfg.watch_max_restarts,
            settlement_timeout=cfg.settlement_timeout_seconds,
        ),
        metrics=metrics,
    )


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    App lifespan: build registry/rollup clients, start the watcher, then
    gracefully shut everything down.
    """
    cfg: Config = app.state.config
    overrides = app.state.overrides

    secret = cfg.require_secret()
    normalize_secret(secret)  # malformed keys fail here, not mid-settlement

    registry: Optional[NamestoneClient] = None
    directory = overrides.get("directory")
    if directory is None:
        directory, registry = build_directory(cfg)
    client_factory = overrides.get("client_factory") or build_client_factory(cfg)

    orchestrator = SettlementOrchestrator(
        directory,
        client_factory,
        secret,
        rotation_retries=cfg.rotation_retries,
        metrics=app.state.metrics,
    )
    app.state.directory = directory
    app.state.orchestrator = orchestrator
    app.state.registration = RegistrationService(cfg, directory, orchestrator, client_factory)

    scheduler: Optional[TaskScheduler] = None
    watcher: Optional[ChainWatcher] = None
    if cfg.enable_watcher:
        watcher = build_watcher(
            cfg,
            directory=directory,
            orchestrator=orchestrator,
            block_source=overrides.get("block_source"),
            metrics=app.state.metrics,
        )
        scheduler = TaskScheduler(watcher=watcher, config=SchedulerConfig(start_delay=cfg.watch_start_delay_seconds))
        await scheduler.start()
    app.state.watcher = watcher
    app.state.scheduler = scheduler
    log.info("app.started", domain=cfg.main_domain, network=cfg.network_name, watcher=cfg.enable_watcher)

    try:
        yield
    finally:
        if scheduler is not None:
            await scheduler.stop()
        if registry is not None:
            await registry.close()
        log.info("app.stopped")


def create_app(
    config: Optional[Config] = None,
    *,
    directory: Optional[NameDirectory] = None,
    client_factory: Optional[IntmaxClientFactory] = None,
    block_source: Optional[BlockSource] = None,
) -> FastAPI:
    """
    FastAPI factory. Mounts routers, middleware and metrics. ``directory``,
    ``client_factory`` and ``block_source`` replace the production adapters.
    """
    cfg = config or load_config()

    app = FastAPI(
        title="StealthMax Substream",
        version=__version__,
        lifespan=_lifespan,
    )
    app.state.config = cfg
    app.state.overrides = {
        "directory": directory,
        "client_factory": client_factory,
        "block_source": block_source,
    }
    app.state.registration = None
    app.state.watcher = None
    app.state.scheduler = None

    install_request_id_middleware(app)
    install_error_handlers(app)
    setup_metrics(app, service_name=SERVICE_NAME, service_version=__version__)
    app.include_router(build_router())

    return app


__all__ = ["create_app", "build_directory", "build_client_factory", "build_watcher"]
