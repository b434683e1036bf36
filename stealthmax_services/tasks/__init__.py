from __future__ import annotations

"""
Background tasks: the chain watcher and its scheduler.

    from stealthmax_services.tasks import ChainWatcher, TaskScheduler

The app lifespan builds both from settings; ``stealthmax watch`` runs them
without the HTTP server.
"""

from .scheduler import SchedulerConfig, TaskScheduler
from .watcher import ChainWatcher, WatcherConfig, match_transfers

__all__ = [
    "ChainWatcher",
    "WatcherConfig",
    "match_transfers",
    "SchedulerConfig",
    "TaskScheduler",
]
