"""
stealthmax_services.services
============================

Service layer: plain async classes with no HTTP knowledge.

Public submodules
-----------------
- directory    : NameRecord view over the subname registry; description codec; conditional rotation.
- settlement   : Cross-ledger settlement cycle (step runner + orchestrator).
- registration : Registration, listings, manual deposit and rollup queries for the API.

Submodules are imported lazily on first attribute access.
"""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING

__all__ = ["directory", "settlement", "registration"]


def __getattr__(name: str):
    if name in __all__:
        return import_module(f".{name}", __name__)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__():
    return sorted(list(globals().keys()) + __all__)


if TYPE_CHECKING:  # pragma: no cover
    from . import directory as directory
    from . import registration as registration
    from . import settlement as settlement
