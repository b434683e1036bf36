"""
Adapters for the external systems StealthMax talks to.

Thin, testable facades so the service layer stays framework-agnostic:

- namestone : HTTP client for the NameStone subname registry
- intmax    : INTMAX rollup client protocol + gateway implementation
- eth_ws    : websocket JSON-RPC transport for new Ethereum blocks

Submodules are loaded lazily via PEP 562 (__getattr__) so importing the
package does not pull in websockets or httpx until they are used.
"""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING

__all__ = [
    "namestone",
    "intmax",
    "eth_ws",
]


def __getattr__(name: str):
    if name in __all__:
        return importlib.import_module(f".{name}", __name__)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__():
    return sorted(list(globals().keys()) + __all__)


if TYPE_CHECKING:
    from . import eth_ws, intmax, namestone
