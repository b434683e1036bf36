"""
StealthMax Substream services
=============================

Watches Ethereum for payments to registered one-time addresses, settles each
payment across the INTMAX rollup and rotates the payee's receiving address.

This package exposes:

- ``__version__``: semantic version string
- ``build_app()``: convenience creator for a configured FastAPI app

Prefer importing submodules directly for specific concerns:
``stealthmax_services.keys``, ``stealthmax_services.services.settlement``,
``stealthmax_services.tasks.watcher``, etc.
"""

from __future__ import annotations

from .version import __version__

__all__ = ["__version__", "build_app"]


def build_app():
    """
    Create and return a configured FastAPI application.

    Imported lazily so ``stealthmax_services.keys`` can be used without
    pulling in FastAPI.
    """
    from .app import create_app

    return create_app()
