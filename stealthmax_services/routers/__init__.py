"""
Routers package: aggregates all HTTP routes into a single APIRouter.

Usage (from app factory):
    from stealthmax_services.routers import build_router
    app.include_router(build_router())
"""

from __future__ import annotations

from fastapi import APIRouter

from . import health, intmax, names


def build_router() -> APIRouter:
    root = APIRouter()
    for mod in (health, names, intmax):
        root.include_router(mod.get_router())
    return root


__all__ = ["build_router"]
