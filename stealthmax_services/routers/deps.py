from __future__ import annotations

"""
FastAPI dependencies resolving the services the lifespan put on ``app.state``.
"""

from fastapi import Request

from ..errors import ServerError
from ..services.registration import RegistrationService


def get_registration(request: Request) -> RegistrationService:
    svc = getattr(request.app.state, "registration", None)
    if svc is None:
        raise ServerError("Service is still starting")
    return svc


def is_monitoring(request: Request) -> bool:
    scheduler = getattr(request.app.state, "scheduler", None)
    watcher = getattr(request.app.state, "watcher", None)
    if scheduler is None or watcher is None:
        return False
    return bool(scheduler.started and not watcher.gave_up)


__all__ = ["get_registration", "is_monitoring"]
