from __future__ import annotations

import os
import time
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter

from .. import version as svc_version
from ..models.common import utcnow_iso

router = APIRouter(tags=["health"])

_PROCESS_START = time.time()


def _uptime_seconds() -> float:
    return max(0.0, time.time() - _PROCESS_START)


def _version_blob() -> Dict[str, Any]:
    return {
        "service": svc_version.SERVICE_NAME,
        "version": svc_version.__version__,
        "build": svc_version.build_version(),
        "git": svc_version.git_commit(),
        "python": {
            "version": "{}.{}.{}".format(*os.sys.version_info[:3]),
            "impl": os.sys.implementation.name,
        },
        "started_at": datetime.fromtimestamp(_PROCESS_START, tz=timezone.utc).isoformat(),
        "now": utcnow_iso(),
        "uptime_seconds": round(_uptime_seconds(), 3),
    }


@router.get("/health", summary="Liveness probe", response_model=None)
def health() -> Dict[str, Any]:
    """Always 200 while the process is serving requests."""
    return {
        "status": "healthy",
        "timestamp": utcnow_iso(),
        "uptime": round(_uptime_seconds(), 3),
        "service": svc_version.SERVICE_NAME,
        "version": svc_version.__version__,
    }


@router.get("/", summary="Greeting", response_model=None)
def root() -> Dict[str, Any]:
    return {
        "message": "StealthMax substream service is running",
        "timestamp": utcnow_iso(),
        "server": svc_version.SERVICE_NAME,
    }


@router.get("/version", summary="Service version", response_model=None)
def version() -> Dict[str, Any]:
    return _version_blob()


def get_router() -> APIRouter:
    return router
