from __future__ import annotations

"""
Names Router

Endpoints:
  - POST /api/register            : register a subname (counter 0, legacy-derived address)
  - POST /api/derive-address      : derived address for a parameter (optional counter)
  - GET  /api/names               : name/address pairs under the main domain
  - GET  /api/monitoring-status   : monitored addresses with explorer links
  - GET  /api/monitoring-details  : adds rollup address, counter and text records
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..errors import BadRequest
from ..models.common import ok
from ..models.requests import DeriveRequest, RegisterRequest
from ..services.registration import RegistrationService
from .deps import get_registration, is_monitoring

router = APIRouter(prefix="/api", tags=["names"])


@router.post("/register", summary="Register a subname", response_model=None)
async def register(
    req: RegisterRequest,
    svc: RegistrationService = Depends(get_registration),
) -> Dict[str, Any]:
    if not req.subname or not req.intmax_address:
        raise BadRequest("Missing required fields: subname and intmax_address are required")
    return ok(await svc.register(req.subname, req.intmax_address))


@router.post("/derive-address", summary="Derive the address for a parameter", response_model=None)
async def derive_address(
    req: DeriveRequest,
    svc: RegistrationService = Depends(get_registration),
) -> Dict[str, Any]:
    if not req.parameter:
        raise BadRequest("Parameter is required")
    return ok(svc.derive(req.parameter, req.counter))


@router.get("/names", summary="List registered names", response_model=None)
async def list_names(svc: RegistrationService = Depends(get_registration)) -> Dict[str, Any]:
    return ok(await svc.list_names())


@router.get("/monitoring-status", summary="Monitored addresses", response_model=None)
async def monitoring_status(
    svc: RegistrationService = Depends(get_registration),
    monitoring: bool = Depends(is_monitoring),
) -> Dict[str, Any]:
    return ok(await svc.monitoring_status(monitoring=monitoring))


@router.get("/monitoring-details", summary="Monitored addresses with records", response_model=None)
async def monitoring_details(
    svc: RegistrationService = Depends(get_registration),
    monitoring: bool = Depends(is_monitoring),
) -> Dict[str, Any]:
    return ok(await svc.monitoring_details(monitoring=monitoring))


def get_router() -> APIRouter:
    return router
