from __future__ import annotations

"""
INTMAX Router

Endpoints:
  - POST /api/intmax/deposit                : manual settlement for a parameter
  - GET  /api/intmax/balances/{parameter}   : token balances of the derived identity
  - GET  /api/intmax/deposits/{parameter}   : deposit history
  - GET  /api/intmax/transfers/{parameter}  : transfer history
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..errors import SettlementFailed
from ..models.common import ok
from ..models.requests import DepositRequest
from ..services.registration import RegistrationService
from .deps import get_registration

router = APIRouter(prefix="/api/intmax", tags=["intmax"])


@router.post("/deposit", summary="Manual deposit", response_model=None)
async def deposit(
    req: DepositRequest,
    svc: RegistrationService = Depends(get_registration),
) -> Dict[str, Any]:
    result = await svc.manual_deposit(req.parameter or "", req.amount, req.intmax_address)
    if not result.success:
        body = result.to_dict()
        raise SettlementFailed(
            result.error or "Settlement failed",
            details={"name": body["name"], "amount": body["amount"], "steps": body["steps"]},
        )
    return ok({"message": "INTMAX deposit successful", **result.to_dict()})


@router.get("/balances/{parameter}", summary="Rollup balances", response_model=None)
async def balances(parameter: str, svc: RegistrationService = Depends(get_registration)) -> Dict[str, Any]:
    return ok({"parameter": parameter, "balances": await svc.rollup_query(parameter, "balances")})


@router.get("/deposits/{parameter}", summary="Rollup deposit history", response_model=None)
async def deposits(parameter: str, svc: RegistrationService = Depends(get_registration)) -> Dict[str, Any]:
    return ok({"parameter": parameter, "deposits": await svc.rollup_query(parameter, "deposits")})


@router.get("/transfers/{parameter}", summary="Rollup transfer history", response_model=None)
async def transfers(parameter: str, svc: RegistrationService = Depends(get_registration)) -> Dict[str, Any]:
    return ok({"parameter": parameter, "transfers": await svc.rollup_query(parameter, "transfers")})


def get_router() -> APIRouter:
    return router
