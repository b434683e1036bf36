from __future__ import annotations

"""
Exception → JSON envelope mappers for FastAPI.

Every failure leaves the service as

    {"success": false, "error": <title>, "message": <detail>, "timestamp": <iso>}

plus any structured details the error carries (e.g. ``existing_name`` on a
409). Handled:
    * ApiError subclasses (from stealthmax_services.errors)
    * Starlette/FastAPI HTTPException
    * RequestValidationError (reported as 400)
    * Unhandled exceptions (500)

Stack traces are logged, never returned.
"""

from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..errors import ApiError
from ..logging import get_logger
from ..models.common import utcnow_iso

log = get_logger(__name__)

_TITLES = {
    400: "Bad request",
    401: "Authentication failed",
    403: "Forbidden",
    404: "Not found",
    405: "Method not allowed",
    409: "Conflict",
    500: "Internal server error",
    502: "Bad gateway",
    503: "Network error",
}


def _envelope(request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    body.setdefault("timestamp", utcnow_iso())
    rid = getattr(request.state, "request_id", None)
    if rid:
        body.setdefault("request_id", rid)
    return body


def _problem(status: int, message: str, *, error: Optional[str] = None) -> Dict[str, Any]:
    return {"success": False, "error": error or _TITLES.get(status, "Error"), "message": message}


# --------------------------- Handlers ---------------------------


async def _handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    body = _envelope(request, exc.to_envelope())
    if exc.status_code >= 500:
        log.error("api_error", path=request.url.path, status=exc.status_code, code=exc.code, message=exc.message)
    else:
        log.warning("api_error", path=request.url.path, status=exc.status_code, code=exc.code, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content=body)


async def _handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    status = int(exc.status_code)
    body = _envelope(request, _problem(status, str(exc.detail or "")))
    (log.warning if 400 <= status < 500 else log.error)("http_exception", path=request.url.path, status=status)
    return JSONResponse(status_code=status, content=body, headers=getattr(exc, "headers", None))


async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{where}: {first.get('msg')}" if where else str(first.get("msg") or "Invalid request")
    body = _envelope(request, _problem(400, message))
    body["errors"] = [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in errors]
    log.warning("validation_error", path=request.url.path, message=message)
    return JSONResponse(status_code=400, content=body)


async def _handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    body = _envelope(request, _problem(500, str(exc) or type(exc).__name__))
    log.exception("unhandled_exception", path=request.url.path, error_type=type(exc).__name__)
    return JSONResponse(status_code=500, content=body)


# --------------------------- Installer ---------------------------


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, _handle_api_error)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _handle_validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _handle_unexpected_error)


__all__ = ["install_error_handlers"]
