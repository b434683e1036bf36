from __future__ import annotations

"""
Request ID middleware.

- Generates or propagates a stable **X-Request-Id** for every request.
- Exposes it as ``request.state.request_id`` and binds it into the structlog
  context for the duration of the request.
- Echoes it on the response.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from ..logging import bind_context, clear_context


@dataclass(frozen=True)
class RequestIdConfig:
    request_id_header: str = "X-Request-Id"


class RequestIdMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, config: Optional[RequestIdConfig] = None):
        super().__init__(app)
        self.cfg = config or RequestIdConfig()
        self._in_header = self.cfg.request_id_header.lower()

    async def dispatch(self, request: Request, call_next):
        req_id = request.headers.get(self._in_header) or uuid.uuid4().hex
        request.state.request_id = req_id
        bind_context(request_id=req_id)
        try:
            response: Response = await call_next(request)
        finally:
            clear_context("request_id")
        response.headers[self.cfg.request_id_header] = req_id
        return response


def install_request_id_middleware(app: FastAPI, *, request_id_header: str = "X-Request-Id") -> RequestIdConfig:
    cfg = RequestIdConfig(request_id_header=request_id_header)
    app.add_middleware(RequestIdMiddleware, config=cfg)
    return cfg


__all__ = ["RequestIdConfig", "RequestIdMiddleware", "install_request_id_middleware"]
