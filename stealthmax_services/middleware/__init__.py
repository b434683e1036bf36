"""
HTTP middleware: request ids and the error envelope.
"""

from .errors import install_error_handlers
from .request_id import RequestIdMiddleware, install_request_id_middleware

__all__ = ["install_error_handlers", "RequestIdMiddleware", "install_request_id_middleware"]
