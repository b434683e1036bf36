from __future__ import annotations

"""
Error hierarchy for StealthMax services.

Every error carries:
  - ``status_code`` (int): HTTP status used when it reaches the API boundary
  - ``code`` (str): stable machine code (e.g., "name_conflict")
  - ``message`` (str): human-friendly summary
  - ``details`` (dict|None): optional structured diagnostics

``to_envelope()`` renders the ``{success, error, message}`` body every HTTP
handler returns on failure. The errors are framework-agnostic; the middleware
in ``stealthmax_services.middleware.errors`` turns them into responses.

Usage
-----
    from stealthmax_services.errors import NameConflict

    raise NameConflict("alice", existing={"name": "alice"})
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional


@dataclass
class ApiError(Exception):
    message: str
    status_code: int = 400
    code: str = "bad_request"
    details: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def title(self) -> str:
        return {
            "bad_request": "Bad request",
            "configuration_error": "Configuration error",
            "registry_error": "Registry error",
            "authentication_failed": "Authentication failed",
            "network_error": "Network error",
            "name_conflict": "Subdomain is already registered",
            "rotation_conflict": "Rotation conflict",
            "rollup_error": "Rollup error",
            "settlement_failed": "Settlement failed",
            "server_error": "Internal server error",
        }.get(self.code, self.message or "Error")

    def to_envelope(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "error": self.title(),
            "message": self.message,
        }
        if self.details:
            body.update({k: v for k, v in self.details.items() if k not in body})
        return body


# ------------------------------ Concrete types ------------------------------- #


class BadRequest(ApiError):
    def __init__(self, message: str = "Bad request", *, details: Optional[Mapping[str, Any]] = None):
        super().__init__(message=message, status_code=400, code="bad_request", details=details)


class ConfigurationError(ApiError):
    """Missing or malformed secret / API key. Fatal at startup."""

    def __init__(self, message: str = "Service is not configured", *, details: Optional[Mapping[str, Any]] = None):
        super().__init__(message=message, status_code=500, code="configuration_error", details=details)


class RegistryError(ApiError):
    """Name registry answered with an unexpected status or payload."""

    def __init__(
        self,
        message: str = "Name registry error",
        *,
        details: Optional[Mapping[str, Any]] = None,
        status: int = 502,
        code: str = "registry_error",
    ):
        super().__init__(message=message, status_code=status, code=code, details=details)


class AuthenticationError(RegistryError):
    def __init__(self, message: str = "Name registry rejected the API key", *, details: Optional[Mapping[str, Any]] = None):
        super().__init__(message, details=details, status=401, code="authentication_failed")


class NetworkError(RegistryError):
    def __init__(self, message: str = "Name registry is unreachable", *, details: Optional[Mapping[str, Any]] = None):
        super().__init__(message, details=details, status=503, code="network_error")


class NameConflict(ApiError):
    def __init__(self, name: str, *, existing: Optional[Mapping[str, Any]] = None):
        super().__init__(
            message=f"Subdomain {name!r} is already registered",
            status_code=409,
            code="name_conflict",
            details={"existing_name": dict(existing)} if existing else None,
        )


class RotationConflict(ApiError):
    """The stored counter moved between the read and the conditional write."""

    def __init__(self, name: str, *, expected: int, found: Optional[int]):
        super().__init__(
            message=f"Counter for {name!r} changed during rotation: expected {expected}, found {found}",
            status_code=409,
            code="rotation_conflict",
            details={"name": name, "expected": expected, "found": found},
        )
        self.name = name
        self.expected = expected
        self.found = found


class RollupError(ApiError):
    """Rollup gateway failed or rejected a query."""

    def __init__(self, message: str = "Rollup gateway error", *, details: Optional[Mapping[str, Any]] = None, status: int = 502):
        super().__init__(message=message, status_code=status, code="rollup_error", details=details)


class SettlementFailed(ApiError):
    def __init__(self, message: str = "Settlement failed", *, details: Optional[Mapping[str, Any]] = None):
        super().__init__(message=message, status_code=500, code="settlement_failed", details=details)


class ServerError(ApiError):
    def __init__(self, message: str = "Internal server error", *, details: Optional[Mapping[str, Any]] = None):
        super().__init__(message=message, status_code=500, code="server_error", details=details)


__all__ = [
    "ApiError",
    "BadRequest",
    "ConfigurationError",
    "RegistryError",
    "AuthenticationError",
    "NetworkError",
    "NameConflict",
    "RotationConflict",
    "RollupError",
    "SettlementFailed",
    "ServerError",
]
