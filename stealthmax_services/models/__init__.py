"""
Pydantic models for the HTTP surface.

- common   : success Envelope
- requests : RegisterRequest, DeriveRequest, DepositRequest
"""

from .common import Envelope, ok, utcnow_iso
from .requests import DepositRequest, DeriveRequest, RegisterRequest

__all__ = [
    "Envelope",
    "ok",
    "utcnow_iso",
    "RegisterRequest",
    "DeriveRequest",
    "DepositRequest",
]
