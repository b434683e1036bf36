from __future__ import annotations

"""
Common API model types and the success envelope.

- Envelope: ``{success: true, data, timestamp}`` body of every successful response.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from pydantic import BaseModel, Field


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Envelope(BaseModel):
    success: bool = True
    data: Any = None
    timestamp: str = Field(default_factory=utcnow_iso)


def ok(data: Any) -> Dict[str, Any]:
    """Wrap ``data`` in the success envelope."""
    return Envelope(data=data).model_dump()


__all__ = ["Envelope", "ok", "utcnow_iso"]
