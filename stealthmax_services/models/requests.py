from __future__ import annotations

"""
Request bodies.

Fields are optional at the model layer: a missing field is reported by the
service with the same 400 message whether it was absent, null or blank.
"""

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class RegisterRequest(BaseModel):
    """Register ``subname`` under the main domain, settling to ``intmax_address``."""

    model_config = ConfigDict(str_strip_whitespace=True)

    subname: Optional[str] = Field(default=None, description="Subname label, e.g. 'alice'.")
    intmax_address: Optional[str] = Field(default=None, description="Rollup address payouts settle to.")


class DeriveRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    parameter: Optional[str] = None
    counter: Optional[int] = Field(default=None, ge=0, description="Rotation counter; omit for the registration address.")


class DepositRequest(BaseModel):
    """Manual settlement for ``parameter``."""

    model_config = ConfigDict(str_strip_whitespace=True)

    parameter: Optional[str] = None
    amount: Optional[Union[str, float, int]] = Field(default=None, description="Amount in ETH.")
    intmax_address: Optional[str] = None


__all__ = ["RegisterRequest", "DeriveRequest", "DepositRequest"]
