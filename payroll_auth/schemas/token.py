# payroll_auth/schemas/token.py
from typing import Literal

from pydantic import Field

from payroll_auth.models.user import MFAType
from payroll_auth.schemas.user import AccountSnapshot, CamelModel


class LoginRequest(CamelModel):
    email: str
    password: str


class SessionResponse(CamelModel):
    """Full session: password and any required second factor passed."""

    token: str
    user: AccountSnapshot


class MFARequiredResponse(CamelModel):
    """Password accepted, second factor still required. Not an error."""

    require_mfa: Literal[True] = Field(default=True, alias="requireMFA")
    temp_ticket: str
    mfa_type: MFAType
