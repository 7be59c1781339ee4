# payroll_auth/schemas/user.py
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from payroll_auth.models.user import MFAType


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AccountCreate(CamelModel):
    email: EmailStr
    password: str = Field(min_length=8)
    full_name: Optional[str] = None
    role: str = "user"


class AccountSnapshot(CamelModel):
    """Minimal profile a client keeps next to its session token."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: int
    email: EmailStr
    full_name: Optional[str] = None
    role: str = "user"
    mfa_enabled: bool = False
    mfa_type: MFAType = MFAType.NONE


class AccountDetails(AccountSnapshot):
    """What ``/auth/me`` answers: the snapshot plus the unused backup codes left."""

    backup_codes_remaining: int = 0
