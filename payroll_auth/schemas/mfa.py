# payroll_auth/schemas/mfa.py
import enum
from typing import List, Literal, Optional

from pydantic import Field

from payroll_auth.schemas.user import AccountSnapshot, CamelModel


class MFAMethod(str, enum.Enum):
    TOTP = "totp"
    EMAIL = "email"
    BACKUP = "backup"


# --- Login challenge ---
class MFAVerifyRequest(CamelModel):
    ticket: str
    code: str = Field(min_length=1, max_length=64)
    method: MFAMethod


class MFASendCodeRequest(CamelModel):
    ticket: str


# --- Authenticator app enrollment ---
class MFASetupResponse(CamelModel):
    secret: str
    qr_code: str
    otp_uri: str
    backup_codes: List[str]


class MFASetupVerifyRequest(CamelModel):
    code: str = Field(min_length=1, max_length=64)
    is_backup_code: bool = False


# --- Email enrollment ---
class MFAEmailVerifyRequest(CamelModel):
    code: str = Field(min_length=1, max_length=16)


# --- Disable / backup codes ---
class MFADisableRequest(CamelModel):
    password: str


class BackupCodesResponse(CamelModel):
    backup_codes: List[str]


class OkResponse(CamelModel):
    ok: Literal[True] = True
    user: Optional[AccountSnapshot] = None


class ErrorResponse(CamelModel):
    detail: str
    error: str
